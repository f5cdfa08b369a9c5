"""
Ledger: relative path -> digest map persisted as a flat "<digest> <path>" text file.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple


# Trimmed from both ends of each line; '\r' covers ledgers saved with CRLF endings.
LINE_PADDING = ' \t\r'


def _path_sort_key(path: str) -> List[str]:
    """Order paths component by component, so 'a/b' sorts before 'a.b'."""
    return path.split('/')


class Ledger:
    """In-memory ledger of file digests with a count of unsaved changes.

    The ledger itself is not thread-safe; callers sharing it across threads
    must hold a lock around every call.
    """

    def __init__(self, entries: Optional[Dict[str, str]] = None) -> None:
        self._entries: Dict[str, str] = dict(entries or {})
        self._change_count = 0

    @classmethod
    def load(cls, ledger_path: Path) -> "Ledger":
        """Parse a ledger file. Blank and malformed lines are skipped.

        Records are separated by '\\n' only; any other control character is
        part of the path.
        """
        with ledger_path.open(encoding='utf-8', newline='') as handle:
            text = handle.read()
        entries: Dict[str, str] = {}
        for line in text.split('\n'):
            digest, sep, path = line.strip(LINE_PADDING).partition(' ')
            if not sep:
                continue
            entries[path] = digest
        logging.debug(f"Loaded {len(entries)} entries from {ledger_path}")
        return cls(entries)

    @classmethod
    def open(cls, ledger_path: Path) -> "Ledger":
        """Load the ledger if the file exists, otherwise start an empty one."""
        if ledger_path.exists():
            return cls.load(ledger_path)
        logging.info(f"Ledger {ledger_path} does not exist yet, starting empty")
        return cls()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def get_digest(self, path: str) -> Optional[str]:
        return self._entries.get(path)

    def record(self, path: str, digest: str) -> None:
        """Insert or overwrite the digest for path.

        Always counts as a change, even when the digest is unchanged.
        """
        self._entries[path] = digest
        self._change_count += 1

    def prune(self, keep: Iterable[str]) -> List[str]:
        """Remove every entry whose path is not in keep. Returns removed paths."""
        keep_set = keep if isinstance(keep, (set, frozenset)) else set(keep)
        removed = sorted(
            (path for path in self._entries if path not in keep_set),
            key=_path_sort_key,
        )
        for path in removed:
            del self._entries[path]
            logging.info(f"Removing {path}")
            self._change_count += 1
        return removed

    def items(self) -> List[Tuple[str, str]]:
        """Return (path, digest) pairs in save order."""
        return sorted(self._entries.items(), key=lambda item: _path_sort_key(item[0]))

    def serialize(self) -> str:
        return "\n".join(f"{digest} {path}" for path, digest in self.items())

    def save(self, ledger_path: Path) -> None:
        """Rewrite the whole ledger file and reset the change counter.

        The content is written to a sibling temporary file first and then
        renamed over the destination.
        """
        ledger_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = temp_path_for(ledger_path)
        with temp_path.open('w', encoding='utf-8', newline='') as handle:
            handle.write(self.serialize())
        os.replace(temp_path, ledger_path)
        logging.debug(f"Saved {len(self._entries)} entries to {ledger_path}")
        self._change_count = 0

    def pending_change_count(self) -> int:
        return self._change_count

    def has_pending_changes(self) -> bool:
        return self._change_count != 0


def temp_path_for(ledger_path: Path) -> Path:
    """Temporary file used while saving ledger_path."""
    return ledger_path.with_name(ledger_path.name + '.tmp')
