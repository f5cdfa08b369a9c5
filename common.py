"""
Shared code for hashledger: constants, logging, path discovery, hashing, reporting.
"""

import hashlib
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set


DEFAULT_HASH_ALGO = "md5"
SUPPORTED_HASH_ALGOS = ("md5", "sha1", "sha256")
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
DEFAULT_WORKERS = 0
FLUSH_THRESHOLD = 10  # Save mid-run once more than this many changes are pending
PROGRESS_EVERY = 1000

EXISTING_NOTHING = "nothing"
EXISTING_CHECK = "check"
EXISTING_UPDATE = "update"
EXISTING_ACTIONS = (EXISTING_NOTHING, EXISTING_CHECK, EXISTING_UPDATE)


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Log to stdout, and append to log_file when given.

    The log file is appended to so repeated runs against one ledger leave a
    single audit trail. Verbose output also names the worker thread.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode='a', encoding='utf-8'))

    log_format = '%(asctime)s %(levelname)-7s %(message)s'
    if verbose:
        log_format = '%(asctime)s %(levelname)-7s [%(threadName)s] %(message)s'
    logging.basicConfig(level=level, format=log_format, handlers=handlers)


def resolve_folder(base_dir: Path, folder: str) -> Path:
    """Join folder onto base_dir, rejecting folders that escape it."""
    root = Path(os.path.normpath(base_dir / folder))
    if root != base_dir and base_dir not in root.parents:
        raise ValueError(f"Folder is outside the base directory: {folder}")
    if not root.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {root}")
    return root


def iter_files(root: Path, include_dot_files: bool = False) -> Iterable[Path]:
    """Iterate through files under root without following directory symlinks.

    Files whose names start with '.' are skipped unless include_dot_files is
    set; directories are always descended into, dot-prefixed or not.
    Unreadable directories raise OSError.
    """
    stack = [root]
    while stack:
        current = stack.pop()
        with os.scandir(current) as entries:
            for entry in entries:
                if entry.is_dir(follow_symlinks=False):
                    stack.append(Path(entry.path))
                elif entry.is_file():
                    if entry.name.startswith('.') and not include_dot_files:
                        continue
                    yield Path(entry.path)


def discover_paths(
    base_dir: Path,
    folders: Iterable[str],
    include_dot_files: bool = False,
    excluded_paths: Optional[Set[str]] = None,
) -> List[str]:
    """Collect the sorted, deduplicated set of slash-separated paths relative to base_dir."""
    excluded = excluded_paths or set()
    found: Set[str] = set()
    for folder in folders:
        root = resolve_folder(base_dir, folder)
        for file_path in iter_files(root, include_dot_files):
            if str(file_path) in excluded:
                logging.debug(f"Skipping excluded path {file_path}")
                continue
            found.add(file_path.relative_to(base_dir).as_posix())

    logging.debug(f"Discovered {len(found)} files under {base_dir}")
    return sorted(found)


def compute_hash(
    file_path: Path,
    hash_algo: str = DEFAULT_HASH_ALGO,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> str:
    """Compute the hex digest of a file's contents."""
    hasher = hashlib.new(hash_algo)
    with file_path.open('rb') as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b''):
            hasher.update(chunk)
    return hasher.hexdigest()


def build_report(
    base_dir: Path,
    ledger_path: Path,
    hash_algo: str,
    existing: str,
    stats: Dict[str, int],
    run_started: int,
    run_finished: int,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "base_dir": str(base_dir),
        "ledger": str(ledger_path),
        "hash_algo": hash_algo,
        "existing": existing,
        "stats": stats,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write the JSON report next to its destination, then move it into place."""
    report_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = report_path.with_name(report_path.name + '.tmp')
    temp_path.write_text(json.dumps(report, indent=2, sort_keys=True) + '\n', encoding='utf-8')
    os.replace(temp_path, report_path)
    logging.info(f"Report written to {report_path}")
