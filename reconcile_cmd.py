"""
Reconcile command: compare discovered files against the ledger, hash as needed, and
merge the results back into the ledger from one or more worker threads.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from common import (
    DEFAULT_HASH_ALGO,
    DEFAULT_WORKERS,
    EXISTING_ACTIONS,
    EXISTING_CHECK,
    EXISTING_NOTHING,
    FLUSH_THRESHOLD,
    PROGRESS_EVERY,
    compute_hash,
)
from ledger import Ledger


ProgressCallback = Callable[[int, Dict[str, int]], None]


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation run."""
    stats: Dict[str, int]
    added: List[Dict[str, object]] = field(default_factory=list)
    updated: List[Dict[str, object]] = field(default_factory=list)
    mismatched: List[Dict[str, object]] = field(default_factory=list)
    errors: List[Dict[str, object]] = field(default_factory=list)
    mismatch_detected: bool = False


@dataclass
class RunState:
    """State shared by every worker for the duration of one run.

    ledger_lock guards the ledger, the result lists and the counters.
    The work queue and the two events carry their own synchronization.
    """
    ledger: Ledger
    ledger_path: Path
    base_dir: Path
    existing: str
    hash_algo: str
    keep_going: bool
    work_queue: "queue.Queue[str]"
    result: ReconcileResult
    progress_callback: Optional[ProgressCallback] = None
    ledger_lock: threading.Lock = field(default_factory=threading.Lock)
    mismatch: threading.Event = field(default_factory=threading.Event)
    abort: threading.Event = field(default_factory=threading.Event)
    processed: int = 0
    last_progress_log: int = 0


def _flush_if_needed(state: RunState) -> None:
    """Save the ledger once too many changes are pending. Caller holds ledger_lock."""
    pending = state.ledger.pending_change_count()
    if pending > FLUSH_THRESHOLD:
        logging.debug(f"Flushing ledger after {pending} changes")
        state.ledger.save(state.ledger_path)
        state.result.stats["flushes"] += 1


def _hash_or_record_error(state: RunState, rel_path: str) -> Optional[str]:
    """Hash a file, or under keep_going record the failure and return None."""
    try:
        return compute_hash(state.base_dir / rel_path, state.hash_algo)
    except OSError as exc:
        if not state.keep_going:
            raise
        logging.warning(f"Failed to hash {rel_path}: {exc}")
        with state.ledger_lock:
            state.result.stats["errors"] += 1
            state.result.errors.append({"path": rel_path, "error": str(exc)})
        return None


def process_path(state: RunState, rel_path: str) -> None:
    """Decide and apply the action for one path: add, skip, verify or update."""
    stats = state.result.stats

    with state.ledger_lock:
        stored = state.ledger.get_digest(rel_path)

    if stored is None:
        logging.debug(f"Hashing new file {rel_path}")
        digest = _hash_or_record_error(state, rel_path)
        if digest is None:
            return
        with state.ledger_lock:
            state.ledger.record(rel_path, digest)
            stats["added"] += 1
            state.result.added.append({"path": rel_path, "hash": digest})
            logging.info(f"Adding {rel_path} - {digest}")
            _flush_if_needed(state)
        return

    if state.existing == EXISTING_NOTHING:
        with state.ledger_lock:
            stats["skipped"] += 1
        return

    logging.debug(f"Computing {rel_path}")
    digest = _hash_or_record_error(state, rel_path)
    if digest is None:
        return

    if digest == stored:
        with state.ledger_lock:
            stats["verified"] += 1
        return

    logging.warning(f"Mismatch in hash for {rel_path} => old {stored}, new {digest}")

    if state.existing == EXISTING_CHECK:
        # Audit mode: report the drift, leave the ledger as it was.
        state.mismatch.set()
        with state.ledger_lock:
            stats["mismatched"] += 1
            state.result.mismatched.append(
                {"path": rel_path, "expected_hash": stored, "actual_hash": digest}
            )
        return

    with state.ledger_lock:
        state.ledger.record(rel_path, digest)
        stats["updated"] += 1
        state.result.updated.append(
            {"path": rel_path, "hash": digest, "previous_hash": stored}
        )
        logging.info(f"Updating {rel_path} - {digest}")
        _flush_if_needed(state)


def _tick_progress(state: RunState) -> None:
    """Count one finished path, log every PROGRESS_EVERY, notify the callback.

    The callback runs without ledger_lock, so it may be slow or call back in.
    """
    with state.ledger_lock:
        state.processed += 1
        processed = state.processed
        snapshot = dict(state.result.stats)
        if processed - state.last_progress_log >= PROGRESS_EVERY:
            logging.info(
                f"Progress: processed={processed}/{snapshot['discovered']}, "
                f"added={snapshot['added']}, updated={snapshot['updated']}, "
                f"mismatched={snapshot['mismatched']}, errors={snapshot['errors']}"
            )
            state.last_progress_log = processed
    if state.progress_callback:
        state.progress_callback(processed, snapshot)


def _drain_queue(state: RunState) -> None:
    """Pop one path at a time until the queue is empty or another worker failed."""
    while not state.abort.is_set():
        try:
            rel_path = state.work_queue.get_nowait()
        except queue.Empty:
            return
        try:
            process_path(state, rel_path)
        except Exception:
            state.abort.set()
            raise
        _tick_progress(state)


def reconcile_files(
    paths: Sequence[str],
    ledger: Ledger,
    ledger_path: Path,
    base_dir: Path,
    existing: str = EXISTING_NOTHING,
    workers: int = DEFAULT_WORKERS,
    hash_algo: str = DEFAULT_HASH_ALGO,
    keep_going: bool = False,
    progress_callback: Optional[ProgressCallback] = None,
) -> ReconcileResult:
    """Reconcile the discovered paths against the ledger.

    workers == 0 runs everything on the calling thread; otherwise a pool of
    that many threads drains a shared queue. Hashing errors propagate unless
    keep_going is set. Pruning and the final save are left to the caller.
    """
    if existing not in EXISTING_ACTIONS:
        raise ValueError(f"Unknown existing-file action: {existing}")
    if workers < 0:
        raise ValueError(f"Worker count must be >= 0, got {workers}")

    stats = {
        "discovered": len(paths),
        "added": 0,
        "updated": 0,
        "verified": 0,
        "skipped": 0,
        "mismatched": 0,
        "errors": 0,
        "flushes": 0,
    }
    work_queue: "queue.Queue[str]" = queue.Queue()
    for rel_path in paths:
        work_queue.put(rel_path)

    state = RunState(
        ledger=ledger,
        ledger_path=ledger_path,
        base_dir=base_dir,
        existing=existing,
        hash_algo=hash_algo,
        keep_going=keep_going,
        work_queue=work_queue,
        result=ReconcileResult(stats=stats),
        progress_callback=progress_callback,
    )

    if workers == 0:
        _drain_queue(state)
    else:
        logging.info(f"Using {workers} worker threads for hashing")
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(_drain_queue, state) for _ in range(workers)]
            for future in as_completed(futures):
                future.result()

    state.result.mismatch_detected = state.mismatch.is_set()
    logging.info(
        f"Reconciled: discovered={stats['discovered']}, added={stats['added']}, "
        f"updated={stats['updated']}, verified={stats['verified']}, "
        f"skipped={stats['skipped']}, mismatched={stats['mismatched']}, "
        f"errors={stats['errors']}, flushes={stats['flushes']}"
    )
    return state.result
