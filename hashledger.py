#!/usr/bin/env python3
"""
hashledger - change detection for folders of files.

Keeps a plain-text ledger of "<digest> <relative path>" lines. Each run scans the
given folders, hashes files missing from the ledger, and depending on --existing
skips, checks or updates files already recorded.

Exit status is 1 when --existing check found a file whose content drifted (or a
file could not be hashed under --keep-going), 2 on configuration or I/O errors.
Use --help for full options and examples.
"""

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from common import (
    DEFAULT_HASH_ALGO,
    DEFAULT_WORKERS,
    EXISTING_ACTIONS,
    EXISTING_NOTHING,
    SUPPORTED_HASH_ALGOS,
    build_report,
    discover_paths,
    setup_logging,
    write_report,
)
from ledger import Ledger, temp_path_for
from reconcile_cmd import reconcile_files


EXIT_OK = 0
EXIT_MISMATCH = 1
EXIT_FATAL = 2


@dataclass
class RunConfig:
    """Options for one run, collected from the command line."""

    ledger_path: Path
    folders: List[str]
    base_dir: Path = field(default_factory=Path.cwd)
    remove_old_entries: bool = False
    existing: str = EXISTING_NOTHING
    include_dot_files: bool = False
    workers: int = DEFAULT_WORKERS
    hash_algo: str = DEFAULT_HASH_ALGO
    keep_going: bool = False
    report_path: Optional[Path] = None


def run(config: RunConfig) -> int:
    """Scan, reconcile, prune and save. Returns the process exit code.

    I/O errors and invalid folders propagate to the caller.
    """
    run_started = int(time.time())
    base_dir = config.base_dir.resolve()
    ledger_path = config.ledger_path.resolve()
    logging.info(f"Parsing {base_dir}")

    excluded_paths = {str(ledger_path), str(temp_path_for(ledger_path))}
    if config.report_path:
        excluded_paths.add(str(config.report_path.resolve()))

    paths = discover_paths(
        base_dir,
        config.folders,
        include_dot_files=config.include_dot_files,
        excluded_paths=excluded_paths,
    )
    ledger = Ledger.open(ledger_path)

    logging.info(f"Running with {config.workers} threads")
    result = reconcile_files(
        paths,
        ledger,
        ledger_path,
        base_dir,
        existing=config.existing,
        workers=config.workers,
        hash_algo=config.hash_algo,
        keep_going=config.keep_going,
    )

    removed: List[str] = []
    if config.remove_old_entries:
        removed = ledger.prune(paths)

    if ledger.has_pending_changes():
        ledger.save(ledger_path)

    stats = dict(result.stats)
    stats["removed"] = len(removed)
    stats["ledger_entries"] = len(ledger)
    logging.info(
        "Summary: %d files discovered | added: %d | updated: %d | verified: %d | "
        "skipped: %d | mismatched: %d | removed: %d | errors: %d | ledger total: %d"
        % (
            stats["discovered"],
            stats["added"],
            stats["updated"],
            stats["verified"],
            stats["skipped"],
            stats["mismatched"],
            stats["removed"],
            stats["errors"],
            stats["ledger_entries"],
        )
    )

    if config.report_path:
        details: Dict[str, object] = {
            "added": result.added,
            "updated": result.updated,
            "mismatched": result.mismatched,
            "removed": removed,
            "errors": result.errors,
        }
        if config.workers > 0:
            details["workers"] = config.workers
        report = build_report(
            base_dir=base_dir,
            ledger_path=ledger_path,
            hash_algo=config.hash_algo,
            existing=config.existing,
            stats=stats,
            run_started=run_started,
            run_finished=int(time.time()),
            details=details,
        )
        write_report(report, config.report_path)

    if result.mismatch_detected or result.errors:
        return EXIT_MISMATCH
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        description='Record file digests in a ledger and detect added, changed '
                    'or removed files on later runs.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python hashledger.py files.md5 -f photos -f documents
  python hashledger.py files.md5 -f photos --existing check
  python hashledger.py files.md5 -f photos --existing update --remove-old-entries
  python hashledger.py files.md5 -f photos --processes 4 --report run.json
        """,
    )
    parser.add_argument(
        'ledger',
        type=Path,
        help='Ledger file holding "<digest> <path>" lines',
    )
    parser.add_argument(
        '-f', '--folders',
        action='append',
        required=True,
        metavar='FOLDER',
        help='Folder to include, relative to the base directory. Repeatable.',
    )
    parser.add_argument(
        '-r', '--remove-old-entries',
        action='store_true',
        help='Remove ledger entries for files that no longer exist',
    )
    parser.add_argument(
        '-e', '--existing',
        choices=EXISTING_ACTIONS,
        default=EXISTING_NOTHING,
        help='What to do with files already in the ledger: skip them (nothing), '
             'report changed digests (check) or record new digests (update). '
             f'Default: {EXISTING_NOTHING}',
    )
    parser.add_argument(
        '-i', '--include-dot-files',
        action='store_true',
        help='Include files whose names start with a dot (dot-folders are always scanned)',
    )
    parser.add_argument(
        '-p', '--processes',
        type=int,
        default=DEFAULT_WORKERS,
        help='Number of hashing threads; 0 runs on the main thread '
             f'(default: {DEFAULT_WORKERS})',
    )
    parser.add_argument(
        '--base-dir',
        type=Path,
        default=Path.cwd(),
        help='Directory the folders and recorded paths are relative to '
             '(default: current directory)',
    )
    parser.add_argument(
        '--hash-algo',
        choices=SUPPORTED_HASH_ALGOS,
        default=DEFAULT_HASH_ALGO,
        help=f'Digest algorithm (default: {DEFAULT_HASH_ALGO})',
    )
    parser.add_argument(
        '--keep-going',
        action='store_true',
        help='Record unreadable files as errors and continue instead of aborting',
    )
    parser.add_argument(
        '--report',
        type=Path,
        help='Write a JSON report of the run to this path',
    )
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging',
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the script."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.processes < 0:
        parser.error('--processes must be >= 0')

    setup_logging(args.log, args.verbose)

    config = RunConfig(
        ledger_path=args.ledger,
        folders=args.folders,
        base_dir=args.base_dir,
        remove_old_entries=args.remove_old_entries,
        existing=args.existing,
        include_dot_files=args.include_dot_files,
        workers=args.processes,
        hash_algo=args.hash_algo,
        keep_going=args.keep_going,
        report_path=args.report,
    )

    try:
        exit_code = run(config)
    except (OSError, ValueError) as exc:
        logging.error(str(exc))
        sys.exit(EXIT_FATAL)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
