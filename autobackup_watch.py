#!/usr/bin/env python3
"""
Watch a directory and keep a versioned backup of every file whose content changes.

Each poll registers new files, compares the content digest of files whose modification time
moved, and copies changed files into <dir>/.autobackup/ as
<stem>_v<version>_backup_<YYYYMMDD_HHMMSS><ext>. The tracked-file table is kept in
<dir>/.autobackup/.autobackup_state so that a restart picks up where the last run stopped.

Usage:
    python autobackup_watch.py ./my_project 5

Optional args:
    --once        Run a single cycle and exit
    --max-files   Maximum number of tracked files (default: AUTOBACKUP_MAX_FILES or 1000)
    --workers     Threads used for fingerprinting (default: AUTOBACKUP_WORKERS or 1)
    --on-missing  'retain' or 'forget' entries whose file disappeared
    --logfile     Also write JSON logs to this file
"""

import argparse
import sys
import time

from autobackup.autobackup import MAX_FILES, ON_MISSING, ON_MISSING_CHOICES, WORKERS, InvalidDirectory, _env_int
from autobackup.engine import AutoBackupEngine, configure_logging

DEFAULT_INTERVAL = 5


def print_status(status):
    """
    Print the directory being watched and the version of every tracked file.
    """
    print("\n=== AutoBackup Status ===")
    print(f"Watching: {status.watch_dir}")
    print(f"Backups:  {status.backup_dir}")
    print(f"Tracking {status.count} file(s):")
    for name, version in status.versions.items():
        print(f"  - {name} (v{version})")
    print("=========================\n")


def parse_args(argv=None):
    """
    Parse CLI arguments.

    The interval falls back to the default when it is missing or below one second.
    """
    parser = argparse.ArgumentParser(description="Keep versioned backups of changed files in a directory.")
    parser.add_argument("directory", help="Directory to watch")
    parser.add_argument(
        "interval", nargs="?", type=int,
        default=_env_int('AUTOBACKUP_POLL_INTERVAL', DEFAULT_INTERVAL),
        help=f"Seconds between polls (default: {DEFAULT_INTERVAL})",
    )
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--max-files", type=int, default=MAX_FILES, help="Maximum number of tracked files")
    parser.add_argument("--workers", type=int, default=WORKERS, help="Threads used for fingerprinting")
    parser.add_argument("--on-missing", choices=ON_MISSING_CHOICES, default=ON_MISSING,
                        help="What to do with entries whose file disappeared")
    parser.add_argument("--logfile", default=None, help="Also write JSON logs to this file")
    args = parser.parse_args(argv)
    if args.interval is None or args.interval < 1:
        args.interval = DEFAULT_INTERVAL
    return args


def main(argv=None):
    """
    Entrypoint: initialize the engine, run the first cycle, then poll until interrupted.
    """
    args = parse_args(argv)
    configure_logging(args.logfile)

    try:
        engine = AutoBackupEngine.initialize(
            args.directory,
            max_files=args.max_files,
            workers=max(1, args.workers),
            on_missing=args.on_missing,
        )
    except InvalidDirectory as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1

    with engine:
        engine.run_cycle()
        print_status(engine.status())
        if args.once:
            return 0

        print(f"Polling every {args.interval} second(s). Press Ctrl+C to stop.\n")
        try:
            while True:
                time.sleep(args.interval)
                engine.run_cycle()
        except KeyboardInterrupt:
            print_status(engine.status())
    return 0


if __name__ == "__main__":
    sys.exit(main())
