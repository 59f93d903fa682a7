import json
import logging
import os
import sys
from collections import namedtuple
from datetime import datetime
from logging import LoggerAdapter
from os import environ
from pathlib import Path

from .autobackup import (
    BACKUP_DIRNAME,
    MAX_FILES,
    ON_MISSING,
    ON_MISSING_CHOICES,
    STATE_FILENAME,
    TIMESTAMP_FORMAT,
    WORKERS,
    BackupFailed,
    CapacityExceeded,
    CorruptState,
    InvalidDirectory,
    create_backup,
    detect_changes,
    fingerprint,
    load_state,
    save_state,
    scan_directory,
)


class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter for structured logs."""

    def format(self, record):
        data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        standard_keys = set(logging.LogRecord("logger", logging.INFO, "", 0, "", (), None).__dict__.keys())
        for key, value in record.__dict__.items():
            if key not in standard_keys and key not in ("message", "asctime"):
                data[key] = value
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def configure_logging(logfile=None):
    """Attach stdout and optional file handlers to the package logger if none exist."""
    pkg_logger = logging.getLogger("autobackup")
    stream_level_name = environ.get('AUTOBACKUP_STREAM_LEVEL', 'INFO').upper()
    file_level_name = environ.get('AUTOBACKUP_FILE_LEVEL', 'DEBUG').upper()
    stream_level = getattr(logging, stream_level_name, logging.INFO)
    file_level = getattr(logging, file_level_name, logging.DEBUG)
    formatter = JsonFormatter()

    if logfile is None:
        logfile = environ.get('AUTOBACKUP_LOGFILE') or None

    if logfile is not None:
        pkg_logger.setLevel(min(stream_level, file_level))
        file_handler_present = any(
            isinstance(handler, logging.FileHandler) and
            getattr(handler, "baseFilename", None) == os.path.abspath(logfile)
            for handler in pkg_logger.handlers
        )
        if not file_handler_present:
            file_handler = logging.FileHandler(logfile)
            file_handler.setFormatter(formatter)
            file_handler.setLevel(file_level)
            pkg_logger.addHandler(file_handler)
    else:
        pkg_logger.setLevel(stream_level)

    stream_handler_present = any(
        isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler)
        for handler in pkg_logger.handlers
    )
    if not stream_handler_present:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(stream_level)
        pkg_logger.addHandler(stream_handler)

    pkg_logger.propagate = False


def get_logger(name=None, **context):
    """Return a context-aware logger scoped to this package; configure handlers once."""
    configure_logging()
    if name is None or name == "autobackup":
        base_name = "autobackup"
    elif name.startswith("autobackup."):
        base_name = name
    else:
        base_name = f"autobackup.{name}"
    base_logger = logging.getLogger(base_name)
    return LoggerAdapter(base_logger, context)


logger = get_logger(__name__)


CycleReport = namedtuple('CycleReport', ['added', 'backups', 'errors', 'deferred'])
Status = namedtuple('Status', ['watch_dir', 'backup_dir', 'count', 'versions'])


def _check_directory(watch_dir):
    if not watch_dir.exists():
        raise InvalidDirectory(f'Watch directory does not exist: {watch_dir}')
    if not watch_dir.is_dir():
        raise InvalidDirectory(f'Watch path is not a directory: {watch_dir}')
    if not os.access(watch_dir, os.R_OK | os.W_OK | os.X_OK):
        raise InvalidDirectory(f'Watch directory is not readable and writable: {watch_dir}')


class AutoBackupEngine(object):

    """ Versioned-backup engine for the files of one directory.

    Each call to run_cycle() registers new files, looks for content changes among the tracked
    ones, writes one backup artifact per confirmed change and persists the table. The engine owns
    its tracked-file table; nothing else should mutate it.

    Use initialize() rather than the constructor directly; it validates the directory, creates
    the backup directory and restores the saved state. The engine can be used as a context
    manager, in which case unsaved state is written on exit.
    """

    def __init__(self, watch_dir, table=None, max_files=MAX_FILES, workers=WORKERS,
                 on_missing=ON_MISSING, fingerprinter=fingerprint, clock=datetime.now):
        if on_missing not in ON_MISSING_CHOICES:
            raise ValueError("Argument 'on_missing' is entered as {}, should be one of {}".format(
                on_missing, ', '.join(ON_MISSING_CHOICES)))
        self.watch_dir = Path(watch_dir)
        self.backup_dir = self.watch_dir / BACKUP_DIRNAME
        self.state_file = self.backup_dir / STATE_FILENAME
        self.table = {} if table is None else table
        self.max_files = max_files
        self.workers = workers
        self.on_missing = on_missing
        self.fingerprinter = fingerprinter
        self.clock = clock
        self.dirty = False

    @classmethod
    def initialize(cls, watch_dir, **options):
        """ Validate the watch directory and return an engine with its saved state loaded.

        :param watch_dir: directory to watch
        :param options: keyword arguments passed on to the constructor

        :raises InvalidDirectory: when watch_dir is missing, not a directory or not accessible
        :raises OSError: when the backup directory cannot be created or the state cannot be read
        """
        watch_dir = Path(watch_dir).expanduser()
        _check_directory(watch_dir)

        engine = cls(watch_dir, **options)
        if not engine.backup_dir.exists():
            engine.backup_dir.mkdir()
            logger.info('Created backup directory %s', engine.backup_dir)
        engine.table = engine._restore_state()
        logger.info('Watching %s, tracking %d file(s)', watch_dir, len(engine.table))
        return engine

    def _restore_state(self):
        state_file = self.state_file
        if not state_file.exists():
            legacy = self.watch_dir / STATE_FILENAME
            if legacy.exists():
                logger.info('Migrating state file from %s', legacy)
                state_file = legacy
                self.dirty = True
        try:
            return load_state(state_file)
        except CorruptState as exc:
            stamp = self.clock().strftime(TIMESTAMP_FORMAT)
            quarantine = state_file.with_name(f'{state_file.name}.corrupt-{stamp}')
            os.replace(state_file, quarantine)
            logger.error('Discarding corrupt state (%s); moved to %s, starting with an empty table',
                         exc, quarantine)
            self.dirty = True
            return {}

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        if self.dirty:
            self.save()

    def save(self):
        save_state(self.table, self.state_file)
        self.dirty = False

    def run_cycle(self):
        """ Run one scan, detect, backup and persist pass.

        :returns: CycleReport with the names newly tracked, the artifacts written, every
                  (name, error) reported during the cycle, and the number of files not admitted
                  because the table is full

        A failure concerning one file is logged and reported, and the remaining files are still
        processed. A version only advances once its artifact has been written.
        """
        errors = []

        try:
            scan = scan_directory(self.watch_dir, self.table, fingerprinter=self.fingerprinter,
                                  max_files=self.max_files)
        except OSError as exc:
            # without a listing, a missing file cannot be told from a missing directory
            logger.error('Cannot list %s, skipping this cycle: %s', self.watch_dir, exc)
            return CycleReport([], [], [(None, exc)], 0)
        for name in scan.added:
            get_logger(__name__, file=name, version=1).info('Now tracking %s', name)
        errors.extend(scan.errors)
        if scan.deferred:
            exc = CapacityExceeded('Tracking {} file(s), the maximum; {} new file(s) not admitted'.format(
                len(self.table), scan.deferred))
            logger.warning(str(exc))
            errors.append((None, exc))
        if scan.added:
            self.dirty = True

        before = {name: (tracked.modified_at, tracked.digest) for name, tracked in self.table.items()}
        detected = detect_changes(self.watch_dir, self.table, fingerprinter=self.fingerprinter,
                                  workers=self.workers)
        errors.extend(detected.errors)
        if any((tracked.modified_at, tracked.digest) != before[name] for name, tracked in self.table.items()):
            self.dirty = True

        backups = []
        for change in detected.changes:
            artifact = self._backup(change, errors)
            if artifact is not None:
                backups.append(artifact)

        for name in detected.missing:
            self._handle_missing(name)

        for name, exc in errors:
            if name is not None:
                get_logger(__name__, file=name).error('%s: %s', type(exc).__name__, exc)

        if self.dirty:
            try:
                self.save()
            except (OSError, ValueError) as exc:
                logger.error('Failed to save state to %s: %s', self.state_file, exc)
                errors.append((None, exc))

        return CycleReport(scan.added, backups, errors, scan.deferred)

    def _backup(self, change, errors):
        tracked = change.tracked
        try:
            artifact = create_backup(self.watch_dir / tracked.name, tracked.name, change.version,
                                     self.clock(), self.backup_dir)
        except BackupFailed as exc:
            errors.append((tracked.name, exc))
            return None
        tracked.commit(change)
        self.dirty = True
        get_logger(__name__, file=tracked.name, version=tracked.version,
                   artifact=artifact.name).info('Backed up %s as v%d', tracked.name, tracked.version)
        return artifact

    def _handle_missing(self, name):
        missing_logger = get_logger(__name__, file=name, version=self.table[name].version)
        if self.on_missing == 'forget':
            del self.table[name]
            self.dirty = True
            missing_logger.warning('%s disappeared; no longer tracked, existing backups kept', name)
        else:
            missing_logger.debug('%s is missing; keeping its entry', name)

    def status(self):
        """ Return a read-only snapshot of the tracked files and their versions."""
        versions = {name: self.table[name].version for name in sorted(self.table)}
        return Status(self.watch_dir, self.backup_dir, len(versions), versions)
