
import os
import re
import shutil
import stat
import logging
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from hashlib import sha256
from os import environ
from pathlib import Path


def _env_int(var, default, minimum=None):
    """Return an integer from an env var and fail fast when it is malformed."""
    raw = environ.get(var)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {var} must be an integer, got {raw!r}")
    if minimum is not None and value < minimum:
        raise RuntimeError(f"Environment variable {var} must be >= {minimum}, got {value}")
    return value


def _env_choice(var, default, choices):
    """Return an env var constrained to a fixed set of values."""
    value = environ.get(var, default).strip().lower()
    if value not in choices:
        raise RuntimeError(f"Environment variable {var} must be one of {', '.join(choices)}, got {value!r}")
    return value


BACKUP_DIRNAME = '.autobackup'
STATE_FILENAME = '.autobackup_state'
STATE_FORMAT_VERSION = 1
STATE_HEADER = '# autobackup-state v{}'
TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
CHUNK_SIZE = 8192

ON_MISSING_CHOICES = ('retain', 'forget')

MAX_FILES = _env_int('AUTOBACKUP_MAX_FILES', 1000, minimum=1)
WORKERS = _env_int('AUTOBACKUP_WORKERS', 1, minimum=1)
ON_MISSING = _env_choice('AUTOBACKUP_ON_MISSING', 'retain', ON_MISSING_CHOICES)

BACKUP_NAME_PATTERN = re.compile(
    r'^(?P<stem>.+)_v(?P<version>[0-9]+)_backup_(?P<timestamp>[0-9]{8}_[0-9]{6})(?P<ext>(\.[^.]*)?)$')
HEX_PATTERN = re.compile(r'^[0-9a-fA-F]+$')

logging.getLogger("autobackup").addHandler(logging.NullHandler())


class AutoBackupError(Exception):
    """Base class for errors raised by the backup engine."""


class CorruptState(AutoBackupError, ValueError):
    """The state sidecar exists but cannot be parsed."""


class BackupFailed(AutoBackupError, OSError):
    """A backup artifact could not be written completely."""


class CapacityExceeded(AutoBackupError):
    """The tracked-file table is full; new files are not admitted."""


class InvalidDirectory(AutoBackupError, NotADirectoryError):
    """The watch path is missing, not a directory, or not accessible."""


ArtifactName = namedtuple('ArtifactName', ['stem', 'version', 'timestamp', 'ext'])
Change = namedtuple('Change', ['tracked', 'digest', 'modified_at', 'version'])
ScanReport = namedtuple('ScanReport', ['added', 'errors', 'deferred'])
DetectReport = namedtuple('DetectReport', ['changes', 'errors', 'missing'])


class TrackedFile(object):

    """ State of one file under version surveillance.

    The digest is the fingerprint of the content at the time the version was last set. Version
    and digest only move together, through commit(), once a backup artifact for the new content
    exists.
    """

    __slots__ = ('name', 'digest', 'modified_at', 'version')

    def __init__(self, name, digest, modified_at, version=1):
        self.name = name
        self.digest = digest.lower()
        self.modified_at = int(modified_at)
        self.version = int(version)

    def __repr__(self):
        return 'TrackedFile(name={!r}, digest={!r}, modified_at={}, version={})'.format(
            self.name, self.digest, self.modified_at, self.version)

    def __eq__(self, other):
        if not isinstance(other, TrackedFile):
            return NotImplemented
        return ((self.name, self.digest, self.modified_at, self.version) ==
                (other.name, other.digest, other.modified_at, other.version))

    def matches(self, digest):
        """ Return True if digest equals the stored digest (hex, case-insensitive)."""
        return self.digest == digest.lower()

    def commit(self, change):
        """ Apply a confirmed change after its backup artifact has been written.

        :param change: Change produced by detect_changes() for this entry
        :raises ValueError: if the change is not the next version of this entry
        """
        if change.version != self.version + 1:
            raise ValueError('Refusing to commit version {} of {} on top of version {}'.format(
                change.version, self.name, self.version))
        self.digest = change.digest.lower()
        self.modified_at = int(change.modified_at)
        self.version = change.version


def fingerprint(path, hash_factory=sha256, chunk_size=CHUNK_SIZE) -> str:
    """
    Return the hex digest of a file's content.

    Reads the file in fixed-size chunks so memory use does not grow with file size. Raises
    OSError if the file cannot be opened or read.
    """
    h = hash_factory()
    with open(path, 'rb') as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b''):
            h.update(chunk)
    return h.hexdigest()


def split_name(base_name):
    """ Split a file name into stem and extension at the last dot.

    :param base_name: file name without directory

    :returns: (stem, ext) where ext keeps its leading dot, or is empty when there is no dot
    """
    stem, dot, ext = base_name.rpartition('.')
    if not dot or not stem:
        return base_name, ''
    return stem, dot + ext


def format_timestamp(timestamp):
    if isinstance(timestamp, datetime):
        return timestamp.strftime(TIMESTAMP_FORMAT)
    datetime.strptime(timestamp, TIMESTAMP_FORMAT)
    return timestamp


def backup_name(stem, ext, version, timestamp):
    """ Build an artifact name: {stem}_v{version}_backup_{YYYYMMDD_HHMMSS}{ext}.

    :param stem: file name without its extension
    :param ext: extension including the leading dot, or ''
    :param version: version number being backed up (>= 2)
    :param timestamp: datetime or already formatted YYYYMMDD_HHMMSS string

    :returns: artifact file name
    """
    if int(version) < 2:
        raise ValueError('Version 1 is the original and is never backed up, got {}'.format(version))
    return '{}_v{}_backup_{}{}'.format(stem, int(version), format_timestamp(timestamp), ext)


def parse_backup_name(name):
    """ Recover stem, version, timestamp and extension from an artifact name.

    :returns: ArtifactName, or None if name does not follow the artifact naming grammar
    """
    match = BACKUP_NAME_PATTERN.match(name)
    if match is None:
        return None
    return ArtifactName(match.group('stem'), int(match.group('version')),
                        match.group('timestamp'), match.group('ext'))


def is_backup_artifact(name):
    return parse_backup_name(name) is not None


def _is_candidate(entry):
    if entry.name.startswith('.') or is_backup_artifact(entry.name):
        return False
    # directories, fifos and sockets are never tracked
    return entry.is_file()


def _unstorable_name(name):
    """ Return why name cannot be written to the state sidecar, or None if it can."""
    if '\n' in name or '\r' in name:
        return 'contains a line break'
    try:
        name.encode('utf-8')
    except UnicodeEncodeError:
        return 'is not valid UTF-8'
    return None


def scan_directory(watch_dir, table, fingerprinter=fingerprint, max_files=None):
    """ Register files in watch_dir that are not tracked yet.

    :param watch_dir: directory to enumerate (direct children only)
    :param table: dict mapping name to TrackedFile, updated in place
    :param fingerprinter: callable returning the digest of a path
    :param max_files: soft cap on the table size, None for no cap

    :returns: ScanReport with the newly tracked names, per-entry (name, error) pairs and the
              number of new files left out because the table is full

    Newly discovered files start at version 1 and no backup is made for them. An entry that
    cannot be read is reported and left untracked so that the next scan retries it.
    """
    added = []
    errors = []
    deferred = 0

    with os.scandir(watch_dir) as it:
        entries = sorted(it, key=lambda e: e.name)

    for entry in entries:
        if entry.name in table:
            continue
        try:
            if not _is_candidate(entry):
                continue
        except OSError as exc:
            errors.append((entry.name, exc))
            continue

        problem = _unstorable_name(entry.name)
        if problem is not None:
            errors.append((entry.name, ValueError(f'File name {problem} and cannot be tracked')))
            continue

        if max_files is not None and len(table) >= max_files:
            deferred += 1
            continue

        try:
            modified_at = int(entry.stat().st_mtime)
            digest = fingerprinter(entry.path)
        except OSError as exc:
            errors.append((entry.name, exc))
            continue

        table[entry.name] = TrackedFile(entry.name, digest, modified_at, version=1)
        added.append(entry.name)

    return ScanReport(added, errors, deferred)


def _fingerprint_all(fingerprinter, suspects, workers):
    """ Fingerprint (tracked, path, mtime) suspects, yielding (tracked, mtime, digest, error)."""
    if workers <= 1 or len(suspects) <= 1:
        for tracked, path, mtime in suspects:
            try:
                yield tracked, mtime, fingerprinter(path), None
            except OSError as exc:
                yield tracked, mtime, None, exc
        return

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [(tracked, mtime, executor.submit(fingerprinter, path))
                   for tracked, path, mtime in suspects]
        for tracked, mtime, future in futures:
            try:
                yield tracked, mtime, future.result(), None
            except OSError as exc:
                yield tracked, mtime, None, exc


def detect_changes(watch_dir, table, fingerprinter=fingerprint, workers=1):
    """ Find tracked files whose content differs from the last tracked version.

    :param watch_dir: directory holding the live files
    :param table: dict mapping name to TrackedFile
    :param fingerprinter: callable returning the digest of a path
    :param workers: number of threads used for fingerprinting

    :returns: DetectReport(changes, errors, missing)

    The modification time is only a pre-filter: files whose mtime is not newer than the stored
    one are not hashed. Among the rest, only a differing digest counts as a change. A newer mtime
    with the same digest just moves the stored mtime forward. An entry with an empty digest, left by an
    unreadable file in an old state file, is always hashed and takes the result as its baseline.

    Nothing in the returned changes has been applied yet. Each Change carries the version it
    will become, and is committed with TrackedFile.commit() once its backup exists. Worker
    threads only compute digests; the table is mutated on the calling thread.
    """
    watch_dir = Path(watch_dir)
    changes = []
    errors = []
    missing = []
    suspects = []

    for name in sorted(table):
        tracked = table[name]
        path = watch_dir / name
        try:
            st = path.stat()
        except FileNotFoundError:
            missing.append(name)
            continue
        except OSError as exc:
            errors.append((name, exc))
            continue

        if not stat.S_ISREG(st.st_mode):
            # opening a fifo would block the cycle
            errors.append((name, OSError(f'{name} is no longer a regular file')))
            continue

        mtime = int(st.st_mtime)
        if mtime <= tracked.modified_at and tracked.digest:
            continue
        suspects.append((tracked, path, mtime))

    for tracked, mtime, digest, exc in _fingerprint_all(fingerprinter, suspects, workers):
        if exc is not None:
            errors.append((tracked.name, exc))
        elif not tracked.digest:
            # unknown content becomes the baseline, like a first scan
            tracked.digest = digest.lower()
            tracked.modified_at = mtime
        elif tracked.matches(digest):
            tracked.modified_at = mtime
        else:
            changes.append(Change(tracked, digest.lower(), mtime, tracked.version + 1))

    return DetectReport(changes, errors, missing)


def create_backup(source_path, base_name, version, timestamp, backup_dir, chunk_size=CHUNK_SIZE):
    """ Copy a file into the backup directory under its versioned artifact name.

    :param source_path: live file to copy
    :param base_name: name of the tracked file, used to build the artifact name
    :param version: version the copy represents
    :param timestamp: creation time (datetime or YYYYMMDD_HHMMSS string)
    :param backup_dir: directory receiving the artifact, created if absent

    :returns: Path of the new artifact
    :raises BackupFailed: if the copy cannot be completed; no partial artifact is left behind

    Artifacts are created exclusively, an existing file with the same name is never replaced.
    """
    backup_dir = Path(backup_dir)
    stem, ext = split_name(base_name)
    dest_path = backup_dir / backup_name(stem, ext, version, timestamp)

    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
        src = open(source_path, 'rb')
    except OSError as exc:
        raise BackupFailed(f'Cannot open {source_path} for backup: {exc}') from exc

    created = False
    try:
        with src, open(dest_path, 'xb') as dst:
            created = True
            copied = 0
            for chunk in iter(lambda: src.read(chunk_size), b''):
                written = dst.write(chunk)
                if written != len(chunk):
                    raise BackupFailed(f'Short write to {dest_path}: {written} of {len(chunk)} bytes')
                copied += written
            dst.flush()
            os.fsync(dst.fileno())
        if dest_path.stat().st_size != copied:
            raise BackupFailed(f'Backup {dest_path} is incomplete')
        shutil.copystat(source_path, dest_path)
    except BackupFailed:
        if created:
            _discard(dest_path)
        raise
    except OSError as exc:
        if created:
            _discard(dest_path)
        raise BackupFailed(f'Failed to create backup {dest_path}: {exc}') from exc

    return dest_path


def _discard(path):
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass


def load_state(path):
    """ Read the tracked-file table from the state sidecar.

    :param path: sidecar file

    :returns: dict mapping name to TrackedFile; empty when the file is missing or empty
    :raises CorruptState: when the file cannot be parsed

    Both the versioned format (header line first) and the older headerless format, which starts
    directly with the entry count, are accepted. Only a newline ends a line, since names may contain
    other Unicode line separators. An empty digest, which the older format wrote for files it
    could not read, is kept as unknown content.
    """
    path = Path(path)
    if not path.exists():
        return {}
    try:
        with open(path, encoding='utf-8', newline='') as fh:
            text = fh.read()
    except UnicodeDecodeError as exc:
        raise CorruptState(f'State file {path} is not valid UTF-8') from exc

    lines = [line[:-1] if line.endswith('\r') else line for line in text.split('\n')]
    while lines and not lines[-1].strip():
        lines.pop()
    if not lines:
        return {}

    if lines[0].startswith('#'):
        header = lines.pop(0).strip()
        if header != STATE_HEADER.format(STATE_FORMAT_VERSION):
            raise CorruptState(f'Unsupported state format in {path}: {header!r}')
        if not lines:
            raise CorruptState(f'State file {path} has a header but no entry count')

    try:
        count = int(lines[0])
    except ValueError:
        raise CorruptState(f'Bad entry count in {path}: {lines[0]!r}')
    entries = lines[1:]
    if count < 0 or count != len(entries):
        raise CorruptState(f'State file {path} declares {count} entries but holds {len(entries)}')

    table = {}
    for lineno, line in enumerate(entries, start=2):
        fields = line.rsplit('|', 3)
        if len(fields) != 4 or not fields[0]:
            raise CorruptState(f'{path}:{lineno}: expected 4 fields, got {len(fields)}')
        name, digest, mtime, version = fields
        if digest and not HEX_PATTERN.match(digest):
            raise CorruptState(f'{path}:{lineno}: digest is not hex-encoded')
        try:
            modified_at = int(mtime)
            version = int(version)
        except ValueError:
            raise CorruptState(f'{path}:{lineno}: non-numeric digest, timestamp or version')
        if version < 1:
            raise CorruptState(f'{path}:{lineno}: version must be >= 1, got {version}')
        if name in table:
            raise CorruptState(f'{path}:{lineno}: duplicate entry for {name!r}')
        table[name] = TrackedFile(name, digest, modified_at, version)
    return table


def save_state(table, path) -> None:
    """
    Persist the tracked-file table to the state sidecar.

    The table is written to a temporary file next to the target and renamed into place, so a
    crash mid-write leaves either the previous state or the new one.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + '.tmp')

    lines = [STATE_HEADER.format(STATE_FORMAT_VERSION), str(len(table))]
    for name in sorted(table):
        tracked = table[name]
        lines.append('{}|{}|{}|{}'.format(tracked.name, tracked.digest, tracked.modified_at, tracked.version))

    try:
        with open(tmp_path, 'w', encoding='utf-8', newline='\n') as fh:
            fh.write('\n'.join(lines) + '\n')
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except (OSError, ValueError):
        _discard(tmp_path)
        raise
