from .autobackup import (
    AutoBackupError,
    BackupFailed,
    CapacityExceeded,
    CorruptState,
    InvalidDirectory,
    TrackedFile,
    backup_name,
    create_backup,
    detect_changes,
    fingerprint,
    load_state,
    parse_backup_name,
    save_state,
    scan_directory,
    split_name,
)
from .version import __version__

__all__ = [
    "AutoBackupError",
    "BackupFailed",
    "CapacityExceeded",
    "CorruptState",
    "InvalidDirectory",
    "TrackedFile",
    "backup_name",
    "create_backup",
    "detect_changes",
    "fingerprint",
    "load_state",
    "parse_backup_name",
    "save_state",
    "scan_directory",
    "split_name",
    "AutoBackupEngine",
    "get_logger",
    "__version__",
]


def __getattr__(name):
    if name in {"AutoBackupEngine", "get_logger", "configure_logging"}:
        from . import engine
        return getattr(engine, name)
    raise AttributeError(f"module 'autobackup' has no attribute '{name}'")
