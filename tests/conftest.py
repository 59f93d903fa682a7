import os
from datetime import datetime

import pytest

from autobackup.engine import AutoBackupEngine

BASE_MTIME = 1700000000
FIXED_NOW = datetime(2024, 10, 30, 14, 30, 22)


def write_file(path, content, mtime):
    """Write content to path and pin its modification time."""
    if isinstance(content, str):
        content = content.encode('utf-8')
    path.write_bytes(content)
    os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def watch_dir(tmp_path):
    directory = tmp_path / "watched"
    directory.mkdir()
    return directory


@pytest.fixture
def engine_factory(watch_dir):
    def make(**options):
        options.setdefault('clock', lambda: FIXED_NOW)
        return AutoBackupEngine.initialize(watch_dir, **options)
    return make
