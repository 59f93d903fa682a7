"""Property-based tests for versioning invariants."""

import string
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from autobackup.autobackup import backup_name, parse_backup_name, split_name
from autobackup.engine import AutoBackupEngine

from conftest import BASE_MTIME, write_file

PROPERTY_SETTINGS = settings(
    max_examples=50,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_STEM = st.text(alphabet=string.ascii_letters + string.digits + "-_.", min_size=1, max_size=12).filter(
    lambda s: not s.startswith(".") and not s.endswith("."))
_EXT = st.one_of(st.just(""), st.text(alphabet=string.ascii_lowercase, min_size=1, max_size=4).map(lambda e: "." + e))
_STAMP = st.datetimes(min_value=datetime(2000, 1, 1), max_value=datetime(2099, 12, 31))
_CONTENTS = st.lists(st.binary(max_size=64), min_size=1, max_size=8)


def _engine(directory):
    ticks = iter(datetime(2024, 1, 1) + timedelta(seconds=i) for i in range(1000))
    return AutoBackupEngine.initialize(directory, clock=lambda: next(ticks))


@PROPERTY_SETTINGS
@given(stem=_STEM, ext=_EXT, version=st.integers(min_value=2, max_value=10 ** 6), stamp=_STAMP)
def test_artifact_name_round_trip(stem, ext, version, stamp):
    name = backup_name(stem, ext, version, stamp)
    parsed = parse_backup_name(name)
    assert parsed is not None
    assert parsed.version == version
    assert parsed.timestamp == stamp.strftime("%Y%m%d_%H%M%S")
    assert parsed.stem + parsed.ext == stem + ext


@PROPERTY_SETTINGS
@given(stem=_STEM.filter(lambda s: "." not in s), ext=_EXT, version=st.integers(min_value=2), stamp=_STAMP)
def test_round_trip_through_file_name_split(stem, ext, version, stamp):
    assert split_name(stem + ext) == (stem, ext)
    parsed = parse_backup_name(backup_name(*split_name(stem + ext), version, stamp))
    assert (parsed.stem, parsed.ext, parsed.version) == (stem, ext, version)


@PROPERTY_SETTINGS
@given(contents=_CONTENTS)
def test_versions_count_distinct_consecutive_contents(contents):
    with tempfile.TemporaryDirectory() as tmp:
        directory = Path(tmp)
        target = directory / "tracked.bin"
        write_file(target, b"initial", BASE_MTIME)
        engine = _engine(directory)
        engine.run_cycle()

        expected = 1
        previous = b"initial"
        for step, content in enumerate(contents, start=1):
            write_file(target, content, BASE_MTIME + step)
            report = engine.run_cycle()
            if content != previous:
                expected += 1
                assert len(report.backups) == 1
                assert report.backups[0].read_bytes() == content
            else:
                assert report.backups == []
            previous = content
            assert engine.table["tracked.bin"].version == expected

        artifacts = [p for p in engine.backup_dir.iterdir() if not p.name.startswith(".")]
        versions = sorted(parse_backup_name(p.name).version for p in artifacts)
        assert versions == list(range(2, expected + 1))


@PROPERTY_SETTINGS
@given(content=st.binary(max_size=256), touches=st.integers(min_value=1, max_value=5))
def test_rewriting_identical_content_never_backs_up(content, touches):
    with tempfile.TemporaryDirectory() as tmp:
        directory = Path(tmp)
        target = directory / "same.txt"
        write_file(target, content, BASE_MTIME)
        engine = _engine(directory)
        engine.run_cycle()

        for step in range(1, touches + 1):
            write_file(target, content, BASE_MTIME + step * 100)
            assert engine.run_cycle().backups == []

        restarted = _engine(directory)
        assert restarted.run_cycle().backups == []
        assert restarted.table["same.txt"].version == 1
