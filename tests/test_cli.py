import autobackup_watch
from autobackup.autobackup import load_state

from conftest import BASE_MTIME, write_file


def test_parse_args_defaults(watch_dir):
    args = autobackup_watch.parse_args([str(watch_dir)])
    assert args.interval == autobackup_watch.DEFAULT_INTERVAL
    assert not args.once
    assert args.on_missing == "retain"


def test_parse_args_interval_below_one_falls_back(watch_dir):
    assert autobackup_watch.parse_args([str(watch_dir), "0"]).interval == autobackup_watch.DEFAULT_INTERVAL
    assert autobackup_watch.parse_args([str(watch_dir), "12"]).interval == 12


def test_once_runs_a_single_cycle(watch_dir, capsys):
    write_file(watch_dir / "a.txt", "x", BASE_MTIME)
    assert autobackup_watch.main([str(watch_dir), "--once"]) == 0
    out = capsys.readouterr().out
    assert "Tracking 1 file(s):" in out
    assert "a.txt (v1)" in out
    assert load_state(watch_dir / ".autobackup" / ".autobackup_state")["a.txt"].version == 1


def test_invalid_directory_exits_with_error(tmp_path, capsys):
    assert autobackup_watch.main([str(tmp_path / "missing"), "--once"]) == 1
    assert "[ERROR]" in capsys.readouterr().err
