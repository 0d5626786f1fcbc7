"""Unit tests for native shell history parsers."""

from datetime import datetime, timezone

import pytest

from mortimer.errors import NotFound
from mortimer.shells import Shell, ShellHistory, default_history_path


def _epoch(value):
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return path


def test_bash_with_timestamps(tmp_path):
    path = _write(tmp_path, "bash_history", "#1700000000\ngit status\nls\n# a comment\n")
    history = ShellHistory(Shell.BASH, path)
    records = list(history)

    assert [r.command for r in records] == ["git status", "ls"]
    assert records[0].timestamp == _epoch(1700000000)
    # untimed lines fall back to import time
    assert records[1].timestamp > records[0].timestamp
    assert history.skipped == 1


def test_zsh_extended_and_continuation(tmp_path):
    path = _write(
        tmp_path,
        "zsh_history",
        ": 1700000000:0;git status\n"
        ": 1700000060:0;echo one \\\n"
        "two\n"
        ": 1700000120:5;make\n",
    )
    records = list(ShellHistory(Shell.ZSH, path))
    assert [r.command for r in records] == ["git status", "echo one \\\ntwo", "make"]
    assert records[2].timestamp == _epoch(1700000120)


def test_zsh_plain_lines(tmp_path):
    path = _write(tmp_path, "zsh_history", "ls\npwd\n")
    assert [r.command for r in ShellHistory("zsh", path)] == ["ls", "pwd"]


def test_fish(tmp_path):
    path = _write(
        tmp_path,
        "fish_history",
        "- cmd: git status\n"
        "  when: 1700000000\n"
        "- cmd: echo multi\\nline\n"
        "  when: 1700000060\n"
        "  paths:\n"
        "    - /tmp\n"
        "- cmd: no timestamp\n",
    )
    history = ShellHistory(Shell.FISH, path)
    records = list(history)
    assert [r.command for r in records] == ["git status", "echo multi\nline"]
    assert records[1].timestamp == _epoch(1700000060)
    assert history.skipped == 1


def test_missing_file(tmp_path):
    with pytest.raises(NotFound):
        list(ShellHistory(Shell.BASH, tmp_path / "missing"))


def test_default_paths(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("ZDOTDIR", str(tmp_path / "zdot"))
    assert default_history_path(Shell.FISH) == tmp_path / "data" / "fish" / "fish_history"
    assert default_history_path(Shell.ZSH) == tmp_path / "zdot" / ".zsh_history"
    assert default_history_path(Shell.BASH).name == ".bash_history"


def test_zsh_out_of_range_epoch_is_skipped(tmp_path):
    path = _write(tmp_path, "zsh_history", ": 99999999999999999999:0;ls\n: 1700000000:0;make\n")
    history = ShellHistory(Shell.ZSH, path)
    assert [r.command for r in history] == ["make"]
    assert history.skipped == 1


def test_fish_out_of_range_epoch_is_skipped(tmp_path):
    path = _write(
        tmp_path,
        "fish_history",
        "- cmd: ls\n  when: 99999999999999999999\n- cmd: make\n  when: 1700000000\n",
    )
    history = ShellHistory(Shell.FISH, path)
    assert [r.command for r in history] == ["make"]
    assert history.skipped == 1
