"""Tests for the mortimer CLI, driven through click's CliRunner."""

import json

import pytest
from click.testing import CliRunner

from mortimer import __version__
from mortimer.cli import main


@pytest.fixture
def env(tmp_path):
    return {
        "MORTIMER_BACKEND": "file",
        "MORTIMER_HISTORY_FILE": str(tmp_path / "history.mhist"),
        "MORTIMER_DB_PATH": str(tmp_path / "history.db"),
        "MORTIMER_HOSTNAME": "cli-host",
        "MORTIMER_SESSION_ID": "cli-session",
    }


@pytest.fixture
def run(env):
    runner = CliRunner()

    def _run(*args, backend=None, input=None):
        run_env = dict(env)
        if backend:
            run_env["MORTIMER_BACKEND"] = backend
        return runner.invoke(main, list(args), env=run_env, input=input)

    return _run


def test_version(run):
    result = run("--version")
    assert result.exit_code == 0
    assert __version__ in result.output


def test_log_and_recent(run):
    assert run("log", "-d", "/proj", "git", "status").exit_code == 0
    assert run("log", "-d", "/proj", "-e", "1", "make", "--jobs=4").exit_code == 0

    result = run("recent")
    assert result.exit_code == 0
    assert "make --jobs=4" in result.output
    assert "git status" in result.output


def test_log_redacts_before_writing(run, env):
    run("log", "-d", "/", "mysql", "--password=hunter22")
    with open(env["MORTIMER_HISTORY_FILE"]) as f:
        contents = f.read()
    assert "hunter22" not in contents
    assert "<redacted:password:0>" in contents


def test_search(run):
    run("log", "-d", "/proj", "git", "status")
    run("log", "-d", "/srv", "docker", "ps")

    result = run("search", "GIT")
    assert result.exit_code == 0
    assert "git status" in result.output
    assert "docker" not in result.output

    result = run("search", "nothing-like-this")
    assert "No matching commands found" in result.output


def test_search_invalid_regex(run):
    result = run("search", "--regex", "(")
    assert result.exit_code == 1
    assert "Error [pattern]" in result.output


@pytest.mark.parametrize("command", ["search", "recent", "frequent"])
def test_negative_limit_is_a_usage_error(run, command):
    args = [command, "--limit", "-1"] + (["git"] if command == "search" else [])
    result = run(*args)
    assert result.exit_code == 2
    assert "Traceback" not in result.output
    assert "-1" in result.output


def test_export_plain_to_stdout(run):
    run("log", "-d", "/proj", "cmd1")
    run("log", "-d", "/other", "cmd2")
    result = run("export", "-f", "plain", "--dir", "/proj")
    assert result.exit_code == 0
    assert result.output == "cmd1\n"


def test_max_entries_from_environment(run, env):
    env["MORTIMER_MAX_ENTRIES"] = "2"
    for command in ("one", "two", "three"):
        run("log", "-d", "/proj", command)
    result = run("export", "-f", "plain")
    assert result.exit_code == 0
    assert sorted(result.output.splitlines()) == ["three", "two"]


def test_export_json_to_file(run, tmp_path):
    run("log", "-d", "/proj", "make")
    target = tmp_path / "out.json"
    result = run("export", "-o", str(target))
    assert result.exit_code == 0
    assert json.loads(target.read_text())[0]["command"] == "make"


def test_stats_and_frequent(run):
    run("log", "-d", "/a", "ls")
    run("log", "-d", "/a", "ls")
    assert "Commands" in run("stats").output
    result = run("frequent", "--by", "directory")
    assert result.exit_code == 0
    assert "/a" in result.output


def test_clear_asks_for_confirmation(run):
    run("log", "-d", "/", "make")
    result = run("clear", input="n\n")
    assert "Cancelled" in result.output

    result = run("clear", "--yes")
    assert result.exit_code == 0
    assert "Removed 1 command(s)" in result.output


def test_database_only_command_on_file_backend(run):
    result = run("tokens")
    assert result.exit_code == 1
    assert "Error [unsupported]" in result.output


def test_tokens_hosts_sessions(run):
    run("log", "-d", "/", "curl", "-H", "Authorization: Bearer abc123", backend="database")

    hidden = run("tokens", backend="database")
    assert hidden.exit_code == 0
    assert "bearer_token" in hidden.output
    assert "abc123" not in hidden.output

    shown = run("tokens", "--show-values", backend="database")
    assert "abc123" in shown.output

    assert "cli-host" in run("hosts", backend="database").output
    assert "cli-session" in run("sessions", backend="database").output


def test_migrate(run, env):
    run("log", "-d", "/proj", "make")
    result = run("migrate", backend="database")
    assert result.exit_code == 0
    assert "Imported 1 command(s)" in result.output

    again = run("migrate", backend="database")
    assert "1 duplicate(s)" in again.output


def test_migrate_missing_source(run, tmp_path):
    result = run("migrate", str(tmp_path / "nope"), backend="database")
    assert result.exit_code == 1
    assert "Error [not_found]" in result.output


def test_import_bash(run, tmp_path):
    history = tmp_path / "bash_history"
    history.write_text("#1700000000\ngit status\n")
    result = run("import", "bash", str(history))
    assert result.exit_code == 0
    assert "Imported 1 bash command(s)" in result.output


def test_validate(run):
    result = run("validate", r"ticket-\d+", "see ticket-4821")
    assert result.exit_code == 0
    assert "<redacted:custom:0>" in result.output
    assert "ticket-4821" in result.output

    result = run("validate", "zzz", "see ticket-4821")
    assert "did not redact anything" in result.output

    result = run("validate", "(", "x")
    assert result.exit_code == 1
    assert "Error [pattern]" in result.output


def test_bad_configuration(run, env):
    result = run("recent", backend="cloud")
    assert result.exit_code == 1
    assert "Configuration error" in result.output
