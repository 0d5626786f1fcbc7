"""Unit tests for the database backend.

Covers logging with token storage, reference lookups, SQL-side search
prefiltering, token / host / session queries, session rotation and native
shell history import.
"""

from datetime import datetime, timedelta, timezone

import pytest

from mortimer.errors import NotFound
from mortimer.models import CommandRef, SessionFilter, TokenFilter
from mortimer.search import SearchFilter
from mortimer.shells import IMPORTED_DIRECTORY
from mortimer.storage import open_backend
from mortimer.storage.db_backend import DatabaseBackend


def _at(minutes):
    return datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)


BEARER = "curl -H 'Authorization: Bearer abc123' http://x"


def test_open_backend_selects_database(config):
    backend = open_backend(config.model_copy(update={"backend": "database"}))
    try:
        assert isinstance(backend, DatabaseBackend)
    finally:
        backend.close()


def test_log_stores_redacted_command_and_tokens(db_backend):
    ref = db_backend.log(BEARER, directory="/home/me", timestamp=_at(1))

    assert ref.backend == "database"
    assert ref.session_id == "session-a"
    entry = db_backend.get(ref)
    assert entry.command == "curl -H 'Authorization: Bearer <redacted:bearer_token:0>' http://x"
    assert entry.redacted is True
    assert entry.host == "test-host"

    by_session = db_backend.tokens(TokenFilter(session_id="session-a", show_values=True))
    assert [(t.token_type, t.placeholder, t.original_value) for t in by_session] == [
        ("bearer_token", "<redacted:bearer_token:0>", "abc123")
    ]
    by_command = db_backend.tokens(TokenFilter(command_id=ref.command_id))
    assert len(by_command) == 1
    assert by_command[0].original_value is None


def test_every_placeholder_has_a_token(db_backend):
    ref = db_backend.log(
        "mysql --password=aaa111 && export OPENAI_API_KEY=sk-abcdefghijklmnopqrstuvwx",
        directory="/",
    )
    command = db_backend.get(ref).command
    placeholders = {t.placeholder for t in db_backend.tokens(TokenFilter(command_id=ref.command_id))}
    assert placeholders == {"<redacted:password:0>", "<redacted:api_key:1>"}
    assert all(p in command for p in placeholders)


def test_get_unknown_command(db_backend):
    with pytest.raises(NotFound):
        db_backend.get(CommandRef(backend="database", timestamp=_at(0), command_id=99))
    with pytest.raises(NotFound):
        db_backend.get(CommandRef(backend="database", timestamp=_at(0)))


def test_ignored_command_writes_nothing(db_backend):
    assert db_backend.log(" secret thing", directory="/") is None
    assert db_backend.stats().total_commands == 0
    assert db_backend.hosts() == []


def test_logging_policy(config):
    backend = DatabaseBackend(
        config.model_copy(
            update={"backend": "database", "max_entries": 2, "log_duplicates": False}
        )
    )
    try:
        backend.log(BEARER, directory="/", timestamp=_at(1))
        assert backend.log(BEARER, directory="/", timestamp=_at(2)) is None
        backend.log("make", directory="/", timestamp=_at(3))
        backend.log("make test", directory="/", timestamp=_at(4))

        assert [e.command for e in backend.entries()] == ["make test", "make"]
        # tokens of trimmed commands go with them
        assert backend.tokens() == []
    finally:
        backend.close()


def test_search_uses_sql_filters(db_backend):
    db_backend.log("git status", directory="/proj", timestamp=_at(1))
    db_backend.log("git push", directory="/other", timestamp=_at(2))
    db_backend.log("make", directory="/proj", timestamp=_at(3))

    results = list(db_backend.search(SearchFilter(query="git", directory="/proj")))
    assert [e.command for e in results] == ["git status"]
    assert results[0].highlights == [(0, 3)]

    fuzzy = list(db_backend.search(SearchFilter(query="gt psh", fuzzy=True, threshold=0.5)))
    assert fuzzy[0].command == "git push"


def test_search_by_host(db_backend, make_db_backend):
    other = make_db_backend("other", hostname="other-host")
    other.log("make deploy", directory="/", timestamp=_at(2))
    other.close()
    db_backend.log("make", directory="/", timestamp=_at(1))
    db_backend.merge(other.config.db_path)

    local = list(db_backend.search(SearchFilter(query="make", hostname="test-host")))
    assert [e.command for e in local] == ["make"]
    remote = list(db_backend.search(SearchFilter(query="make", hostname="other-host")))
    assert [e.command for e in remote] == ["make deploy"]


def test_recent_frequent_stats(db_backend):
    for minute, command in enumerate(["ls", "make", "ls", "login --password=hunter22"]):
        db_backend.log(command, directory="/", timestamp=_at(minute))

    assert [e.command for e in db_backend.recent(2)] == [
        "login --password=<redacted:password:0>",
        "ls",
    ]
    assert db_backend.frequent("command", 1)[0].value == "ls"

    stats = db_backend.stats()
    assert stats.total_commands == 4
    assert stats.redacted_commands == 1
    assert stats.stored_tokens == 1
    assert stats.sessions == 1
    assert stats.hosts == 1


def test_clear(db_backend):
    db_backend.log(BEARER, directory="/")
    assert db_backend.clear() == 0
    assert db_backend.clear(confirm=True) == 1
    assert db_backend.stats().stored_tokens == 0


def test_export_includes_host_and_session(db_backend):
    db_backend.log("make", directory="/src", timestamp=_at(1))
    data = db_backend.export("csv").decode()
    assert data.splitlines()[1] == "2024-03-01T12:01:00+00:00,/src,make,0,,test-host,session-a"


# ------------------------------------------------------------------
# Hosts & sessions
# ------------------------------------------------------------------


def test_hosts_and_sessions(db_backend):
    db_backend.log("make", directory="/")
    hosts = db_backend.hosts()
    assert [h.hostname for h in hosts] == ["test-host"]

    sessions = db_backend.sessions()
    assert [(s.id, s.hostname, s.command_count, s.is_active) for s in sessions] == [
        ("session-a", "test-host", 1, True)
    ]
    assert db_backend.sessions(SessionFilter(hostname="nobody")) == []


def test_end_session_rotates_id(db_backend):
    db_backend.log("one", directory="/", timestamp=_at(1))
    assert db_backend.end_session() is True
    assert db_backend.session_id != "session-a"

    db_backend.log("two", directory="/", timestamp=_at(2))
    active = db_backend.sessions(SessionFilter(active_only=True))
    assert [s.id for s in active] == [db_backend.session_id]
    assert len(db_backend.sessions()) == 2


def test_start_session(db_backend):
    db_backend.log("one", directory="/")
    new_id = db_backend.start_session()
    assert new_id == db_backend.session_id
    assert new_id != "session-a"
    assert len(new_id) == 32
    assert db_backend.sessions(SessionFilter(active_only=True)) == []


def test_generated_session_id(config):
    backend = DatabaseBackend(config.model_copy(update={"session_id": None}))
    try:
        assert len(backend.session_id) == 32
    finally:
        backend.close()


# ------------------------------------------------------------------
# Shell import
# ------------------------------------------------------------------


def test_import_zsh_history(db_backend, tmp_path):
    history = tmp_path / "zsh_history"
    history.write_text(
        ": 1700000000:0;git status\n"
        ": 1700000060:0;export GITHUB_TOKEN=abcdef123\n"
    )
    report = db_backend.import_history("zsh", history)
    assert (report.shell, report.imported, report.duplicates) == ("zsh", 2, 0)

    entries = list(db_backend.entries())
    assert entries[0].command == "export GITHUB_TOKEN=<redacted:api_key:0>"
    assert all(e.directory == IMPORTED_DIRECTORY for e in entries)
    assert db_backend.stats().stored_tokens == 1

    again = db_backend.import_history("zsh", history)
    assert (again.imported, again.duplicates) == (0, 2)


def test_import_missing_history(db_backend, tmp_path):
    with pytest.raises(NotFound):
        db_backend.import_history("bash", tmp_path / "nope")
