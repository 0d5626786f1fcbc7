"""Shared fixtures for mortimer tests."""

from datetime import datetime, timedelta, timezone

import pytest

from mortimer.config import BackendKind, MortimerConfig
from mortimer.models import Entry
from mortimer.storage.db_backend import DatabaseBackend
from mortimer.storage.file import FileBackend

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    """Fixed timestamp ``minutes`` after BASE_TIME."""
    return BASE_TIME + timedelta(minutes=minutes)


@pytest.fixture
def config(tmp_path):
    """Config pointing both backends at tmp_path."""
    return MortimerConfig(
        history_file=tmp_path / "history.mhist",
        db_path=tmp_path / "history.db",
        hostname="test-host",
        session_id="session-a",
        lock_timeout=1.0,
    )


@pytest.fixture
def file_backend(config):
    backend = FileBackend(config.model_copy(update={"backend": BackendKind.FILE}))
    yield backend
    backend.close()


@pytest.fixture
def db_backend(config):
    backend = DatabaseBackend(config.model_copy(update={"backend": BackendKind.DATABASE}))
    yield backend
    backend.close()


@pytest.fixture
def make_db_backend(tmp_path):
    """Factory for extra database backends (merge sources and the like)."""
    opened = []

    def _create(name: str, hostname: str = "test-host", session_id: str = "session-x"):
        backend = DatabaseBackend(
            MortimerConfig(
                backend=BackendKind.DATABASE,
                db_path=tmp_path / f"{name}.db",
                history_file=tmp_path / f"{name}.mhist",
                hostname=hostname,
                session_id=session_id,
                lock_timeout=1.0,
            )
        )
        opened.append(backend)
        return backend

    yield _create
    for backend in opened:
        backend.close()


@pytest.fixture
def sample_entries():
    """Five entries, newest first, across a few directories."""
    return [
        Entry(command="git status", timestamp=at(50), directory="/proj"),
        Entry(command="git commit -m 'wip'", timestamp=at(40), directory="/proj/sub"),
        Entry(command="docker compose up", timestamp=at(30), directory="/srv"),
        Entry(
            command="curl -H 'Authorization: Bearer <redacted:bearer_token:0>' http://x",
            timestamp=at(20),
            directory="/home/me",
            redacted=True,
        ),
        Entry(command="ls -la", timestamp=at(10), directory="/home/me"),
    ]
