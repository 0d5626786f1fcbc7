"""Storage backends and backend selection."""

from typing import Optional

from mortimer.config import BackendKind, MortimerConfig
from mortimer.storage.base import HistoryBackend
from mortimer.storage.db_backend import DatabaseBackend
from mortimer.storage.file import FileBackend


def open_backend(config: Optional[MortimerConfig] = None) -> HistoryBackend:
    """Open the backend named by ``config.backend``."""
    config = config or MortimerConfig()
    kind = BackendKind(config.backend)
    if kind is BackendKind.FILE:
        return FileBackend(config)
    elif kind is BackendKind.DATABASE:
        return DatabaseBackend(config)
    else:
        raise ValueError(f"Unknown backend: {kind}")


__all__ = ["DatabaseBackend", "FileBackend", "HistoryBackend", "open_backend"]
