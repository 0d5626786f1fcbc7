"""
Mortimer - shell command history with secret redaction.

Records shell commands to a flat file or SQLite database, replacing
passwords, API keys and other secrets with placeholders before they are
written, and searches the result with substring, regex or fuzzy matching.
"""

__version__ = "0.3.0"

from mortimer.config import BackendKind, MortimerConfig, RedactionConfig, SearchConfig
from mortimer.errors import (
    BackendUnsupported,
    ConstraintViolation,
    IoFailure,
    Locked,
    MortimerError,
    NotFound,
    ParseFailure,
    PatternError,
)
from mortimer.export import ExportFormat
from mortimer.redaction import RedactionEngine, validate_pattern
from mortimer.search import SearchEngine, SearchFilter
from mortimer.storage import DatabaseBackend, FileBackend, HistoryBackend, open_backend

__all__ = [
    "BackendKind",
    "BackendUnsupported",
    "ConstraintViolation",
    "DatabaseBackend",
    "ExportFormat",
    "FileBackend",
    "HistoryBackend",
    "IoFailure",
    "Locked",
    "MortimerConfig",
    "MortimerError",
    "NotFound",
    "ParseFailure",
    "PatternError",
    "RedactionConfig",
    "RedactionEngine",
    "SearchConfig",
    "SearchEngine",
    "SearchFilter",
    "open_backend",
    "validate_pattern",
]
