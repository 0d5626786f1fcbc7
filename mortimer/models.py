"""Data model shared by the redaction engine, search engine and backends."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC.

    >>> as_utc(datetime(2024, 1, 2, 3, 4, 5)).isoformat()
    '2024-01-02T03:04:05+00:00'
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: datetime) -> str:
    """Fixed-width UTC text form; sorts lexically in time order.

    >>> isoformat_utc(datetime(2024, 1, 2, 3, 4, 5))
    '2024-01-02T03:04:05.000000+00:00'
    """
    return as_utc(value).isoformat(timespec="microseconds")


class _UtcModel(BaseModel):
    """Base for models whose datetime fields are always aware UTC."""

    @field_validator("*", mode="after")
    @classmethod
    def _utc_datetimes(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


class Host(_UtcModel):
    """Pydantic v2 model for a hosts row."""

    id: int
    hostname: str
    created_at: datetime


class Session(_UtcModel):
    """Pydantic v2 model for a sessions row."""

    id: str
    host_id: int
    hostname: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    command_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


class Token(_UtcModel):
    """Pydantic v2 model for a tokens row.

    ``original_value`` is only populated when values were explicitly requested.
    """

    id: int
    command_id: int
    token_type: str
    placeholder: str
    original_value: Optional[str] = None
    created_at: Optional[datetime] = None


class Entry(_UtcModel):
    """One history entry as returned by either backend."""

    command: str
    timestamp: datetime
    directory: str
    redacted: bool = False
    host: Optional[str] = None
    session: Optional[str] = None
    id: Optional[int] = None
    exit_code: Optional[int] = None
    score: Optional[float] = None
    highlights: list[tuple[int, int]] = Field(default_factory=list)


class CommandRef(_UtcModel):
    """Handle returned by ``log``; resolves back to an Entry via ``get``."""

    backend: str
    timestamp: datetime
    command_id: Optional[int] = None
    session_id: Optional[str] = None
    offset: Optional[int] = None


class TokenFilter(BaseModel):
    """Selects stored tokens by command, session or directory.

    Values stay hidden unless ``show_values`` is set.
    """

    command_id: Optional[int] = None
    session_id: Optional[str] = None
    directory: Optional[str] = None
    token_type: Optional[str] = None
    show_values: bool = False
    limit: Optional[int] = Field(default=None, ge=0)


class SessionFilter(BaseModel):
    hostname: Optional[str] = None
    active_only: bool = False
    limit: Optional[int] = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


class ExtractedToken(BaseModel):
    """A sensitive substring lifted out of a command during redaction."""

    token_type: str
    placeholder: str
    original: str


class RedactionResult(BaseModel):
    text: str
    tokens: list[ExtractedToken] = Field(default_factory=list)
    matched: bool = False


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class FrequencyDimension(str, Enum):
    COMMAND = "command"
    DIRECTORY = "directory"


class FrequencyRow(BaseModel):
    value: str
    count: int


class HistoryStats(_UtcModel):
    """Summary counters. Session, host and token counts are database-only."""

    backend: str
    total_commands: int = 0
    unique_commands: int = 0
    redacted_commands: int = 0
    directories: int = 0
    sessions: Optional[int] = None
    hosts: Optional[int] = None
    stored_tokens: Optional[int] = None
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


class MigrationReport(BaseModel):
    imported: int = 0
    skipped: int = 0
    duplicates: int = 0
    session_id: Optional[str] = None
    errors: list[str] = Field(default_factory=list)


class MergeReport(BaseModel):
    hosts_created: int = 0
    sessions_created: int = 0
    imported: int = 0
    duplicates: int = 0
    tokens_imported: int = 0


class ImportReport(BaseModel):
    shell: str
    imported: int = 0
    skipped: int = 0
    duplicates: int = 0
