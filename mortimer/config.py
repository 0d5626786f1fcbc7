"""Configuration values for mortimer.

These are plain pydantic models handed to constructors. The core never reads
a configuration file; ``MortimerConfig.from_env()`` exists for the CLI.
"""

import os
import re
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_ENV_VARS = ["PASSWORD", "SECRET", "TOKEN", "API_KEY", "PRIVATE_KEY"]

_ENV_NAME_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")


class BackendKind(str, Enum):
    """Closed set of storage backends."""

    FILE = "file"
    DATABASE = "database"


class RedactionConfig(BaseModel):
    """What the redaction engine looks for.

    >>> RedactionConfig().min_length
    3
    >>> RedactionConfig(env_vars=["deploy_key"]).env_vars
    ['DEPLOY_KEY']
    """

    enabled: bool = True
    use_builtin_patterns: bool = True
    custom_patterns: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)
    redact_env_vars: bool = True
    env_vars: list[str] = Field(default_factory=lambda: list(DEFAULT_ENV_VARS))
    min_length: int = Field(default=3, ge=1)

    @field_validator("env_vars")
    @classmethod
    def _normalize_env_vars(cls, value: list[str]) -> list[str]:
        names = []
        for name in value:
            name = name.strip().upper()
            if not _ENV_NAME_RE.match(name):
                raise ValueError(f"not an environment variable name: {name!r}")
            names.append(name)
        return names


class SearchConfig(BaseModel):
    """Defaults applied when a search filter leaves a knob unset."""

    case_sensitive: bool = False
    fuzzy_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    max_results: int = Field(default=1000, ge=1)
    highlight: bool = True


def _default_history_file() -> Path:
    """Return default flat history path: ~/.mhist"""
    return Path.home() / ".mhist"


def _default_db_path() -> Path:
    """Return default database path: ~/.mortimer.db"""
    return Path.home() / ".mortimer.db"


class MortimerConfig(BaseModel):
    """Top-level configuration for a backend instance."""

    backend: BackendKind = BackendKind.FILE
    history_file: Path = Field(default_factory=_default_history_file)
    db_path: Path = Field(default_factory=_default_db_path)
    hostname: Optional[str] = None
    session_id: Optional[str] = None
    lock_timeout: float = Field(default=30.0, gt=0)
    ignore_commands: list[str] = Field(default_factory=list)
    ignore_space_prefixed: bool = True
    min_command_length: int = Field(default=1, ge=1)
    # False skips a command already among the most recent entries
    log_duplicates: bool = True
    # Newest entries kept after each log; 0 keeps everything
    max_entries: int = Field(default=0, ge=0)
    redaction: RedactionConfig = Field(default_factory=RedactionConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)

    @field_validator("session_id")
    @classmethod
    def _non_empty_session(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @classmethod
    def from_env(cls, **overrides) -> "MortimerConfig":
        """Build a config from ``MORTIMER_*`` environment variables.

        Explicit keyword overrides win over the environment; ``None`` values
        are ignored so CLI options left unset fall through.
        """
        values: dict = {}
        env_map = {
            "MORTIMER_BACKEND": "backend",
            "MORTIMER_HISTORY_FILE": "history_file",
            "MORTIMER_DB_PATH": "db_path",
            "MORTIMER_HOSTNAME": "hostname",
            "MORTIMER_SESSION_ID": "session_id",
            "MORTIMER_MAX_ENTRIES": "max_entries",
        }
        for env_name, field in env_map.items():
            raw = os.getenv(env_name)
            if raw:
                values[field] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
