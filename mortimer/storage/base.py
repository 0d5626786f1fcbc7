"""The contract shared by the file and database backends."""

import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from itertools import islice
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from mortimer.config import BackendKind, MortimerConfig
from mortimer.errors import BackendUnsupported
from mortimer.export import ExportFormat, render
from mortimer.models import (
    CommandRef,
    Entry,
    FrequencyDimension,
    FrequencyRow,
    HistoryStats,
    Host,
    ImportReport,
    MergeReport,
    MigrationReport,
    Session,
    SessionFilter,
    Token,
    TokenFilter,
    as_utc,
    utcnow,
)
from mortimer.redaction import RedactionEngine
from mortimer.search import SearchEngine, SearchFilter, frequent
from mortimer.shells import Shell, ShellHistory, ShellRecord

logger = logging.getLogger(__name__)

# Entries checked for a repeat when log_duplicates is off
DUPLICATE_WINDOW = 100


class HistoryBackend(ABC):
    """Uniform history operations over one storage backend.

    Subclasses implement storage; redaction, ignore rules, searching and
    export live here so both backends behave the same.
    """

    kind: BackendKind

    def __init__(
        self,
        config: MortimerConfig,
        redactor: Optional[RedactionEngine] = None,
        searcher: Optional[SearchEngine] = None,
    ):
        self.config = config
        self.redactor = redactor or RedactionEngine(config.redaction)
        self.searcher = searcher or SearchEngine(config.search)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        pass

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def should_ignore(self, command: str) -> bool:
        """True for commands shorter than ``min_command_length`` (blank ones
        always), space-prefixed ones (when configured) and commands whose
        first word is in ``ignore_commands``.

        >>> from mortimer.config import MortimerConfig
        >>> from mortimer.storage.file import FileBackend
        >>> backend = FileBackend(MortimerConfig(ignore_commands=["ls"]))
        >>> backend.should_ignore("ls -la"), backend.should_ignore(" secret"), backend.should_ignore("make")
        (True, True, False)
        """
        if len(command.strip()) < self.config.min_command_length:
            return True
        if self.config.ignore_space_prefixed and command[0] in " \t":
            return True
        first_word = command.split(None, 1)[0]
        return first_word in self.config.ignore_commands

    def log(
        self,
        command: str,
        directory: Optional[str] = None,
        exit_code: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[CommandRef]:
        """Redact and persist one command.

        Returns None when the command is skipped by the ignore rules, or when
        ``log_duplicates`` is off and the redacted text matches one of the
        last ``DUPLICATE_WINDOW`` entries. With ``max_entries`` set, the
        oldest entries are dropped first so the new one is never trimmed.
        """
        if self.should_ignore(command):
            logger.debug("Not logging ignored command")
            return None
        if not self.config.log_duplicates and self.is_recent_duplicate(command):
            logger.debug("Not logging duplicate command")
            return None
        directory = directory if directory is not None else os.getcwd()
        timestamp = as_utc(timestamp) if timestamp is not None else utcnow()
        if self.config.max_entries:
            removed = self._trim(self.config.max_entries - 1)
            if removed:
                logger.info("Trimmed %d old command(s)", removed)
        return self._log(command, directory, exit_code, timestamp)

    def is_recent_duplicate(self, command: str) -> bool:
        """True if the redacted form of ``command`` is among the latest entries."""
        text = self.redactor.redact(command, extract_tokens=False).text
        return any(entry.command == text for entry in self.recent(DUPLICATE_WINDOW))

    @abstractmethod
    def _log(
        self, command: str, directory: str, exit_code: Optional[int], timestamp: datetime
    ) -> CommandRef:
        ...

    @abstractmethod
    def _trim(self, keep: int) -> int:
        """Delete all but the ``keep`` newest entries; returns how many went."""

    @abstractmethod
    def get(self, ref: CommandRef) -> Entry:
        """Resolve a reference returned by ``log``; raises NotFound."""

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @abstractmethod
    def entries(self) -> Iterator[Entry]:
        """All entries, newest first."""

    def _candidates(self, search: SearchFilter) -> Iterable[Entry]:
        """Entries the search engine should look at; backends may prefilter."""
        return self.entries()

    def search(self, search: SearchFilter) -> Iterator[Entry]:
        return self.searcher.search(self._candidates(search), search)

    def recent(self, n: int = 20) -> list[Entry]:
        return list(islice(self.entries(), n))

    def frequent(
        self, dimension: Union[FrequencyDimension, str] = FrequencyDimension.COMMAND, n: int = 10
    ) -> list[FrequencyRow]:
        return frequent(self.entries(), FrequencyDimension(dimension), n)

    @abstractmethod
    def stats(self) -> HistoryStats:
        ...

    def clear(self, confirm: bool = False) -> int:
        """Remove all history. Without ``confirm`` nothing happens and 0 is returned."""
        if not confirm:
            logger.warning("Refusing to clear history without confirmation")
            return 0
        return self._clear()

    @abstractmethod
    def _clear(self) -> int:
        ...

    def export(
        self, fmt: Union[ExportFormat, str], search: Optional[SearchFilter] = None
    ) -> bytes:
        entries = self.search(search) if search is not None else self.entries()
        return render(entries, ExportFormat(fmt))

    # ------------------------------------------------------------------
    # Shell history import
    # ------------------------------------------------------------------

    def import_history(
        self, shell: Union[Shell, str], path: Optional[Union[str, Path]] = None
    ) -> ImportReport:
        """Import a bash, zsh or fish history file."""
        history = ShellHistory(Shell(shell), Path(path).expanduser() if path else None)
        imported, duplicates = self._import(history)
        report = ImportReport(
            shell=history.shell.value,
            imported=imported,
            skipped=history.skipped,
            duplicates=duplicates,
        )
        logger.info(
            "Imported %d %s command(s) from %s", report.imported, report.shell, history.path
        )
        return report

    @abstractmethod
    def _import(self, records: Iterable[ShellRecord]) -> tuple[int, int]:
        """Store records; returns ``(imported, duplicates)``."""

    # ------------------------------------------------------------------
    # Database-only operations
    # ------------------------------------------------------------------

    def tokens(self, token_filter: Optional[TokenFilter] = None) -> list[Token]:
        raise BackendUnsupported("tokens")

    def hosts(self) -> list[Host]:
        raise BackendUnsupported("hosts")

    def sessions(self, session_filter: Optional[SessionFilter] = None) -> list[Session]:
        raise BackendUnsupported("sessions")

    def migrate(self, source_path: Optional[Union[str, Path]] = None) -> MigrationReport:
        raise BackendUnsupported("migrate")

    def merge(self, source_db: Union[str, Path]) -> MergeReport:
        raise BackendUnsupported("merge")

    def start_session(self) -> str:
        raise BackendUnsupported("start_session")

    def end_session(self) -> bool:
        raise BackendUnsupported("end_session")
