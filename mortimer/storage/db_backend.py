"""Database backend: hosts, sessions and recoverable tokens on top of SQLite."""

import logging
import socket
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from mortimer.config import BackendKind, MortimerConfig
from mortimer.errors import NotFound
from mortimer.models import (
    CommandRef,
    Entry,
    FrequencyDimension,
    FrequencyRow,
    HistoryStats,
    Host,
    MergeReport,
    MigrationReport,
    Session,
    SessionFilter,
    Token,
    TokenFilter,
)
from mortimer.redaction import RedactionEngine
from mortimer.search import SearchEngine, SearchFilter
from mortimer.shells import ShellRecord
from mortimer.storage.base import HistoryBackend
from mortimer.storage.database import Database, new_session_id
from mortimer.storage.transfer import import_records, merge_database, migrate_file

logger = logging.getLogger(__name__)


class DatabaseBackend(HistoryBackend):
    """History in SQLite, grouped by host and shell session.

    ``session_id`` identifies this process's shell session; its row is
    created with the first logged command.
    """

    kind = BackendKind.DATABASE

    def __init__(
        self,
        config: MortimerConfig,
        redactor: Optional[RedactionEngine] = None,
        searcher: Optional[SearchEngine] = None,
        database: Optional[Database] = None,
    ):
        super().__init__(config, redactor, searcher)
        if database is None:
            database = Database(str(Path(config.db_path).expanduser()), timeout=config.lock_timeout)
        self.db = database
        self.hostname = config.hostname or socket.gethostname()
        self.session_id = config.session_id or new_session_id()

    def close(self) -> None:
        self.db.close()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _log(
        self, command: str, directory: str, exit_code: Optional[int], timestamp: datetime
    ) -> CommandRef:
        result = self.redactor.redact(command, extract_tokens=True)
        command_id = self.db.record_command(
            self.hostname,
            self.session_id,
            result.text,
            directory,
            timestamp=timestamp,
            redacted=result.matched,
            exit_code=exit_code,
            tokens=result.tokens,
        )
        if result.tokens:
            logger.debug("Stored %d token(s) for command %d", len(result.tokens), command_id)
        return CommandRef(
            backend=self.kind.value,
            timestamp=timestamp,
            command_id=command_id,
            session_id=self.session_id,
        )

    def _clear(self) -> int:
        return self.db.clear()

    def _trim(self, keep: int) -> int:
        return self.db.trim(keep)

    def _import(self, records: Iterable[ShellRecord]) -> tuple[int, int]:
        return import_records(self.db, self.redactor, self.hostname, records)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get(self, ref: CommandRef) -> Entry:
        if ref.command_id is None:
            raise NotFound("reference has no command id")
        return self.db.get_command(ref.command_id)

    def entries(self) -> Iterator[Entry]:
        return self.db.iter_entries()

    def _candidates(self, search: SearchFilter) -> Iterable[Entry]:
        return self.db.iter_entries(
            directory=search.directory,
            since=search.since,
            before=search.before,
            redacted_only=search.redacted_only,
            hostname=search.hostname,
            session_id=search.session_id,
        )

    def recent(self, n: int = 20) -> list[Entry]:
        return list(self.db.iter_entries(limit=n))

    def frequent(
        self, dimension: Union[FrequencyDimension, str] = FrequencyDimension.COMMAND, n: int = 10
    ) -> list[FrequencyRow]:
        return self.db.frequent(FrequencyDimension(dimension), n)

    def stats(self) -> HistoryStats:
        return self.db.stats()

    # ------------------------------------------------------------------
    # Database-only operations
    # ------------------------------------------------------------------

    def tokens(self, token_filter: Optional[TokenFilter] = None) -> list[Token]:
        token_filter = token_filter or TokenFilter()
        if token_filter.show_values:
            logger.info("Token values requested")
        return self.db.list_tokens(token_filter)

    def hosts(self) -> list[Host]:
        return self.db.list_hosts()

    def sessions(self, session_filter: Optional[SessionFilter] = None) -> list[Session]:
        return self.db.list_sessions(session_filter)

    def migrate(self, source_path: Optional[Union[str, Path]] = None) -> MigrationReport:
        source = source_path if source_path is not None else self.config.history_file
        return migrate_file(self.db, self.redactor, self.hostname, source)

    def merge(self, source_db: Union[str, Path]) -> MergeReport:
        return merge_database(self.db, source_db)

    def end_session(self) -> bool:
        """End the current session; the next ``log`` starts a new one."""
        ended = self.db.end_session(self.session_id)
        self.session_id = new_session_id()
        return ended

    def start_session(self) -> str:
        """Supersede the current session with a fresh one and return its id."""
        self.end_session()
        return self.session_id
