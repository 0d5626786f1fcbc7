"""Moving history into a database: flat-file migration, database merge and
native shell history import.

Each run is a single transaction against the destination. Records already
present under the destination host, by identical command text, timestamp
and directory, are counted as duplicates and skipped, so repeating a run
changes nothing.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Union

from mortimer.errors import IoFailure, NotFound, ParseFailure
from mortimer.models import (
    ExtractedToken,
    MergeReport,
    MigrationReport,
    utcnow,
)
from mortimer.redaction import RedactionEngine
from mortimer.shells import IMPORTED_DIRECTORY, ShellRecord
from mortimer.storage.database import Database, new_session_id, parse_stored_timestamp
from mortimer.storage.legacy import decode_records

logger = logging.getLogger(__name__)

# Parse errors kept verbatim in a MigrationReport; the rest are only counted
MAX_REPORTED_ERRORS = 20


class _RunSession:
    """Session shared by every record of one migration or import run.

    Host and session rows are created on the first imported record, so a
    run that imports nothing leaves the database untouched.
    """

    def __init__(self, db: Database, conn, hostname: str):
        self.db = db
        self.conn = conn
        self.hostname = hostname
        self.host_id: Optional[int] = db.find_host_in(conn, hostname)
        self.session_id: Optional[str] = None
        self.started_at = utcnow()

    def is_duplicate(self, command: str, timestamp: datetime, directory: str) -> bool:
        if self.host_id is None:
            return False
        return self.db.command_exists_in(self.conn, self.host_id, command, timestamp, directory)

    def insert(
        self,
        command: str,
        timestamp: datetime,
        directory: str,
        redacted: bool,
        exit_code: Optional[int],
        tokens: Iterable[ExtractedToken],
    ) -> int:
        if self.host_id is None:
            self.host_id, _ = self.db.ensure_host_in(self.conn, self.hostname)
        if self.session_id is None:
            self.session_id = new_session_id()
            self.db.ensure_session_in(self.conn, self.session_id, self.host_id, self.started_at)
        command_id = self.db.insert_command_in(
            self.conn, self.session_id, command, timestamp, directory, redacted, exit_code
        )
        self.db.insert_tokens_in(self.conn, command_id, tokens)
        return command_id

    def finish(self) -> None:
        if self.session_id is not None:
            self.db.end_session_in(self.conn, self.session_id)


def _read_text(path: Path) -> str:
    if not path.exists():
        raise NotFound(f"history file not found: {path}")
    try:
        return path.read_bytes().decode("utf-8", errors="replace")
    except OSError as exc:
        raise IoFailure(f"cannot read {path}: {exc}") from exc


def migrate_file(
    db: Database, redactor: RedactionEngine, hostname: str, source: Union[str, Path]
) -> MigrationReport:
    """Copy a flat history file into ``db`` under one new session.

    Command text goes through ``redactor`` again so files written before
    redaction existed still get their secrets moved into the tokens table.
    """
    source = Path(source).expanduser()
    data = _read_text(source)
    report = MigrationReport()

    with db.transaction() as conn:
        run = _RunSession(db, conn, hostname)
        for item in decode_records(data):
            if isinstance(item, ParseFailure):
                report.skipped += 1
                if len(report.errors) < MAX_REPORTED_ERRORS:
                    report.errors.append(str(item))
                continue
            result = redactor.redact(item.command)
            if run.is_duplicate(result.text, item.timestamp, item.directory):
                report.duplicates += 1
                continue
            run.insert(
                result.text,
                item.timestamp,
                item.directory,
                item.redacted or result.matched,
                item.exit_code,
                result.tokens,
            )
            report.imported += 1
        run.finish()

    report.session_id = run.session_id
    logger.info(
        "Migrated %s: %d imported, %d duplicate(s), %d skipped",
        source, report.imported, report.duplicates, report.skipped,
    )
    return report


def import_records(
    db: Database,
    redactor: RedactionEngine,
    hostname: str,
    records: Iterable[ShellRecord],
) -> tuple[int, int]:
    """Store native shell history records. Returns ``(imported, duplicates)``."""
    imported = duplicates = 0
    with db.transaction() as conn:
        run = _RunSession(db, conn, hostname)
        for record in records:
            result = redactor.redact(record.command)
            if run.is_duplicate(result.text, record.timestamp, IMPORTED_DIRECTORY):
                duplicates += 1
                continue
            run.insert(
                result.text, record.timestamp, IMPORTED_DIRECTORY, result.matched, None, result.tokens
            )
            imported += 1
        run.finish()
    return imported, duplicates


def merge_database(db: Database, source_path: Union[str, Path]) -> MergeReport:
    """Fold another mortimer database into ``db``.

    Hosts are matched by hostname. Every source session gets a fresh id in
    the destination so merged sessions never collide with local ones, and
    tokens are re-linked to the new command ids with their values intact.

    Hosts missing from the destination are created with all of their
    sessions, including sessions that hold no commands. For hosts that
    already exist, a session is only created when at least one of its
    commands is new, so merging the same source twice changes nothing.
    """
    source_path = Path(source_path).expanduser()
    if not source_path.exists():
        raise NotFound(f"database not found: {source_path}")

    report = MergeReport()
    source = Database(str(source_path), timeout=db.timeout, read_only=True)
    try:
        with db.transaction() as conn:
            host_ids: dict[str, int] = {}
            new_hosts: set[str] = set()
            for host in source.list_hosts():
                host_id, created = db.ensure_host_in(conn, host.hostname, created_at=host.created_at)
                host_ids[host.hostname] = host_id
                if created:
                    new_hosts.add(host.hostname)
                    report.hosts_created += 1

            session_ids: dict[str, str] = {}

            def merged_session(row) -> str:
                session_id = session_ids.get(row["session_id"])
                if session_id is None:
                    session_id = new_session_id()
                    db.ensure_session_in(
                        conn,
                        session_id,
                        host_ids[row["hostname"]],
                        started_at=parse_stored_timestamp(row["started_at"]),
                        ended_at=parse_stored_timestamp(row["ended_at"]),
                    )
                    session_ids[row["session_id"]] = session_id
                    report.sessions_created += 1
                return session_id

            for row in source.iter_merge_sessions():
                if row["hostname"] in new_hosts:
                    merged_session(row)

            for row in source.iter_merge_rows():
                host_id = host_ids[row["hostname"]]
                timestamp = parse_stored_timestamp(row["timestamp"])
                if db.command_exists_in(conn, host_id, row["command"], timestamp, row["directory"]):
                    report.duplicates += 1
                    continue

                command_id = db.insert_command_in(
                    conn,
                    merged_session(row),
                    row["command"],
                    timestamp,
                    row["directory"],
                    bool(row["redacted"]),
                    row["exit_code"],
                )
                report.tokens_imported += db.insert_tokens_in(
                    conn, command_id, source.iter_token_rows(row["id"])
                )
                report.imported += 1
    finally:
        source.close()

    logger.info(
        "Merged %s: %d imported, %d duplicate(s), %d new session(s)",
        source_path, report.imported, report.duplicates, report.sessions_created,
    )
    return report
