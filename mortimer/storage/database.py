"""SQLite store for the database backend.

4 tables, each row owned by the one above it:
- hosts: one row per machine hostname
- sessions: one row per shell process (uuid4 hex id)
- commands: redacted command text with timestamp, directory and exit code
- tokens: original values of redacted spans, keyed by placeholder

WAL mode for concurrent readers. Writers open ``BEGIN IMMEDIATE`` so two
shells logging at once serialize on SQLite's own lock instead of failing
half-way through a transaction.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from mortimer.errors import (
    ConstraintViolation,
    IoFailure,
    Locked,
    MortimerError,
    NotFound,
    ParseFailure,
)
from mortimer.models import (
    Entry,
    ExtractedToken,
    FrequencyDimension,
    FrequencyRow,
    HistoryStats,
    Host,
    Session,
    SessionFilter,
    Token,
    TokenFilter,
    isoformat_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schema SQL
# ---------------------------------------------------------------------------

SCHEMA_SQL = [
    """CREATE TABLE IF NOT EXISTS hosts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        hostname TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        host_id INTEGER NOT NULL REFERENCES hosts(id) ON DELETE CASCADE,
        started_at TEXT NOT NULL,
        ended_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS commands (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        command TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        directory TEXT NOT NULL,
        redacted BOOLEAN NOT NULL DEFAULT 0,
        exit_code INTEGER
    )""",
    # original_value is the secret itself and is only returned on request
    """CREATE TABLE IF NOT EXISTS tokens (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        command_id INTEGER NOT NULL REFERENCES commands(id) ON DELETE CASCADE,
        token_type TEXT NOT NULL,
        placeholder TEXT NOT NULL,
        original_value TEXT NOT NULL,
        created_at TEXT
    )""",
]

INDEXES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_commands_timestamp ON commands(timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_commands_session ON commands(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_commands_directory ON commands(directory)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_host ON sessions(host_id)",
    "CREATE INDEX IF NOT EXISTS idx_tokens_command ON tokens(command_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_tokens_placeholder ON tokens(command_id, placeholder)",
]

# Columns that older copies of the database may lack. ALTER TABLE ADD COLUMN
# cannot add NOT NULL without a default, so every entry here is nullable or
# defaulted.
ADDED_COLUMNS = {
    "sessions": [("ended_at", "TEXT")],
    "commands": [("redacted", "BOOLEAN NOT NULL DEFAULT 0"), ("exit_code", "INTEGER")],
    "tokens": [("created_at", "TEXT")],
}

ENTRY_SELECT = """
    SELECT c.id, c.command, c.timestamp, c.directory, c.redacted, c.exit_code,
           c.session_id, h.hostname
    FROM commands c
    JOIN sessions s ON s.id = c.session_id
    JOIN hosts h ON h.id = s.host_id
"""


def new_session_id() -> str:
    """Random 128-bit session identifier."""
    return uuid.uuid4().hex


def _translate(exc: sqlite3.Error, context: str) -> MortimerError:
    """Map a sqlite3 exception onto the mortimer error taxonomy."""
    message = f"{context}: {exc}"
    if isinstance(exc, sqlite3.IntegrityError):
        return ConstraintViolation(message)
    if isinstance(exc, sqlite3.OperationalError) and (
        "locked" in str(exc) or "busy" in str(exc)
    ):
        return Locked(message)
    return IoFailure(message)


def parse_stored_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise ParseFailure(f"corrupt timestamp {value!r} in database") from exc


def _prefix_clause(column: str, prefix: str) -> tuple[str, list[Any]]:
    # substr keeps the comparison exact; LIKE would fold ASCII case and
    # treat % and _ as wildcards.
    return f"substr({column}, 1, ?) = ?", [len(prefix), prefix]


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        id=row["id"],
        command=row["command"],
        timestamp=parse_stored_timestamp(row["timestamp"]),
        directory=row["directory"],
        redacted=bool(row["redacted"]),
        exit_code=row["exit_code"],
        session=row["session_id"],
        host=row["hostname"],
    )


class Database:
    """SQLite history store with WAL mode and transactional writes.

    >>> db = Database(":memory:")
    >>> db.db_path
    ':memory:'
    >>> db.stats().total_commands
    0
    """

    def __init__(self, db_path: str, timeout: float = 30.0, read_only: bool = False):
        self.db_path = str(db_path)
        self.timeout = timeout
        self.read_only = read_only
        self._connection: Optional[sqlite3.Connection] = None

        if self.db_path != ":memory:":
            path = Path(self.db_path)
            if read_only and not path.exists():
                raise NotFound(f"database not found: {path}")
            if not read_only:
                try:
                    path.parent.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    raise IoFailure(f"cannot create {path.parent}: {exc}") from exc

        if not read_only:
            self._init_schema()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            try:
                if self.read_only:
                    uri = Path(self.db_path).resolve().as_uri() + "?mode=ro"
                    conn = sqlite3.connect(
                        uri, uri=True, timeout=self.timeout, isolation_level=None
                    )
                else:
                    conn = sqlite3.connect(
                        self.db_path, timeout=self.timeout, isolation_level=None
                    )
                    conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA foreign_keys=ON")
            except sqlite3.Error as exc:
                raise _translate(exc, f"cannot open {self.db_path}") from exc
            conn.row_factory = sqlite3.Row
            self._connection = conn
        return self._connection

    @contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise _translate(exc, "cannot start write transaction") from exc
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise _translate(exc, "write failed") from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._get_connection()
        except sqlite3.Error as exc:
            raise _translate(exc, "read failed") from exc

    def transaction(self):
        """One write transaction spanning several ``*_in`` helper calls."""
        return self._writer()

    def _init_schema(self) -> None:
        with self._writer() as conn:
            for statement in SCHEMA_SQL:
                conn.execute(statement)
            # Columns before indexes; an index may reference an added column
            for table, columns in ADDED_COLUMNS.items():
                existing = self._columns(conn, table)
                for col_name, col_def in columns:
                    if col_name not in existing:
                        logger.info("Adding column %s.%s", table, col_name)
                        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_def}")
            for statement in INDEXES_SQL:
                conn.execute(statement)

    @staticmethod
    def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
        return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Row helpers (caller supplies the transaction)
    # ------------------------------------------------------------------

    def find_host_in(self, conn: sqlite3.Connection, hostname: str) -> Optional[int]:
        row = conn.execute("SELECT id FROM hosts WHERE hostname = ?", (hostname,)).fetchone()
        return row["id"] if row else None

    def ensure_host_in(
        self,
        conn: sqlite3.Connection,
        hostname: str,
        created_at: Optional[datetime] = None,
    ) -> tuple[int, bool]:
        """Return ``(host_id, created)`` for ``hostname``, inserting it if absent."""
        host_id = self.find_host_in(conn, hostname)
        if host_id is not None:
            return host_id, False
        cursor = conn.execute(
            "INSERT INTO hosts (hostname, created_at) VALUES (?, ?)",
            (hostname, isoformat_utc(created_at or utcnow())),
        )
        logger.debug("Created host %s", hostname)
        return cursor.lastrowid, True

    def ensure_session_in(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        host_id: int,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> bool:
        """Insert the session row unless it exists. Returns True when created."""
        row = conn.execute("SELECT host_id FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is not None:
            if row["host_id"] != host_id:
                raise ConstraintViolation(
                    f"session {session_id} already belongs to another host"
                )
            return False
        conn.execute(
            "INSERT INTO sessions (id, host_id, started_at, ended_at) VALUES (?, ?, ?, ?)",
            (
                session_id,
                host_id,
                isoformat_utc(started_at or utcnow()),
                isoformat_utc(ended_at) if ended_at else None,
            ),
        )
        return True

    def insert_command_in(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        command: str,
        timestamp: datetime,
        directory: str,
        redacted: bool = False,
        exit_code: Optional[int] = None,
    ) -> int:
        cursor = conn.execute(
            """INSERT INTO commands
               (session_id, command, timestamp, directory, redacted, exit_code)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (session_id, command, isoformat_utc(timestamp), directory, int(redacted), exit_code),
        )
        return cursor.lastrowid

    def insert_tokens_in(
        self,
        conn: sqlite3.Connection,
        command_id: int,
        tokens: Iterable[ExtractedToken],
        created_at: Optional[datetime] = None,
    ) -> int:
        created = isoformat_utc(created_at or utcnow())
        rows = [
            (command_id, token.token_type, token.placeholder, token.original, created)
            for token in tokens
        ]
        if rows:
            conn.executemany(
                """INSERT INTO tokens
                   (command_id, token_type, placeholder, original_value, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                rows,
            )
        return len(rows)

    def command_exists_in(
        self,
        conn: sqlite3.Connection,
        host_id: int,
        command: str,
        timestamp: datetime,
        directory: str,
    ) -> bool:
        """Content-level identity check used to deduplicate migrations and merges."""
        row = conn.execute(
            """SELECT 1 FROM commands c
               JOIN sessions s ON s.id = c.session_id
               WHERE s.host_id = ? AND c.timestamp = ? AND c.command = ? AND c.directory = ?
               LIMIT 1""",
            (host_id, isoformat_utc(timestamp), command, directory),
        ).fetchone()
        return row is not None

    def end_session_in(
        self, conn: sqlite3.Connection, session_id: str, ended_at: Optional[datetime] = None
    ) -> bool:
        cursor = conn.execute(
            "UPDATE sessions SET ended_at = ? WHERE id = ? AND ended_at IS NULL",
            (isoformat_utc(ended_at or utcnow()), session_id),
        )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def record_command(
        self,
        hostname: str,
        session_id: str,
        command: str,
        directory: str,
        timestamp: Optional[datetime] = None,
        redacted: bool = False,
        exit_code: Optional[int] = None,
        tokens: Iterable[ExtractedToken] = (),
    ) -> int:
        """Store one command, creating its host and session on first use.

        Host, session, command and tokens are written in a single transaction.

        >>> db = Database(":memory:")
        >>> db.record_command("laptop", "abc", "ls -la", "/tmp")
        1
        >>> [h.hostname for h in db.list_hosts()]
        ['laptop']
        """
        timestamp = timestamp or utcnow()
        with self._writer() as conn:
            host_id, _ = self.ensure_host_in(conn, hostname)
            self.ensure_session_in(conn, session_id, host_id, started_at=timestamp)
            command_id = self.insert_command_in(
                conn, session_id, command, timestamp, directory, redacted, exit_code
            )
            self.insert_tokens_in(conn, command_id, tokens)
        return command_id

    def get_command(self, command_id: int) -> Entry:
        with self._reader() as conn:
            row = conn.execute(ENTRY_SELECT + " WHERE c.id = ?", (command_id,)).fetchone()
        if row is None:
            raise NotFound(f"command {command_id} not found")
        return _row_to_entry(row)

    def iter_entries(
        self,
        directory: Optional[str] = None,
        since: Optional[datetime] = None,
        before: Optional[datetime] = None,
        redacted_only: bool = False,
        hostname: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Iterator[Entry]:
        """Yield entries newest first, filtered in SQL.

        >>> db = Database(":memory:")
        >>> _ = db.record_command("h", "s", "make", "/src")
        >>> [e.command for e in db.iter_entries(directory="/sr")]
        ['make']
        """
        sql = ENTRY_SELECT + " WHERE 1=1"
        params: list[Any] = []
        if directory:
            clause, clause_params = _prefix_clause("c.directory", directory)
            sql += f" AND {clause}"
            params.extend(clause_params)
        if since is not None:
            sql += " AND c.timestamp >= ?"
            params.append(isoformat_utc(since))
        if before is not None:
            sql += " AND c.timestamp < ?"
            params.append(isoformat_utc(before))
        if redacted_only:
            sql += " AND c.redacted = 1"
        if hostname is not None:
            sql += " AND h.hostname = ?"
            params.append(hostname)
        if session_id is not None:
            sql += " AND c.session_id = ?"
            params.append(session_id)
        sql += " ORDER BY c.timestamp DESC, c.id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._reader() as conn:
            cursor = conn.execute(sql, params)
            for row in cursor:
                yield _row_to_entry(row)

    def delete_command(self, command_id: int) -> bool:
        """Delete one command; its tokens go with it."""
        with self._writer() as conn:
            cursor = conn.execute("DELETE FROM commands WHERE id = ?", (command_id,))
            return cursor.rowcount > 0

    def trim(self, keep: int) -> int:
        """Delete all but the ``keep`` newest commands. Returns how many went.

        >>> db = Database(":memory:")
        >>> for cmd in ("a1", "b2", "c3"):
        ...     _ = db.record_command("h", "s", cmd, "/")
        >>> db.trim(1)
        2
        """
        with self._writer() as conn:
            cursor = conn.execute(
                """DELETE FROM commands WHERE id NOT IN (
                       SELECT id FROM commands ORDER BY timestamp DESC, id DESC LIMIT ?)""",
                (keep,),
            )
            return cursor.rowcount

    def frequent(self, dimension: FrequencyDimension, limit: int = 10) -> list[FrequencyRow]:
        column = {
            FrequencyDimension.COMMAND: "command",
            FrequencyDimension.DIRECTORY: "directory",
        }[FrequencyDimension(dimension)]
        with self._reader() as conn:
            rows = conn.execute(
                f"""SELECT {column} AS value, COUNT(*) AS count FROM commands
                    GROUP BY {column} ORDER BY count DESC, value ASC LIMIT ?""",
                (limit,),
            ).fetchall()
        return [FrequencyRow(value=row["value"], count=row["count"]) for row in rows]

    def stats(self) -> HistoryStats:
        with self._reader() as conn:
            row = conn.execute(
                """SELECT COUNT(*) AS total,
                          COUNT(DISTINCT command) AS uniq,
                          COALESCE(SUM(CASE WHEN redacted THEN 1 ELSE 0 END), 0) AS redacted,
                          COUNT(DISTINCT directory) AS dirs,
                          MIN(timestamp) AS oldest,
                          MAX(timestamp) AS newest
                   FROM commands"""
            ).fetchone()
            sessions = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
            hosts = conn.execute("SELECT COUNT(*) FROM hosts").fetchone()[0]
            tokens = conn.execute("SELECT COUNT(*) FROM tokens").fetchone()[0]
        return HistoryStats(
            backend="database",
            total_commands=row["total"],
            unique_commands=row["uniq"],
            redacted_commands=row["redacted"],
            directories=row["dirs"],
            sessions=sessions,
            hosts=hosts,
            stored_tokens=tokens,
            oldest=parse_stored_timestamp(row["oldest"]),
            newest=parse_stored_timestamp(row["newest"]),
        )

    def clear(self) -> int:
        """Delete every row in every table. Returns the number of commands removed."""
        with self._writer() as conn:
            count = conn.execute("SELECT COUNT(*) FROM commands").fetchone()[0]
            conn.execute("DELETE FROM tokens")
            conn.execute("DELETE FROM commands")
            conn.execute("DELETE FROM sessions")
            conn.execute("DELETE FROM hosts")
        logger.info("Cleared %d command(s) from %s", count, self.db_path)
        return count

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def list_tokens(self, token_filter: Optional[TokenFilter] = None) -> list[Token]:
        """Tokens matching the filter, newest command first.

        >>> db = Database(":memory:")
        >>> cid = db.record_command("h", "s", "x <redacted:password:0>", "/",
        ...     tokens=[ExtractedToken(token_type="password",
        ...                            placeholder="<redacted:password:0>", original="pw1")])
        >>> db.list_tokens()[0].original_value is None
        True
        >>> db.list_tokens(TokenFilter(command_id=cid, show_values=True))[0].original_value
        'pw1'
        """
        token_filter = token_filter or TokenFilter()
        sql = """SELECT t.id, t.command_id, t.token_type, t.placeholder,
                        t.original_value, t.created_at
                 FROM tokens t JOIN commands c ON c.id = t.command_id
                 WHERE 1=1"""
        params: list[Any] = []
        if token_filter.command_id is not None:
            sql += " AND t.command_id = ?"
            params.append(token_filter.command_id)
        if token_filter.session_id is not None:
            sql += " AND c.session_id = ?"
            params.append(token_filter.session_id)
        if token_filter.directory:
            clause, clause_params = _prefix_clause("c.directory", token_filter.directory)
            sql += f" AND {clause}"
            params.extend(clause_params)
        if token_filter.token_type is not None:
            sql += " AND t.token_type = ?"
            params.append(token_filter.token_type)
        sql += " ORDER BY c.timestamp DESC, t.command_id DESC, t.id ASC"
        if token_filter.limit is not None:
            sql += " LIMIT ?"
            params.append(token_filter.limit)

        with self._reader() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            Token(
                id=row["id"],
                command_id=row["command_id"],
                token_type=row["token_type"],
                placeholder=row["placeholder"],
                original_value=row["original_value"] if token_filter.show_values else None,
                created_at=parse_stored_timestamp(row["created_at"]),
            )
            for row in rows
        ]

    def iter_token_rows(self, command_id: int) -> list[ExtractedToken]:
        """Raw token values for one command, in placeholder order."""
        with self._reader() as conn:
            rows = conn.execute(
                """SELECT token_type, placeholder, original_value FROM tokens
                   WHERE command_id = ? ORDER BY id""",
                (command_id,),
            ).fetchall()
        return [
            ExtractedToken(
                token_type=row["token_type"],
                placeholder=row["placeholder"],
                original=row["original_value"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Hosts & sessions
    # ------------------------------------------------------------------

    def list_hosts(self) -> list[Host]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT id, hostname, created_at FROM hosts ORDER BY hostname"
            ).fetchall()
        return [
            Host(id=row["id"], hostname=row["hostname"], created_at=parse_stored_timestamp(row["created_at"]))
            for row in rows
        ]

    def list_sessions(self, session_filter: Optional[SessionFilter] = None) -> list[Session]:
        session_filter = session_filter or SessionFilter()
        sql = """SELECT s.id, s.host_id, h.hostname, s.started_at, s.ended_at,
                        COUNT(c.id) AS command_count
                 FROM sessions s
                 JOIN hosts h ON h.id = s.host_id
                 LEFT JOIN commands c ON c.session_id = s.id
                 WHERE 1=1"""
        params: list[Any] = []
        if session_filter.hostname is not None:
            sql += " AND h.hostname = ?"
            params.append(session_filter.hostname)
        if session_filter.active_only:
            sql += " AND s.ended_at IS NULL"
        sql += " GROUP BY s.id ORDER BY s.started_at DESC, s.id"
        if session_filter.limit is not None:
            sql += " LIMIT ?"
            params.append(session_filter.limit)

        with self._reader() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            Session(
                id=row["id"],
                host_id=row["host_id"],
                hostname=row["hostname"],
                started_at=parse_stored_timestamp(row["started_at"]),
                ended_at=parse_stored_timestamp(row["ended_at"]),
                command_count=row["command_count"],
            )
            for row in rows
        ]

    def end_session(self, session_id: str) -> bool:
        """Mark a session ended. Returns False if it is unknown or already ended."""
        with self._writer() as conn:
            return self.end_session_in(conn, session_id)

    def iter_merge_sessions(self) -> Iterator[sqlite3.Row]:
        """Every session with its hostname, oldest first."""
        with self._reader() as conn:
            session_columns = self._columns(conn, "sessions")
            ended_at = "s.ended_at" if "ended_at" in session_columns else "NULL"
            cursor = conn.execute(
                f"""SELECT s.id AS session_id, s.started_at, {ended_at} AS ended_at,
                           h.hostname
                    FROM sessions s
                    JOIN hosts h ON h.id = s.host_id
                    ORDER BY s.started_at ASC, s.id ASC"""
            )
            yield from cursor

    def iter_merge_rows(self) -> Iterator[sqlite3.Row]:
        """Every command with its host and session, oldest first.

        Tolerates copies that predate the ``redacted`` and ``exit_code``
        columns, since a read-only source cannot be upgraded in place.
        """
        with self._reader() as conn:
            columns = self._columns(conn, "commands")
            redacted = "c.redacted" if "redacted" in columns else "0"
            exit_code = "c.exit_code" if "exit_code" in columns else "NULL"
            session_columns = self._columns(conn, "sessions")
            ended_at = "s.ended_at" if "ended_at" in session_columns else "NULL"
            cursor = conn.execute(
                f"""SELECT c.id, c.session_id, c.command, c.timestamp, c.directory,
                           {redacted} AS redacted, {exit_code} AS exit_code,
                           s.started_at, {ended_at} AS ended_at,
                           h.hostname, h.created_at AS host_created_at
                    FROM commands c
                    JOIN sessions s ON s.id = c.session_id
                    JOIN hosts h ON h.id = s.host_id
                    ORDER BY c.timestamp ASC, c.id ASC"""
            )
            yield from cursor
