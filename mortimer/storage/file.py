"""Append-only flat file backend.

Each ``log`` appends one record under an advisory exclusive lock; readers
never lock and simply ignore a trailing record that is still being written.
No tokens are kept: a redacted value written here is gone for good.
"""

import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Optional

from mortimer.config import BackendKind, MortimerConfig
from mortimer.errors import IoFailure, Locked, NotFound, ParseFailure
from mortimer.models import CommandRef, Entry, HistoryStats
from mortimer.redaction import RedactionEngine
from mortimer.search import SearchEngine
from mortimer.shells import IMPORTED_DIRECTORY, ShellRecord
from mortimer.storage.base import HistoryBackend
from mortimer.storage.legacy import decode_records, format_record, parse_record

if os.name == "nt":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

# Seconds between attempts to take the append lock
LOCK_POLL_INTERVAL = 0.05


def _try_lock(handle: BinaryIO) -> bool:
    try:
        if os.name == "nt":
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        return False
    return True


def _unlock(handle: BinaryIO) -> None:
    if os.name == "nt":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class FileBackend(HistoryBackend):
    """History kept in a single append-only text file."""

    kind = BackendKind.FILE

    def __init__(
        self,
        config: MortimerConfig,
        redactor: Optional[RedactionEngine] = None,
        searcher: Optional[SearchEngine] = None,
    ):
        super().__init__(config, redactor, searcher)
        self.path = Path(config.history_file).expanduser()

    # ------------------------------------------------------------------
    # File access
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[BinaryIO]:
        """Open the history file for appending and hold the exclusive lock."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.path, "ab")
        except OSError as exc:
            raise IoFailure(f"cannot open {self.path}: {exc}") from exc
        try:
            deadline = time.monotonic() + self.config.lock_timeout
            while not _try_lock(handle):
                if time.monotonic() >= deadline:
                    raise Locked(
                        f"{self.path} still locked after {self.config.lock_timeout:.1f}s"
                    )
                time.sleep(LOCK_POLL_INTERVAL)
            try:
                yield handle
            finally:
                _unlock(handle)
        finally:
            handle.close()

    def _append(self, records: list[str]) -> int:
        """Append encoded records in one write; returns the offset of the first."""
        data = "".join(records).encode("utf-8")
        with self._locked() as handle:
            try:
                handle.seek(0, os.SEEK_END)
                offset = handle.tell()
                handle.write(data)
                handle.flush()
            except OSError as exc:
                raise IoFailure(f"cannot write {self.path}: {exc}") from exc
        return offset

    def _read(self) -> str:
        try:
            return self.path.read_bytes().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return ""
        except OSError as exc:
            raise IoFailure(f"cannot read {self.path}: {exc}") from exc

    def _load(self) -> list[Entry]:
        """All decodable records, newest first."""
        records = []
        failures = 0
        for item in decode_records(self._read()):
            if isinstance(item, ParseFailure):
                failures += 1
                logger.debug("Unreadable record in %s: %s", self.path, item)
                continue
            records.append(item)
        if failures:
            logger.warning("Skipped %d unreadable record(s) in %s", failures, self.path)
        # Later appends first among equal timestamps
        records.reverse()
        records.sort(key=lambda entry: entry.timestamp, reverse=True)
        return records

    # ------------------------------------------------------------------
    # HistoryBackend
    # ------------------------------------------------------------------

    def _log(
        self, command: str, directory: str, exit_code: Optional[int], timestamp: datetime
    ) -> CommandRef:
        result = self.redactor.redact(command, extract_tokens=False)
        entry = Entry(
            command=result.text,
            timestamp=timestamp,
            directory=directory,
            redacted=result.matched,
            exit_code=exit_code,
        )
        offset = self._append([format_record(entry)])
        return CommandRef(backend=self.kind.value, timestamp=timestamp, offset=offset)

    def get(self, ref: CommandRef) -> Entry:
        if ref.offset is None:
            raise NotFound("reference has no file offset")
        try:
            with open(self.path, "rb") as handle:
                handle.seek(ref.offset)
                line = handle.readline()
        except FileNotFoundError as exc:
            raise NotFound(f"history file not found: {self.path}") from exc
        except OSError as exc:
            raise IoFailure(f"cannot read {self.path}: {exc}") from exc
        if not line.endswith(b"\n"):
            raise NotFound(f"no record at offset {ref.offset}")
        try:
            return parse_record(line.decode("utf-8", errors="replace").rstrip("\n"))
        except ParseFailure as exc:
            raise NotFound(f"no record at offset {ref.offset}") from exc

    def entries(self) -> Iterator[Entry]:
        return iter(self._load())

    def stats(self) -> HistoryStats:
        records = self._load()
        timestamps = [entry.timestamp for entry in records]
        return HistoryStats(
            backend=self.kind.value,
            total_commands=len(records),
            unique_commands=len({entry.command for entry in records}),
            redacted_commands=sum(1 for entry in records if entry.redacted),
            directories=len({entry.directory for entry in records}),
            oldest=min(timestamps) if timestamps else None,
            newest=max(timestamps) if timestamps else None,
        )

    def _clear(self) -> int:
        with self._locked() as handle:
            count = len(self._load())
            try:
                handle.truncate(0)
            except OSError as exc:
                raise IoFailure(f"cannot truncate {self.path}: {exc}") from exc
        logger.info("Cleared %d command(s) from %s", count, self.path)
        return count

    def _trim(self, keep: int) -> int:
        """Rewrite the file with only the ``keep`` newest records.

        Unreadable lines are dropped by the rewrite.
        """
        with self._locked() as handle:
            records = self._load()
            if len(records) <= keep:
                return 0
            data = "".join(format_record(entry) for entry in reversed(records[:keep]))
            try:
                handle.truncate(0)
                handle.write(data.encode("utf-8"))
                handle.flush()
            except OSError as exc:
                raise IoFailure(f"cannot rewrite {self.path}: {exc}") from exc
        return len(records) - keep

    def _import(self, records: Iterable[ShellRecord]) -> tuple[int, int]:
        lines = []
        for record in records:
            result = self.redactor.redact(record.command, extract_tokens=False)
            lines.append(
                format_record(
                    Entry(
                        command=result.text,
                        timestamp=record.timestamp,
                        directory=IMPORTED_DIRECTORY,
                        redacted=result.matched,
                    )
                )
            )
        if lines:
            self._append(lines)
        return len(lines), 0
