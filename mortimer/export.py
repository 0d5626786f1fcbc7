"""Render history entries for export."""

import csv
import io
import json
from enum import Enum
from typing import Iterable

from mortimer.models import Entry

EXPORT_COLUMNS = ["timestamp", "directory", "command", "redacted", "exit_code", "host", "session"]


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    TSV = "tsv"
    PLAIN = "plain"


def _row(entry: Entry) -> dict:
    return {
        "timestamp": entry.timestamp.isoformat(),
        "directory": entry.directory,
        "command": entry.command,
        "redacted": entry.redacted,
        "exit_code": entry.exit_code,
        "host": entry.host,
        "session": entry.session,
    }


def _delimited(entries: Iterable[Entry], delimiter: str) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer, fieldnames=EXPORT_COLUMNS, delimiter=delimiter, lineterminator="\n"
    )
    writer.writeheader()
    for entry in entries:
        row = _row(entry)
        row["redacted"] = int(entry.redacted)
        writer.writerow(row)
    return buffer.getvalue()


def render(entries: Iterable[Entry], fmt: ExportFormat) -> bytes:
    """Render ``entries`` in their given order as UTF-8 bytes.

    >>> from datetime import datetime, timezone
    >>> ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
    >>> render([Entry(command="make", timestamp=ts, directory="/src")], ExportFormat.PLAIN)
    b'make\\n'
    """
    fmt = ExportFormat(fmt)
    if fmt is ExportFormat.JSON:
        text = json.dumps([_row(e) for e in entries], indent=2, ensure_ascii=False) + "\n"
    elif fmt is ExportFormat.CSV:
        text = _delimited(entries, ",")
    elif fmt is ExportFormat.TSV:
        text = _delimited(entries, "\t")
    else:
        text = "".join(f"{entry.command}\n" for entry in entries)
    return text.encode("utf-8")
