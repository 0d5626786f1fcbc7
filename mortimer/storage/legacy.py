"""Flat history file record codec.

Current records are one line each, tab separated::

    2024-05-01T12:00:00.000000+00:00<TAB>/home/me<TAB>0<TAB>git status

Fields are timestamp, directory, redacted flag, command and an optional exit
code. Backslash, tab, CR and LF inside a field are escaped so a record never
spans lines; readers ignore any extra trailing fields.

Older files use ``YYYY-MM-DD HH:MM:SS | directory | command`` with multi-line
commands written as raw continuation lines. Both shapes can be mixed in one
file.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Iterator, Optional, Union

from mortimer.errors import ParseFailure
from mortimer.models import Entry, as_utc, isoformat_utc

logger = logging.getLogger(__name__)

LEGACY_SEPARATOR = " | "
LEGACY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_ESCAPES = {"\\": "\\\\", "\t": "\\t", "\n": "\\n", "\r": "\\r"}
_UNESCAPES = {"\\": "\\", "t": "\t", "n": "\n", "r": "\r"}
_UNESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)


def escape_field(value: str) -> str:
    r"""
    >>> escape_field("a\tb\nc")
    'a\\tb\\nc'
    """
    return "".join(_ESCAPES.get(char, char) for char in value)


def unescape_field(value: str) -> str:
    r"""
    >>> unescape_field(r"a\tb\\n")
    'a\tb\\n'
    """
    return _UNESCAPE_RE.sub(lambda m: _UNESCAPES.get(m.group(1), m.group(0)), value)


def parse_timestamp(value: str) -> datetime:
    """Accept ISO-8601, legacy ``%Y-%m-%d %H:%M:%S`` (UTC) or epoch seconds.

    >>> parse_timestamp("2025-10-27 19:39:35").isoformat()
    '2025-10-27T19:39:35+00:00'
    >>> parse_timestamp("0").year
    1970
    """
    value = value.strip()
    if value.isdigit():
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (OverflowError, OSError) as exc:
            raise ValueError(f"epoch out of range: {value}") from exc
    try:
        return as_utc(datetime.strptime(value, LEGACY_TIME_FORMAT))
    except ValueError:
        pass
    return as_utc(datetime.fromisoformat(value))


def format_record(entry: Entry) -> str:
    """Encode an entry as one newline-terminated record line."""
    fields = [
        isoformat_utc(entry.timestamp),
        escape_field(entry.directory),
        "1" if entry.redacted else "0",
        escape_field(entry.command),
    ]
    if entry.exit_code is not None:
        fields.append(str(entry.exit_code))
    return "\t".join(fields) + "\n"


def _parse_current(line: str) -> Optional[Entry]:
    fields = line.split("\t")
    if len(fields) < 4 or fields[2] not in ("0", "1"):
        return None
    try:
        timestamp = parse_timestamp(fields[0])
    except ValueError:
        return None
    exit_code = None
    if len(fields) > 4 and fields[4].lstrip("-").isdigit():
        exit_code = int(fields[4])
    return Entry(
        command=unescape_field(fields[3]),
        timestamp=timestamp,
        directory=unescape_field(fields[1]),
        redacted=fields[2] == "1",
        exit_code=exit_code,
    )


def _parse_legacy(line: str) -> Optional[Entry]:
    parts = line.split(LEGACY_SEPARATOR, 2)
    if len(parts) != 3:
        return None
    try:
        timestamp = parse_timestamp(parts[0])
    except ValueError:
        return None
    return Entry(command=parts[2], timestamp=timestamp, directory=parts[1].strip())


def parse_record(line: str, line_number: Optional[int] = None) -> Entry:
    """Decode a single record line in either shape.

    >>> parse_record("2025-10-27 19:39:35 | /tmp | echo a | wc").command
    'echo a | wc'
    """
    entry, _ = _decode_line(line.rstrip("\r"))
    if entry is None:
        raise ParseFailure("not a history record", line_number=line_number)
    return entry


def _decode_line(line: str) -> tuple[Optional[Entry], bool]:
    """Return the decoded entry (or None) and whether it used the legacy shape."""
    entry = _parse_current(line) if "\t" in line else None
    if entry is not None:
        return entry, False
    return _parse_legacy(line), True


def decode_records(data: str) -> Iterator[Union[Entry, ParseFailure]]:
    """Decode file contents oldest first.

    Undecodable lines are yielded as ``ParseFailure`` instances instead of
    being raised, so one bad line never hides the rest of the file. A final
    line without a newline is an append still in progress and is ignored.
    """
    lines = data.split("\n")
    partial = lines.pop()
    if partial:
        logger.debug("Ignoring incomplete trailing record (%d chars)", len(partial))

    pending: Optional[Entry] = None
    pending_legacy = False
    for number, line in enumerate(lines, start=1):
        line = line.rstrip("\r")
        entry, legacy = _decode_line(line)
        if entry is None:
            if pending is not None and pending_legacy:
                # legacy multi-line command
                pending = pending.model_copy(update={"command": pending.command + "\n" + line})
            elif line.strip():
                if pending is not None:
                    yield pending
                    pending = None
                yield ParseFailure("not a history record", line_number=number)
            continue
        if pending is not None:
            yield pending
        pending = entry
        pending_legacy = legacy
    if pending is not None:
        yield pending
