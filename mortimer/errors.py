"""Error taxonomy for mortimer.

Every failure that crosses a public entry point is one of these. Storage
code translates ``OSError`` and ``sqlite3.Error`` at the boundary so callers
only ever see a ``MortimerError`` subclass.
"""

from typing import Optional


class MortimerError(Exception):
    """Base class for all mortimer failures."""

    kind = "error"


class IoFailure(MortimerError):
    """Reading or writing the history file or database failed."""

    kind = "io"


class ParseFailure(MortimerError):
    """A stored record could not be decoded.

    >>> str(ParseFailure("bad timestamp", line_number=3))
    'line 3: bad timestamp'
    """

    kind = "parse"

    def __init__(self, message: str, line_number: Optional[int] = None):
        self.line_number = line_number
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)


class PatternError(MortimerError):
    """A user-supplied regular expression failed to compile."""

    kind = "pattern"

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"invalid pattern {pattern!r}: {reason}")


class BackendUnsupported(MortimerError):
    """The operation only exists on the database backend.

    >>> BackendUnsupported("tokens").operation
    'tokens'
    """

    kind = "unsupported"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"'{operation}' requires the database backend")


class ConstraintViolation(MortimerError):
    """A referential or uniqueness constraint was breached; nothing was written."""

    kind = "constraint"


class NotFound(MortimerError):
    """A referenced host, session, command or file does not exist."""

    kind = "not_found"


class Locked(MortimerError):
    """The history store stayed locked by another writer past the timeout."""

    kind = "locked"
