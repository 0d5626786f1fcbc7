"""Parsers for native bash, zsh and fish history files.

Each parser yields ``ShellRecord`` objects oldest first. Lines that cannot be
understood are counted in ``ShellHistory.skipped`` rather than raised, the same
way migration treats malformed flat-file records.
"""

import logging
import os
import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator, NamedTuple, Optional

from mortimer.errors import IoFailure, NotFound

logger = logging.getLogger(__name__)

IMPORTED_DIRECTORY = "<imported>"

_ZSH_EXTENDED_RE = re.compile(r"^: (\d+):\d+;(.*)$")
_BASH_TIMESTAMP_RE = re.compile(r"^#(\d{9,11})$")


class Shell(str, Enum):
    BASH = "bash"
    ZSH = "zsh"
    FISH = "fish"


class ShellRecord(NamedTuple):
    command: str
    timestamp: datetime


def default_history_path(shell: Shell) -> Path:
    """Where each shell keeps its history by default."""
    home = Path.home()
    if shell is Shell.BASH:
        return home / ".bash_history"
    if shell is Shell.ZSH:
        return Path(os.getenv("ZDOTDIR") or home) / ".zsh_history"
    data_home = Path(os.getenv("XDG_DATA_HOME") or home / ".local" / "share")
    return data_home / "fish" / "fish_history"


def _epoch(value: str) -> datetime:
    """Seconds since the epoch as UTC; ValueError when out of range."""
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"epoch out of range: {value}") from exc


class ShellHistory:
    """Iterates the records of one shell history file.

    >>> import tempfile, pathlib
    >>> path = pathlib.Path(tempfile.mkdtemp()) / "zsh_history"
    >>> _ = path.write_text(": 1700000000:0;git status\\n")
    >>> [r.command for r in ShellHistory(Shell.ZSH, path)]
    ['git status']
    """

    def __init__(self, shell: Shell, path: Optional[Path] = None):
        self.shell = Shell(shell)
        self.path = Path(path) if path is not None else default_history_path(self.shell)
        self.skipped = 0

    def _lines(self) -> list[str]:
        if not self.path.exists():
            raise NotFound(f"{self.shell.value} history not found: {self.path}")
        try:
            # zsh metafies non-ASCII bytes; undecodable bytes are replaced
            return self.path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as exc:
            raise IoFailure(f"cannot read {self.path}: {exc}") from exc

    def __iter__(self) -> Iterator[ShellRecord]:
        self.skipped = 0
        parser = {
            Shell.BASH: self._bash,
            Shell.ZSH: self._zsh,
            Shell.FISH: self._fish,
        }[self.shell]
        yield from parser(self._lines())

    def _bash(self, lines: list[str]) -> Iterator[ShellRecord]:
        # HISTTIMEFORMAT writes "#<epoch>" before each command
        now = datetime.now(timezone.utc)
        pending: Optional[datetime] = None
        for line in lines:
            match = _BASH_TIMESTAMP_RE.match(line)
            if match:
                try:
                    pending = _epoch(match.group(1))
                except ValueError:
                    self.skipped += 1
                    pending = None
                continue
            if not line.strip():
                continue
            if line.startswith("#"):
                self.skipped += 1
                continue
            yield ShellRecord(line, pending or now)
            pending = None

    def _zsh(self, lines: list[str]) -> Iterator[ShellRecord]:
        now = datetime.now(timezone.utc)
        current: Optional[list] = None
        for line in lines:
            match = _ZSH_EXTENDED_RE.match(line)
            if match:
                if current is not None:
                    yield ShellRecord(*current)
                    current = None
                try:
                    current = [match.group(2), _epoch(match.group(1))]
                except ValueError:
                    self.skipped += 1
            elif current is not None and current[0].endswith("\\"):
                current[0] = current[0] + "\n" + line
            elif line.strip():
                if current is not None:
                    yield ShellRecord(*current)
                # plain (non-extended) history line
                current = [line, now]
        if current is not None:
            yield ShellRecord(*current)

    def _fish(self, lines: list[str]) -> Iterator[ShellRecord]:
        command: Optional[str] = None
        when: Optional[datetime] = None
        for raw in lines:
            line = raw.strip()
            if line.startswith("- cmd: "):
                if command is not None:
                    if when is None:
                        self.skipped += 1
                    else:
                        yield ShellRecord(command, when)
                command = line[len("- cmd: "):].replace("\\n", "\n").replace("\\\\", "\\")
                when = None
            elif line.startswith("when: "):
                try:
                    when = _epoch(line[len("when: "):])
                except ValueError:
                    logger.debug("Bad fish timestamp: %s", line)
        if command is not None:
            if when is None:
                self.skipped += 1
            else:
                yield ShellRecord(command, when)
