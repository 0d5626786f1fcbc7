"""Search over history entries: substring, regex and fuzzy matching.

The engine is backend-agnostic. It consumes an iterable of entries ordered
newest first and yields the survivors lazily; only fuzzy ranking needs to
materialize candidates before yielding.
"""

import logging
import re
from collections import Counter
from datetime import datetime
from difflib import SequenceMatcher
from itertools import islice
from typing import Iterable, Iterator, Optional

from pydantic import BaseModel, Field, field_validator

from mortimer.config import SearchConfig
from mortimer.errors import PatternError
from mortimer.models import Entry, FrequencyDimension, FrequencyRow, as_utc

logger = logging.getLogger(__name__)


class SearchFilter(BaseModel):
    """Query plus filters. Unset knobs fall back to ``SearchConfig``."""

    query: str = ""
    regex: bool = False
    fuzzy: bool = False
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    case_sensitive: Optional[bool] = None
    directory: Optional[str] = None
    since: Optional[datetime] = None
    before: Optional[datetime] = None
    redacted_only: bool = False
    hostname: Optional[str] = None
    session_id: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=0)
    highlight: Optional[bool] = None

    @field_validator("since", "before")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


def merge_spans(spans: Iterable[tuple[int, int]]) -> list[tuple[int, int]]:
    """Sort spans and merge overlapping or adjacent ones.

    >>> merge_spans([(4, 6), (0, 2), (2, 3)])
    [(0, 3), (4, 6)]
    """
    merged: list[tuple[int, int]] = []
    for start, end in sorted(spans):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(end, merged[-1][1]))
        else:
            merged.append((start, end))
    return merged


def compile_query(query: str, case_sensitive: bool) -> re.Pattern:
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        return re.compile(query, flags)
    except re.error as exc:
        raise PatternError(query, exc.msg) from exc


def _subsequence_positions(query: str, text: str) -> Optional[list[int]]:
    """Positions of ``query``'s characters appearing in order in ``text``.

    >>> _subsequence_positions("gst", "git status")
    [0, 4, 5]
    >>> _subsequence_positions("xyz", "git status") is None
    True
    """
    positions = []
    cursor = 0
    for char in query:
        found = text.find(char, cursor)
        if found < 0:
            return None
        positions.append(found)
        cursor = found + 1
    return positions


def fuzzy_score(query: str, text: str) -> tuple[float, list[tuple[int, int]]]:
    """Score ``text`` against ``query`` in [0, 1] and return matched spans.

    A substring hit scores 1.0. Otherwise the score is the better of the
    in-order subsequence density and ``SequenceMatcher.ratio()``.

    >>> fuzzy_score("status", "git status")
    (1.0, [(4, 10)])
    >>> fuzzy_score("zzz", "ls")[0]
    0.0
    """
    if not query:
        return 1.0, []
    found = text.find(query)
    if found >= 0:
        return 1.0, [(found, found + len(query))]

    best = 0.0
    spans: list[tuple[int, int]] = []
    positions = _subsequence_positions(query, text)
    if positions:
        window = positions[-1] - positions[0] + 1
        best = len(query) / window
        spans = merge_spans((p, p + 1) for p in positions)

    matcher = SequenceMatcher(None, query, text, autojunk=False)
    ratio = matcher.ratio()
    if ratio > best:
        best = ratio
        spans = merge_spans(
            (block.b, block.b + block.size)
            for block in matcher.get_matching_blocks()
            if block.size
        )
    return round(best, 6), spans


class SearchEngine:
    """Filters and ranks entries.

    >>> from datetime import datetime, timezone
    >>> ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
    >>> entries = [Entry(command="git status", timestamp=ts, directory="/repo")]
    >>> [e.command for e in SearchEngine().search(entries, SearchFilter(query="STATUS"))]
    ['git status']
    """

    def __init__(self, config: Optional[SearchConfig] = None):
        self.config = config or SearchConfig()

    def _case_sensitive(self, search: SearchFilter) -> bool:
        if search.case_sensitive is None:
            return self.config.case_sensitive
        return search.case_sensitive

    def _highlight(self, search: SearchFilter) -> bool:
        if search.highlight is None:
            return self.config.highlight
        return search.highlight

    def passes_filters(self, entry: Entry, search: SearchFilter) -> bool:
        """Apply the non-text filters (directory, time, host, session, redacted)."""
        if search.directory and not entry.directory.startswith(search.directory):
            return False
        if search.since is not None and entry.timestamp < search.since:
            return False
        if search.before is not None and entry.timestamp >= search.before:
            return False
        if search.redacted_only and not entry.redacted:
            return False
        if search.hostname is not None and entry.host != search.hostname:
            return False
        if search.session_id is not None and entry.session != search.session_id:
            return False
        return True

    def search(self, entries: Iterable[Entry], search: SearchFilter) -> Iterator[Entry]:
        """Return matching entries lazily, newest first unless fuzzy ranking applies.

        Raises PatternError immediately for a regex query that does not compile.
        """
        case_sensitive = self._case_sensitive(search)
        highlight = self._highlight(search)
        candidates = (e for e in entries if self.passes_filters(e, search))

        if search.regex:
            regex = compile_query(search.query, case_sensitive)
            results = self._regex(candidates, regex, highlight)
        elif search.fuzzy:
            threshold = (
                self.config.fuzzy_threshold if search.threshold is None else search.threshold
            )
            results = self._fuzzy(candidates, search.query, case_sensitive, threshold, highlight)
        else:
            results = self._substring(candidates, search.query, case_sensitive, highlight)

        if search.limit is not None:
            results = islice(results, search.limit)
        return results

    def _regex(self, entries, regex: re.Pattern, highlight) -> Iterator[Entry]:
        for entry in entries:
            matches = [m.span() for m in regex.finditer(entry.command) if m.end() > m.start()]
            if matches or regex.search(entry.command):
                if highlight:
                    entry = entry.model_copy(update={"highlights": merge_spans(matches)})
                yield entry

    def _substring(self, entries, query, case_sensitive, highlight) -> Iterator[Entry]:
        needle = query if case_sensitive else query.casefold()
        for entry in entries:
            haystack = entry.command if case_sensitive else entry.command.casefold()
            if needle not in haystack:
                continue
            if highlight and needle:
                spans = []
                start = haystack.find(needle)
                while start >= 0:
                    spans.append((start, start + len(needle)))
                    start = haystack.find(needle, start + len(needle))
                entry = entry.model_copy(update={"highlights": merge_spans(spans)})
            yield entry

    def _fuzzy(self, entries, query, case_sensitive, threshold, highlight) -> Iterator[Entry]:
        needle = query if case_sensitive else query.lower()
        scored = []
        for position, entry in enumerate(entries):
            haystack = entry.command if case_sensitive else entry.command.lower()
            score, spans = fuzzy_score(needle, haystack)
            if score < threshold:
                continue
            update: dict = {"score": score}
            if highlight:
                update["highlights"] = spans
            scored.append((entry.model_copy(update=update), position))
        logger.debug("Fuzzy search kept %d candidate(s) at threshold %.2f", len(scored), threshold)
        scored.sort(key=lambda item: (-item[0].score, -item[0].timestamp.timestamp(), item[1]))
        for entry, _ in scored:
            yield entry


def frequent(
    entries: Iterable[Entry], dimension: FrequencyDimension, n: int
) -> list[FrequencyRow]:
    """Top-n values by count; ties broken alphabetically.

    >>> from datetime import datetime, timezone
    >>> ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
    >>> rows = frequent(
    ...     [Entry(command=c, timestamp=ts, directory="/") for c in ["ls", "ls", "pwd"]],
    ...     FrequencyDimension.COMMAND, 1)
    >>> rows[0].value, rows[0].count
    ('ls', 2)
    """
    dimension = FrequencyDimension(dimension)
    counts = Counter(
        entry.command if dimension is FrequencyDimension.COMMAND else entry.directory
        for entry in entries
    )
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [FrequencyRow(value=value, count=count) for value, count in ranked[:n]]
