"""Unit tests for the search engine.

Tests cover substring, regex and fuzzy matching, the directory / time /
redacted filters, highlight spans, result limits and lazy consumption of
the candidate stream.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from mortimer.config import SearchConfig
from mortimer.errors import PatternError
from mortimer.models import Entry, FrequencyDimension
from mortimer.search import SearchEngine, SearchFilter, frequent, fuzzy_score


def _at(minutes):
    return datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)


def _commands(results):
    return [entry.command for entry in results]


@pytest.fixture
def engine():
    return SearchEngine()


# ------------------------------------------------------------------
# Substring
# ------------------------------------------------------------------


def test_substring_is_case_insensitive_by_default(engine, sample_entries):
    results = list(engine.search(sample_entries, SearchFilter(query="GIT")))
    assert _commands(results) == ["git status", "git commit -m 'wip'"]


def test_substring_case_sensitive(engine, sample_entries):
    assert list(engine.search(sample_entries, SearchFilter(query="GIT", case_sensitive=True))) == []


def test_case_sensitivity_from_config(sample_entries):
    engine = SearchEngine(SearchConfig(case_sensitive=True))
    assert list(engine.search(sample_entries, SearchFilter(query="GIT"))) == []
    assert len(list(engine.search(sample_entries, SearchFilter(query="GIT", case_sensitive=False)))) == 2


def test_empty_query_matches_everything(engine, sample_entries):
    results = list(engine.search(sample_entries, SearchFilter()))
    assert _commands(results) == _commands(sample_entries)


def test_substring_highlights(engine, sample_entries):
    git = list(engine.search(sample_entries, SearchFilter(query="git")))
    assert git[0].highlights == [(0, 3)]

    ls = list(engine.search(sample_entries, SearchFilter(query="l")))
    assert ls[-1].command == "ls -la"
    assert ls[-1].highlights == [(0, 1), (4, 5)]


def test_highlight_disabled(engine, sample_entries):
    results = list(engine.search(sample_entries, SearchFilter(query="git", highlight=False)))
    assert all(entry.highlights == [] for entry in results)


def test_input_entries_are_not_mutated(engine, sample_entries):
    list(engine.search(sample_entries, SearchFilter(query="git")))
    assert sample_entries[0].highlights == []


# ------------------------------------------------------------------
# Regex
# ------------------------------------------------------------------


def test_regex(engine, sample_entries):
    results = list(engine.search(sample_entries, SearchFilter(query=r"^git\s", regex=True)))
    assert _commands(results) == ["git status", "git commit -m 'wip'"]
    assert results[0].highlights == [(0, 4)]


def test_invalid_regex_raises_before_iteration(engine, sample_entries):
    with pytest.raises(PatternError) as exc_info:
        engine.search(sample_entries, SearchFilter(query="(", regex=True))
    assert exc_info.value.pattern == "("


# ------------------------------------------------------------------
# Filters
# ------------------------------------------------------------------


def test_directory_prefix(engine, sample_entries):
    results = list(engine.search(sample_entries, SearchFilter(directory="/proj")))
    assert [e.directory for e in results] == ["/proj", "/proj/sub"]


def test_since_inclusive_before_exclusive(engine, sample_entries):
    search = SearchFilter(since=_at(30), before=_at(50))
    results = list(engine.search(sample_entries, search))
    assert _commands(results) == ["git commit -m 'wip'", "docker compose up"]


def test_naive_datetimes_are_utc(engine, sample_entries):
    search = SearchFilter(since=datetime(2024, 3, 1, 12, 45))
    assert _commands(engine.search(sample_entries, search)) == ["git status"]


def test_redacted_only(engine, sample_entries):
    results = list(engine.search(sample_entries, SearchFilter(redacted_only=True)))
    assert len(results) == 1
    assert results[0].redacted


def test_host_and_session_filters(engine):
    entries = [
        Entry(command="make", timestamp=_at(2), directory="/", host="a", session="s1"),
        Entry(command="make", timestamp=_at(1), directory="/", host="b", session="s2"),
    ]
    assert [e.host for e in engine.search(entries, SearchFilter(hostname="b"))] == ["b"]
    assert [e.session for e in engine.search(entries, SearchFilter(session_id="s1"))] == ["s1"]


def test_limit(engine, sample_entries):
    results = list(engine.search(sample_entries, SearchFilter(limit=2)))
    assert _commands(results) == ["git status", "git commit -m 'wip'"]


def test_limit_zero(engine, sample_entries):
    assert list(engine.search(sample_entries, SearchFilter(limit=0))) == []


def test_search_consumes_candidates_lazily(engine, sample_entries):
    """A limit of one pulls exactly one candidate from the source."""
    consumed = []

    def source():
        for entry in sample_entries:
            consumed.append(entry)
            yield entry

    results = list(engine.search(source(), SearchFilter(limit=1)))
    assert len(results) == 1
    assert len(consumed) == 1


def test_filter_validation():
    with pytest.raises(ValidationError):
        SearchFilter(fuzzy=True, threshold=1.5)
    with pytest.raises(ValidationError):
        SearchFilter(limit=-1)


# ------------------------------------------------------------------
# Fuzzy
# ------------------------------------------------------------------


class TestFuzzy:
    def test_subsequence_ranks_first(self, engine, sample_entries):
        results = list(engine.search(sample_entries, SearchFilter(query="gst", fuzzy=True, threshold=0.5)))
        assert results[0].command == "git status"
        assert results[0].score == pytest.approx(0.5)
        assert results[0].highlights == [(0, 1), (4, 6)]

    def test_equal_scores_newest_first(self, engine, sample_entries):
        results = list(engine.search(sample_entries, SearchFilter(query="git", fuzzy=True)))
        assert _commands(results) == ["git status", "git commit -m 'wip'"]
        assert all(entry.score == 1.0 for entry in results)

    def test_better_match_outranks_newer(self, engine):
        entries = [
            Entry(command="docker ps", timestamp=_at(2), directory="/"),
            Entry(command="docker compose up", timestamp=_at(1), directory="/"),
        ]
        results = list(engine.search(entries, SearchFilter(query="compose", fuzzy=True)))
        assert results[0].command == "docker compose up"

    def test_threshold_is_monotonic(self, engine, sample_entries):
        counts = [
            len(list(engine.search(sample_entries, SearchFilter(query="gitst", fuzzy=True, threshold=t))))
            for t in (0.0, 0.3, 0.6, 0.9)
        ]
        assert counts == sorted(counts, reverse=True)
        assert counts[0] == len(sample_entries)

    def test_scores_stay_in_range(self, engine, sample_entries):
        for entry in engine.search(sample_entries, SearchFilter(query="cmpse", fuzzy=True, threshold=0.0)):
            assert 0.0 <= entry.score <= 1.0

    def test_fuzzy_score_substring(self):
        assert fuzzy_score("status", "git status") == (1.0, [(4, 10)])

    def test_fuzzy_score_no_overlap(self):
        assert fuzzy_score("zzz", "ls")[0] == 0.0


# ------------------------------------------------------------------
# Frequency
# ------------------------------------------------------------------


def test_frequent_commands_ties_alphabetical():
    entries = [
        Entry(command=command, timestamp=_at(i), directory="/")
        for i, command in enumerate(["pwd", "ls", "make", "ls", "make"])
    ]
    rows = frequent(entries, FrequencyDimension.COMMAND, 2)
    assert [(row.value, row.count) for row in rows] == [("ls", 2), ("make", 2)]


def test_frequent_directories(sample_entries):
    rows = frequent(sample_entries, FrequencyDimension.DIRECTORY, 1)
    assert (rows[0].value, rows[0].count) == ("/home/me", 2)
