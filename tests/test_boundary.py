"""Tests for the sync boundary rules."""

import pytest

from xstash.boundary import (
    BoundaryState,
    max_new_display,
    observe,
    parse_max_new,
    resolve_page_size,
    resolve_requested_max_new,
)
from xstash.exceptions import ConfigError


def run_observations(state: BoundaryState, observations: list[str]) -> tuple[int, BoundaryState]:
    """Feed observations until a stop; return how many were consumed."""
    for i, observed in enumerate(observations, start=1):
        result = observe(state, observed)
        state = result.state
        if result.stop:
            return i, state
    return len(observations), state


class TestObserve:
    def test_incremental_stops_on_known_streak(self):
        state = BoundaryState(mode="incremental", known_boundary_threshold=5)
        consumed, state = run_observations(state, ["new", "new"] + ["existing"] * 10)
        assert consumed == 7
        assert state.new_bookmarks_count == 2
        assert state.known_streak == 5

    def test_new_resets_streak(self):
        state = BoundaryState(mode="incremental", known_boundary_threshold=3)
        result = observe(state, "existing")
        result = observe(result.state, "existing")
        result = observe(result.state, "new")
        assert result.stop is False
        assert result.state.known_streak == 0
        assert result.state.new_bookmarks_count == 1

    def test_initial_ignores_streak(self):
        state = BoundaryState(mode="initial", known_boundary_threshold=2)
        consumed, state = run_observations(state, ["existing"] * 10)
        assert consumed == 10
        assert state.known_streak == 10

    def test_zero_threshold_never_stops_on_streak(self):
        state = BoundaryState(mode="incremental", known_boundary_threshold=0)
        consumed, _ = run_observations(state, ["existing"] * 20)
        assert consumed == 20

    @pytest.mark.parametrize("mode", ["initial", "incremental"])
    def test_cap_stops_on_second_new(self, mode):
        state = BoundaryState(mode=mode, known_boundary_threshold=5, requested_max_new=2)
        first = observe(state, "new")
        assert first.stop is False
        second = observe(first.state, "new")
        assert second.stop is True
        assert second.state.new_bookmarks_count == 2

    def test_observe_does_not_mutate_input(self):
        state = BoundaryState(mode="incremental", known_boundary_threshold=5)
        observe(state, "new")
        assert state.new_bookmarks_count == 0


class TestPageSize:
    def test_initial_uses_max(self):
        assert resolve_page_size("initial", 5, 20) == 100

    @pytest.mark.parametrize(
        "configured,expected",
        [(20, 20), (200, 100), (2, 5)],
    )
    def test_incremental_configured_is_clamped(self, configured, expected):
        assert resolve_page_size("incremental", 5, configured) == expected

    @pytest.mark.parametrize(
        "threshold,expected",
        [(3, 5), (5, 5), (50, 50), (500, 100), (0, 5)],
    )
    def test_incremental_follows_threshold(self, threshold, expected):
        assert resolve_page_size("incremental", threshold) == expected


class TestMaxNew:
    @pytest.mark.parametrize("raw", ["all", "ALL", " all "])
    def test_all_is_unbounded(self, raw):
        assert parse_max_new(raw) is None

    def test_positive_integer(self):
        assert parse_max_new("25") == 25
        assert parse_max_new(7) == 7

    @pytest.mark.parametrize("raw", ["05", "+5", " 5 "])
    def test_integer_spellings(self, raw):
        assert parse_max_new(raw) == 5

    @pytest.mark.parametrize("raw", ["0", "-3", "abc", "1.5", "", 2.5, True])
    def test_invalid_values(self, raw):
        with pytest.raises(ConfigError):
            parse_max_new(raw)

    def test_explicit_beats_defaults(self):
        assert resolve_requested_max_new("initial", "10", None, 200) == 10
        assert resolve_requested_max_new("incremental", "all", 50, 200) is None

    def test_mode_defaults(self):
        assert resolve_requested_max_new("initial", None, None, 200) == 200
        assert resolve_requested_max_new("incremental", None, None, 200) is None
        assert resolve_requested_max_new("incremental", None, 30, 200) == 30

    def test_display(self):
        assert max_new_display(None) == "all"
        assert max_new_display(12) == "12"
