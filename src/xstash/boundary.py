"""Decide when a sync run has seen enough bookmarks.

The bookmarks feed is newest-first. An ``incremental`` run stops once it
sees ``known_boundary_threshold`` already-stored bookmarks in a row: that
streak means it has reached where the previous run left off. An
``initial`` run has no previous frontier and only stops on the
``requested_max_new`` cap, which applies in both modes and is checked
first.
"""

from dataclasses import dataclass, replace
from typing import Literal

from .exceptions import ConfigError

SyncMode = Literal["initial", "incremental"]
Observation = Literal["new", "existing"]

MIN_BOOKMARKS_PAGE_SIZE = 5
MAX_BOOKMARKS_PAGE_SIZE = 100
DEFAULT_INCREMENTAL_BOOKMARKS_PAGE_SIZE = 5


@dataclass(frozen=True)
class BoundaryState:
    mode: SyncMode
    known_boundary_threshold: int
    requested_max_new: int | None = None
    known_streak: int = 0
    new_bookmarks_count: int = 0


@dataclass(frozen=True)
class BoundaryResult:
    stop: bool
    state: BoundaryState


def observe(state: BoundaryState, observed: Observation) -> BoundaryResult:
    """Fold one bookmark observation into the state and decide whether to stop."""
    is_new = observed == "new"
    state = replace(
        state,
        new_bookmarks_count=state.new_bookmarks_count + (1 if is_new else 0),
        known_streak=0 if is_new else state.known_streak + 1,
    )

    if state.requested_max_new is not None and state.new_bookmarks_count >= state.requested_max_new:
        return BoundaryResult(stop=True, state=state)

    if (
        state.mode == "incremental"
        and state.known_boundary_threshold > 0
        and state.known_streak >= state.known_boundary_threshold
    ):
        return BoundaryResult(stop=True, state=state)

    return BoundaryResult(stop=False, state=state)


def _clamp_page_size(value: int) -> int:
    return max(MIN_BOOKMARKS_PAGE_SIZE, min(MAX_BOOKMARKS_PAGE_SIZE, int(value)))


def resolve_page_size(
    mode: SyncMode,
    known_boundary_threshold: int,
    incremental_page_size: int | None = None,
) -> int:
    """Page size to request from the bookmarks endpoint.

    Initial runs use the largest page. Incremental runs use the configured
    size if any, otherwise a page just big enough to observe the stopping
    streak.
    """
    if mode == "initial":
        return MAX_BOOKMARKS_PAGE_SIZE
    if incremental_page_size is not None and incremental_page_size > 0:
        return _clamp_page_size(incremental_page_size)
    if known_boundary_threshold <= 0:
        return DEFAULT_INCREMENTAL_BOOKMARKS_PAGE_SIZE
    return _clamp_page_size(known_boundary_threshold)


def parse_max_new(raw: str | int) -> int | None:
    """Parse a ``--max-new`` value: a positive integer, or ``all`` for no cap."""
    if isinstance(raw, str) and raw.strip().lower() == "all":
        return None
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        raise ConfigError(f"--max-new must be a positive integer or 'all': {raw}")
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"--max-new must be a positive integer or 'all': {raw}") from None
    if value <= 0:
        raise ConfigError(f"--max-new must be a positive integer or 'all': {raw}")
    return value


def resolve_requested_max_new(
    mode: SyncMode,
    max_new_raw: str | None,
    incremental_default: int | None,
    initial_default: int,
) -> int | None:
    """Explicit ``--max-new`` wins; otherwise the configured default for the mode."""
    if max_new_raw is not None:
        return parse_max_new(max_new_raw)
    if mode == "initial":
        return initial_default
    return incremental_default


def max_new_display(value: int | None) -> str:
    return "all" if value is None else str(value)
