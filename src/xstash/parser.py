"""Parse X API v2 JSON responses into model objects.

Bookmark pages and post lookups share one shape:
    {"data": [...posts], "includes": {"users": [...], "tweets": [...],
     "media": [...]}, "meta": {"next_token": "..."}}

Malformed entities are logged and skipped so one odd item never sinks a
whole page.
"""

import logging
from typing import Callable, TypeVar

from .models import BookmarksPage, LookupResult, Media, Post, User

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _parse_many(
    items: list[dict] | None, build: Callable[[dict], T], kind: str
) -> list[T]:
    parsed: list[T] = []
    for item in items or []:
        try:
            parsed.append(build(item))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            item_id = "?"
            if isinstance(item, dict):
                item_id = item.get("id") or item.get("media_key") or "?"
            logger.warning("Skipping malformed %s %s: %s", kind, item_id, e)
    return parsed


def parse_lookup_response(data: dict) -> LookupResult:
    """Parse a ``/2/tweets`` lookup response."""
    includes = data.get("includes") or {}
    return LookupResult(
        posts=_parse_many(data.get("data"), Post.from_api, "post"),
        included_posts=_parse_many(includes.get("tweets"), Post.from_api, "post"),
        users=_parse_many(includes.get("users"), User.from_api, "user"),
        media=_parse_many(includes.get("media"), Media.from_api, "media"),
    )


def parse_bookmarks_response(data: dict) -> BookmarksPage:
    """Parse a ``/2/users/:id/bookmarks`` page."""
    lookup = parse_lookup_response(data)
    meta = data.get("meta") or {}
    return BookmarksPage(
        posts=lookup.posts,
        included_posts=lookup.included_posts,
        users=lookup.users,
        media=lookup.media,
        next_token=meta.get("next_token") or None,
    )
