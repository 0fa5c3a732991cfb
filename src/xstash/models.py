"""Data models for X API v2 payloads.

Each entity keeps the fields xstash needs as typed attributes and the full
response dict in ``raw``, so platform extras survive the round trip through
the database untouched.
"""

from dataclasses import dataclass, field
from typing import Any, Literal

ReferenceType = Literal["quoted", "replied_to", "retweeted"]
REFERENCE_TYPES: tuple[str, ...] = ("quoted", "replied_to", "retweeted")


def _require_id(payload: dict, key: str) -> str:
    value = payload.get(key)
    if value is None or str(value) == "":
        raise ValueError(f"payload missing required field {key!r}")
    return str(value)


@dataclass(frozen=True)
class User:
    id: str
    name: str | None = None
    username: str | None = None  # handle without @
    profile_image_url: str | None = None
    verified: bool | None = None
    verified_type: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, payload: dict) -> "User":
        return cls(
            id=_require_id(payload, "id"),
            name=payload.get("name"),
            username=payload.get("username"),
            profile_image_url=payload.get("profile_image_url"),
            verified=payload.get("verified"),
            verified_type=payload.get("verified_type"),
            raw=dict(payload),
        )


@dataclass(frozen=True)
class PostReference:
    type: str  # one of REFERENCE_TYPES
    id: str


@dataclass(frozen=True)
class Post:
    id: str
    author_id: str | None = None
    text: str | None = None
    created_at: str | None = None  # ISO 8601 as returned by the API
    conversation_id: str | None = None
    lang: str | None = None
    possibly_sensitive: bool | None = None
    like_count: int = 0
    retweet_count: int = 0
    reply_count: int = 0
    quote_count: int = 0
    references: tuple[PostReference, ...] = ()
    media_keys: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, payload: dict) -> "Post":
        metrics = payload.get("public_metrics") or {}
        references = tuple(
            PostReference(type=ref["type"], id=str(ref["id"]))
            for ref in payload.get("referenced_tweets") or []
            if ref.get("type") in REFERENCE_TYPES and ref.get("id")
        )
        attachments = payload.get("attachments") or {}
        return cls(
            id=_require_id(payload, "id"),
            author_id=payload.get("author_id"),
            text=payload.get("text"),
            created_at=payload.get("created_at"),
            conversation_id=payload.get("conversation_id"),
            lang=payload.get("lang"),
            possibly_sensitive=payload.get("possibly_sensitive"),
            like_count=int(metrics.get("like_count") or 0),
            retweet_count=int(metrics.get("retweet_count") or 0),
            reply_count=int(metrics.get("reply_count") or 0),
            quote_count=int(metrics.get("quote_count") or 0),
            references=references,
            media_keys=tuple(attachments.get("media_keys") or ()),
            raw=dict(payload),
        )

    @property
    def full_text(self) -> str | None:
        """Long-form text of note tweets; None for regular posts."""
        note = self.raw.get("note_tweet")
        if isinstance(note, dict):
            return note.get("text")
        return None

    @property
    def quoted_ids(self) -> list[str]:
        return [ref.id for ref in self.references if ref.type == "quoted"]


@dataclass(frozen=True)
class MediaVariant:
    url: str | None = None
    content_type: str | None = None
    bit_rate: int | None = None


@dataclass(frozen=True)
class Media:
    media_key: str
    type: str
    url: str | None = None
    preview_image_url: str | None = None
    alt_text: str | None = None
    width: int | None = None
    height: int | None = None
    duration_ms: int | None = None
    variants: tuple[MediaVariant, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, payload: dict) -> "Media":
        variants = tuple(
            MediaVariant(
                url=v.get("url"),
                content_type=v.get("content_type"),
                bit_rate=v.get("bit_rate"),
            )
            for v in payload.get("variants") or []
        )
        return cls(
            media_key=_require_id(payload, "media_key"),
            type=payload.get("type") or "unknown",
            url=payload.get("url"),
            preview_image_url=payload.get("preview_image_url"),
            alt_text=payload.get("alt_text"),
            width=payload.get("width"),
            height=payload.get("height"),
            duration_ms=payload.get("duration_ms"),
            variants=variants,
            raw=dict(payload),
        )

    def best_variant(self) -> MediaVariant | None:
        """Highest bit-rate variant, for videos and GIFs."""
        if not self.variants:
            return None
        return max(self.variants, key=lambda v: v.bit_rate or 0)


def _dedupe_by_id(items: list) -> list:
    by_id: dict[str, Any] = {}
    for item in items:
        by_id[item.id] = item
    return list(by_id.values())


@dataclass
class LookupResult:
    """Posts, users and media returned by a batch post lookup."""

    posts: list[Post] = field(default_factory=list)
    included_posts: list[Post] = field(default_factory=list)
    users: list[User] = field(default_factory=list)
    media: list[Media] = field(default_factory=list)

    @property
    def all_posts(self) -> list[Post]:
        """Requested and included posts, de-duplicated by id (last wins)."""
        return _dedupe_by_id(self.posts + self.included_posts)

    @property
    def unique_users(self) -> list[User]:
        return _dedupe_by_id(self.users)


@dataclass
class BookmarksPage(LookupResult):
    """A single page of the bookmarks timeline."""

    next_token: str | None = None
