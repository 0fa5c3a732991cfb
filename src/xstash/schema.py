"""SQLAlchemy table definitions for the local bookmark mirror.

Timestamps are ISO 8601 UTC strings. ``raw_json`` columns hold the API
payload verbatim.
"""

from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

CURRENT_SCHEMA_VERSION = 1


class Base(DeclarativeBase):
    pass


class MetaTable(Base):
    __tablename__ = "meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text)


class UserTable(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    profile_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verified: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    verified_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    raw_json: Mapped[str] = mapped_column(Text)
    fetched_at: Mapped[str] = mapped_column(String(32))


class PostTable(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    # Weak reference: the author may not be stored yet.
    author_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    text: Mapped[str] = mapped_column(Text, default="", server_default="")
    full_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    conversation_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    lang: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    possibly_sensitive: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    like_count: Mapped[int] = mapped_column(Integer, default=0)
    retweet_count: Mapped[int] = mapped_column(Integer, default=0)
    reply_count: Mapped[int] = mapped_column(Integer, default=0)
    quote_count: Mapped[int] = mapped_column(Integer, default=0)
    raw_json: Mapped[str] = mapped_column(Text)
    fetched_at: Mapped[str] = mapped_column(String(32))


class BookmarkTable(Base):
    __tablename__ = "bookmarks"

    post_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True
    )
    discovered_at: Mapped[str] = mapped_column(String(32))
    last_synced_at: Mapped[str] = mapped_column(String(32), index=True)


class PostReferenceTable(Base):
    __tablename__ = "post_references"
    __table_args__ = (Index("ix_post_references_ref", "referenced_post_id"),)

    post_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True
    )
    referenced_post_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True
    )
    reference_type: Mapped[str] = mapped_column(String(16), primary_key=True)
    depth: Mapped[int] = mapped_column(Integer, default=1)


class MediaTable(Base):
    __tablename__ = "media"

    media_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(32))
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    preview_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    alt_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    variants_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    local_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_json: Mapped[str] = mapped_column(Text)
    fetched_at: Mapped[str] = mapped_column(String(32))


class PostMediaTable(Base):
    __tablename__ = "post_media"

    post_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True
    )
    media_key: Mapped[str] = mapped_column(
        String(64), ForeignKey("media.media_key", ondelete="CASCADE"), primary_key=True
    )


class SyncRunTable(Base):
    __tablename__ = "sync_runs"
    __table_args__ = (
        CheckConstraint(
            "requested_max_new IS NULL OR requested_max_new > 0",
            name="ck_sync_runs_requested_max_new",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    started_at: Mapped[str] = mapped_column(String(32))
    completed_at: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="running")
    mode: Mapped[str] = mapped_column(String(16))
    requested_max_new: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    new_bookmarks_count: Mapped[int] = mapped_column(Integer, default=0)
    new_referenced_posts_count: Mapped[int] = mapped_column(Integer, default=0)
    new_media_count: Mapped[int] = mapped_column(Integer, default=0)
    api_posts_read_count: Mapped[int] = mapped_column(Integer, default=0)
    api_users_read_count: Mapped[int] = mapped_column(Integer, default=0)
    estimated_cost_usd: Mapped[float] = mapped_column(Float, default=0.0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ApiRequestTable(Base):
    __tablename__ = "api_requests"
    __table_args__ = (
        Index("ix_api_requests_run", "sync_run_id"),
        Index(
            "ix_api_requests_billable_key",
            "billed_day_utc",
            "resource_type",
            "resource_id",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sync_runs.id", ondelete="CASCADE")
    )
    requested_at: Mapped[str] = mapped_column(String(32))
    billed_day_utc: Mapped[str] = mapped_column(String(10))
    resource_type: Mapped[str] = mapped_column(String(8))
    resource_id: Mapped[str] = mapped_column(String(32))
    endpoint: Mapped[str] = mapped_column(String(128))
    unit_price_usd: Mapped[float] = mapped_column(Float)
