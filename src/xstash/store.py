"""Durable storage for the bookmark mirror.

All upserts are idempotent and merge field by field: a null coming from a
partial API response never erases a value stored earlier. Engagement
counters, ``raw_json`` and ``fetched_at`` are the exception and always take
the latest fetch.

Every public method runs inside ``transaction()``. Calling it with no
transaction open commits immediately; calling it inside an open
``with store.transaction():`` block joins that block, so a caller can make a
group of mutations all-or-nothing.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Iterable, Iterator, Literal, Sequence

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from .media import UNKNOWN_EXTENSION, resolve_media_target
from .models import Media, Post, User
from .schema import (
    BookmarkTable,
    MediaTable,
    PostMediaTable,
    PostReferenceTable,
    PostTable,
    SyncRunTable,
    UserTable,
)
from .storage import create_sqlite_engine, migrate_schema, session_scope

logger = logging.getLogger(__name__)

BookmarkObservation = Literal["new", "existing"]
SyncMode = Literal["initial", "incremental"]

# Keeps IN (...) lists well under SQLite's bound-parameter limit.
_ID_CHUNK = 500


def _chunks(items: Sequence[str], size: int = _ID_CHUNK) -> Iterator[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


@dataclass(frozen=True)
class ReferenceEdge:
    post_id: str
    referenced_post_id: str
    reference_type: str
    depth: int = 1


@dataclass
class RunCounters:
    new_bookmarks_count: int = 0
    new_referenced_posts_count: int = 0
    new_media_count: int = 0
    api_posts_read_count: int = 0
    api_users_read_count: int = 0

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class SyncRun:
    id: int
    started_at: str
    completed_at: str | None
    status: str
    mode: str
    requested_max_new: int | None
    counters: RunCounters
    estimated_cost_usd: float
    error_message: str | None


def _run_from_row(row: SyncRunTable) -> SyncRun:
    return SyncRun(
        id=row.id,
        started_at=row.started_at,
        completed_at=row.completed_at,
        status=row.status,
        mode=row.mode,
        requested_max_new=row.requested_max_new,
        counters=RunCounters(
            new_bookmarks_count=row.new_bookmarks_count,
            new_referenced_posts_count=row.new_referenced_posts_count,
            new_media_count=row.new_media_count,
            api_posts_read_count=row.api_posts_read_count,
            api_users_read_count=row.api_users_read_count,
        ),
        estimated_cost_usd=row.estimated_cost_usd,
        error_message=row.error_message,
    )


class Store:
    """SQLite-backed store for users, posts, media, bookmarks and runs."""

    def __init__(self, db_path: str | Path, media_root: str | Path | None = None):
        self.db_path = db_path
        if media_root is None:
            media_root = Path(db_path).expanduser().parent / "media"
        self.media_root = Path(media_root)
        self.engine = create_sqlite_engine(db_path)
        self._session: Session | None = None
        migrate_schema(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Open a transaction, or join the one already open."""
        if self._session is not None:
            yield self._session
            return
        with session_scope(self.engine) as session:
            self._session = session
            try:
                yield session
            finally:
                self._session = None

    # ── Users / posts / media ──

    def _existing_keys(self, session: Session, column, keys: list[str]) -> set[str]:
        found: set[str] = set()
        for chunk in _chunks(keys):
            found.update(session.execute(select(column).where(column.in_(chunk))).scalars())
        return found

    def upsert_users(self, users: Iterable[User], fetched_at: str) -> int:
        """Insert or merge users. Returns how many were new."""
        by_id = {user.id: user for user in users}
        if not by_id:
            return 0

        rows = [
            {
                "id": user.id,
                "name": user.name,
                "username": user.username,
                "profile_image_url": user.profile_image_url,
                "verified": user.verified,
                "verified_type": user.verified_type,
                "raw_json": json.dumps(user.raw),
                "fetched_at": fetched_at,
            }
            for user in by_id.values()
        ]
        table = UserTable.__table__
        with self.transaction() as session:
            existing = self._existing_keys(session, table.c.id, list(by_id))
            stmt = insert(table).values(rows)
            merged = ("name", "username", "profile_image_url", "verified", "verified_type")
            set_ = {col: func.coalesce(stmt.excluded[col], table.c[col]) for col in merged}
            set_["raw_json"] = stmt.excluded.raw_json
            set_["fetched_at"] = stmt.excluded.fetched_at
            session.execute(stmt.on_conflict_do_update(index_elements=[table.c.id], set_=set_))
        return len(by_id) - len(existing)

    def upsert_posts(self, posts: Iterable[Post], fetched_at: str) -> int:
        """Insert or merge posts. Returns how many were new."""
        by_id = {post.id: post for post in posts}
        if not by_id:
            return 0

        rows = [
            {
                "id": post.id,
                "author_id": post.author_id,
                "text": post.text or "",
                "full_text": post.full_text,
                "created_at": post.created_at,
                "conversation_id": post.conversation_id,
                "lang": post.lang,
                "possibly_sensitive": post.possibly_sensitive,
                "like_count": post.like_count,
                "retweet_count": post.retweet_count,
                "reply_count": post.reply_count,
                "quote_count": post.quote_count,
                "raw_json": json.dumps(post.raw),
                "fetched_at": fetched_at,
            }
            for post in by_id.values()
        ]
        table = PostTable.__table__
        with self.transaction() as session:
            existing = self._existing_keys(session, table.c.id, list(by_id))
            stmt = insert(table).values(rows)
            merged = ("author_id", "full_text", "created_at", "conversation_id", "lang", "possibly_sensitive")
            set_ = {col: func.coalesce(stmt.excluded[col], table.c[col]) for col in merged}
            # text is NOT NULL, so an absent text arrives as ''
            set_["text"] = func.coalesce(func.nullif(stmt.excluded.text, ""), table.c.text)
            for col in ("like_count", "retweet_count", "reply_count", "quote_count", "raw_json", "fetched_at"):
                set_[col] = stmt.excluded[col]
            session.execute(stmt.on_conflict_do_update(index_elements=[table.c.id], set_=set_))
        return len(by_id) - len(existing)

    def upsert_media(self, media: Iterable[Media], fetched_at: str) -> int:
        """Insert or merge media rows. Returns how many were new.

        A recomputed local path with the unknown extension never replaces a
        stored path that has a real one.
        """
        by_key = {item.media_key: item for item in media}
        if not by_key:
            return 0

        rows = []
        for item in by_key.values():
            target = resolve_media_target(self.media_root, item)
            rows.append(
                {
                    "media_key": item.media_key,
                    "type": item.type,
                    "url": target.url,
                    "preview_image_url": item.preview_image_url,
                    "alt_text": item.alt_text,
                    "width": item.width,
                    "height": item.height,
                    "duration_ms": item.duration_ms,
                    "variants_json": json.dumps(item.raw["variants"]) if item.raw.get("variants") else None,
                    "local_path": str(target.local_path),
                    "raw_json": json.dumps(item.raw),
                    "fetched_at": fetched_at,
                }
            )

        table = MediaTable.__table__
        unknown = f"%.{UNKNOWN_EXTENSION}"
        with self.transaction() as session:
            existing = self._existing_keys(session, table.c.media_key, list(by_key))
            stmt = insert(table).values(rows)
            merged = ("url", "preview_image_url", "alt_text", "width", "height", "duration_ms", "variants_json")
            set_ = {col: func.coalesce(stmt.excluded[col], table.c[col]) for col in merged}
            set_["type"] = stmt.excluded.type
            set_["local_path"] = case(
                (stmt.excluded.local_path.is_(None), table.c.local_path),
                (table.c.local_path.is_(None), stmt.excluded.local_path),
                (
                    and_(
                        stmt.excluded.local_path.like(unknown),
                        ~table.c.local_path.like(unknown),
                    ),
                    table.c.local_path,
                ),
                else_=stmt.excluded.local_path,
            )
            set_["raw_json"] = stmt.excluded.raw_json
            set_["fetched_at"] = stmt.excluded.fetched_at
            session.execute(
                stmt.on_conflict_do_update(index_elements=[table.c.media_key], set_=set_)
            )
        return len(by_key) - len(existing)

    def attach_post_media(self, posts: Iterable[Post]) -> int:
        """Link posts to their stored media. Unknown posts or media keys are skipped."""
        pairs = {(post.id, key) for post in posts for key in post.media_keys}
        if not pairs:
            return 0
        with self.transaction() as session:
            known_posts = self._existing_keys(
                session, PostTable.__table__.c.id, _unique(p for p, _ in pairs)
            )
            known_media = self._existing_keys(
                session, MediaTable.__table__.c.media_key, _unique(k for _, k in pairs)
            )
            rows = [
                {"post_id": post_id, "media_key": key}
                for post_id, key in sorted(pairs)
                if post_id in known_posts and key in known_media
            ]
            if rows:
                stmt = insert(PostMediaTable.__table__).values(rows)
                session.execute(stmt.on_conflict_do_nothing())
        return len(rows)

    def media_local_path(self, media_key: str) -> str | None:
        with self.transaction() as session:
            return session.execute(
                select(MediaTable.local_path).where(MediaTable.media_key == media_key)
            ).scalar_one_or_none()

    def set_media_local_path(self, media_key: str, local_path: str | Path) -> None:
        with self.transaction() as session:
            session.execute(
                update(MediaTable)
                .where(MediaTable.media_key == media_key)
                .values(local_path=str(local_path))
            )

    def post_exists(self, post_id: str) -> bool:
        return post_id in self.existing_post_ids([post_id])

    def existing_post_ids(self, ids: Iterable[str]) -> set[str]:
        unique = _unique(ids)
        if not unique:
            return set()
        with self.transaction() as session:
            return self._existing_keys(session, PostTable.__table__.c.id, unique)

    def get_posts_by_ids(self, ids: Iterable[str]) -> list[Post]:
        """Rehydrate stored posts from their raw payloads, in ``ids`` order."""
        unique = _unique(ids)
        found: dict[str, Post] = {}
        with self.transaction() as session:
            for chunk in _chunks(unique):
                rows = session.execute(
                    select(PostTable.id, PostTable.raw_json).where(PostTable.id.in_(chunk))
                )
                for post_id, raw_json in rows:
                    found[post_id] = Post.from_api(json.loads(raw_json))
        return [found[post_id] for post_id in unique if post_id in found]

    # ── Bookmarks ──

    def has_any_bookmarks(self) -> bool:
        with self.transaction() as session:
            return session.execute(select(BookmarkTable.post_id).limit(1)).first() is not None

    def bookmark_count(self) -> int:
        with self.transaction() as session:
            return session.execute(select(func.count()).select_from(BookmarkTable)).scalar_one()

    def bookmark_exists(self, post_id: str) -> bool:
        with self.transaction() as session:
            return session.get(BookmarkTable, post_id) is not None

    def get_bookmark(self, post_id: str) -> dict | None:
        with self.transaction() as session:
            row = session.get(BookmarkTable, post_id)
            if row is None:
                return None
            return {
                "post_id": row.post_id,
                "discovered_at": row.discovered_at,
                "last_synced_at": row.last_synced_at,
            }

    def observe_bookmark(self, post_id: str, observed_at: str) -> BookmarkObservation:
        """Record a sighting of a bookmarked post.

        ``discovered_at`` is written once, on the first sighting; later
        sightings only move ``last_synced_at``.
        """
        with self.transaction() as session:
            exists = session.execute(
                select(BookmarkTable.post_id).where(BookmarkTable.post_id == post_id)
            ).first()
            if exists:
                session.execute(
                    update(BookmarkTable)
                    .where(BookmarkTable.post_id == post_id)
                    .values(last_synced_at=observed_at)
                )
                return "existing"
            session.execute(
                insert(BookmarkTable.__table__).values(
                    post_id=post_id,
                    discovered_at=observed_at,
                    last_synced_at=observed_at,
                )
            )
            return "new"

    # ── Reference edges ──

    def upsert_reference_edges(self, edges: Iterable[ReferenceEdge]) -> int:
        """Write edges whose endpoints are both stored; keep the smallest depth.

        Edges pointing at a missing post are skipped, not errors. Returns the
        number of edges written.
        """
        by_key: dict[tuple[str, str, str], ReferenceEdge] = {}
        for edge in edges:
            key = (edge.post_id, edge.referenced_post_id, edge.reference_type)
            current = by_key.get(key)
            if current is None or edge.depth < current.depth:
                by_key[key] = edge
        if not by_key:
            return 0

        table = PostReferenceTable.__table__
        with self.transaction() as session:
            endpoints = _unique(
                post_id for edge in by_key.values() for post_id in (edge.post_id, edge.referenced_post_id)
            )
            known = self._existing_keys(session, PostTable.__table__.c.id, endpoints)
            rows = [
                {
                    "post_id": edge.post_id,
                    "referenced_post_id": edge.referenced_post_id,
                    "reference_type": edge.reference_type,
                    "depth": edge.depth,
                }
                for edge in by_key.values()
                if edge.post_id in known and edge.referenced_post_id in known
            ]
            skipped = len(by_key) - len(rows)
            if skipped:
                logger.debug("Skipped %d reference edges with missing endpoints", skipped)
            if not rows:
                return 0
            stmt = insert(table).values(rows)
            session.execute(
                stmt.on_conflict_do_update(
                    index_elements=[table.c.post_id, table.c.referenced_post_id, table.c.reference_type],
                    set_={"depth": func.min(table.c.depth, stmt.excluded.depth)},
                )
            )
        return len(rows)

    def get_reference_edges(self, post_id: str | None = None) -> list[ReferenceEdge]:
        stmt = select(PostReferenceTable).order_by(
            PostReferenceTable.depth, PostReferenceTable.post_id, PostReferenceTable.referenced_post_id
        )
        if post_id is not None:
            stmt = stmt.where(PostReferenceTable.post_id == post_id)
        with self.transaction() as session:
            return [
                ReferenceEdge(
                    post_id=row.post_id,
                    referenced_post_id=row.referenced_post_id,
                    reference_type=row.reference_type,
                    depth=row.depth,
                )
                for row in session.execute(stmt).scalars()
            ]

    # ── Sync runs ──

    def create_run(self, mode: SyncMode, requested_max_new: int | None, started_at: str) -> int:
        with self.transaction() as session:
            run = SyncRunTable(
                started_at=started_at,
                status="running",
                mode=mode,
                requested_max_new=requested_max_new,
            )
            session.add(run)
            session.flush()
            return run.id

    def update_run_counters(self, run_id: int, counters: RunCounters) -> None:
        with self.transaction() as session:
            session.execute(
                update(SyncRunTable).where(SyncRunTable.id == run_id).values(**counters.as_dict())
            )

    def complete_run(self, run_id: int, completed_at: str, estimated_cost_usd: float) -> None:
        with self.transaction() as session:
            session.execute(
                update(SyncRunTable)
                .where(SyncRunTable.id == run_id)
                .values(
                    completed_at=completed_at,
                    status="completed",
                    estimated_cost_usd=estimated_cost_usd,
                )
            )

    def fail_run(
        self, run_id: int, completed_at: str, error_message: str, estimated_cost_usd: float
    ) -> None:
        with self.transaction() as session:
            session.execute(
                update(SyncRunTable)
                .where(SyncRunTable.id == run_id)
                .values(
                    completed_at=completed_at,
                    status="failed",
                    error_message=error_message,
                    estimated_cost_usd=estimated_cost_usd,
                )
            )

    def get_run(self, run_id: int) -> SyncRun | None:
        with self.transaction() as session:
            row = session.get(SyncRunTable, run_id)
            return _run_from_row(row) if row is not None else None

    def latest_run(self) -> SyncRun | None:
        with self.transaction() as session:
            row = session.execute(
                select(SyncRunTable).order_by(SyncRunTable.id.desc()).limit(1)
            ).scalar_one_or_none()
            return _run_from_row(row) if row is not None else None
