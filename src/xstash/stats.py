"""Aggregate figures over the local mirror for the ``stats`` command."""

from dataclasses import dataclass, field

from sqlalchemy import func, select

from .billing import BillingLedger
from .schema import BookmarkTable, MediaTable, PostMediaTable, PostTable, UserTable
from .store import Store

TOP_AUTHORS_LIMIT = 10
UNKNOWN_AUTHOR = "(unknown)"


@dataclass
class Stats:
    bookmarks_count: int = 0
    first_discovered_at: str | None = None
    last_discovered_at: str | None = None
    top_authors: list[tuple[str, int]] = field(default_factory=list)
    media_breakdown: list[tuple[str, int]] = field(default_factory=list)
    raw_reads: dict[str, int] = field(default_factory=dict)
    cost_by_type: dict[str, float] = field(default_factory=dict)

    @property
    def total_cost_usd(self) -> float:
        return sum(self.cost_by_type.values())

    def lines(self) -> list[str]:
        out = [
            f"Bookmarks: {self.bookmarks_count}",
            f"Range: {self.first_discovered_at or 'n/a'} .. {self.last_discovered_at or 'n/a'}",
            "Top authors:",
        ]
        out += [f"- @{username}: {count}" for username, count in self.top_authors]
        out.append("Media breakdown:")
        out += [f"- {media_type}: {count}" for media_type, count in self.media_breakdown]
        out.append("API usage (raw reads):")
        out += [f"- {kind}: {self.raw_reads.get(kind, 0)}" for kind in ("post", "user")]
        out.append("Estimated cost (billable dedupe):")
        out += [f"- {kind}: {self.cost_by_type.get(kind, 0.0):.4f} USD" for kind in ("post", "user")]
        out.append(f"- total: {self.total_cost_usd:.4f} USD")
        return out


def collect_stats(store: Store) -> Stats:
    ledger = BillingLedger(store)
    author = func.coalesce(UserTable.username, UNKNOWN_AUTHOR)
    author_count = func.count().label("count")
    media_count = func.count().label("count")

    with store.transaction() as session:
        count, first, last = session.execute(
            select(
                func.count(),
                func.min(BookmarkTable.discovered_at),
                func.max(BookmarkTable.discovered_at),
            )
        ).one()

        top_authors = session.execute(
            select(author.label("username"), author_count)
            .select_from(BookmarkTable)
            .join(PostTable, PostTable.id == BookmarkTable.post_id)
            .outerjoin(UserTable, UserTable.id == PostTable.author_id)
            .group_by(author)
            .order_by(author_count.desc(), author.asc())
            .limit(TOP_AUTHORS_LIMIT)
        ).all()

        media_breakdown = session.execute(
            select(MediaTable.type, media_count)
            .select_from(PostMediaTable)
            .join(MediaTable, MediaTable.media_key == PostMediaTable.media_key)
            .join(BookmarkTable, BookmarkTable.post_id == PostMediaTable.post_id)
            .group_by(MediaTable.type)
            .order_by(media_count.desc(), MediaTable.type.asc())
        ).all()

        return Stats(
            bookmarks_count=int(count),
            first_discovered_at=first,
            last_discovered_at=last,
            top_authors=[(username, int(n)) for username, n in top_authors],
            media_breakdown=[(media_type, int(n)) for media_type, n in media_breakdown],
            raw_reads=ledger.raw_read_counts(),
            cost_by_type=ledger.cost_by_resource_type(),
        )
