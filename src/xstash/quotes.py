"""Backfill quoted posts up to a fixed depth.

Starting from a layer of posts, each pass collects the posts they quote,
fetches the ones not stored yet, records ``quoted`` edges for every target
that now exists, and makes those targets the next layer. Replies and
retweets are recorded as edges when their target is already stored but are
never fetched. Quoted posts that cannot be fetched (deleted, protected) are
logged and dropped.
"""

import logging
from typing import Callable, Iterable

from .billing import BillingLedger, UnitPrices
from .client import BookmarkSource, lookup_posts_in_batches
from .clock import now_iso
from .models import Media, Post
from .store import ReferenceEdge, RunCounters, Store

logger = logging.getLogger(__name__)

LOOKUP_ENDPOINT = "/2/tweets"

MediaSink = Callable[[list[Media]], None]


class QuoteResolver:
    def __init__(
        self,
        store: Store,
        ledger: BillingLedger,
        source: BookmarkSource,
        prices: UnitPrices,
        max_depth: int,
        media_sink: MediaSink | None = None,
    ):
        self.store = store
        self.ledger = ledger
        self.source = source
        self.prices = prices
        self.max_depth = max_depth
        self.media_sink = media_sink
        self.lookup_requests = 0
        self.unresolved_count = 0

    def resolve(self, run_id: int, root_posts: Iterable[Post], counters: RunCounters) -> None:
        """Walk quote chains from ``root_posts``, updating ``counters`` as batches commit."""
        layer = list(root_posts)

        for depth in range(1, self.max_depth + 1):
            if not layer:
                break

            immediate: list[ReferenceEdge] = []
            quoted: list[ReferenceEdge] = []
            for post in layer:
                for ref in post.references:
                    edge = ReferenceEdge(post.id, ref.id, ref.type, depth)
                    (quoted if ref.type == "quoted" else immediate).append(edge)

            if immediate:
                # Edges to posts we don't have are skipped by the store.
                self.store.upsert_reference_edges(immediate)

            if not quoted:
                break

            quoted_ids = list(dict.fromkeys(edge.referenced_post_id for edge in quoted))
            existing = self.store.existing_post_ids(quoted_ids)
            missing = [post_id for post_id in quoted_ids if post_id not in existing]
            if missing:
                logger.debug("Depth %d: fetching %d quoted posts", depth, len(missing))
                self._fetch(run_id, missing, counters)
                existing = self.store.existing_post_ids(quoted_ids)

            unresolved = [post_id for post_id in quoted_ids if post_id not in existing]
            if unresolved:
                self.unresolved_count += len(unresolved)
                logger.warning(
                    "Could not resolve %d quoted posts at depth %d: %s",
                    len(unresolved),
                    depth,
                    ", ".join(unresolved),
                )

            resolvable = [edge for edge in quoted if edge.referenced_post_id in existing]
            self.store.upsert_reference_edges(resolvable)

            if depth >= self.max_depth:
                break
            next_ids = dict.fromkeys(edge.referenced_post_id for edge in resolvable)
            layer = self.store.get_posts_by_ids(next_ids)

    def _fetch(self, run_id: int, ids: list[str], counters: RunCounters) -> None:
        for result in lookup_posts_in_batches(self.source, ids):
            self.lookup_requests += 1
            posts = result.all_posts
            users = result.unique_users

            # The read is billed whether or not the writes below succeed.
            self.ledger.record_reads(
                run_id,
                LOOKUP_ENDPOINT,
                post_ids=[post.id for post in posts],
                user_ids=[user.id for user in users],
                prices=self.prices,
            )
            counters.api_posts_read_count += len(posts)
            counters.api_users_read_count += len(users)

            fetched_at = now_iso()
            new_media = 0
            with self.store.transaction():
                self.store.upsert_users(users, fetched_at)
                new_posts = self.store.upsert_posts(posts, fetched_at)
                if self.media_sink is not None:
                    new_media = self.store.upsert_media(result.media, fetched_at)
                    self.store.attach_post_media(posts)
            counters.new_referenced_posts_count += new_posts
            counters.new_media_count += new_media

            if self.media_sink is not None and result.media:
                self.media_sink(result.media)
