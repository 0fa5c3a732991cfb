"""Run one bookmark sync from start to finish.

A run pages through the bookmarks feed newest-first. Each page is written
in its own transaction, so a crash keeps every page committed before it and
the next run picks up from there. The run record ends as ``completed`` or,
on any exception, ``failed`` with the error message; either way its cost
snapshot reflects every read that reached the ledger.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .billing import BillingLedger
from .boundary import (
    BoundaryState,
    SyncMode,
    max_new_display,
    observe,
    resolve_page_size,
    resolve_requested_max_new,
)
from .client import BookmarkSource, iter_bookmark_pages
from .clock import now_iso
from .config import AppConfig, CostConfig
from .exceptions import MediaDownloadError
from .media import resolve_media_target
from .models import BookmarksPage, Media, Post
from .quotes import QuoteResolver
from .store import RunCounters, Store

logger = logging.getLogger(__name__)

BOOKMARKS_ENDPOINT = "/2/users/:id/bookmarks"


@dataclass(frozen=True)
class SyncPlan:
    mode: SyncMode
    requested_max_new: int | None
    page_size: int


@dataclass
class SyncSummary:
    run_id: int
    mode: SyncMode
    requested_max_new: int | None
    counters: RunCounters = field(default_factory=RunCounters)
    pages: int = 0
    raw_api_requests: int = 0
    skipped_media_downloads: int = 0
    unresolved_quotes: int = 0
    run_cost_usd: float = 0.0
    total_cost_usd: float = 0.0

    def lines(self) -> list[str]:
        c = self.counters
        return [
            f"- mode: {self.mode}",
            f"- max-new: {max_new_display(self.requested_max_new)}",
            f"- new bookmarks: {c.new_bookmarks_count}",
            f"- new referenced posts: {c.new_referenced_posts_count}",
            f"- new media: {c.new_media_count}",
            f"- API reads (post): {c.api_posts_read_count}",
            f"- API reads (user): {c.api_users_read_count}",
            f"- raw API requests: {self.raw_api_requests}",
            f"- media download skipped: {self.skipped_media_downloads}",
            f"- unresolved quoted posts: {self.unresolved_quotes}",
            f"- estimated cost USD (run, after daily dedup): {self.run_cost_usd:.4f}",
            f"- estimated cost USD (total, after daily dedup): {self.total_cost_usd:.4f}",
        ]


def cost_estimate_text(requested_max_new: int | None, cost: CostConfig) -> str:
    """Upper-bound cost of a run, shown before it starts."""
    post_unit = cost.unit_price_post_read_usd
    user_unit = cost.unit_price_user_read_usd
    if requested_max_new is None:
        post_cap = user_cap = "unbounded"
    else:
        post_cap = f"{requested_max_new * post_unit:.4f}"
        user_cap = f"{requested_max_new * user_unit:.4f}"
    return "\n".join(
        [
            "Cost estimate:",
            f"- max-new: {max_new_display(requested_max_new)}",
            f"- unit_price_post_read_usd: {post_unit}",
            f"- post-read upper bound estimate (USD): {post_cap}",
            f"- unit_price_user_read_usd: {user_unit}",
            f"- user-read supplementary estimate (USD): {user_cap}",
            "- note: X bills each resource once per UTC day, so actual cost may be lower",
        ]
    )


class MediaSaver:
    """Download media files for stored media rows, skipping gone or forbidden ones."""

    def __init__(self, store: Store, source: BookmarkSource):
        self.store = store
        self.source = source
        self.skipped = 0
        self.downloaded = 0

    def __call__(self, media_items: list[Media]) -> None:
        for media in media_items:
            target = resolve_media_target(self.store.media_root, media)
            stored_path = self.store.media_local_path(media.media_key)
            local_path = Path(stored_path) if stored_path else target.local_path
            if local_path.is_file() or not target.url:
                continue

            try:
                result = self.source.download_media(target.url, local_path)
            except MediaDownloadError as e:
                if not e.skippable:
                    raise
                self.skipped += 1
                logger.warning(
                    "Skipped media download (%s) %s: %s", media.media_key, target.url, e
                )
                continue

            if result.downloaded:
                self.downloaded += 1
                if result.actual_path != local_path:
                    self.store.set_media_local_path(media.media_key, result.actual_path)


class SyncOrchestrator:
    def __init__(
        self,
        store: Store,
        source: BookmarkSource,
        config: AppConfig,
        capture_media: bool = False,
    ):
        self.store = store
        self.source = source
        self.config = config
        self.capture_media = capture_media
        self.ledger = BillingLedger(store)

    def plan(self, max_new_raw: str | None = None) -> SyncPlan:
        """Pick the mode, new-bookmark cap and page size for the next run."""
        sync = self.config.sync
        mode: SyncMode = "incremental" if self.store.has_any_bookmarks() else "initial"
        requested_max_new = resolve_requested_max_new(
            mode,
            max_new_raw,
            sync.default_incremental_max_new,
            sync.default_initial_max_new,
        )
        page_size = resolve_page_size(
            mode, sync.known_boundary_threshold, sync.incremental_bookmarks_page_size
        )
        return SyncPlan(mode=mode, requested_max_new=requested_max_new, page_size=page_size)

    def run(self, plan: SyncPlan | None = None, user_id: str | None = None) -> SyncSummary:
        """Execute one run. Re-raises whatever made it fail, after recording the failure."""
        plan = plan or self.plan()
        run_id = self.store.create_run(plan.mode, plan.requested_max_new, now_iso())
        summary = SyncSummary(
            run_id=run_id, mode=plan.mode, requested_max_new=plan.requested_max_new
        )
        logger.info(
            "Starting %s sync run %d (max-new: %s, page size: %d)",
            plan.mode,
            run_id,
            max_new_display(plan.requested_max_new),
            plan.page_size,
        )

        media_saver = MediaSaver(self.store, self.source) if self.capture_media else None
        resolver = QuoteResolver(
            self.store,
            self.ledger,
            self.source,
            self.config.cost.unit_prices,
            self.config.sync.quote_depth,
            media_sink=media_saver,
        )

        try:
            self._run_pages(plan, summary, resolver, media_saver, user_id)
        except BaseException as e:
            self._tally(summary, resolver, media_saver)
            self._fail(summary, e)
            raise

        self._tally(summary, resolver, media_saver)
        summary.run_cost_usd = self.ledger.estimate_cost(run_id)
        with self.store.transaction():
            self.store.update_run_counters(run_id, summary.counters)
            self.store.complete_run(run_id, now_iso(), summary.run_cost_usd)
        summary.total_cost_usd = self.ledger.estimate_cost()

        logger.info("Sync completed.")
        for line in summary.lines():
            logger.info(line)
        return summary

    def _tally(self, summary: SyncSummary, resolver: QuoteResolver, media_saver: MediaSaver | None) -> None:
        summary.raw_api_requests += resolver.lookup_requests
        summary.unresolved_quotes = resolver.unresolved_count
        if media_saver is not None:
            summary.skipped_media_downloads = media_saver.skipped

    def _fail(self, summary: SyncSummary, error: BaseException) -> None:
        message = str(error) or type(error).__name__
        logger.error("Sync run %d failed: %s", summary.run_id, message)
        try:
            summary.run_cost_usd = self.ledger.estimate_cost(summary.run_id)
            with self.store.transaction():
                self.store.update_run_counters(summary.run_id, summary.counters)
                self.store.fail_run(summary.run_id, now_iso(), message, summary.run_cost_usd)
        except Exception:
            logger.exception("Could not record failure of sync run %d", summary.run_id)

    def _run_pages(
        self,
        plan: SyncPlan,
        summary: SyncSummary,
        resolver: QuoteResolver,
        media_saver: MediaSaver | None,
        user_id: str | None,
    ) -> None:
        if not user_id:
            user_id = self.config.auth.user_id
        if not user_id:
            summary.raw_api_requests += 1
            user_id = self.source.get_me()

        state = BoundaryState(
            mode=plan.mode,
            known_boundary_threshold=self.config.sync.known_boundary_threshold,
            requested_max_new=plan.requested_max_new,
        )
        for page in iter_bookmark_pages(self.source, user_id, plan.page_size):
            summary.raw_api_requests += 1
            summary.pages += 1
            state, stop = self._apply_page(page, state, summary, resolver, media_saver)
            if stop:
                logger.info("Reached sync boundary after page %d.", summary.pages)
                break

    def _apply_page(
        self,
        page: BookmarksPage,
        state: BoundaryState,
        summary: SyncSummary,
        resolver: QuoteResolver,
        media_saver: MediaSaver | None,
    ) -> tuple[BoundaryState, bool]:
        run_id = summary.run_id
        counters = summary.counters
        posts = page.all_posts
        users = page.unique_users

        # The read is billed whether or not the writes below succeed.
        self.ledger.record_reads(
            run_id,
            BOOKMARKS_ENDPOINT,
            post_ids=[post.id for post in posts],
            user_ids=[user.id for user in users],
            prices=self.config.cost.unit_prices,
        )
        counters.api_posts_read_count += len(posts)
        counters.api_users_read_count += len(users)

        now = now_iso()
        observed: list[Post] = []
        page_state = state
        stop = False
        new_media = 0
        with self.store.transaction():
            self.store.upsert_users(users, now)
            self.store.upsert_posts(posts, now)
            if media_saver is not None:
                new_media = self.store.upsert_media(page.media, now)
                self.store.attach_post_media(posts)

            for post in page.posts:
                outcome = self.store.observe_bookmark(post.id, now)
                observed.append(post)
                result = observe(page_state, outcome)
                page_state = result.state
                if result.stop:
                    stop = True
                    break

        counters.new_bookmarks_count = page_state.new_bookmarks_count
        counters.new_media_count += new_media

        if media_saver is not None and page.media:
            media_saver(page.media)

        resolver.resolve(run_id, observed, counters)
        self.store.update_run_counters(run_id, counters)

        logger.info(
            "Page %d: %d bookmarks observed, %d new so far, known streak %d",
            summary.pages,
            len(observed),
            counters.new_bookmarks_count,
            page_state.known_streak,
        )
        return page_state, stop
