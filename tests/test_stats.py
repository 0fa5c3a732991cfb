"""Tests for stats aggregation."""

import pytest

from xstash.billing import BillingLedger, UnitPrices
from xstash.models import Media, Post, User
from xstash.stats import collect_stats

T1 = "2025-02-10T10:00:00.000Z"
T2 = "2025-02-12T10:00:00.000Z"


class TestCollectStats:
    def test_empty(self, store):
        stats = collect_stats(store)
        assert stats.bookmarks_count == 0
        assert stats.first_discovered_at is None
        assert stats.top_authors == []
        assert stats.total_cost_usd == 0.0
        assert "Range: n/a .. n/a" in stats.lines()

    def test_aggregates(self, store, payloads):
        store.upsert_users([User.from_api(payloads.user("u1", username="alice"))], T1)
        posts = [
            Post.from_api(payloads.post("a1", author_id="u1", media_keys=["3_p", "7_v"])),
            Post.from_api(payloads.post("a2", author_id="u1")),
            Post.from_api(payloads.post("x1", author_id="nobody")),
            Post.from_api(payloads.post("ref", author_id="u1", media_keys=["3_r"])),
        ]
        store.upsert_posts(posts, T1)
        store.upsert_media(
            [
                Media.from_api({"media_key": "3_p", "type": "photo"}),
                Media.from_api({"media_key": "7_v", "type": "video"}),
                Media.from_api({"media_key": "3_r", "type": "photo"}),
            ],
            T1,
        )
        store.attach_post_media(posts)
        store.observe_bookmark("a1", T1)
        store.observe_bookmark("a2", T2)
        store.observe_bookmark("x1", T2)

        run_id = store.create_run("initial", None, T1)
        BillingLedger(store).record_reads(
            run_id, "/2/users/:id/bookmarks", ["a1", "a2", "x1"], ["u1"], UnitPrices(0.005, 0.01), T1
        )

        stats = collect_stats(store)

        assert stats.bookmarks_count == 3
        assert stats.first_discovered_at == T1
        assert stats.last_discovered_at == T2
        assert stats.top_authors == [("alice", 2), ("(unknown)", 1)]
        # "ref" is not bookmarked, so its photo is not counted
        assert stats.media_breakdown == [("photo", 1), ("video", 1)]
        assert stats.raw_reads == {"post": 3, "user": 1}
        assert stats.cost_by_type == pytest.approx({"post": 0.015, "user": 0.01})
        assert stats.total_cost_usd == pytest.approx(0.025)
        assert "- @alice: 2" in stats.lines()
        assert "- total: 0.0250 USD" in stats.lines()
