"""Tests for the X API v2 response parser and payload models."""

import logging

import pytest

from xstash.models import Media, Post, User
from xstash.parser import parse_bookmarks_response, parse_lookup_response


class TestParseBookmarksResponse:
    def test_parses_posts_in_feed_order(self, bookmarks_response):
        page = parse_bookmarks_response(bookmarks_response)
        assert [p.id for p in page.posts] == [
            "1890000000000000003",
            "1890000000000000002",
            "1890000000000000001",
        ]
        assert page.next_token == "7140dibdnow9c7btw4b0"

    def test_skips_malformed_entries(self, bookmarks_response, caplog):
        with caplog.at_level(logging.WARNING, logger="xstash.parser"):
            page = parse_bookmarks_response(bookmarks_response)
        assert len(page.posts) == 3
        assert len(page.media) == 2
        assert "Skipping malformed post" in caplog.text
        assert "Skipping malformed media" in caplog.text

    def test_includes(self, bookmarks_response):
        page = parse_bookmarks_response(bookmarks_response)
        assert [p.id for p in page.included_posts] == ["1880000000000000001"]
        assert len(page.all_posts) == 4
        assert {u.username for u in page.unique_users} == {
            "testuser",
            "photouser",
            "threader",
            "originalauthor",
        }

    def test_basic_post_fields(self, bookmarks_response):
        post = parse_bookmarks_response(bookmarks_response).posts[0]
        assert post.author_id == "111"
        assert post.created_at == "2025-02-10T18:30:00.000Z"
        assert post.like_count == 42
        assert post.quote_count == 1
        assert post.possibly_sensitive is False
        assert post.quoted_ids == ["1880000000000000001"]
        assert post.full_text is None
        # Fields the models don't name survive in raw
        assert post.raw["public_metrics"]["bookmark_count"] == 9

    def test_note_tweet_full_text(self, bookmarks_response):
        post = parse_bookmarks_response(bookmarks_response).posts[2]
        assert post.full_text.endswith("well past the usual limit.")
        assert post.references[0].type == "replied_to"
        assert post.quoted_ids == []

    def test_media_attachments(self, bookmarks_response):
        page = parse_bookmarks_response(bookmarks_response)
        assert page.posts[1].media_keys == ("3_1890000000000000002", "7_1890000000000000002")
        video = next(m for m in page.media if m.type == "video")
        assert video.best_variant().url.endswith("high.mp4")
        assert video.duration_ms == 12000

    def test_empty_page(self):
        page = parse_bookmarks_response({"meta": {"result_count": 0}})
        assert page.posts == []
        assert page.next_token is None


class TestParseLookupResponse:
    def test_missing_posts_are_absent(self, payloads):
        data = payloads.page([payloads.post("q1")])
        data["errors"] = [{"resource_id": "q2", "title": "Not Found Error"}]
        result = parse_lookup_response(data)
        assert [p.id for p in result.posts] == ["q1"]


class TestModels:
    def test_post_requires_id(self):
        with pytest.raises(ValueError):
            Post.from_api({"text": "no id"})

    def test_media_requires_key(self):
        with pytest.raises(ValueError):
            Media.from_api({"type": "photo"})

    def test_unknown_reference_types_are_ignored(self):
        post = Post.from_api(
            {"id": "1", "referenced_tweets": [{"type": "quoted", "id": 9}, {"type": "mystery", "id": "8"}]}
        )
        assert [(r.type, r.id) for r in post.references] == [("quoted", "9")]

    def test_numeric_ids_become_strings(self):
        assert User.from_api({"id": 111}).id == "111"

    def test_last_duplicate_wins(self, payloads):
        data = payloads.page(
            [payloads.post("p1", text="old")], included_posts=[payloads.post("p1", text="new")]
        )
        result = parse_lookup_response(data)
        assert [p.text for p in result.all_posts] == ["new"]
