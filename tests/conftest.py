"""Shared test fixtures."""

import copy
import json
from pathlib import Path

import pytest

from xstash.client import DownloadResult
from xstash.config import ACCESS_TOKEN_ENV, AppConfig, AuthConfig, SyncConfig
from xstash.exceptions import MediaDownloadError
from xstash.models import BookmarksPage, LookupResult
from xstash.parser import parse_bookmarks_response, parse_lookup_response
from xstash.store import Store

FIXTURES_DIR = Path(__file__).parent / "fixtures"


class Payloads:
    """Builders for X API v2 JSON payloads."""

    @staticmethod
    def user(user_id: str, username: str | None = None, **extra) -> dict:
        payload = {"id": user_id, "username": username or f"user{user_id}", "name": f"User {user_id}"}
        payload.update(extra)
        return payload

    @staticmethod
    def post(
        post_id: str,
        author_id: str = "u1",
        text: str | None = None,
        quoted: str | None = None,
        replied_to: str | None = None,
        media_keys: list[str] | None = None,
        **extra,
    ) -> dict:
        payload = {
            "id": post_id,
            "author_id": author_id,
            "text": text if text is not None else f"post {post_id}",
            "created_at": "2025-02-10T18:30:00.000Z",
            "lang": "en",
            "public_metrics": {"like_count": 1, "retweet_count": 0, "reply_count": 0, "quote_count": 0},
        }
        refs = []
        if quoted:
            refs.append({"type": "quoted", "id": quoted})
        if replied_to:
            refs.append({"type": "replied_to", "id": replied_to})
        if refs:
            payload["referenced_tweets"] = refs
        if media_keys:
            payload["attachments"] = {"media_keys": list(media_keys)}
        payload.update(extra)
        return payload

    @staticmethod
    def media(media_key: str, type: str = "photo", url: str | None = None, **extra) -> dict:
        payload = {"media_key": media_key, "type": type}
        if url is not None:
            payload["url"] = url
        payload.update(extra)
        return payload

    @staticmethod
    def page(
        posts: list[dict],
        users: list[dict] | None = None,
        included_posts: list[dict] | None = None,
        media: list[dict] | None = None,
        next_token: str | None = None,
    ) -> dict:
        if users is None:
            author_ids = dict.fromkeys(p["author_id"] for p in posts + (included_posts or []))
            users = [Payloads.user(author_id, username=f"user{author_id}") for author_id in author_ids]
        data: dict = {"data": posts, "includes": {"users": users}, "meta": {"result_count": len(posts)}}
        if included_posts:
            data["includes"]["tweets"] = included_posts
        if media:
            data["includes"]["media"] = media
        if next_token:
            data["meta"]["next_token"] = next_token
        return data


class FakeSource:
    """Scripted remote: serves bookmark pages in order and post lookups from a fixed world."""

    def __init__(
        self,
        pages: list[dict] | None = None,
        posts: list[dict] | None = None,
        media: list[dict] | None = None,
        user_id: str = "42",
    ):
        self.pages = pages or []
        self.world = {p["id"]: p for p in posts or []}
        self.media_world = {m["media_key"]: m for m in media or []}
        self.user_id = user_id
        self.me_calls = 0
        self.page_calls: list[tuple[str | None, int]] = []
        self.lookup_calls: list[list[str]] = []
        self.downloads: list[str] = []
        self.download_errors: dict[str, int] = {}
        self.download_extensions: dict[str, str] = {}
        self.page_errors: dict[int, Exception] = {}

    def get_me(self) -> str:
        self.me_calls += 1
        return self.user_id

    def get_bookmarks_page(
        self, user_id: str, pagination_token: str | None = None, max_results: int = 100
    ) -> BookmarksPage:
        self.page_calls.append((pagination_token, max_results))
        index = int(pagination_token[1:]) if pagination_token else 0
        if index in self.page_errors:
            raise self.page_errors[index]
        data = copy.deepcopy(self.pages[index])
        if index + 1 < len(self.pages):
            data.setdefault("meta", {})["next_token"] = f"p{index + 1}"
        return parse_bookmarks_response(data)

    def lookup_posts(self, ids: list[str]) -> LookupResult:
        self.lookup_calls.append(list(ids))
        found = [self.world[i] for i in ids if i in self.world]
        included = [
            self.world[ref["id"]]
            for post in found
            for ref in post.get("referenced_tweets", [])
            if ref["id"] in self.world
        ]
        media_keys = [
            key for post in found for key in post.get("attachments", {}).get("media_keys", [])
        ]
        data = Payloads.page(
            found,
            included_posts=included,
            media=[self.media_world[k] for k in media_keys if k in self.media_world],
        )
        return parse_lookup_response(data)

    def download_media(self, url: str, destination: Path) -> DownloadResult:
        self.downloads.append(url)
        if url in self.download_errors:
            raise MediaDownloadError(self.download_errors[url], url)
        actual = Path(destination)
        if url in self.download_extensions:
            actual = actual.with_suffix(f".{self.download_extensions[url]}")
        actual.parent.mkdir(parents=True, exist_ok=True)
        actual.write_bytes(b"media-bytes")
        return DownloadResult(downloaded=True, actual_path=actual)

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


@pytest.fixture
def bookmarks_response() -> dict:
    """Load the sample v2 bookmarks page."""
    with open(FIXTURES_DIR / "bookmarks_response.json") as f:
        return json.load(f)


@pytest.fixture
def payloads() -> type[Payloads]:
    return Payloads


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "data" / "xstash.db")
    yield s
    s.close()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(
        auth=AuthConfig(access_token="test-token", user_id="42"),
        sync=SyncConfig(known_boundary_threshold=3),
        data_dir=tmp_path / "data",
    )


@pytest.fixture
def make_source():
    return FakeSource


@pytest.fixture(autouse=True)
def _no_env_token(monkeypatch):
    monkeypatch.delenv(ACCESS_TOKEN_ENV, raising=False)
