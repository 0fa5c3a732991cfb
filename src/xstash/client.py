"""X API v2 client for bookmarks, post lookups and media downloads.

Authentication is a user-context OAuth 2.0 bearer token with the
``bookmark.read tweet.read users.read`` scopes. Obtaining and refreshing
that token happens outside xstash; put it in the config file or the
XSTASH_ACCESS_TOKEN environment variable.

Rate limits (429), server errors (5xx) and transport errors are retried
with exponential backoff before giving up.
"""

import logging
import random
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Protocol

import httpx

from .exceptions import ApiError, AuthError, MediaDownloadError, RateLimitError
from .media import ext_from_content_type
from .models import BookmarksPage, LookupResult
from .parser import parse_bookmarks_response, parse_lookup_response

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.x.com"
LOOKUP_BATCH_SIZE = 100

TWEET_FIELDS = ",".join(
    [
        "id",
        "author_id",
        "conversation_id",
        "created_at",
        "lang",
        "possibly_sensitive",
        "public_metrics",
        "referenced_tweets",
        "attachments",
        "note_tweet",
    ]
)
USER_FIELDS = "id,name,username,profile_image_url,verified,verified_type"
MEDIA_FIELDS = ",".join(
    [
        "media_key",
        "type",
        "url",
        "preview_image_url",
        "alt_text",
        "width",
        "height",
        "duration_ms",
        "variants",
    ]
)
EXPANSIONS = "author_id,attachments.media_keys,referenced_tweets.id"

RETRY_BASE_DELAY = 0.3
RETRY_MAX_DELAY = 4.0
RETRY_JITTER = 0.12


@dataclass(frozen=True)
class DownloadResult:
    downloaded: bool
    actual_path: Path


class BookmarkSource(Protocol):
    """What the sync engine needs from the remote side."""

    def get_me(self) -> str: ...

    def get_bookmarks_page(
        self, user_id: str, pagination_token: str | None = None, max_results: int = 100
    ) -> BookmarksPage: ...

    def lookup_posts(self, ids: list[str]) -> LookupResult: ...

    def download_media(self, url: str, destination: Path) -> DownloadResult:
        """Stream a media file to disk, correcting the extension from Content-Type.

        Does nothing when ``destination`` already exists. The body is written to a
        ``.part`` file first so an interrupted download never looks complete.
        """
        destination = Path(destination)
        if destination.exists():
            return DownloadResult(downloaded=False, actual_path=destination)

        response = self._send(url, stream=True)
        try:
            if response.is_error:
                raise MediaDownloadError(response.status_code, url)

            actual_path = destination
            ext = ext_from_content_type(response.headers.get("content-type"))
            if ext and destination.suffix and destination.suffix.lstrip(".") != ext:
                actual_path = destination.with_suffix(f".{ext}")

            actual_path.parent.mkdir(parents=True, exist_ok=True)
            partial = actual_path.with_name(actual_path.name + ".part")
            try:
                with open(partial, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
            partial.replace(actual_path)
        finally:
            response.close()

        logger.debug("Downloaded %s -> %s", url, actual_path)
        return DownloadResult(downloaded=True, actual_path=actual_path)


class XApiClient:
    """Synchronous client for the X API v2."""

    def __init__(
        self,
        access_token: str,
        base_url: str = API_BASE_URL,
        max_attempts: int = 4,
        sleep=time.sleep,
    ):
        if not access_token:
            raise AuthError(401, "/2", "missing access token")
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep
        self.request_count = 0
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "authorization": f"Bearer {access_token}",
                "User-Agent": "xstash",
            },
            timeout=30.0,
            follow_redirects=True,
        )

    def _backoff(self, attempt: int) -> float:
        delay = min(RETRY_MAX_DELAY, RETRY_BASE_DELAY * (2 ** (attempt - 1)))
        return delay + random.uniform(0, RETRY_JITTER)

    def _send(self, url: str, params: dict | None = None, stream: bool = False) -> httpx.Response:
        """GET with retries on 429, 5xx and transport errors.

        With ``stream=True`` the body is not read and the caller must close the response.
        """
        for attempt in range(1, self._max_attempts + 1):
            last_attempt = attempt == self._max_attempts
            request = self._client.build_request("GET", url, params=params)
            try:
                response = self._client.send(request, stream=stream)
            except httpx.TransportError as e:
                if last_attempt:
                    raise
                delay = self._backoff(attempt)
                logger.warning("Transport error on %s (%s). Retrying in %.1fs", url, e, delay)
                self._sleep(delay)
                continue

            self.request_count += 1
            if response.status_code == 429:
                response.close()
                wait = _rate_limit_wait(response)
                if last_attempt:
                    raise RateLimitError(url, wait)
                delay = wait if wait is not None else self._backoff(attempt)
                logger.warning("Rate limited on %s. Retrying in %.1fs", url, delay)
                self._sleep(delay)
                continue

            if response.status_code >= 500 and not last_attempt:
                response.close()
                delay = self._backoff(attempt)
                logger.warning(
                    "Server error %d on %s. Retrying in %.1fs",
                    response.status_code,
                    url,
                    delay,
                )
                self._sleep(delay)
                continue

            return response

        raise AssertionError("unreachable")

    def _get_json(self, path: str, params: dict | None = None) -> dict:
        response = self._send(path, params)
        if response.status_code in (401, 403):
            raise AuthError(response.status_code, path, response.text)
        if response.is_error:
            raise ApiError(response.status_code, path, response.text)
        return response.json()

    def get_me(self) -> str:
        """Return the id of the user the access token belongs to."""
        data = self._get_json("/2/users/me")
        return str(data["data"]["id"])

    def get_bookmarks_page(
        self,
        user_id: str,
        pagination_token: str | None = None,
        max_results: int = 100,
    ) -> BookmarksPage:
        """Fetch a single page of bookmarks, newest first."""
        params = {
            "max_results": str(max(5, min(100, max_results))),
            **_expansion_params(),
        }
        if pagination_token:
            params["pagination_token"] = pagination_token
        data = self._get_json(f"/2/users/{user_id}/bookmarks", params)
        return parse_bookmarks_response(data)

    def lookup_posts(self, ids: list[str]) -> LookupResult:
        """Fetch up to 100 posts by id. Missing or deleted posts are simply absent."""
        unique = [i for i in dict.fromkeys(ids) if i]
        if not unique:
            return LookupResult()
        if len(unique) > LOOKUP_BATCH_SIZE:
            raise ValueError(f"lookup_posts accepts at most {LOOKUP_BATCH_SIZE} ids")
        params = {"ids": ",".join(unique), **_expansion_params()}
        data = self._get_json("/2/tweets", params)
        return parse_lookup_response(data)

    def download_media(self, url: str, destination: Path) -> DownloadResult:
        """Stream a media file to disk, correcting the extension from Content-Type.

        Does nothing when ``destination`` already exists. The body is written to a
        ``.part`` file first so an interrupted download never looks complete.
        """
        destination = Path(destination)
        if destination.exists():
            return DownloadResult(downloaded=False, actual_path=destination)

        response = self._send(url, stream=True)
        try:
            if response.is_error:
                raise MediaDownloadError(response.status_code, url)

            actual_path = destination
            ext = ext_from_content_type(response.headers.get("content-type"))
            if ext and destination.suffix and destination.suffix.lstrip(".") != ext:
                actual_path = destination.with_suffix(f".{ext}")

            actual_path.parent.mkdir(parents=True, exist_ok=True)
            partial = actual_path.with_name(actual_path.name + ".part")
            try:
                with open(partial, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
            partial.replace(actual_path)
        finally:
            response.close()

        logger.debug("Downloaded %s -> %s", url, actual_path)
        return DownloadResult(downloaded=True, actual_path=actual_path)

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def lookup_posts_in_batches(source: BookmarkSource, ids: list[str]) -> Iterator[LookupResult]:
    """Look up any number of posts, LOOKUP_BATCH_SIZE ids per request."""
    unique = list(dict.fromkeys(ids))
    for i in range(0, len(unique), LOOKUP_BATCH_SIZE):
        yield source.lookup_posts(unique[i : i + LOOKUP_BATCH_SIZE])


def iter_bookmark_pages(
    source: BookmarkSource, user_id: str, page_size: int = 100
) -> Iterator[BookmarksPage]:
    """Yield bookmark pages lazily until the feed runs out.

    Pages are only requested as the consumer pulls them, so breaking out of
    the loop stops paging.
    """
    token: str | None = None
    while True:
        page = source.get_bookmarks_page(user_id, token, page_size)
        yield page
        token = page.next_token
        if not token:
            return
