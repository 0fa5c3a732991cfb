"""Tests for the X API client."""

import httpx
import pytest
import respx

from xstash.client import (
    API_BASE_URL,
    LOOKUP_BATCH_SIZE,
    XApiClient,
    iter_bookmark_pages,
    lookup_posts_in_batches,
)
from xstash.exceptions import ApiError, AuthError, MediaDownloadError, RateLimitError

BOOKMARKS_URL = f"{API_BASE_URL}/2/users/42/bookmarks"
TWEETS_URL = f"{API_BASE_URL}/2/tweets"
ME_URL = f"{API_BASE_URL}/2/users/me"


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def client(sleeps):
    with XApiClient("test-token", sleep=sleeps.append) as c:
        yield c


@pytest.fixture
def page_response(payloads) -> dict:
    return payloads.page(
        [payloads.post("b2", quoted="q1"), payloads.post("b1", media_keys=["3_m"])],
        included_posts=[payloads.post("q1", author_id="u2")],
        media=[payloads.media("3_m", url="https://pbs.twimg.com/media/m.jpg")],
        next_token="next-abc",
    )


class TestXApiClient:
    def test_requires_token(self):
        with pytest.raises(AuthError):
            XApiClient("")

    @respx.mock
    def test_get_me(self, client):
        route = respx.get(ME_URL).mock(return_value=httpx.Response(200, json={"data": {"id": "42"}}))
        assert client.get_me() == "42"
        assert route.calls.last.request.headers["authorization"] == "Bearer test-token"

    @respx.mock
    def test_bookmarks_page(self, client, page_response):
        route = respx.get(BOOKMARKS_URL).mock(return_value=httpx.Response(200, json=page_response))

        page = client.get_bookmarks_page("42", max_results=20)

        assert [p.id for p in page.posts] == ["b2", "b1"]
        assert [p.id for p in page.all_posts] == ["b2", "b1", "q1"]
        assert {u.id for u in page.unique_users} == {"u1", "u2"}
        assert page.media[0].media_key == "3_m"
        assert page.next_token == "next-abc"

        params = route.calls.last.request.url.params
        assert params["max_results"] == "20"
        assert "pagination_token" not in params
        assert "referenced_tweets.id" in params["expansions"]

    @pytest.mark.parametrize("requested,sent", [(1, "5"), (500, "100")])
    @respx.mock
    def test_page_size_is_clamped(self, client, payloads, requested, sent):
        route = respx.get(BOOKMARKS_URL).mock(return_value=httpx.Response(200, json=payloads.page([])))
        client.get_bookmarks_page("42", pagination_token="tok", max_results=requested)
        params = route.calls.last.request.url.params
        assert params["max_results"] == sent
        assert params["pagination_token"] == "tok"

    @respx.mock
    def test_lookup_posts(self, client, payloads):
        route = respx.get(TWEETS_URL).mock(
            return_value=httpx.Response(200, json=payloads.page([payloads.post("q1")]))
        )
        result = client.lookup_posts(["q1", "q1", "q2"])
        assert [p.id for p in result.posts] == ["q1"]
        assert route.calls.last.request.url.params["ids"] == "q1,q2"

    @respx.mock
    def test_lookup_nothing_makes_no_request(self, client):
        result = client.lookup_posts([])
        assert result.all_posts == []
        assert client.request_count == 0

    def test_lookup_rejects_oversized_batch(self, client):
        with pytest.raises(ValueError):
            client.lookup_posts([str(i) for i in range(LOOKUP_BATCH_SIZE + 1)])

    @respx.mock
    def test_unauthorized(self, client):
        respx.get(ME_URL).mock(return_value=httpx.Response(401, json={"title": "Unauthorized"}))
        with pytest.raises(AuthError, match="401"):
            client.get_me()

    @respx.mock
    def test_client_error_is_not_retried(self, client, sleeps):
        route = respx.get(TWEETS_URL).mock(return_value=httpx.Response(400, text="bad ids"))
        with pytest.raises(ApiError) as exc_info:
            client.lookup_posts(["x"])
        assert exc_info.value.status_code == 400
        assert route.call_count == 1
        assert sleeps == []


class TestRetries:
    @respx.mock
    def test_server_error_then_success(self, client, sleeps):
        route = respx.get(ME_URL)
        route.side_effect = [
            httpx.Response(503),
            httpx.Response(200, json={"data": {"id": "42"}}),
        ]
        assert client.get_me() == "42"
        assert route.call_count == 2
        assert len(sleeps) == 1
        assert 0.3 <= sleeps[0] <= 0.3 + 0.12

    @respx.mock
    def test_rate_limit_honours_retry_after(self, client, sleeps):
        route = respx.get(ME_URL)
        route.side_effect = [
            httpx.Response(429, headers={"retry-after": "7"}),
            httpx.Response(200, json={"data": {"id": "42"}}),
        ]
        assert client.get_me() == "42"
        assert sleeps == [7.0]

    @respx.mock
    def test_rate_limit_exhausted(self, sleeps):
        respx.get(ME_URL).mock(return_value=httpx.Response(429, headers={"retry-after": "3"}))
        with XApiClient("t", max_attempts=2, sleep=sleeps.append) as client:
            with pytest.raises(RateLimitError) as exc_info:
                client.get_me()
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 3.0
        assert sleeps == [3.0]

    @respx.mock
    def test_transport_error_is_retried(self, client, sleeps):
        route = respx.get(ME_URL)
        route.side_effect = [
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json={"data": {"id": "42"}}),
        ]
        assert client.get_me() == "42"
        assert len(sleeps) == 1

    @respx.mock
    def test_persistent_server_error(self, sleeps):
        respx.get(ME_URL).mock(return_value=httpx.Response(502))
        with XApiClient("t", max_attempts=3, sleep=sleeps.append) as client:
            with pytest.raises(ApiError) as exc_info:
                client.get_me()
        assert exc_info.value.status_code == 502
        assert len(sleeps) == 2


class TestDownloadMedia:
    @respx.mock
    def test_extension_follows_content_type(self, client, tmp_path):
        url = "https://pbs.twimg.com/media/abc"
        respx.get(url).mock(
            return_value=httpx.Response(200, content=b"png-bytes", headers={"content-type": "image/png"})
        )
        result = client.download_media(url, tmp_path / "3_" / "3_abc.bin")
        assert result.downloaded is True
        assert result.actual_path == tmp_path / "3_" / "3_abc.png"
        assert result.actual_path.read_bytes() == b"png-bytes"

    @respx.mock
    def test_streamed_body_leaves_no_partial_file(self, client, tmp_path):
        url = "https://video.twimg.com/ext_tw_video/v.mp4"
        respx.get(url).mock(
            return_value=httpx.Response(
                200,
                content=b"video-bytes" * 10_000,
                headers={"content-type": "video/mp4"},
            )
        )
        result = client.download_media(url, tmp_path / "7_" / "7_v.mp4")
        assert result.actual_path.read_bytes() == b"video-bytes" * 10_000
        assert sorted(p.name for p in (tmp_path / "7_").iterdir()) == ["7_v.mp4"]

    @respx.mock
    def test_server_error_is_retried(self, client, sleeps, tmp_path):
        url = "https://pbs.twimg.com/media/abc.jpg"
        respx.get(url).mock(
            side_effect=[
                httpx.Response(503),
                httpx.Response(200, content=b"jpg-bytes", headers={"content-type": "image/jpeg"}),
            ]
        )
        result = client.download_media(url, tmp_path / "3_abc.jpg")
        assert result.actual_path.read_bytes() == b"jpg-bytes"
        assert len(sleeps) == 1

    @respx.mock
    def test_existing_file_is_kept(self, client, tmp_path):
        destination = tmp_path / "3_abc.jpg"
        destination.write_bytes(b"old")
        result = client.download_media("https://pbs.twimg.com/media/abc.jpg", destination)
        assert result.downloaded is False
        assert destination.read_bytes() == b"old"

    @respx.mock
    def test_gone_media_is_skippable(self, client, tmp_path):
        url = "https://pbs.twimg.com/media/gone.jpg"
        respx.get(url).mock(return_value=httpx.Response(404))
        with pytest.raises(MediaDownloadError) as exc_info:
            client.download_media(url, tmp_path / "gone.jpg")
        assert exc_info.value.skippable is True
        assert not (tmp_path / "gone.jpg").exists()


class TestPaging:
    def test_iter_pages_follows_tokens(self, payloads, make_source):
        source = make_source(pages=[payloads.page([payloads.post(str(i))]) for i in range(3)])
        pages = list(iter_bookmark_pages(source, "42", page_size=5))
        assert len(pages) == 3
        assert source.page_calls == [(None, 5), ("p1", 5), ("p2", 5)]

    def test_iter_pages_is_lazy(self, payloads, make_source):
        source = make_source(pages=[payloads.page([payloads.post(str(i))]) for i in range(3)])
        for _ in iter_bookmark_pages(source, "42"):
            break
        assert len(source.page_calls) == 1

    def test_lookup_in_batches(self, payloads, make_source):
        ids = [f"q{i}" for i in range(250)]
        source = make_source(posts=[payloads.post(i) for i in ids])
        results = list(lookup_posts_in_batches(source, ids + ids[:10]))
        assert [len(call) for call in source.lookup_calls] == [100, 100, 50]
        assert sum(len(r.posts) for r in results) == 250
