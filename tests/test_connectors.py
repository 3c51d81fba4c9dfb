"""Tests for the listing source, image fetcher and publishers."""

from __future__ import annotations

import asyncio
import io
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from PIL import Image

from imgmirror.connectors.base import FetchedImage
from imgmirror.connectors.factory import build_publisher
from imgmirror.connectors.images import HTTPImageFetcher, decode_image, direct_image_url
from imgmirror.connectors.publishers import ConsolePublisher, WebhookPublisher, resolve_headers
from imgmirror.connectors.reddit import RedditListingSource, join_subreddits, parse_listing
from imgmirror.errors import ConfigError, ImageFetchError, ListingError, PublishError
from imgmirror.storage.models import Candidate, PublishRequest


def make_child(post_id: str, kind: str = "t3", **overrides) -> dict:
    data = {
        "id": post_id,
        "title": f"Post {post_id}",
        "url": f"https://i.redd.it/{post_id}.jpg",
        "score": 1234,
        "upvote_ratio": 0.97,
        "created_utc": 1717243200.0,
        "is_self": False,
        "stickied": False,
        "locked": False,
        "over_18": False,
        "spoiler": False,
        "subreddit": "pics",
        "permalink": f"/r/pics/comments/{post_id}/",
    }
    data.update(overrides)
    return {"kind": kind, "data": data}


def png_bytes(size=(16, 16), color=(10, 20, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def response_error(status: int) -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(request_info=MagicMock(), history=(), status=status)


class FakeBody:
    """Streams fixed chunks like ``aiohttp.StreamReader.iter_chunked``."""

    def __init__(self, chunks):
        self.chunks = chunks

    async def iter_chunked(self, n):
        for chunk in self.chunks:
            yield chunk


def fake_response(chunks, content_length=None) -> MagicMock:
    resp = MagicMock()
    resp.content_length = content_length
    resp.content = FakeBody(chunks)
    return resp


def make_request(**overrides) -> PublishRequest:
    candidate = Candidate(
        id=overrides.pop("id", "abc123"),
        title="Sunset over the bay",
        url="https://i.redd.it/abc123.jpg",
        score=500,
        upvote_ratio=0.98,
        created_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
        **overrides,
    )
    return PublishRequest(candidate=candidate, image_data=png_bytes(), mime_type="image/png")


# --- Reddit listing ---

class TestParseListing:
    def test_children_in_rank_order(self):
        doc = {"kind": "Listing", "data": {"children": [make_child("b"), make_child("a")]}}
        posts = parse_listing(doc)
        assert [p.id for p in posts] == ["b", "a"]
        first = posts[0]
        assert first.score == 1234
        assert first.upvote_ratio == 0.97
        assert first.created_at == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        assert first.subreddit == "pics"
        assert first.short_link == "https://redd.it/b"

    def test_non_post_children_skipped(self):
        doc = {"data": {"children": [make_child("x", kind="t1"), make_child("y"), {"kind": "t3"}]}}
        assert [p.id for p in parse_listing(doc)] == ["y"]

    def test_flags_carried(self):
        doc = {"data": {"children": [make_child("n", over_18=True, stickied=True)]}}
        post = parse_listing(doc)[0]
        assert post.stickied
        assert post.sensitive

    def test_empty_listing(self):
        assert parse_listing({"data": {"children": []}}) == []
        assert parse_listing({}) == []

    def test_non_object_rejected(self):
        with pytest.raises(ValueError):
            parse_listing([1, 2, 3])

    def test_join_subreddits(self):
        assert join_subreddits(["pics", "r/aww", " EarthPorn "]) == "pics+aww+EarthPorn"
        assert join_subreddits(["", " "]) == ""


class TestRedditListingSource:
    def test_config(self):
        source = RedditListingSource({"listing": {"user_agent": "bot/1.0", "base_url": "https://example.com/"}})
        assert source.user_agent == "bot/1.0"
        assert source.base_url == "https://example.com"
        assert source.sort == "hot"

    @pytest.mark.asyncio
    async def test_fetch_truncates_to_limit(self):
        source = RedditListingSource({})
        doc = {"data": {"children": [make_child(str(i)) for i in range(5)]}}
        with patch.object(source, "_fetch_json", AsyncMock(return_value=doc)) as fetch_json:
            posts = await source.fetch(["pics", "aww"], limit=3)
        assert [p.id for p in posts] == ["0", "1", "2"]
        fetch_json.assert_awaited_once_with("pics+aww", 3)

    @pytest.mark.asyncio
    async def test_http_error_becomes_listing_error(self):
        source = RedditListingSource({})
        with patch.object(source, "_fetch_json", AsyncMock(side_effect=response_error(503))):
            with pytest.raises(ListingError) as exc:
                await source.fetch(["pics"])
        assert exc.value.status == 503
        assert exc.value.subreddit == "pics"

    @pytest.mark.asyncio
    async def test_connection_error_becomes_listing_error(self):
        source = RedditListingSource({})
        err = aiohttp.ClientConnectionError("refused")
        with patch.object(source, "_fetch_json", AsyncMock(side_effect=err)):
            with pytest.raises(ListingError):
                await source.fetch(["pics"])

    @pytest.mark.asyncio
    async def test_no_subreddits(self):
        with pytest.raises(ListingError):
            await RedditListingSource({}).fetch([])


# --- Images ---

class TestImages:
    def test_imgur_page_rewritten(self):
        assert direct_image_url("https://imgur.com/AbC12") == "https://i.imgur.com/AbC12.jpg"
        assert direct_image_url("http://imgur.com/AbC12") == "https://i.imgur.com/AbC12.jpg"

    def test_direct_urls_untouched(self):
        url = "https://i.redd.it/abc.png"
        assert direct_image_url(url) == url

    def test_decode_png(self):
        fetched = decode_image(png_bytes((20, 10)), "https://x/y.png")
        assert fetched.image.size == (20, 10)
        assert fetched.format == "PNG"
        assert fetched.mime_type == "image/png"
        assert fetched.url == "https://x/y.png"

    def test_decode_garbage(self):
        with pytest.raises(ImageFetchError) as exc:
            decode_image(b"<html>not an image</html>", "https://x/y.jpg")
        assert exc.value.url == "https://x/y.jpg"

    def test_decode_truncated(self):
        buf = io.BytesIO()
        Image.effect_noise((64, 64), 64).convert("RGB").save(buf, format="PNG")
        data = buf.getvalue()
        with pytest.raises(ImageFetchError):
            decode_image(data[: len(data) // 2])

    def test_decode_empty(self):
        with pytest.raises(ImageFetchError):
            decode_image(b"")

    def test_mime_type_fallback(self):
        fetched = FetchedImage(url="", data=b"", image=Image.new("RGB", (1, 1)), format="JPEG")
        assert fetched.mime_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_fetch_rewrites_and_decodes(self):
        fetcher = HTTPImageFetcher({})
        with patch.object(fetcher, "_download", AsyncMock(return_value=png_bytes())) as download:
            fetched = await fetcher.fetch("https://imgur.com/zzz")
        download.assert_awaited_once_with("https://i.imgur.com/zzz.jpg")
        assert fetched.image.size == (16, 16)

    @pytest.mark.asyncio
    async def test_fetch_http_error(self):
        fetcher = HTTPImageFetcher({})
        with patch.object(fetcher, "_download", AsyncMock(side_effect=response_error(404))):
            with pytest.raises(ImageFetchError):
                await fetcher.fetch("https://i.redd.it/gone.jpg")

    @pytest.mark.asyncio
    async def test_chunked_body_over_limit(self):
        fetcher = HTTPImageFetcher({"images": {"max_bytes": 10}})
        with pytest.raises(ImageFetchError):
            await fetcher._read_limited(fake_response([b"x" * 6, b"x" * 6]), "https://x/big.jpg")

    @pytest.mark.asyncio
    async def test_declared_length_over_limit(self):
        fetcher = HTTPImageFetcher({"images": {"max_bytes": 10}})
        with pytest.raises(ImageFetchError):
            await fetcher._read_limited(fake_response([], content_length=11), "https://x/big.jpg")

    @pytest.mark.asyncio
    async def test_chunked_body_within_limit(self):
        fetcher = HTTPImageFetcher({"images": {"max_bytes": 10}})
        data = await fetcher._read_limited(fake_response([b"abcde", b"fghij"]), "https://x/ok.jpg")
        assert data == b"abcdefghij"


# --- Publishers ---

class TestPublishers:
    def test_resolve_headers(self, monkeypatch):
        monkeypatch.setenv("HOOK_TOKEN", "s3cret")
        monkeypatch.delenv("MISSING_TOKEN", raising=False)
        headers = resolve_headers({
            "Authorization": "Bearer ${HOOK_TOKEN}",
            "X-Other": "${MISSING_TOKEN}",
            "X-Static": "yes",
        })
        assert headers == {"Authorization": "Bearer s3cret", "X-Static": "yes"}

    def test_bare_bearer_dropped(self, monkeypatch):
        monkeypatch.delenv("MISSING_TOKEN", raising=False)
        assert resolve_headers({"Authorization": "Bearer ${MISSING_TOKEN}"}) == {}

    def test_factory(self):
        assert isinstance(build_publisher({}), ConsolePublisher)
        assert isinstance(build_publisher({"type": "console"}), ConsolePublisher)
        assert isinstance(build_publisher({"type": "webhook", "url": "https://hook"}), WebhookPublisher)
        with pytest.raises(ConfigError):
            build_publisher({"type": "twitter"})

    def test_webhook_requires_url(self):
        with pytest.raises(ConfigError):
            WebhookPublisher({})

    @pytest.mark.asyncio
    async def test_console_publish(self):
        result = await ConsolePublisher({"name": "pics"}).publish(make_request())
        assert result.success

    def test_status_text(self):
        request = make_request()
        assert request.status_text == "Sunset over the bay https://redd.it/abc123"

    @pytest.mark.asyncio
    async def test_webhook_success(self):
        pub = WebhookPublisher({"url": "https://hook.example.com"})
        with patch.object(pub, "_post", AsyncMock(return_value={"url": "https://social/1"})):
            result = await pub.publish(make_request())
        assert result.success
        assert result.url == "https://social/1"

    @pytest.mark.asyncio
    async def test_webhook_non_json_response(self):
        pub = WebhookPublisher({"url": "https://hook.example.com"})
        with patch.object(pub, "_post", AsyncMock(return_value=None)):
            result = await pub.publish(make_request())
        assert result.success
        assert result.url is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        asyncio.TimeoutError(),
        ValueError("Expecting value: line 1 column 1 (char 0)"),
    ])
    async def test_webhook_timeout_and_bad_body(self, error):
        pub = WebhookPublisher({"url": "https://hook.example.com"})
        with patch.object(pub, "_post", AsyncMock(side_effect=error)):
            with pytest.raises(PublishError):
                await pub.publish(make_request())

    @pytest.mark.asyncio
    async def test_webhook_http_error(self):
        pub = WebhookPublisher({"url": "https://hook.example.com"})
        with patch.object(pub, "_post", AsyncMock(side_effect=response_error(500))):
            with pytest.raises(PublishError) as exc:
                await pub.publish(make_request())
        assert exc.value.details["url"] == "https://hook.example.com"
        await pub.close()
