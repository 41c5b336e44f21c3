"""Tests for the fetch-bookmark-metadata job and its fetcher."""

import base64
from types import SimpleNamespace
from uuid import uuid4

import httpx
import pytest

from shiori.v1.bookmarks.metadata import (
    DescriptionCandidate,
    HttpMetadataFetcher,
    IconCandidate,
)
from shiori.v1.bookmarks.service import BookmarkService
from shiori.v1.core.exceptions import HandlerExecutionError
from shiori.v1.core.registries import JobContext
from shiori.v1.infra.jobs.handlers import (
    FETCH_BOOKMARK_METADATA,
    FetchBookmarkMetadataHandler,
    build_fetch_metadata_jobs,
    retry_with_backoff,
    select_best_description,
    select_best_icon,
)

PAYLOAD = {"url": "https://example.com", "bookmarkId": "b1", "userId": "u1"}


def make_context(attempt: int = 1, max_retries: int = 0) -> JobContext:
    return JobContext(
        job_id=uuid4(),
        type=FETCH_BOOKMARK_METADATA,
        owner_id="u1",
        attempt=attempt,
        max_retries=max_retries,
    )


@pytest.fixture
def bookmark_service(database) -> BookmarkService:
    return BookmarkService(database.SessionLocal)


def make_handler(fetcher, bookmarks) -> FetchBookmarkMetadataHandler:
    return FetchBookmarkMetadataHandler(
        fetcher=fetcher, bookmarks=bookmarks, fetch_retries=1, retry_base_delay=0
    )


class TestSelection:
    """Test icon and description ranking."""

    def test_prefers_large_png_over_favicon(self, stub_fetcher):
        best = select_best_icon(stub_fetcher.metadata.icons)
        assert best.href.endswith("icon-192.png")

    def test_ignores_icons_that_were_not_downloaded(self):
        icons = [
            IconCandidate(href="https://a/big.svg", rel="icon", source="html", format="svg"),
            IconCandidate(
                href="https://a/favicon.ico",
                rel="icon",
                source="default",
                format="ico",
                data=b"ico",
            ),
        ]
        assert select_best_icon(icons).href == "https://a/favicon.ico"
        assert select_best_icon(icons[:1]) is None

    def test_apple_touch_icon_bonus(self):
        plain = IconCandidate(
            href="https://a/i.png", rel="icon", source="html",
            width=180, height=180, format="png", data=b"x",
        )
        touch = IconCandidate(
            href="https://a/t.png", rel="apple-touch-icon", source="html",
            width=180, height=180, format="png", data=b"x",
        )
        assert select_best_icon([plain, touch]) is touch

    def test_description_priority(self):
        descriptions = [
            DescriptionCandidate(value="from manifest", source="manifest"),
            DescriptionCandidate(value="from html", source="html"),
            DescriptionCandidate(value="from twitter", source="twitter"),
        ]
        assert select_best_description(descriptions) == "from twitter"
        assert select_best_description(descriptions[:2]) == "from html"
        assert select_best_description([]) is None


class TestRetryWithBackoff:
    """Test handler-internal retries."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        calls = []
        delays = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")
            return "ok"

        async def record_sleep(delay):
            delays.append(delay)

        result = await retry_with_backoff(flaky, retries=2, base_delay=0.5, sleep=record_sleep)

        assert result == "ok"
        assert len(calls) == 3
        assert delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_reraises_last_error(self):
        async def broken():
            raise ConnectionError("down")

        async def no_sleep(delay):
            return None

        with pytest.raises(ConnectionError, match="down"):
            await retry_with_backoff(broken, retries=1, sleep=no_sleep)


class TestFetchBookmarkMetadataHandler:
    """Test the handler against a stub fetcher and a real bookmark table."""

    @pytest.mark.asyncio
    async def test_updates_bookmark(
        self, stub_fetcher, bookmark_service, sample_bookmark, png_192
    ):
        handler = make_handler(stub_fetcher, bookmark_service)

        result = await handler.handle(PAYLOAD, make_context())

        assert result["status"] == "completed"
        bookmark = await bookmark_service.get("b1")
        assert bookmark.description == "OpenGraph description"
        assert base64.b64decode(bookmark.website_icon) == png_192
        assert bookmark.website_icon_mime_type == "image/png"

    @pytest.mark.asyncio
    async def test_second_invocation_leaves_same_state(
        self, stub_fetcher, bookmark_service, sample_bookmark
    ):
        handler = make_handler(stub_fetcher, bookmark_service)

        await handler.handle(PAYLOAD, make_context(attempt=1))
        first = await bookmark_service.get("b1")
        await handler.handle(PAYLOAD, make_context(attempt=2))
        second = await bookmark_service.get("b1")

        assert (second.description, second.website_icon, second.website_icon_mime_type) == (
            first.description,
            first.website_icon,
            first.website_icon_mime_type,
        )

    @pytest.mark.asyncio
    async def test_fetch_failure_is_retryable(
        self, failing_fetcher, bookmark_service, sample_bookmark
    ):
        handler = make_handler(failing_fetcher, bookmark_service)

        with pytest.raises(HandlerExecutionError) as exc_info:
            await handler.handle(PAYLOAD, make_context())

        assert exc_info.value.retryable is True
        # One initial fetch plus one internal retry
        assert len(failing_fetcher.calls) == 2
        assert (await bookmark_service.get("b1")).description is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"bookmarkId": "b1", "userId": "u1"},
            {"url": "ftp://example.com", "bookmarkId": "b1", "userId": "u1"},
            {"url": "https://example.com", "userId": "u1"},
            "https://example.com",
        ],
    )
    async def test_invalid_payload_is_not_retryable(self, stub_fetcher, bookmark_service, payload):
        handler = make_handler(stub_fetcher, bookmark_service)

        with pytest.raises(HandlerExecutionError) as exc_info:
            await handler.handle(payload, make_context())

        assert exc_info.value.retryable is False
        assert stub_fetcher.calls == []

    @pytest.mark.asyncio
    async def test_no_metadata_is_skipped(
        self, empty_fetcher, bookmark_service, sample_bookmark
    ):
        handler = make_handler(empty_fetcher, bookmark_service)

        result = await handler.handle(PAYLOAD, make_context())

        assert result == {"status": "skipped", "reason": "no_metadata"}

    @pytest.mark.asyncio
    async def test_missing_bookmark_is_skipped(self, stub_fetcher, bookmark_service):
        handler = make_handler(stub_fetcher, bookmark_service)

        result = await handler.handle(PAYLOAD, make_context())

        assert result == {"status": "skipped", "reason": "bookmark_not_found"}

    @pytest.mark.asyncio
    async def test_other_users_bookmark_untouched(
        self, stub_fetcher, bookmark_service, sample_bookmark
    ):
        handler = make_handler(stub_fetcher, bookmark_service)

        result = await handler.handle({**PAYLOAD, "userId": "intruder"}, make_context())

        assert result["status"] == "skipped"
        assert (await bookmark_service.get("b1")).description is None


class TestMetadataJobEndToEnd:
    """Test the handler through the queue."""

    @pytest.mark.asyncio
    async def test_failing_fetch_with_zero_retries(
        self, registry, failing_fetcher, bookmark_service, job_service, job_store, dispatcher,
        sample_bookmark,
    ):
        registry.register(
            FETCH_BOOKMARK_METADATA, make_handler(failing_fetcher, bookmark_service)
        )

        (job_id,) = await job_service.enqueue_batch(
            [{"type": FETCH_BOOKMARK_METADATA, "payload": PAYLOAD, "maxRetries": 0}]
        )

        cycle = await dispatcher.run_cycle()

        job = await job_store.get(job_id)
        assert cycle.claimed == 1
        assert job.owner_id == "u1"
        assert job.status == "failed"
        # Internal fetch retries do not count as job attempts
        assert job.attempts == 1
        assert len(failing_fetcher.calls) == 2
        assert "Metadata fetch failed" in job.error

    @pytest.mark.asyncio
    async def test_imported_bookmarks_are_enriched(
        self, registry, stub_fetcher, bookmark_service, job_service, job_store, dispatcher,
        sample_bookmark,
    ):
        registry.register(FETCH_BOOKMARK_METADATA, make_handler(stub_fetcher, bookmark_service))
        imported = [SimpleNamespace(id="b1", url="https://example.com")]

        job_ids = await job_service.enqueue_batch(build_fetch_metadata_jobs(imported, "u1"))
        await dispatcher.drain()

        job = await job_store.get(job_ids[0])
        assert job.status == "done"
        assert job.max_retries == 0
        assert job.payload == PAYLOAD
        assert job.result["status"] == "completed"
        assert (await bookmark_service.get("b1")).description == "OpenGraph description"


class TestHttpMetadataFetcher:
    """Test the httpx-backed fetcher with a mock transport."""

    @pytest.mark.asyncio
    async def test_collects_descriptions_and_icons(self, png_192):
        page = """
        <html><head>
          <title>Example</title>
          <meta name="description" content="Plain">
          <meta property="og:description" content="Open Graph">
          <link rel="icon" href="/icon.png" sizes="192x192" type="image/png">
          <link rel="manifest" href="/site.webmanifest">
        </head><body></body></html>
        """
        manifest = {
            "description": "From manifest",
            "icons": [{"src": "/android-512.png", "sizes": "512x512", "type": "image/png"}],
        }

        def respond(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path == "/":
                return httpx.Response(200, text=page, headers={"content-type": "text/html"})
            if path == "/site.webmanifest":
                return httpx.Response(200, json=manifest)
            if path == "/icon.png":
                return httpx.Response(200, content=png_192, headers={"content-type": "image/png"})
            return httpx.Response(404)

        fetcher = HttpMetadataFetcher(transport=httpx.MockTransport(respond))

        metadata = await fetcher.fetch("https://example.com/")

        assert metadata.title == "Example"
        assert {d.source: d.value for d in metadata.descriptions} == {
            "opengraph": "Open Graph",
            "html": "Plain",
            "manifest": "From manifest",
        }
        assert [icon.source for icon in metadata.icons] == ["html", "manifest", "default"]

        html_icon = metadata.icons[0]
        assert html_icon.data == png_192
        assert html_icon.format == "png"
        assert (html_icon.width, html_icon.height) == (192, 192)

        # Failed downloads are kept but carry no data
        assert metadata.icons[1].data is None
        assert select_best_icon(metadata.icons) is html_icon

    @pytest.mark.asyncio
    async def test_page_error_propagates(self):
        fetcher = HttpMetadataFetcher(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )

        with pytest.raises(httpx.HTTPStatusError):
            await fetcher.fetch("https://example.com/")

    @pytest.mark.asyncio
    async def test_measures_icons_without_declared_sizes(self, image_encoder):
        page = """
        <html><head>
          <link rel="icon" href="/icon.png">
          <link rel="apple-touch-icon" href="/touch.webp">
          <link rel="icon" href="/photo.jpg">
        </head></html>
        """
        images = {
            "/icon.png": (image_encoder(128, "PNG"), "image/png"),
            "/touch.webp": (image_encoder(512, "WEBP"), "image/webp"),
            "/photo.jpg": (image_encoder(96, "JPEG"), "image/jpeg"),
        }

        def respond(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/":
                return httpx.Response(200, text=page, headers={"content-type": "text/html"})
            if request.url.path in images:
                content, mime_type = images[request.url.path]
                return httpx.Response(200, content=content, headers={"content-type": mime_type})
            return httpx.Response(404)

        fetcher = HttpMetadataFetcher(transport=httpx.MockTransport(respond))

        metadata = await fetcher.fetch("https://example.com/")

        sizes = {icon.href.rsplit("/", 1)[-1]: (icon.width, icon.height) for icon in metadata.icons}
        assert sizes["icon.png"] == (128, 128)
        assert sizes["touch.webp"] == (512, 512)
        assert sizes["photo.jpg"] == (96, 96)
        assert sizes["favicon.ico"] == (None, None)
        assert select_best_icon(metadata.icons).href == "https://example.com/touch.webp"

    @pytest.mark.asyncio
    async def test_unreadable_icon_keeps_declared_size(self):
        page = '<html><head><link rel="icon" href="/broken.png" sizes="64x64"></head></html>'

        def respond(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/":
                return httpx.Response(200, text=page)
            if request.url.path == "/broken.png":
                return httpx.Response(200, content=b"not an image", headers={"content-type": "image/png"})
            return httpx.Response(404)

        fetcher = HttpMetadataFetcher(transport=httpx.MockTransport(respond))

        metadata = await fetcher.fetch("https://example.com/")

        broken = metadata.icons[0]
        assert broken.data == b"not an image"
        assert (broken.width, broken.height) == (64, 64)
