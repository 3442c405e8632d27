"""Tests for in-flight extraction de-duplication."""

import asyncio
import gc

import httpx
import pytest

from services.errors import ExtractionFailed, ImageFetchFailed
from services.extraction.deduplicator import ExtractionDeduplicator, image_key, is_provider_hosted
from services.extraction.extractor import ExtractionResult

PHOTO_URL = "https://lh3.googleusercontent.com/abc123"
PUBLIC_URL = "https://example.com/page.jpg"


class FakeExtractor:
    """Counts calls and yields to the loop so concurrent callers overlap."""

    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    async def extract(self, image):
        self.calls.append(image)
        for _ in range(3):
            await asyncio.sleep(0)
        if self.fail:
            raise ExtractionFailed("model unavailable")
        return ExtractionResult(
            fullText=f"text #{len(self.calls)}", confidence=0.9, isBookContent=True
        )


@pytest.fixture
def image_route(fake_http):
    fake_http.on(
        "GET",
        PHOTO_URL + "=w1024-h1024",
        lambda request: httpx.Response(
            200, content=b"\xff\xd8jpeg", headers={"content-type": "image/jpeg"}
        ),
    )
    return fake_http


class TestImageKey:
    def test_size_suffix_is_ignored(self):
        assert image_key(PHOTO_URL + "=w1024-h1024") == PHOTO_URL
        assert image_key(PHOTO_URL + "=w800-h1000-c") == PHOTO_URL
        assert image_key(PHOTO_URL) == PHOTO_URL

    def test_public_urls_are_untouched(self):
        assert image_key(PUBLIC_URL) == PUBLIC_URL

    def test_provider_hosts(self):
        assert is_provider_hosted(PHOTO_URL)
        assert not is_provider_hosted(PUBLIC_URL)
        assert not is_provider_hosted("https://googleusercontent.com.evil.example/x")


class TestExtract:
    def test_concurrent_calls_share_one_extraction(self, coordinator, signed_in, image_route):
        """N concurrent requests for one image → one AI call, one shared result."""
        extractor = FakeExtractor()
        dedup = ExtractionDeduplicator(coordinator, extractor)

        async def run_all():
            return await asyncio.gather(
                *(dedup.extract(PHOTO_URL) for _ in range(5)),
                dedup.extract(PHOTO_URL + "=w800-h1000"),
            )

        results = asyncio.run(run_all())

        assert len(extractor.calls) == 1
        assert all(r is results[0] for r in results)
        assert not dedup.in_flight(PHOTO_URL)

    def test_concurrent_calls_share_the_error(self, coordinator, signed_in, image_route):
        extractor = FakeExtractor(fail=True)
        dedup = ExtractionDeduplicator(coordinator, extractor)

        async def run_all():
            return await asyncio.gather(
                *(dedup.extract(PHOTO_URL) for _ in range(4)), return_exceptions=True
            )

        errors = asyncio.run(run_all())

        assert len(extractor.calls) == 1
        assert all(isinstance(e, ExtractionFailed) for e in errors)
        assert all(e is errors[0] for e in errors)

    def test_later_call_starts_fresh(self, coordinator, signed_in, image_route):
        """Once finished, the entry is gone and the next call extracts again."""
        extractor = FakeExtractor()
        dedup = ExtractionDeduplicator(coordinator, extractor)

        first = asyncio.run(dedup.extract(PHOTO_URL))
        second = asyncio.run(dedup.extract(PHOTO_URL))

        assert len(extractor.calls) == 2
        assert first.full_text == "text #1"
        assert second.full_text == "text #2"

    def test_different_images_run_separately(self, coordinator, signed_in, fake_http):
        for name in ("one", "two"):
            fake_http.on(
                "GET",
                f"https://lh3.googleusercontent.com/{name}=w1024-h1024",
                lambda request: httpx.Response(200, content=b"img"),
            )
        extractor = FakeExtractor()
        dedup = ExtractionDeduplicator(coordinator, extractor)

        async def run_all():
            return await asyncio.gather(
                dedup.extract("https://lh3.googleusercontent.com/one"),
                dedup.extract("https://lh3.googleusercontent.com/two"),
            )

        asyncio.run(run_all())
        assert len(extractor.calls) == 2

    def test_provider_image_fetched_with_token_and_sent_inline(
        self, coordinator, signed_in, image_route
    ):
        extractor = FakeExtractor()
        dedup = ExtractionDeduplicator(coordinator, extractor)

        asyncio.run(dedup.extract(PHOTO_URL))

        fetch = image_route.calls[0]
        assert fetch.headers["Authorization"] == "Bearer good-token"
        image = extractor.calls[0]
        assert image.data == b"\xff\xd8jpeg"
        assert image.url is None
        assert image.mime_type == "image/jpeg"

    def test_public_image_passed_as_url(self, coordinator, fake_http):
        """Public URLs need no credential and no fetch."""
        extractor = FakeExtractor()
        dedup = ExtractionDeduplicator(coordinator, extractor)

        asyncio.run(dedup.extract(PUBLIC_URL))

        assert fake_http.calls == []
        assert extractor.calls[0].url == PUBLIC_URL
        assert extractor.calls[0].data is None

    def test_fetch_failure_is_typed(self, coordinator, signed_in, fake_http):
        fake_http.on("GET", PHOTO_URL + "=w1024-h1024", (403, {"error": "forbidden"}))
        extractor = FakeExtractor()
        dedup = ExtractionDeduplicator(coordinator, extractor)

        with pytest.raises(ImageFetchFailed):
            asyncio.run(dedup.extract(PHOTO_URL))
        assert extractor.calls == []
        assert not dedup.in_flight(PHOTO_URL)

    def test_network_failure_is_typed(self, coordinator, signed_in, fake_http):
        def boom(request):
            raise httpx.ReadTimeout("timed out", request=request)

        fake_http.on("GET", PHOTO_URL + "=w1024-h1024", boom)
        dedup = ExtractionDeduplicator(coordinator, FakeExtractor())

        with pytest.raises(ImageFetchFailed):
            asyncio.run(dedup.extract(PHOTO_URL))

    def test_abandoned_failure_is_not_reported_unretrieved(
        self, coordinator, signed_in, image_route
    ):
        """A failed extraction whose only waiter was cancelled leaves no loop error."""
        dedup = ExtractionDeduplicator(coordinator, FakeExtractor(fail=True))
        loop_errors = []

        async def abandon():
            asyncio.get_running_loop().set_exception_handler(
                lambda loop, context: loop_errors.append(context)
            )
            waiter = asyncio.ensure_future(dedup.extract(PHOTO_URL))
            await asyncio.sleep(0)
            waiter.cancel()
            while dedup.in_flight(PHOTO_URL):
                await asyncio.sleep(0)
            del waiter
            gc.collect()
            await asyncio.sleep(0)

        asyncio.run(abandon())

        assert not any("never retrieved" in c.get("message", "") for c in loop_errors)
