"""Tests for the local highlight cache."""

import asyncio

import pytest

from services.database import RecordStatus
from services.errors import RecordNotFound
from services.extraction.extractor import ExtractionResult


def book_result(**overrides) -> ExtractionResult:
    data = {
        "fullText": "Call me Ishmael.",
        "confidence": 0.88,
        "isBookContent": True,
        "suggestedBookTitle": "Moby-Dick",
        "suggestedAuthor": "Herman Melville",
        "tags": ["whales"],
    }
    data.update(overrides)
    return ExtractionResult.model_validate(data)


class TestPut:
    def test_defaults_from_extraction(self, highlight_cache):
        """A fresh record pre-selects the full text and the suggested book."""
        record = asyncio.run(highlight_cache.put("A", book_result()))

        assert record.status == RecordStatus.PROCESSED
        assert record.selected_text == "Call me Ishmael."
        assert record.selected_book_id is None
        assert record.selected_book_title == "Moby-Dick"
        assert record.selected_book_author == "Herman Melville"
        assert record.tags == ["whales"]
        assert record.published is False

    def test_non_book_content_leaves_book_empty(self, highlight_cache):
        record = asyncio.run(
            highlight_cache.put("A", book_result(isBookContent=False, suggestedBookTitle="Menu"))
        )
        assert record.selected_book_title == ""

    def test_survives_reload(self, highlight_cache, session_factory):
        """A new cache over the same database sees the stored record."""
        from services.highlights.cache import HighlightCache

        asyncio.run(highlight_cache.put("A", book_result()))
        reloaded = asyncio.run(HighlightCache(session_factory).get("A"))
        assert reloaded.extracted_text == "Call me Ishmael."

    def test_reextraction_keeps_user_edits(self, highlight_cache):
        asyncio.run(highlight_cache.put("A", book_result()))
        asyncio.run(highlight_cache.update("A", custom_note="favourite opening"))

        record = asyncio.run(highlight_cache.put("A", book_result(fullText="Call me Ishmael!")))

        assert record.extracted_text == "Call me Ishmael!"
        assert record.custom_note == "favourite opening"
        assert record.selected_text == "Call me Ishmael."


class TestFailures:
    def test_failure_marker(self, highlight_cache):
        asyncio.run(highlight_cache.mark_failed("A", "model unavailable"))

        status = asyncio.run(highlight_cache.status("A"))
        assert status.failed is True
        assert status.processed is False
        assert asyncio.run(highlight_cache.get("A")).error == "model unavailable"

    def test_success_after_failure(self, highlight_cache):
        asyncio.run(highlight_cache.mark_failed("A", "timeout"))
        record = asyncio.run(highlight_cache.put("A", book_result()))

        assert record.status == RecordStatus.PROCESSED
        assert record.error is None
        assert record.selected_text == "Call me Ishmael."

    def test_failure_does_not_erase_good_result(self, highlight_cache):
        asyncio.run(highlight_cache.put("A", book_result()))
        asyncio.run(highlight_cache.mark_failed("A", "timeout"))

        status = asyncio.run(highlight_cache.status("A"))
        assert status.processed is True

    def test_unknown_photo_status(self, highlight_cache):
        status = asyncio.run(highlight_cache.status("nope"))
        assert not status.processed and not status.failed and not status.published


class TestUpdate:
    def test_partial_update_keeps_sibling_fields(self, highlight_cache):
        asyncio.run(highlight_cache.put("A", book_result()))

        asyncio.run(highlight_cache.update("A", custom_note="note"))
        record = asyncio.run(highlight_cache.update("A", selected_text="Ishmael."))

        assert record.custom_note == "note"
        assert record.selected_text == "Ishmael."
        assert record.selected_book_title == "Moby-Dick"
        assert record.tags == ["whales"]

    def test_concurrent_edits_to_different_fields(self, highlight_cache):
        """Two overlapping edits of different fields both survive."""
        asyncio.run(highlight_cache.put("A", book_result()))

        async def edit_both():
            await asyncio.gather(
                highlight_cache.update("A", custom_note="from tab 1"),
                highlight_cache.update("A", tags=["sea", "obsession"]),
            )

        asyncio.run(edit_both())
        record = asyncio.run(highlight_cache.get("A"))
        assert record.custom_note == "from tab 1"
        assert record.tags == ["sea", "obsession"]

    def test_select_existing_book(self, highlight_cache):
        asyncio.run(highlight_cache.put("A", book_result()))
        record = asyncio.run(
            highlight_cache.update(
                "A", selected_book={"id": 42, "title": "Moby Dick", "author": "H. Melville"}
            )
        )
        assert record.selected_book_id == "42"
        assert record.selected_book_title == "Moby Dick"

    def test_unknown_field_rejected(self, highlight_cache):
        asyncio.run(highlight_cache.put("A", book_result()))
        with pytest.raises(ValueError):
            asyncio.run(highlight_cache.update("A", published=True))

    def test_missing_record(self, highlight_cache):
        with pytest.raises(RecordNotFound):
            asyncio.run(highlight_cache.update("nope", custom_note="x"))

    def test_failed_record_not_editable(self, highlight_cache):
        asyncio.run(highlight_cache.mark_failed("A", "timeout"))
        with pytest.raises(ValueError):
            asyncio.run(highlight_cache.update("A", custom_note="x"))


class TestMarkPublished:
    def test_mark_published(self, highlight_cache):
        asyncio.run(highlight_cache.put("A", book_result()))
        record = asyncio.run(highlight_cache.mark_published("A", "123"))

        assert record.published is True
        assert record.published_book_id == "123"
        assert record.published_at is not None

    def test_idempotent(self, highlight_cache):
        """The second identical call leaves the record exactly as the first left it."""
        asyncio.run(highlight_cache.put("A", book_result()))
        first = asyncio.run(highlight_cache.mark_published("A", "123"))
        second = asyncio.run(highlight_cache.mark_published("A", 123))

        assert second.published_at == first.published_at
        assert second.updated_at == first.updated_at
        assert second.published_book_id == "123"

    def test_requires_book_id(self, highlight_cache):
        asyncio.run(highlight_cache.put("A", book_result()))
        with pytest.raises(ValueError):
            asyncio.run(highlight_cache.mark_published("A", ""))

    def test_missing_record(self, highlight_cache):
        with pytest.raises(RecordNotFound):
            asyncio.run(highlight_cache.mark_published("nope", "1"))

    def test_unpublished_filter(self, highlight_cache):
        for photo_id in ("A", "B", "C"):
            asyncio.run(highlight_cache.put(photo_id, book_result()))
        asyncio.run(highlight_cache.mark_published("B", "9"))

        unpublished = asyncio.run(highlight_cache.records(unpublished_only=True))
        everything = asyncio.run(highlight_cache.records())

        assert sorted(r.photo_id for r in unpublished) == ["A", "C"]
        assert len(everything) == 3
