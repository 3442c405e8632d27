import asyncio
import logging

from services.database import ExtractionRecord, RecordStatus
from services.errors import HighlightsError, RecordNotFound
from services.highlights.cache import HighlightCache
from services.highlights.readwise import HighlightDraft, ReadwiseClient, match_book
from services.photos.photo_set import PhotoSet

log = logging.getLogger(__name__)


class HighlightPublisher:
    """Sends approved highlights to Readwise and records the confirmation.

    At most one publish per photo is in flight. A second request for the same
    photo awaits the first one's outcome instead of posting another highlight.
    """

    def __init__(self, cache: HighlightCache, readwise: ReadwiseClient, photo_set: PhotoSet):
        self.cache = cache
        self.readwise = readwise
        self.photo_set = photo_set
        self._pending: dict[str, asyncio.Task] = {}

    def in_flight(self, photo_id: str) -> bool:
        return photo_id in self._pending

    async def publish(self, photo_id: str) -> ExtractionRecord:
        task = self._pending.get(photo_id)
        if task is None:
            task = asyncio.ensure_future(self._run(photo_id))
            task.add_done_callback(_retrieve_exception)
            self._pending[photo_id] = task
        else:
            log.info(f"Joining in-flight publish for {photo_id}")
        return await asyncio.shield(task)

    async def _run(self, photo_id: str) -> ExtractionRecord:
        try:
            return await self._publish(photo_id)
        finally:
            self._pending.pop(photo_id, None)

    async def _publish(self, photo_id: str) -> ExtractionRecord:
        record = await self.cache.get(photo_id)
        if record is None:
            raise RecordNotFound(f"No extraction record for {photo_id}")
        if record.published:
            log.info(f"{photo_id} already published to book {record.published_book_id}")
            return record
        if record.status != RecordStatus.PROCESSED:
            raise ValueError(f"Photo {photo_id} has no extracted text to publish")
        if not record.selected_text.strip():
            raise ValueError("Select some text before publishing")
        if not record.selected_book_title.strip() and not record.selected_book_id:
            raise ValueError("Choose a book before publishing")

        title, author = await self._resolve_book(record)
        photo = await self.photo_set.get(photo_id)

        book_id = await self.readwise.create_highlight(
            HighlightDraft(
                text=record.selected_text,
                title=title,
                author=author,
                note=record.custom_note,
                source_url=photo.filename if photo else "",
                highlighted_at=photo.creation_time if photo else None,
            )
        )
        return await self.cache.mark_published(photo_id, book_id)

    async def publish_many(self, photo_ids: list[str]) -> dict:
        """Publish several photos. One failure never blocks the rest."""
        summary = {"total": len(photo_ids), "succeeded": 0, "failed": 0, "errors": []}

        for photo_id in photo_ids:
            try:
                await self.publish(photo_id)
                summary["succeeded"] += 1
            except (HighlightsError, ValueError) as e:
                summary["failed"] += 1
                summary["errors"].append({"photo_id": photo_id, "error": str(e)})
                log.error(f"Failed to publish {photo_id}: {e}")

        return summary

    async def _resolve_book(self, record: ExtractionRecord) -> tuple[str, str]:
        """Canonical title/author: the chosen Readwise book, an exact catalog match, or as typed."""
        if record.selected_book_id:
            book = await self.readwise.get_book(record.selected_book_id)
            return book.title, book.author or "Unknown Author"

        match = match_book(record.selected_book_title, await self.readwise.list_books())
        if match:
            log.info(f"Matched '{record.selected_book_title}' to Readwise book {match.id}")
            return match.title, match.author or "Unknown Author"

        return record.selected_book_title.strip(), record.selected_book_author.strip() or (
            "Unknown Author"
        )


def _retrieve_exception(task: asyncio.Task):
    # Every waiter may have been cancelled; mark the outcome as seen
    if not task.cancelled():
        task.exception()
