import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.database import ExtractionRecord, RecordStatus, as_utc, utcnow
from services.errors import RecordNotFound
from services.extraction.extractor import ExtractionResult

log = logging.getLogger(__name__)

# Fields a user may edit, mapped to the columns each one writes
EDITABLE_FIELDS = {
    "selected_text": ("selected_text",),
    "selected_book": ("selected_book_id", "selected_book_title", "selected_book_author"),
    "tags": ("tags",),
    "custom_note": ("custom_note",),
}


@dataclass
class PhotoStatus:
    processed: bool = False
    failed: bool = False
    published: bool = False
    published_at: datetime | None = None


class HighlightCache:
    """Per-photo extraction records that survive reloads.

    Writes are column-scoped: an edit to the note never rewrites the
    selected text, so concurrent edits to different fields both land.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def get(self, photo_id: str) -> ExtractionRecord | None:
        async with self._sessions() as session:
            return await session.get(ExtractionRecord, photo_id)

    async def put(self, photo_id: str, result: ExtractionResult) -> ExtractionRecord:
        """Store a successful extraction.

        Selection defaults are filled from the extraction only when the record
        has no user edits yet (new, or previously failed).
        """
        async with self._sessions() as session:
            record = await session.get(ExtractionRecord, photo_id)
            fresh = record is None or record.status == RecordStatus.FAILED
            if record is None:
                record = ExtractionRecord(photo_id=photo_id, published=False)
                session.add(record)

            record.status = RecordStatus.PROCESSED
            record.error = None
            record.extracted_text = result.full_text
            record.confidence = result.confidence
            record.is_book_content = result.is_book_content
            record.suggested_title = result.suggested_title
            record.suggested_author = result.suggested_author
            record.updated_at = utcnow()

            if fresh:
                record.tags = list(result.tags)
                record.selected_text = result.full_text
                record.selected_book_id = None
                record.custom_note = ""
                if result.is_book_content and result.suggested_title:
                    record.selected_book_title = result.suggested_title
                    record.selected_book_author = result.suggested_author or ""
                else:
                    record.selected_book_title = ""
                    record.selected_book_author = ""

            await session.commit()

        log.info(f"Cached extraction for {photo_id}")
        return record

    async def mark_failed(self, photo_id: str, error: str) -> ExtractionRecord:
        """Record a failed attempt. An earlier successful result is kept as is."""
        async with self._sessions() as session:
            record = await session.get(ExtractionRecord, photo_id)
            if record is not None and record.status == RecordStatus.PROCESSED:
                log.warning(f"Re-extraction of {photo_id} failed, keeping previous result: {error}")
                return record
            if record is None:
                record = ExtractionRecord(photo_id=photo_id, published=False)
                session.add(record)
            record.status = RecordStatus.FAILED
            record.error = error
            record.updated_at = utcnow()
            await session.commit()

        log.info(f"Marked {photo_id} as failed: {error}")
        return record

    async def update(self, photo_id: str, **fields) -> ExtractionRecord:
        """Apply user edits, touching only the columns of the given fields."""
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields not editable: {sorted(unknown)}")

        values = {}
        for name, value in fields.items():
            if name == "selected_book":
                book = value or {}
                values["selected_book_id"] = _book_id(book.get("id"))
                values["selected_book_title"] = book.get("title") or ""
                values["selected_book_author"] = book.get("author") or ""
            elif name == "tags":
                values["tags"] = list(value or [])
            else:
                values[name] = value or ""

        record = await self.get(photo_id)
        if record is None:
            raise RecordNotFound(f"No extraction record for {photo_id}")
        if record.status != RecordStatus.PROCESSED:
            raise ValueError(f"Photo {photo_id} has no extracted text to edit")
        if not values:
            return record

        async with self._sessions() as session:
            await session.execute(
                update(ExtractionRecord)
                .where(ExtractionRecord.photo_id == photo_id)
                .values(**values, updated_at=utcnow())
            )
            await session.commit()
        return await self.get(photo_id)

    async def mark_published(self, photo_id: str, book_id: str) -> ExtractionRecord:
        """Record Readwise's confirmation. Repeating it with the same book is a no-op."""
        book_id = _book_id(book_id)
        if not book_id:
            raise ValueError("A published record needs the Readwise book id")

        record = await self.get(photo_id)
        if record is None:
            raise RecordNotFound(f"No extraction record for {photo_id}")
        if record.published and record.published_book_id == book_id:
            return record

        async with self._sessions() as session:
            await session.execute(
                update(ExtractionRecord)
                .where(ExtractionRecord.photo_id == photo_id)
                .values(published=True, published_book_id=book_id, published_at=utcnow())
            )
            await session.commit()
        log.info(f"Marked {photo_id} as published to book {book_id}")
        return await self.get(photo_id)

    async def records(self, unpublished_only: bool = False) -> list[ExtractionRecord]:
        query = select(ExtractionRecord)
        if unpublished_only:
            query = query.where(ExtractionRecord.published.is_(False))
        async with self._sessions() as session:
            return list((await session.execute(query)).scalars().all())

    async def status(self, photo_id: str) -> PhotoStatus:
        record = await self.get(photo_id)
        if record is None:
            return PhotoStatus()
        return PhotoStatus(
            processed=record.status == RecordStatus.PROCESSED,
            failed=record.status == RecordStatus.FAILED,
            published=record.published,
            published_at=as_utc(record.published_at),
        )


def _book_id(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def serialize_record(record: ExtractionRecord) -> dict:
    return {
        "photo_id": record.photo_id,
        "status": record.status.value,
        "error": record.error,
        "extracted_text": record.extracted_text,
        "confidence": record.confidence,
        "is_book_content": record.is_book_content,
        "suggested_title": record.suggested_title,
        "suggested_author": record.suggested_author,
        "tags": record.tags or [],
        "selected_text": record.selected_text,
        "selected_book": {
            "id": record.selected_book_id,
            "title": record.selected_book_title,
            "author": record.selected_book_author,
        },
        "custom_note": record.custom_note,
        "published": record.published,
        "published_book_id": record.published_book_id,
        "published_at": as_utc(record.published_at).isoformat() if record.published_at else None,
    }
