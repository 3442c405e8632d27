import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.database import ExtractionRecord, Photo, as_utc

log = logging.getLogger(__name__)


@dataclass
class PickedPhoto:
    id: str
    base_url: str
    filename: str
    mime_type: str
    creation_time: datetime | None = None

    @classmethod
    def from_media_item(cls, item: dict) -> "PickedPhoto":
        """Normalize a Picker API media item."""
        media_file = item.get("mediaFile", {})
        created = item.get("createTime") or item.get("mediaMetadata", {}).get("creationTime")
        return cls(
            id=item["id"],
            base_url=media_file.get("baseUrl", ""),
            filename=media_file.get("filename") or f"photo_{item['id']}",
            mime_type=media_file.get("mimeType", ""),
            creation_time=parse_time(created),
        )

    @classmethod
    def from_row(cls, row: Photo) -> "PickedPhoto":
        return cls(
            id=row.id,
            base_url=row.base_url,
            filename=row.filename,
            mime_type=row.mime_type,
            creation_time=as_utc(row.creation_time),
        )

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


def parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        log.warning(f"Unparseable creation time: {value}")
        return None


class PhotoSet:
    """The accumulated union of every successful picker selection."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def merge(self, photos: list[PickedPhoto]) -> int:
        """Add photos not already in the set. Returns how many were new.

        Each row is an insert-or-ignore, so overlapping merges of the same
        selection never collide on the primary key.
        """
        added = 0
        async with self._sessions() as session:
            for photo in photos:
                result = await session.execute(
                    sqlite_insert(Photo)
                    .values(
                        id=photo.id,
                        base_url=photo.base_url,
                        filename=photo.filename,
                        mime_type=photo.mime_type,
                        creation_time=photo.creation_time,
                    )
                    .on_conflict_do_nothing(index_elements=[Photo.id])
                )
                added += result.rowcount
            await session.commit()

        log.info(f"Merged selection: {added} new of {len(photos)} polled")
        return added

    async def list_photos(self) -> list[PickedPhoto]:
        """All photos, newest first; photos without a creation time last."""
        async with self._sessions() as session:
            rows = (await session.execute(select(Photo))).scalars().all()
        photos = [PickedPhoto.from_row(r) for r in rows]
        return sorted(
            photos,
            key=lambda p: p.creation_time.timestamp() if p.creation_time else float("-inf"),
            reverse=True,
        )

    async def get(self, photo_id: str) -> PickedPhoto | None:
        async with self._sessions() as session:
            row = await session.get(Photo, photo_id)
        return PickedPhoto.from_row(row) if row else None

    async def clear(self):
        """Drop every photo and its extraction record."""
        async with self._sessions() as session:
            await session.execute(delete(ExtractionRecord))
            await session.execute(delete(Photo))
            await session.commit()
        log.info("Cleared photo set and extraction records")
