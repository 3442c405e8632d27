import asyncio
import logging

from config.settings import settings
from services.database import ExtractionRecord
from services.errors import AuthRequired, ExtractionFailed, UpstreamFailure
from services.extraction.deduplicator import ExtractionDeduplicator
from services.highlights.cache import HighlightCache
from services.photos.photo_set import PickedPhoto

log = logging.getLogger(__name__)


class BatchProcessor:
    """Extracts text for every photo that has no usable record yet.

    Each photo's failure is recorded on that photo only; the rest of the
    batch carries on. Failed photos are retried only when asked.
    """

    def __init__(
        self,
        deduplicator: ExtractionDeduplicator,
        cache: HighlightCache,
        concurrency: int | None = None,
    ):
        self.deduplicator = deduplicator
        self.cache = cache
        self._semaphore = asyncio.Semaphore(concurrency or settings.extraction_concurrency)

    async def process(self, photos: list[PickedPhoto], retry_failed: bool = False) -> dict:
        summary = {"total": len(photos), "succeeded": 0, "failed": 0, "skipped": 0, "errors": []}

        todo = []
        for photo in photos:
            status = await self.cache.status(photo.id)
            if status.processed or (status.failed and not retry_failed):
                summary["skipped"] += 1
            else:
                todo.append(photo)

        outcomes = await asyncio.gather(*(self._guarded(p) for p in todo), return_exceptions=True)

        for photo, outcome in zip(todo, outcomes, strict=True):
            if isinstance(outcome, AuthRequired):
                # Not a per-photo problem: the whole session needs a new login
                raise outcome
            if isinstance(outcome, BaseException):
                summary["failed"] += 1
                summary["errors"].append({"photo_id": photo.id, "error": str(outcome)})
            else:
                summary["succeeded"] += 1

        log.info(
            f"Processed batch: {summary['succeeded']} ok, {summary['failed']} failed, "
            f"{summary['skipped']} skipped"
        )
        return summary

    async def process_one(self, photo: PickedPhoto) -> ExtractionRecord:
        """Explicit (re)extraction of one photo."""
        try:
            result = await self.deduplicator.extract(photo.base_url)
        except (ExtractionFailed, UpstreamFailure) as e:
            log.error(f"Extraction failed for {photo.id}: {e}")
            await self.cache.mark_failed(photo.id, str(e))
            raise
        return await self.cache.put(photo.id, result)

    async def _guarded(self, photo: PickedPhoto) -> ExtractionRecord:
        async with self._semaphore:
            return await self.process_one(photo)
