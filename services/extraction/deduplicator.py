import asyncio
import logging
import re
from urllib.parse import urlsplit

import httpx

from config.settings import settings
from services.auth.coordinator import TokenRefreshCoordinator
from services.errors import ImageFetchFailed, UpstreamFailure
from services.extraction.extractor import ExtractionResult, TextExtractor
from services.llm.base import ImageInput

log = logging.getLogger(__name__)

# Google sizing/cropping parameters appended to a base URL, e.g. "=w1024-h1024-c"
SIZE_SUFFIX = re.compile(r"=[a-z][a-z0-9-]*$")


def is_provider_hosted(url: str) -> bool:
    host = urlsplit(url).hostname or ""
    return any(host == h or host.endswith(f".{h}") for h in settings.provider_image_hosts)


def image_key(url: str) -> str:
    """Stable identity of an image address: the same photo at any size maps to one key."""
    if is_provider_hosted(url):
        return SIZE_SUFFIX.sub("", url)
    return url


class ExtractionDeduplicator:
    """Registry of in-flight extractions keyed by image identity.

    A second request for an image that is already being extracted awaits the
    first request's task instead of issuing another AI call. The entry is
    dropped as soon as the task finishes, so later calls start fresh.
    """

    def __init__(self, coordinator: TokenRefreshCoordinator, extractor: TextExtractor):
        self.coordinator = coordinator
        self.extractor = extractor
        self._pending: dict[str, asyncio.Task] = {}

    def in_flight(self, image_url: str) -> bool:
        return image_key(image_url) in self._pending

    async def extract(self, image_url: str) -> ExtractionResult:
        key = image_key(image_url)
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, image_url))
            task.add_done_callback(_retrieve_exception)
            self._pending[key] = task
        else:
            log.info(f"Joining in-flight extraction for {key[:80]}")
        # A cancelled waiter must not cancel the shared extraction
        return await asyncio.shield(task)

    async def _run(self, key: str, image_url: str) -> ExtractionResult:
        try:
            image = await self._load_image(image_url)
            return await self.extractor.extract(image)
        finally:
            self._pending.pop(key, None)

    async def _load_image(self, image_url: str) -> ImageInput:
        if not is_provider_hosted(image_url):
            return ImageInput(url=image_url)

        # The vision model has no Google credential, so provider images go inline
        sized_url = f"{image_key(image_url)}{settings.image_size_suffix}"
        try:
            resp = await self.coordinator.call_authenticated(
                lambda token: httpx.Request(
                    "GET", sized_url, headers={"Authorization": f"Bearer {token}"}
                )
            )
        except UpstreamFailure as e:
            raise ImageFetchFailed(f"Failed to fetch image: {e.message}") from e

        if resp.status_code != 200:
            log.error(f"Image fetch failed: {resp.status_code} {sized_url[:80]}")
            raise ImageFetchFailed(
                f"Failed to fetch image: {resp.status_code} {resp.reason_phrase}",
                resp.status_code,
            )

        mime_type = resp.headers.get("content-type", "image/jpeg").split(";")[0]
        return ImageInput(data=resp.content, mime_type=mime_type)


def _retrieve_exception(task: asyncio.Task):
    # Every waiter may have been cancelled; mark the outcome as seen
    if not task.cancelled():
        task.exception()
