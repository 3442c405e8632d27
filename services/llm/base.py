import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx


@dataclass
class LLMResponse:
    content: str
    model: str
    provider: str
    usage: dict = field(default_factory=dict)
    raw: dict | None = None


@dataclass
class ImageInput:
    """An image for a vision prompt: either inline bytes or a public URL."""

    data: bytes | None = None
    url: str | None = None
    mime_type: str = "image/jpeg"

    async def load(self) -> bytes:
        """Bytes of the image, downloading public URLs for providers that need inline data."""
        if self.data is not None:
            return self.data
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
            resp = await client.get(self.url)
            resp.raise_for_status()
            self.mime_type = resp.headers.get("content-type", self.mime_type).split(";")[0]
            self.data = resp.content
        return self.data

    async def load_b64(self) -> str:
        return base64.b64encode(await self.load()).decode()


class LLMProvider(ABC):
    """Base class for all vision-capable LLM providers."""

    provider_name: str = "base"

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        image: ImageInput | None = None,
        system: str = "",
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 4096,
    ) -> LLMResponse: ...

    @abstractmethod
    async def is_available(self) -> bool: ...
