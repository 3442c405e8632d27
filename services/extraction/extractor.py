import asyncio
import json
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config.settings import settings
from services.errors import ExtractionFailed
from services.llm.base import ImageInput
from services.llm.router import LLMRouter

log = logging.getLogger(__name__)

EXTRACTION_PROMPT = """Extract all text from this image. If this appears to be from a book, try to
identify the book title and author. Provide a confidence score for the text extraction quality.
Be very accurate with the text extraction and maintain original formatting where possible.
Suggest up to five short topical tags for the passage.

Respond with ONLY a JSON object:
{
    "fullText": "the complete text extracted from the image",
    "confidence": 0.0-1.0,
    "isBookContent": true or false,
    "suggestedBookTitle": "book title, if detectable",
    "suggestedAuthor": "author, if detectable",
    "tags": ["tag1", "tag2"]
}"""


class ExtractionResult(BaseModel):
    """Structured text the vision model pulled out of one image."""

    model_config = ConfigDict(populate_by_name=True)

    full_text: str = Field(alias="fullText")
    confidence: float = Field(ge=0.0, le=1.0)
    is_book_content: bool = Field(alias="isBookContent")
    suggested_title: str | None = Field(default=None, alias="suggestedBookTitle")
    suggested_author: str | None = Field(default=None, alias="suggestedAuthor")
    tags: list[str] = Field(default_factory=list)


def parse_extraction(content: str) -> ExtractionResult:
    """Validate the model's JSON reply. Malformed output is an error, never an empty result."""
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        text = text.removeprefix("json").strip()
    try:
        return ExtractionResult.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError) as e:
        raise ExtractionFailed(f"Vision model returned a malformed result: {e}") from e


class TextExtractor:
    """Boundary to the AI vision collaborator: image in, validated structure out."""

    def __init__(self, router: LLMRouter, timeout: float | None = None):
        self.router = router
        self.timeout = timeout or settings.extraction_timeout

    async def extract(self, image: ImageInput) -> ExtractionResult:
        try:
            response = await asyncio.wait_for(
                self.router.complete(prompt=EXTRACTION_PROMPT, image=image),
                timeout=self.timeout,
            )
        except TimeoutError as e:
            raise ExtractionFailed(f"Text extraction timed out after {self.timeout}s") from e
        except Exception as e:
            log.error(f"Vision provider failed: {e}")
            raise ExtractionFailed(f"Text extraction failed: {e}") from e

        result = parse_extraction(response.content)
        log.info(
            f"Extracted {len(result.full_text)} chars via {response.provider} "
            f"(confidence={result.confidence:.2f}, book={result.is_book_content})"
        )
        return result
