import logging
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from config.settings import settings
from services.errors import UpstreamFailure

log = logging.getLogger(__name__)


@dataclass
class Book:
    id: str
    title: str
    author: str = ""
    highlight_count: int = 0

    @classmethod
    def from_api(cls, data: dict) -> "Book":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            author=data.get("author") or "",
            highlight_count=data.get("num_highlights", 0),
        )


@dataclass
class HighlightDraft:
    text: str
    title: str
    author: str
    note: str = ""
    source_url: str = ""
    highlighted_at: datetime | None = None
    category: str = "books"
    location_type: str = "page"


class ReadwiseClient:
    """Readwise v2 API: list books, look one up, create highlights."""

    def __init__(self, token: str | None = None, http: httpx.AsyncClient | None = None):
        self.token = token or settings.readwise_access_token
        self.base_url = settings.readwise_api_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=settings.http_timeout)

    @property
    def configured(self) -> bool:
        return bool(self.token)

    async def list_books(self) -> list[Book]:
        books = []
        url = f"{self.base_url}/books/"
        params = {"page_size": 1000, "category": "books"}
        while url:
            data = await self._request("GET", url, params=params)
            books.extend(Book.from_api(b) for b in data.get("results", []))
            url = data.get("next")
            params = None  # "next" already carries the query
        log.info(f"Fetched {len(books)} books from Readwise")
        return books

    async def get_book(self, book_id: str) -> Book:
        return Book.from_api(await self._request("GET", f"{self.base_url}/books/{book_id}/"))

    async def create_highlight(self, draft: HighlightDraft) -> str:
        """Create one highlight. Returns the id of the book Readwise filed it under."""
        highlighted_at = draft.highlighted_at or datetime.now(UTC)
        highlight = {
            "text": draft.text,
            "title": draft.title,
            "author": draft.author,
            "source_type": "photo",
            "category": draft.category,
            "location_type": draft.location_type,
            "highlighted_at": highlighted_at.isoformat(),
        }
        if draft.note:
            highlight["note"] = draft.note
        if draft.source_url:
            highlight["source_url"] = draft.source_url

        data = await self._request(
            "POST", f"{self.base_url}/highlights/", json={"highlights": [highlight]}
        )
        if not isinstance(data, list) or not data or "id" not in data[0]:
            raise UpstreamFailure(f"Readwise returned no book for the new highlight: {data}")
        book_id = str(data[0]["id"])
        log.info(f"Created Readwise highlight in book {book_id} ({draft.title})")
        return book_id

    async def _request(self, method: str, url: str, **kwargs):
        if not self.configured:
            raise UpstreamFailure("Readwise token not configured")
        try:
            resp = await self._http.request(
                method, url, headers={"Authorization": f"Token {self.token}"}, **kwargs
            )
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Readwise request failed: {e}") from e

        if resp.status_code >= 400:
            log.error(f"Readwise {method} {url} failed: {resp.status_code} {resp.text[:200]}")
            raise UpstreamFailure(f"Readwise API error: {resp.text[:200]}", resp.status_code)
        return resp.json()


def match_book(title: str, books: list[Book]) -> Book | None:
    """Exact, case-insensitive title match. No fuzzy or substring matching."""
    wanted = title.strip().casefold()
    if not wanted:
        return None
    for book in books:
        if book.title.strip().casefold() == wanted:
            return book
    return None
