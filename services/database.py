from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from sqlalchemy import JSON, Boolean, DateTime, Float, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from config.settings import settings

engine = create_async_engine(settings.database_url, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# --- Enums ---


class RecordStatus(StrEnum):
    PROCESSED = "processed"
    FAILED = "failed"  # extraction attempted, no usable result


# --- Models ---


class Credential(Base):
    """The single Google credential row. Deleting the row clears everything at once."""

    __tablename__ = "credentials"

    provider: Mapped[str] = mapped_column(String(50), primary_key=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    authenticated: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def access_token_valid(self, leeway_seconds: int = 60) -> bool:
        if not self.access_token:
            return False
        expires_at = as_utc(self.expires_at)
        if expires_at is None:
            return True
        return (expires_at - utcnow()).total_seconds() > leeway_seconds


class Photo(Base):
    """A photo in the accumulated selection."""

    __tablename__ = "photos"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)  # provider-stable id
    base_url: Mapped[str] = mapped_column(Text)
    filename: Mapped[str] = mapped_column(String(500), default="")
    mime_type: Mapped[str] = mapped_column(String(100), default="image/jpeg")
    creation_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ExtractionRecord(Base):
    """Extracted text, user edits and publish status for one photo."""

    __tablename__ = "extraction_records"

    photo_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[RecordStatus] = mapped_column(SAEnum(RecordStatus))
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # AI extraction
    extracted_text: Mapped[str] = mapped_column(Text, default="")
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    is_book_content: Mapped[bool] = mapped_column(Boolean, default=False)
    suggested_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    suggested_author: Mapped[str | None] = mapped_column(String(500), nullable=True)
    tags: Mapped[list] = mapped_column(JSON, default=list)

    # User edits
    selected_text: Mapped[str] = mapped_column(Text, default="")
    selected_book_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    selected_book_title: Mapped[str] = mapped_column(String(500), default="")
    selected_book_author: Mapped[str] = mapped_column(String(500), default="")
    custom_note: Mapped[str] = mapped_column(Text, default="")

    # Publish status
    published: Mapped[bool] = mapped_column(Boolean, default=False)
    published_book_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


async def init_db(db_engine: AsyncEngine | None = None):
    db_engine = db_engine or engine
    url = db_engine.url
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
