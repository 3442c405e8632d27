import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from config.settings import settings
from services.auth.coordinator import TokenRefreshCoordinator
from services.auth.credentials import CredentialStore
from services.auth.oauth import GoogleOAuthClient
from services.database import async_session, init_db
from services.errors import AuthRequired, ExtractionFailed, RecordNotFound, UpstreamFailure
from services.extraction.deduplicator import ExtractionDeduplicator
from services.extraction.extractor import TextExtractor
from services.extraction.processor import BatchProcessor
from services.highlights.cache import HighlightCache, serialize_record
from services.highlights.publisher import HighlightPublisher
from services.highlights.readwise import ReadwiseClient
from services.llm import llm_router
from services.photos.photo_set import PhotoSet, PickedPhoto
from services.photos.picker import PickerSessionManager

logging.basicConfig(level=getattr(logging, settings.log_level))
log = logging.getLogger(__name__)

AUTH_COOKIE = "google_authenticated"

http_client = httpx.AsyncClient(timeout=settings.http_timeout)
credential_store = CredentialStore(async_session)
oauth_client = GoogleOAuthClient(http_client)
coordinator = TokenRefreshCoordinator(credential_store, oauth_client, http_client)
photo_set = PhotoSet(async_session)
picker = PickerSessionManager(coordinator, photo_set)
highlight_cache = HighlightCache(async_session)
deduplicator = ExtractionDeduplicator(coordinator, TextExtractor(llm_router))
processor = BatchProcessor(deduplicator, highlight_cache)
readwise = ReadwiseClient(http=http_client)
publisher = HighlightPublisher(highlight_cache, readwise, photo_set)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    health = await llm_router.health()
    log.info(f"LLM providers: {health}")
    yield
    await http_client.aclose()


app = FastAPI(
    title="Photo Highlights",
    description="Google Photos → AI text extraction → Readwise highlights",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Error mapping ---


@app.exception_handler(AuthRequired)
async def auth_required_handler(request: Request, exc: AuthRequired):
    # The cookie and the store must agree: both say signed out from here on
    await credential_store.clear()
    response = JSONResponse(status_code=401, content={"error": str(exc), "reauthenticate": True})
    response.delete_cookie(AUTH_COOKIE)
    return response


@app.exception_handler(UpstreamFailure)
async def upstream_failure_handler(request: Request, exc: UpstreamFailure):
    return JSONResponse(
        status_code=502, content={"error": exc.message, "upstream_status": exc.status_code}
    )


@app.exception_handler(ExtractionFailed)
async def extraction_failed_handler(request: Request, exc: ExtractionFailed):
    return JSONResponse(status_code=502, content={"error": str(exc)})


@app.exception_handler(RecordNotFound)
async def record_not_found_handler(request: Request, exc: RecordNotFound):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


# --- Health ---


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "authenticated": await credential_store.is_authenticated(),
        "readwise_configured": readwise.configured,
        "llm_providers": await llm_router.health(),
    }


# --- Google OAuth ---


@app.get("/auth/google")
async def google_login():
    """Redirect the browser to Google's consent screen."""
    return RedirectResponse(oauth_client.authorization_url())


@app.get("/auth/google/callback")
async def google_callback(code: str | None = None, error: str | None = None):
    if error:
        log.error(f"OAuth error: {error}")
        return RedirectResponse("/?error=oauth_error")
    if not code:
        log.error("No authorization code received")
        return RedirectResponse("/?error=no_code")

    try:
        tokens = await oauth_client.exchange_code(code)
    except (AuthRequired, UpstreamFailure) as e:
        log.error(f"Token exchange failed: {e}")
        return RedirectResponse("/?error=token_exchange_failed")

    await credential_store.store(tokens)
    response = RedirectResponse("/?auth=success")
    # Readable by the browser; the tokens themselves never leave the server
    response.set_cookie(
        AUTH_COOKIE,
        "true",
        max_age=settings.refresh_token_max_age,
        httponly=False,
        samesite="lax",
    )
    return response


@app.post("/auth/google/refresh")
async def google_refresh():
    """Force a refresh cycle. Clears credentials if Google rejects the refresh token."""
    cred = await credential_store.get()
    if cred is None or not cred.refresh_token:
        raise AuthRequired("Refresh token not found")
    try:
        tokens = await oauth_client.refresh(cred.refresh_token)
    except AuthRequired:
        await credential_store.clear()
        raise
    await credential_store.store(tokens)
    return {"success": True}


@app.post("/auth/logout")
async def logout():
    await credential_store.clear()
    response = JSONResponse({"success": True})
    response.delete_cookie(AUTH_COOKIE)
    return response


@app.get("/auth/status")
async def auth_status():
    return {"authenticated": await credential_store.is_authenticated()}


@app.get("/auth/token-info")
async def token_info():
    """Scopes and expiry of the current access token, for debugging consent problems."""
    cred = await credential_store.get()
    if cred is None or not cred.access_token:
        raise AuthRequired("No access token found")
    return await oauth_client.token_info(cred.access_token)


# --- Photos Picker ---


@app.post("/picker/session")
async def create_picker_session():
    """Start a picker session. The client opens picker_uri in a new tab."""
    session = await picker.create_session()
    return {
        "session_id": session.session_id,
        "picker_uri": session.picker_uri,
        "status": session.status.value,
    }


class PollRequest(BaseModel):
    session_id: str | None = None


@app.post("/picker/poll")
async def poll_picker_session(req: PollRequest):
    """Check whether the user finished picking. Safe to call repeatedly."""
    result = await picker.poll(req.session_id)
    if result.needs_selection:
        return {
            "status": result.state.value,
            "needs_selection": True,
            "message": "Please select photos in the Google Photos Picker first, then check again",
        }
    return {
        "status": result.state.value,
        "needs_selection": False,
        "selected": len(result.photos),
        "added": result.added,
        "total": len(await photo_set.list_photos()),
    }


# --- Photos & extraction ---


def _serialize_photo(photo: PickedPhoto, status) -> dict:
    return {
        "id": photo.id,
        "base_url": photo.base_url,
        "filename": photo.filename,
        "mime_type": photo.mime_type,
        "creation_time": photo.creation_time.isoformat() if photo.creation_time else None,
        "processed": status.processed,
        "failed": status.failed,
        "published": status.published,
        "published_at": status.published_at.isoformat() if status.published_at else None,
    }


@app.get("/photos")
async def list_photos(unsent_only: bool = False):
    photos = []
    for photo in await photo_set.list_photos():
        status = await highlight_cache.status(photo.id)
        if unsent_only and status.published:
            continue
        photos.append(_serialize_photo(photo, status))
    return {"count": len(photos), "photos": photos}


@app.delete("/photos")
async def clear_photos():
    await photo_set.clear()
    return {"success": True}


class ProcessRequest(BaseModel):
    retry_failed: bool = False


@app.post("/photos/process")
async def process_photos(req: ProcessRequest):
    """Extract text for every photo without a cached record."""
    return await processor.process(await photo_set.list_photos(), retry_failed=req.retry_failed)


@app.post("/photos/{photo_id}/extract")
async def extract_photo(photo_id: str):
    """Explicit (re)extraction of one photo, e.g. after a failure."""
    photo = await photo_set.get(photo_id)
    if not photo:
        raise HTTPException(404, "Photo not found")
    record = await processor.process_one(photo)
    return serialize_record(record)


# --- Highlights ---


@app.get("/highlights")
async def list_highlights(unpublished_only: bool = False):
    records = await highlight_cache.records(unpublished_only=unpublished_only)
    return {"count": len(records), "highlights": [serialize_record(r) for r in records]}


@app.get("/highlights/{photo_id}")
async def get_highlight(photo_id: str):
    record = await highlight_cache.get(photo_id)
    if not record:
        raise HTTPException(404, "No extraction record for this photo")
    return serialize_record(record)


class SelectedBook(BaseModel):
    id: str | None = None
    title: str = ""
    author: str = ""


class HighlightEdit(BaseModel):
    selected_text: str | None = None
    selected_book: SelectedBook | None = None
    tags: list[str] | None = None
    custom_note: str | None = None


@app.patch("/highlights/{photo_id}")
async def edit_highlight(photo_id: str, req: HighlightEdit):
    """Partial update: only the fields present in the body are written."""
    fields = req.model_dump(exclude_unset=True)
    record = await highlight_cache.update(photo_id, **fields)
    return serialize_record(record)


@app.post("/highlights/{photo_id}/publish")
async def publish_highlight(photo_id: str):
    record = await publisher.publish(photo_id)
    return serialize_record(record)


class PublishManyRequest(BaseModel):
    photo_ids: list[str] | None = None  # None = every unpublished processed record


@app.post("/highlights/publish")
async def publish_highlights(req: PublishManyRequest):
    photo_ids = req.photo_ids
    if photo_ids is None:
        photo_ids = [
            r.photo_id
            for r in await highlight_cache.records(unpublished_only=True)
            if r.selected_book_title or r.selected_book_id
        ]
    return await publisher.publish_many(photo_ids)


# --- Readwise ---


@app.get("/books")
async def list_books():
    books = await readwise.list_books()
    return {
        "books": [
            {
                "id": b.id,
                "title": b.title,
                "author": b.author,
                "highlight_count": b.highlight_count,
            }
            for b in books
        ]
    }
