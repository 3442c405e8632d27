import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

import httpx

from config.settings import settings
from services.auth.coordinator import TokenRefreshCoordinator
from services.database import utcnow
from services.errors import AuthRequired, PickerSessionExpired, UpstreamFailure
from services.photos.photo_set import PhotoSet, PickedPhoto, parse_time

log = logging.getLogger(__name__)

NOT_PICKED_MARKER = "not picked media items"


class SessionState(StrEnum):
    IDLE = "idle"
    SESSION_CREATED = "session_created"
    AWAITING_SELECTION = "awaiting_selection"
    ITEMS_AVAILABLE = "items_available"
    EXPIRED = "expired"
    ERROR = "error"


@dataclass
class PickerSession:
    session_id: str
    picker_uri: str
    status: SessionState = SessionState.SESSION_CREATED
    expire_time: datetime | None = None

    @property
    def expired(self) -> bool:
        return self.expire_time is not None and utcnow() >= self.expire_time


@dataclass
class PollResult:
    """Outcome of one poll. ``needs_selection`` is the retry-later state, not an error."""

    state: SessionState
    photos: list[PickedPhoto] = field(default_factory=list)
    added: int = 0

    @property
    def needs_selection(self) -> bool:
        return self.state == SessionState.AWAITING_SELECTION


class PickerSessionManager:
    """Tracks the lifecycle of Google Photos Picker sessions.

    The picker runs in a separate browser context, so completion cannot be
    observed directly. Callers open ``picker_uri`` and then call ``poll()``
    whenever the user says they are done; there is no background timer.
    """

    def __init__(self, coordinator: TokenRefreshCoordinator, photo_set: PhotoSet):
        self.coordinator = coordinator
        self.photo_set = photo_set
        self.session: PickerSession | None = None
        self.state = SessionState.IDLE

    async def create_session(self) -> PickerSession:
        resp = await self.coordinator.call_authenticated(
            lambda token: httpx.Request(
                "POST",
                f"{settings.picker_api_url}/sessions",
                headers={"Authorization": f"Bearer {token}"},
                json={},
            )
        )
        if resp.status_code != 200:
            self.state = SessionState.ERROR
            self._raise_for_response(resp, "Failed to create picker session")

        data = _json_body(resp)
        if data is None or not data.get("id") or not data.get("pickerUri"):
            self.state = SessionState.ERROR
            log.error(f"Malformed picker session response: {resp.text[:200]}")
            raise UpstreamFailure("Picker session response is missing id or pickerUri")
        self.session = PickerSession(
            session_id=data["id"],
            picker_uri=data["pickerUri"],
            expire_time=parse_time(data.get("expireTime")),
        )
        self.state = SessionState.SESSION_CREATED
        log.info(f"Created picker session {self.session.session_id}")
        return self.session

    async def poll(self, session_id: str | None = None) -> PollResult:
        """Fetch the session's selected items and merge them into the photo set."""
        session = self._resolve(session_id)

        if session.expired:
            self._transition(session, SessionState.EXPIRED)
            raise PickerSessionExpired("Picker session expired. Start a new selection.")

        items = []
        page_token = None
        while True:
            resp = await self.coordinator.call_authenticated(
                self._media_items_request(session.session_id, page_token)
            )
            if resp.status_code != 200:
                return self._handle_poll_failure(session, resp)

            data = _json_body(resp)
            media_items = data.get("mediaItems", []) if data is not None else None
            if not isinstance(media_items, list) or not all(
                isinstance(i, dict) and i.get("id") for i in media_items
            ):
                self._transition(session, SessionState.ERROR)
                log.error(f"Malformed media items response: {resp.text[:200]}")
                raise UpstreamFailure("Picker returned malformed media items")
            items.extend(media_items)
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        photos = [p for p in (PickedPhoto.from_media_item(i) for i in items) if p.is_image]
        if not photos:
            log.info(f"Session {session.session_id} returned no images yet")
            self._transition(session, SessionState.AWAITING_SELECTION)
            return PollResult(state=SessionState.AWAITING_SELECTION)

        added = await self.photo_set.merge(photos)
        self._transition(session, SessionState.ITEMS_AVAILABLE)
        log.info(f"Session {session.session_id}: {len(photos)} selected, {added} new")
        return PollResult(state=SessionState.ITEMS_AVAILABLE, photos=photos, added=added)

    def _resolve(self, session_id: str | None) -> PickerSession:
        if self.session is None or (session_id and session_id != self.session.session_id):
            raise ValueError("No active picker session. Create one first.")
        return self.session

    def _transition(self, session: PickerSession, state: SessionState):
        session.status = state
        self.state = state

    def _media_items_request(self, session_id: str, page_token: str | None):
        params = {"sessionId": session_id, "pageSize": settings.picker_page_size}
        if page_token:
            params["pageToken"] = page_token

        def build(token: str) -> httpx.Request:
            return httpx.Request(
                "GET",
                f"{settings.picker_api_url}/mediaItems",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )

        return build

    def _handle_poll_failure(self, session: PickerSession, resp: httpx.Response) -> PollResult:
        error = _error_body(resp)
        message = error.get("message", "")

        if error.get("code") == 400 and NOT_PICKED_MARKER in message.lower():
            log.info(f"Session {session.session_id}: nothing picked yet")
            self._transition(session, SessionState.AWAITING_SELECTION)
            return PollResult(state=SessionState.AWAITING_SELECTION)

        if resp.status_code == 404:
            self._transition(session, SessionState.EXPIRED)
            raise PickerSessionExpired("Picker session no longer exists.", 404)

        self._transition(session, SessionState.ERROR)
        self._raise_for_response(resp, "Failed to fetch selected photos")

    def _raise_for_response(self, resp: httpx.Response, context: str):
        if resp.status_code == 401:
            raise AuthRequired(f"{context}: authentication expired. Please sign in again.")
        message = _error_body(resp).get("message") or resp.reason_phrase
        log.error(f"{context}: {resp.status_code} {message}")
        raise UpstreamFailure(f"{context}: {message}", resp.status_code)


def _error_body(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, dict) else {}


def _json_body(resp: httpx.Response) -> dict | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None
