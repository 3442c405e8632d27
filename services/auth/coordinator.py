import asyncio
import logging
from collections.abc import Callable

import httpx

from services.auth.credentials import CredentialStore
from services.auth.oauth import GoogleOAuthClient
from services.errors import AuthRequired, RefreshFailed, UpstreamFailure

log = logging.getLogger(__name__)

RequestBuilder = Callable[[str], httpx.Request]


class TokenRefreshCoordinator:
    """Sends requests with the stored access token and self-heals from expiry.

    Policy, per outer call:
    1. Attach the current access token and send.
    2. On 401, refresh once. If the refresh succeeds, rebuild the request with
       the new token and send it once more, returning whatever comes back.
    3. If the refresh is rejected, clear the credential store and raise
       ``RefreshFailed``. Never loop.

    A token that is already known to be missing or expired is refreshed before
    the first send; that refresh is the call's one refresh.

    Refreshes are serialized by a single lock. A caller that waited on the
    lock and finds the token already replaced uses it instead of refreshing.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        oauth: GoogleOAuthClient,
        http: httpx.AsyncClient,
    ):
        self.credentials = credentials
        self.oauth = oauth
        self.http = http
        self._refresh_lock = asyncio.Lock()
        self.refresh_count = 0  # provider refreshes performed, for diagnostics

    async def call_authenticated(self, build_request: RequestBuilder) -> httpx.Response:
        cred = await self.credentials.get()
        refreshed = False

        if cred is None or not cred.access_token_valid():
            token = await self._refresh(stale_token=cred.access_token if cred else None)
            refreshed = True
        else:
            token = cred.access_token

        resp = await self._send(build_request(token))
        if resp.status_code != 401 or refreshed:
            return resp

        log.info(f"Unauthorized response from {resp.request.url.host}, refreshing token")
        token = await self._refresh(stale_token=token)
        return await self._send(build_request(token))

    async def _refresh(self, stale_token: str | None) -> str:
        async with self._refresh_lock:
            cred = await self.credentials.get()
            if cred is None or not cred.refresh_token:
                await self.credentials.clear()
                raise AuthRequired("Not authenticated. Please sign in with Google.")

            # Another caller refreshed while we were waiting on the lock
            if cred.access_token != stale_token and cred.access_token_valid():
                return cred.access_token

            self.refresh_count += 1
            try:
                tokens = await self.oauth.refresh(cred.refresh_token)
            except RefreshFailed:
                await self.credentials.clear()
                raise

            await self.credentials.store(tokens)
            return tokens.access_token

    async def _send(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self.http.send(request)
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Request to {request.url.host} failed: {e}") from e
