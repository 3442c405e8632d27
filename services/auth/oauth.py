import logging

import httpx
from google_auth_oauthlib.flow import Flow

from config.settings import settings
from services.auth.credentials import TokenSet
from services.errors import AuthRequired, RefreshFailed, UpstreamFailure

log = logging.getLogger(__name__)


class GoogleOAuthClient:
    """Authorization-code flow against Google's token endpoint."""

    def __init__(self, http: httpx.AsyncClient | None = None):
        self._http = http or httpx.AsyncClient(timeout=settings.http_timeout)

    def authorization_url(self) -> str:
        flow = Flow.from_client_config(
            {
                "web": {
                    "client_id": settings.google_client_id,
                    "client_secret": settings.google_client_secret,
                    "auth_uri": settings.google_auth_uri,
                    "token_uri": settings.google_token_uri,
                    "redirect_uris": [settings.redirect_uri],
                }
            },
            scopes=settings.google_scopes,
            redirect_uri=settings.redirect_uri,
            autogenerate_code_verifier=False,  # code is exchanged by plain POST below
        )
        auth_url, _ = flow.authorization_url(prompt="consent", access_type="offline")
        return auth_url

    async def exchange_code(self, code: str) -> TokenSet:
        data = await self._post_token(
            {
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": settings.redirect_uri,
            },
            failure=AuthRequired,
        )
        log.info("Exchanged authorization code for tokens")
        return TokenSet.from_response(data)

    async def refresh(self, refresh_token: str) -> TokenSet:
        data = await self._post_token(
            {
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            failure=RefreshFailed,
        )
        log.info("Refreshed access token")
        return TokenSet.from_response(data)

    async def token_info(self, access_token: str) -> dict:
        try:
            resp = await self._http.get(
                settings.google_tokeninfo_uri, params={"access_token": access_token}
            )
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Token info request failed: {e}") from e
        if resp.status_code != 200:
            raise UpstreamFailure(f"Token info failed: {resp.text}", resp.status_code)
        return resp.json()

    async def _post_token(self, form: dict, failure: type[AuthRequired]) -> dict:
        try:
            resp = await self._http.post(
                settings.google_token_uri,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Token endpoint unreachable: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code != 200:
            reason = data.get("error_description") or data.get("error") or resp.reason_phrase
            log.error(f"Token request ({form['grant_type']}) failed: {resp.status_code} {reason}")
            raise failure(f"Token request rejected: {reason}")

        if not data.get("access_token"):
            log.error(f"Token response without access token ({form['grant_type']})")
            raise failure("Token response did not include an access token")

        return data
