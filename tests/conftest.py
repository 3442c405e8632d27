"""Shared fixtures: a throwaway SQLite database and a scripted HTTP backend."""

import asyncio

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from services.auth.coordinator import TokenRefreshCoordinator
from services.auth.credentials import CredentialStore, TokenSet
from services.auth.oauth import GoogleOAuthClient
from services.database import init_db
from services.highlights.cache import HighlightCache
from services.photos.photo_set import PhotoSet


class FakeHTTP:
    """Routes requests by method + URL (query ignored) and records every call."""

    def __init__(self):
        self.routes = {}
        self.calls: list[httpx.Request] = []

    def on(self, method: str, url: str, handler):
        """``handler`` is ``(status, json_body)`` or a callable taking the request."""
        self.routes[(method, url)] = handler

    def count(self, method: str, url: str) -> int:
        return sum(1 for r in self.calls if r.method == method and _route_url(r) == url)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get((request.method, _route_url(request)))
        if handler is None:
            return httpx.Response(404, json={"error": {"code": 404, "message": "no route"}})
        if callable(handler):
            return handler(request)
        status, body = handler
        return httpx.Response(status, json=body)


def _route_url(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"


@pytest.fixture
def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    asyncio.run(init_db(engine))
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def fake_http():
    return FakeHTTP()


@pytest.fixture
def http_client(fake_http):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_http))


@pytest.fixture
def credential_store(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def coordinator(credential_store, http_client):
    return TokenRefreshCoordinator(credential_store, GoogleOAuthClient(http_client), http_client)


@pytest.fixture
def photo_set(session_factory):
    return PhotoSet(session_factory)


@pytest.fixture
def highlight_cache(session_factory):
    return HighlightCache(session_factory)


@pytest.fixture
def signed_in(credential_store):
    """Store a valid access token plus refresh token."""
    asyncio.run(
        credential_store.store(
            TokenSet(access_token="good-token", expires_in=3600, refresh_token="refresh-1")
        )
    )
    return credential_store
