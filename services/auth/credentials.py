import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.database import Credential, utcnow

log = logging.getLogger(__name__)

PROVIDER = "google"


@dataclass
class TokenSet:
    """Tokens returned by the provider's token endpoint."""

    access_token: str
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str = ""

    @classmethod
    def from_response(cls, data: dict) -> "TokenSet":
        return cls(
            access_token=data["access_token"],
            expires_in=data.get("expires_in"),
            refresh_token=data.get("refresh_token") or None,
            scope=data.get("scope", ""),
        )


class CredentialStore:
    """Process-wide holder of the Google credential.

    Backed by a single database row so every authenticated call sees the
    latest tokens without a new login, and so ``clear`` is atomic.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def store(self, tokens: TokenSet) -> Credential:
        """Persist tokens after a code exchange or a refresh.

        The refresh token is only replaced when the provider issued a new one.
        """
        async with self._sessions() as session:
            cred = await session.get(Credential, PROVIDER)
            if cred is None:
                cred = Credential(provider=PROVIDER)
                session.add(cred)

            cred.access_token = tokens.access_token
            cred.expires_at = (
                utcnow() + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
            )
            if tokens.refresh_token:
                cred.refresh_token = tokens.refresh_token
            cred.authenticated = True
            cred.updated_at = utcnow()
            await session.commit()

        log.info(
            f"Stored credentials (expires_at={cred.expires_at}, "
            f"new_refresh_token={bool(tokens.refresh_token)})"
        )
        return cred

    async def get(self) -> Credential | None:
        async with self._sessions() as session:
            return await session.get(Credential, PROVIDER)

    async def clear(self):
        async with self._sessions() as session:
            await session.execute(delete(Credential).where(Credential.provider == PROVIDER))
            await session.commit()
        log.info("Cleared stored credentials")

    async def is_authenticated(self) -> bool:
        cred = await self.get()
        if cred is None or not cred.authenticated:
            return False
        return cred.access_token_valid() or bool(cred.refresh_token)
