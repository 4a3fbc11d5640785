"""OAuth token persistence with refresh-on-demand."""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
import pytz

from .config import Settings
from .services.base import AuthenticationError
from .storage import (
    ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY, KeyValueStorage
)

logger = logging.getLogger(__name__)


@dataclass
class StoredTokens:
    """Tokens as persisted; expiry is epoch milliseconds."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expiry: Optional[int] = None

    def is_expired(self, now_ms: int, skew_ms: int = 0) -> bool:
        return self.expiry is not None and now_ms + skew_ms >= self.expiry


@dataclass
class RefreshedToken:
    access_token: str
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None


Refresher = Callable[[str], Awaitable[RefreshedToken]]


class GoogleTokenRefresher:
    """Exchange a refresh token for a new access token via google-auth."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def __call__(self, refresh_token: str) -> RefreshedToken:
        if not self.settings.can_refresh_tokens():
            raise AuthenticationError("Google OAuth client ID/secret not configured")

        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.settings.google_token_uri,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
        )
        try:
            await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: creds.refresh(Request())
            )
        except RefreshError as e:
            raise AuthenticationError(f"Google token refresh failed: {e}")

        expires_at = creds.expiry
        if expires_at is not None and expires_at.tzinfo is None:
            # google-auth reports naive UTC
            expires_at = expires_at.replace(tzinfo=pytz.UTC)
        return RefreshedToken(
            access_token=creds.token,
            expires_at=expires_at,
            refresh_token=creds.refresh_token,
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


class TokenStore:
    """Persist Google OAuth tokens and hand out valid access tokens."""

    EXPIRY_SKEW_MS = 30_000

    def __init__(
        self,
        storage: KeyValueStorage,
        refresher: Optional[Refresher] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        """Initialize token store.

        Args:
            storage: Key-value storage holding the tokens
            refresher: Coroutine function exchanging a refresh token; without
                one, expired tokens are simply cleared
            clock: Current time in epoch milliseconds
        """
        self.storage = storage
        self.refresher = refresher
        self.clock = clock
        self.logger = logger.getChild('token_store')
        self._refresh_task: Optional[asyncio.Task] = None

    async def get_stored_tokens(self) -> StoredTokens:
        access_token = await self.storage.get(ACCESS_TOKEN_KEY)
        refresh_token = await self.storage.get(REFRESH_TOKEN_KEY)
        raw_expiry = await self.storage.get(TOKEN_EXPIRY_KEY)

        expiry = None
        if raw_expiry:
            try:
                expiry = int(raw_expiry)
            except ValueError:
                self.logger.warning(f"Ignoring unparsable token expiry: {raw_expiry!r}")

        return StoredTokens(access_token=access_token, refresh_token=refresh_token, expiry=expiry)

    async def store_tokens(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        """Persist a token set.

        Args:
            access_token: New access token
            refresh_token: Refresh token; an existing one is kept when omitted
            expires_in: Lifetime in seconds from now
            expires_at: Absolute expiry, used when expires_in is not given
        """
        await self.storage.set(ACCESS_TOKEN_KEY, access_token)
        if refresh_token:
            await self.storage.set(REFRESH_TOKEN_KEY, refresh_token)

        if expires_in is not None:
            expiry = self.clock() + int(expires_in) * 1000
            await self.storage.set(TOKEN_EXPIRY_KEY, str(expiry))
        elif expires_at is not None:
            await self.storage.set(TOKEN_EXPIRY_KEY, str(int(expires_at.timestamp() * 1000)))
        else:
            await self.storage.remove(TOKEN_EXPIRY_KEY)

    async def clear(self) -> None:
        await self.storage.remove(ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY)
        self.logger.info("Cleared stored Google tokens")

    async def get_access_token(self) -> Optional[str]:
        """Return a currently valid access token, refreshing if needed.

        Returns:
            Access token, or None when unauthenticated or refresh failed
        """
        tokens = await self.get_stored_tokens()
        if not tokens.access_token:
            return None

        if not tokens.is_expired(self.clock(), self.EXPIRY_SKEW_MS):
            return tokens.access_token

        self.logger.info("Stored access token has expired")
        if tokens.refresh_token and self.refresher is not None:
            # Concurrent callers share one refresh
            if self._refresh_task is None:
                self._refresh_task = asyncio.ensure_future(self._refresh(tokens.refresh_token))
            task = self._refresh_task
            try:
                token = await asyncio.shield(task)
            finally:
                if self._refresh_task is task and task.done():
                    self._refresh_task = None
            if token:
                return token

        await self.clear()
        return None

    async def _refresh(self, refresh_token: str) -> Optional[str]:
        try:
            refreshed = await self.refresher(refresh_token)
        except Exception as e:
            self.logger.error(f"Token refresh failed: {e}")
            return None

        if not refreshed.access_token:
            self.logger.error("Token refresh returned no access token")
            return None

        await self.store_tokens(
            refreshed.access_token,
            refresh_token=refreshed.refresh_token or refresh_token,
            expires_at=refreshed.expires_at,
        )
        self.logger.info("Access token refreshed")
        return refreshed.access_token

    async def invalidate_access_token(self) -> None:
        """Mark the current access token expired so the next call refreshes it."""
        if await self.storage.get(ACCESS_TOKEN_KEY):
            await self.storage.set(TOKEN_EXPIRY_KEY, str(self.clock()))
            self.logger.info("Access token rejected by Google, marked expired")

    async def has_valid_access(self) -> bool:
        return bool(await self.get_access_token())
