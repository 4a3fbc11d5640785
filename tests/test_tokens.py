"""Tests for the token store."""

import asyncio
from datetime import datetime

import pytest
import pytz

from meetsync.services.base import AuthenticationError
from meetsync.storage import (
    ACCESS_TOKEN_KEY, InMemoryStorage, REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY
)
from meetsync.tokens import GoogleTokenRefresher, RefreshedToken, TokenStore

from conftest import make_settings

NOW_MS = 1_700_000_000_000


class FakeRefresher:
    def __init__(self, token="fresh-token", error=None, delay=0):
        self.token = token
        self.error = error
        self.delay = delay
        self.calls = []

    async def __call__(self, refresh_token):
        self.calls.append(refresh_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return RefreshedToken(
            access_token=self.token,
            expires_at=datetime.fromtimestamp((NOW_MS + 3_600_000) / 1000, tz=pytz.UTC),
        )


def make_store(refresher=None, **stored):
    storage = InMemoryStorage({key: str(value) for key, value in stored.items()})
    return TokenStore(storage, refresher=refresher, clock=lambda: NOW_MS), storage


class TestTokenStore:
    """Tests for token persistence and refresh."""

    @pytest.mark.asyncio
    async def test_no_token(self):
        tokens, _ = make_store()

        assert await tokens.get_access_token() is None
        assert await tokens.has_valid_access() is False

    @pytest.mark.asyncio
    async def test_valid_token_returned(self):
        tokens, _ = make_store(**{ACCESS_TOKEN_KEY: "abc", TOKEN_EXPIRY_KEY: NOW_MS + 600_000})

        assert await tokens.get_access_token() == "abc"

    @pytest.mark.asyncio
    async def test_token_without_expiry_is_valid(self):
        tokens, _ = make_store(**{ACCESS_TOKEN_KEY: "abc"})

        assert await tokens.has_valid_access() is True

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_and_stored(self):
        refresher = FakeRefresher()
        tokens, storage = make_store(refresher, **{
            ACCESS_TOKEN_KEY: "old", REFRESH_TOKEN_KEY: "refresh-1", TOKEN_EXPIRY_KEY: NOW_MS - 1
        })

        assert await tokens.get_access_token() == "fresh-token"
        assert refresher.calls == ["refresh-1"]
        assert storage.data[ACCESS_TOKEN_KEY] == "fresh-token"
        assert storage.data[REFRESH_TOKEN_KEY] == "refresh-1"
        assert int(storage.data[TOKEN_EXPIRY_KEY]) == NOW_MS + 3_600_000

    @pytest.mark.asyncio
    async def test_token_inside_skew_window_is_refreshed(self):
        refresher = FakeRefresher()
        tokens, _ = make_store(refresher, **{
            ACCESS_TOKEN_KEY: "old", REFRESH_TOKEN_KEY: "r", TOKEN_EXPIRY_KEY: NOW_MS + 10_000
        })

        assert await tokens.get_access_token() == "fresh-token"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        refresher = FakeRefresher(delay=0.01)
        tokens, _ = make_store(refresher, **{
            ACCESS_TOKEN_KEY: "old", REFRESH_TOKEN_KEY: "r", TOKEN_EXPIRY_KEY: NOW_MS - 1
        })

        results = await asyncio.gather(*(tokens.get_access_token() for _ in range(5)))

        assert results == ["fresh-token"] * 5
        assert len(refresher.calls) == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_clears_tokens(self):
        refresher = FakeRefresher(error=AuthenticationError("invalid_grant"))
        tokens, storage = make_store(refresher, **{
            ACCESS_TOKEN_KEY: "old", REFRESH_TOKEN_KEY: "r", TOKEN_EXPIRY_KEY: NOW_MS - 1
        })

        assert await tokens.get_access_token() is None
        assert storage.data == {}

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_clears(self):
        tokens, storage = make_store(FakeRefresher(), **{
            ACCESS_TOKEN_KEY: "old", TOKEN_EXPIRY_KEY: NOW_MS - 1
        })

        assert await tokens.get_access_token() is None
        assert storage.data == {}

    @pytest.mark.asyncio
    async def test_store_tokens_with_lifetime(self):
        tokens, storage = make_store()

        await tokens.store_tokens("abc", refresh_token="r", expires_in=3600)

        stored = await tokens.get_stored_tokens()
        assert stored.access_token == "abc"
        assert stored.refresh_token == "r"
        assert stored.expiry == NOW_MS + 3_600_000

    @pytest.mark.asyncio
    async def test_unparsable_expiry_is_ignored(self):
        tokens, _ = make_store(**{ACCESS_TOKEN_KEY: "abc", TOKEN_EXPIRY_KEY: "soon"})

        assert (await tokens.get_stored_tokens()).expiry is None
        assert await tokens.get_access_token() == "abc"

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self):
        refresher = FakeRefresher()
        tokens, _ = make_store(refresher, **{
            ACCESS_TOKEN_KEY: "old", REFRESH_TOKEN_KEY: "r", TOKEN_EXPIRY_KEY: NOW_MS + 600_000
        })

        await tokens.invalidate_access_token()

        assert await tokens.get_access_token() == "fresh-token"

    @pytest.mark.asyncio
    async def test_clear(self):
        tokens, storage = make_store(**{ACCESS_TOKEN_KEY: "a", REFRESH_TOKEN_KEY: "r"})

        await tokens.clear()

        assert storage.data == {}


class TestGoogleTokenRefresher:
    """Tests for the google-auth backed refresher."""

    @pytest.mark.asyncio
    async def test_requires_client_credentials(self, tmp_path):
        refresher = GoogleTokenRefresher(make_settings(tmp_path))

        with pytest.raises(AuthenticationError):
            await refresher("refresh-token")
