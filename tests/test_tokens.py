"""Tests for TokenLifecycleManager: reuse, refresh, rotation, failure."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from timeblock_sync.crypto import FIELD_ACCESS_TOKEN, FIELD_REFRESH_TOKEN
from timeblock_sync.errors import NoConnectionError, TokenRefreshError

pytestmark = pytest.mark.unit


def _stored_tokens(connections, cipher, user_id="user-1"):
    record = connections.records[user_id]
    access = cipher.decrypt(record.access_token_encrypted, user_id=user_id, field=FIELD_ACCESS_TOKEN)
    refresh = cipher.decrypt(
        record.refresh_token_encrypted, user_id=user_id, field=FIELD_REFRESH_TOKEN
    )
    return access, refresh, record.token_expiry


class TestReuse:
    async def test_fresh_token_is_returned_without_network(
        self, services, connected_user, google
    ) -> None:
        token = await services.tokens.get_valid_access_token("user-1")
        assert token == "access-0"
        assert google.requests == []

    async def test_token_just_outside_buffer_is_reused(
        self, services, connection_factory, google
    ) -> None:
        connection_factory(expires_in=timedelta(minutes=5, seconds=1))
        assert await services.tokens.get_valid_access_token("user-1") == "access-0"
        assert google.token_requests() == []


class TestRefresh:
    async def test_token_inside_buffer_is_refreshed(
        self, services, connection_factory, connections, cipher, clock, google
    ) -> None:
        connection_factory(expires_in=timedelta(minutes=4))

        token = await services.tokens.get_valid_access_token("user-1")

        assert token == "access-1"
        access, refresh, expiry = _stored_tokens(connections, cipher)
        assert access == "access-1"
        assert refresh == "refresh-0"
        assert expiry == clock() + timedelta(seconds=3600)
        assert len(google.token_requests()) == 1

    async def test_expired_token_is_refreshed(self, services, connection_factory) -> None:
        connection_factory(expires_in=timedelta(minutes=-30))
        assert await services.tokens.get_valid_access_token("user-1") == "access-1"

    async def test_force_refresh_ignores_expiry(self, services, connected_user) -> None:
        token = await services.tokens.get_valid_access_token("user-1", force_refresh=True)
        assert token == "access-1"

    async def test_rotated_refresh_token_is_stored(
        self, services, connection_factory, connections, cipher, clock, google
    ) -> None:
        connection_factory(expires_in=timedelta(seconds=0))
        google.script(
            "POST",
            "/token",
            200,
            json_body={
                "access_token": "access-rotated",
                "refresh_token": "refresh-rotated",
                "expires_in": 1800,
            },
        )

        assert await services.tokens.get_valid_access_token("user-1") == "access-rotated"
        access, refresh, expiry = _stored_tokens(connections, cipher)
        assert (access, refresh) == ("access-rotated", "refresh-rotated")
        assert expiry == clock() + timedelta(seconds=1800)

    async def test_concurrent_callers_share_one_refresh(
        self, services, connection_factory, google
    ) -> None:
        connection_factory(expires_in=timedelta(seconds=10))

        tokens = await asyncio.gather(
            services.tokens.get_valid_access_token("user-1"),
            services.tokens.get_valid_access_token("user-1"),
            services.tokens.get_valid_access_token("user-1"),
        )

        assert tokens == ["access-1", "access-1", "access-1"]
        assert len(google.token_requests()) == 1
        assert services.tokens._refresh_locks == {}
        assert services.tokens._lock_users == {}


class TestFailures:
    async def test_failed_refresh_leaves_record_untouched(
        self, services, connection_factory, connections, google
    ) -> None:
        connection_factory(expires_in=timedelta(minutes=-1))
        google.valid_refresh_tokens.clear()
        before = connections.records["user-1"]

        with pytest.raises(TokenRefreshError, match="invalid_grant"):
            await services.tokens.get_valid_access_token("user-1")

        assert connections.records["user-1"] == before
        assert services.tokens._refresh_locks == {}

    async def test_refresh_error_message_does_not_leak_the_token(
        self, services, connection_factory, google
    ) -> None:
        connection_factory(expires_in=timedelta(minutes=-1))
        google.valid_refresh_tokens.clear()
        with pytest.raises(TokenRefreshError) as exc_info:
            await services.tokens.get_valid_access_token("user-1")
        assert "refresh-0" not in str(exc_info.value)

    async def test_missing_refresh_token(self, services, connection_factory) -> None:
        connection_factory(refresh_token=None, expires_in=timedelta(minutes=-1))
        with pytest.raises(TokenRefreshError, match="No refresh token"):
            await services.tokens.get_valid_access_token("user-1")

    async def test_no_connection(self, services) -> None:
        with pytest.raises(NoConnectionError):
            await services.tokens.get_valid_access_token("user-1")

    async def test_inactive_connection(self, services, connection_factory) -> None:
        connection_factory(is_active=False)
        with pytest.raises(NoConnectionError):
            await services.tokens.get_valid_access_token("user-1")
