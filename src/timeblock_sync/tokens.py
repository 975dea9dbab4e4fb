"""Token Lifecycle Manager: a valid access token before every Google call.

Access tokens are reused until they come within ``refresh_buffer`` of their
expiry, then replaced through a refresh-token grant.  A failed refresh leaves
the stored record untouched so the user can be prompted to reconnect.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from timeblock_sync.crypto import FIELD_ACCESS_TOKEN, FIELD_REFRESH_TOKEN, TokenCipher
from timeblock_sync.errors import NoConnectionError, TokenRefreshError
from timeblock_sync.google.oauth_client import GoogleOAuthClient
from timeblock_sync.models import ConnectionRecord
from timeblock_sync.stores.connections import ConnectionRepository

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


class TokenLifecycleManager:
    """Loads, reuses, and refreshes per-user Google access tokens."""

    def __init__(
        self,
        *,
        connections: ConnectionRepository,
        cipher: TokenCipher,
        oauth_client: GoogleOAuthClient,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
        clock: Clock = utcnow,
    ) -> None:
        self._connections = connections
        self._cipher = cipher
        self._oauth_client = oauth_client
        self._refresh_buffer = refresh_buffer
        self._clock = clock
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def get_valid_access_token(self, user_id: str, *, force_refresh: bool = False) -> str:
        """Return a usable access token for *user_id*.

        Raises
        ------
        NoConnectionError
            When the user has no active connection.
        TokenRefreshError
            When a needed refresh fails; the stored record is not modified.
        """
        record = await self._load_active(user_id)
        if not force_refresh and self._token_is_fresh(record):
            return self._decrypt_access_token(record)

        async with self._refresh_guard(user_id):
            # Another task may have refreshed while we waited.
            record = await self._load_active(user_id)
            if not force_refresh and self._token_is_fresh(record):
                return self._decrypt_access_token(record)
            return await self._refresh(record)

    @asynccontextmanager
    async def _refresh_guard(self, user_id: str) -> AsyncIterator[None]:
        """Per-user refresh lock, dropped once no task holds or awaits it."""
        lock = self._refresh_locks.get(user_id)
        if lock is None:
            lock = self._refresh_locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[user_id] - 1
            if remaining:
                self._lock_users[user_id] = remaining
            else:
                del self._lock_users[user_id]
                del self._refresh_locks[user_id]

    async def _load_active(self, user_id: str) -> ConnectionRecord:
        record = await self._connections.get(user_id)
        if record is None or not record.is_active:
            raise NoConnectionError(user_id)
        return record

    def _token_is_fresh(self, record: ConnectionRecord) -> bool:
        if not record.access_token_encrypted or record.token_expiry is None:
            return False
        return record.token_expiry - self._clock() > self._refresh_buffer

    def _decrypt_access_token(self, record: ConnectionRecord) -> str:
        return self._cipher.decrypt(
            record.access_token_encrypted, user_id=record.user_id, field=FIELD_ACCESS_TOKEN
        )

    async def _refresh(self, record: ConnectionRecord) -> str:
        user_id = record.user_id
        if not record.refresh_token_encrypted:
            raise TokenRefreshError(f"No refresh token stored for user {user_id!r}")

        refresh_token = self._cipher.decrypt(
            record.refresh_token_encrypted, user_id=user_id, field=FIELD_REFRESH_TOKEN
        )
        try:
            grant = await self._oauth_client.refresh_access_token(refresh_token)
        except TokenRefreshError:
            logger.warning("Access token refresh failed for user=%s; reconnect required", user_id)
            raise

        expiry = self._clock() + timedelta(seconds=grant.expires_in)
        rotated_refresh = (
            self._cipher.encrypt(grant.refresh_token, user_id=user_id, field=FIELD_REFRESH_TOKEN)
            if grant.refresh_token and grant.refresh_token != refresh_token
            else None
        )
        await self._connections.update_tokens(
            user_id,
            access_token_encrypted=self._cipher.encrypt(
                grant.access_token, user_id=user_id, field=FIELD_ACCESS_TOKEN
            ),
            token_expiry=expiry,
            refresh_token_encrypted=rotated_refresh,
        )
        logger.info(
            "Access token refreshed for user=%s (expires_in=%ds, rotated_refresh=%s)",
            user_id,
            grant.expires_in,
            rotated_refresh is not None,
        )
        return grant.access_token
