"""Connection Store: per-user OAuth credentials and selected calendar.

Token columns hold ciphertexts only; this module never sees plaintext tokens
and never logs token values.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

from timeblock_sync.db import acquire_conn
from timeblock_sync.models import ConnectionRecord

logger = logging.getLogger(__name__)

_TABLE = "calendar_connections"

_COLUMNS = """
    user_id, google_user_id, account_email,
    access_token_encrypted, refresh_token_encrypted, token_expiry,
    selected_calendar_id, selected_calendar_name, is_active,
    created_at, updated_at
"""


class ConnectionRepository(Protocol):
    """Persistence contract for :class:`ConnectionRecord` rows."""

    async def get(self, user_id: str) -> ConnectionRecord | None:
        """Return the user's connection (active or not), or ``None``."""
        ...

    async def upsert(self, record: ConnectionRecord) -> None:
        """Insert or replace the user's connection after an OAuth handshake."""
        ...

    async def update_tokens(
        self,
        user_id: str,
        *,
        access_token_encrypted: str,
        token_expiry: datetime,
        refresh_token_encrypted: str | None = None,
    ) -> None:
        """Persist a refreshed access token; keep the refresh token unless rotated."""
        ...

    async def select_calendar(self, user_id: str, *, calendar_id: str, calendar_name: str) -> None:
        """Record the chosen calendar and mark the connection active."""
        ...

    async def deactivate(self, user_id: str) -> bool:
        """Mark the connection inactive; return whether a row was changed."""
        ...


class PostgresConnectionStore:
    """asyncpg-backed :class:`ConnectionRepository`."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def get(self, user_id: str) -> ConnectionRecord | None:
        async with acquire_conn(self._pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE user_id = $1",
                user_id,
            )
        if row is None:
            return None
        return ConnectionRecord(**dict(row))

    async def upsert(self, record: ConnectionRecord) -> None:
        async with acquire_conn(self._pool) as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE}
                    (user_id, google_user_id, account_email,
                     access_token_encrypted, refresh_token_encrypted, token_expiry,
                     selected_calendar_id, selected_calendar_name, is_active)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (user_id) DO UPDATE SET
                    google_user_id          = EXCLUDED.google_user_id,
                    account_email           = EXCLUDED.account_email,
                    access_token_encrypted  = EXCLUDED.access_token_encrypted,
                    refresh_token_encrypted = COALESCE(
                        EXCLUDED.refresh_token_encrypted,
                        {_TABLE}.refresh_token_encrypted
                    ),
                    token_expiry            = EXCLUDED.token_expiry,
                    selected_calendar_id    = EXCLUDED.selected_calendar_id,
                    selected_calendar_name  = EXCLUDED.selected_calendar_name,
                    is_active               = EXCLUDED.is_active,
                    updated_at              = now()
                """,
                record.user_id,
                record.google_user_id,
                record.account_email,
                record.access_token_encrypted,
                record.refresh_token_encrypted,
                record.token_expiry,
                record.selected_calendar_id,
                record.selected_calendar_name,
                record.is_active,
            )
        logger.info(
            "Calendar connection stored: user=%s google_user=%s active=%s",
            record.user_id,
            record.google_user_id,
            record.is_active,
        )

    async def update_tokens(
        self,
        user_id: str,
        *,
        access_token_encrypted: str,
        token_expiry: datetime,
        refresh_token_encrypted: str | None = None,
    ) -> None:
        async with acquire_conn(self._pool) as conn:
            await conn.execute(
                f"""
                UPDATE {_TABLE} SET
                    access_token_encrypted  = $2,
                    token_expiry            = $3,
                    refresh_token_encrypted = COALESCE($4, refresh_token_encrypted),
                    updated_at              = now()
                WHERE user_id = $1
                """,
                user_id,
                access_token_encrypted,
                token_expiry,
                refresh_token_encrypted,
            )

    async def select_calendar(self, user_id: str, *, calendar_id: str, calendar_name: str) -> None:
        async with acquire_conn(self._pool) as conn:
            await conn.execute(
                f"""
                UPDATE {_TABLE} SET
                    selected_calendar_id   = $2,
                    selected_calendar_name = $3,
                    is_active              = true,
                    updated_at             = now()
                WHERE user_id = $1
                """,
                user_id,
                calendar_id,
                calendar_name,
            )

    async def deactivate(self, user_id: str) -> bool:
        async with acquire_conn(self._pool) as conn:
            status = await conn.execute(
                f"UPDATE {_TABLE} SET is_active = false, updated_at = now() WHERE user_id = $1",
                user_id,
            )
        # asyncpg returns a command tag such as "UPDATE 1"
        return isinstance(status, str) and status.rsplit(" ", 1)[-1] not in ("", "0")
