"""Sync State Store: incremental cursor, timestamps, and health per user."""

from __future__ import annotations

from typing import Any, Protocol

from timeblock_sync.db import acquire_conn
from timeblock_sync.models import SyncState

_TABLE = "calendar_sync_state"


class SyncStateRepository(Protocol):
    """Persistence contract for :class:`SyncState`."""

    async def load(self, user_id: str) -> SyncState:
        """Load state for *user_id*; a never-synced user gets an empty state."""
        ...

    async def save(self, state: SyncState) -> None:
        """Persist *state*, replacing the previous row."""
        ...


class PostgresSyncStateStore:
    """asyncpg-backed :class:`SyncStateRepository`."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def load(self, user_id: str) -> SyncState:
        async with acquire_conn(self._pool) as conn:
            row = await conn.fetchrow(
                f"""
                SELECT user_id, calendar_id, sync_token, sync_status, last_error,
                       last_full_sync_at, last_incremental_sync_at, updated_at
                FROM {_TABLE}
                WHERE user_id = $1
                """,
                user_id,
            )
        if row is None:
            return SyncState(user_id=user_id)
        return SyncState(**dict(row))

    async def save(self, state: SyncState) -> None:
        async with acquire_conn(self._pool) as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE}
                    (user_id, calendar_id, sync_token, sync_status, last_error,
                     last_full_sync_at, last_incremental_sync_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (user_id) DO UPDATE SET
                    calendar_id              = EXCLUDED.calendar_id,
                    sync_token               = EXCLUDED.sync_token,
                    sync_status              = EXCLUDED.sync_status,
                    last_error               = EXCLUDED.last_error,
                    last_full_sync_at        = EXCLUDED.last_full_sync_at,
                    last_incremental_sync_at = EXCLUDED.last_incremental_sync_at,
                    updated_at               = now()
                """,
                state.user_id,
                state.calendar_id,
                state.sync_token,
                str(state.sync_status),
                state.last_error,
                state.last_full_sync_at,
                state.last_incremental_sync_at,
            )
