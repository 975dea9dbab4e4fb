"""Event Mapping Store: block id <-> Google event id, with etag.

Uniqueness of both ``(user_id, block_id)`` and ``(user_id, google_event_id)``
is enforced by the table; identity rules live in
:mod:`timeblock_sync.sync.reconcile`.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

import asyncpg

from timeblock_sync.db import acquire_conn
from timeblock_sync.errors import MappingConflictError
from timeblock_sync.models import EventMapping

_TABLE = "calendar_event_mappings"

_COLUMNS = "user_id, block_id, google_event_id, google_etag, sync_direction, last_synced_at"


def _rows_affected(status: Any) -> int:
    if not isinstance(status, str):
        return 0
    tail = status.rsplit(" ", 1)[-1]
    return int(tail) if tail.isdigit() else 0


class EventMappingRepository(Protocol):
    """Persistence contract for :class:`EventMapping` rows."""

    async def get_by_block(self, user_id: str, block_id: str) -> EventMapping | None: ...

    async def get_by_remote(self, user_id: str, google_event_id: str) -> EventMapping | None: ...

    async def get_many_by_remote(
        self, user_id: str, google_event_ids: Sequence[str]
    ) -> dict[str, EventMapping]:
        """Batch lookup keyed by remote event id; missing ids are absent."""
        ...

    async def insert(self, mapping: EventMapping) -> None: ...

    async def update_etag(self, user_id: str, block_id: str, etag: str | None) -> None: ...

    async def delete_by_block(self, user_id: str, block_id: str) -> bool: ...

    async def delete_by_remote_ids(self, user_id: str, google_event_ids: Sequence[str]) -> int: ...


class PostgresEventMappingStore:
    """asyncpg-backed :class:`EventMappingRepository`."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def get_by_block(self, user_id: str, block_id: str) -> EventMapping | None:
        async with acquire_conn(self._pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE user_id = $1 AND block_id = $2",
                user_id,
                block_id,
            )
        return EventMapping(**dict(row)) if row is not None else None

    async def get_by_remote(self, user_id: str, google_event_id: str) -> EventMapping | None:
        async with acquire_conn(self._pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE user_id = $1 AND google_event_id = $2",
                user_id,
                google_event_id,
            )
        return EventMapping(**dict(row)) if row is not None else None

    async def get_many_by_remote(
        self, user_id: str, google_event_ids: Sequence[str]
    ) -> dict[str, EventMapping]:
        if not google_event_ids:
            return {}
        async with acquire_conn(self._pool) as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {_TABLE}
                WHERE user_id = $1 AND google_event_id = ANY($2::text[])
                """,
                user_id,
                list(google_event_ids),
            )
        mappings = [EventMapping(**dict(row)) for row in rows]
        return {mapping.google_event_id: mapping for mapping in mappings}

    async def insert(self, mapping: EventMapping) -> None:
        try:
            await self._insert(mapping)
        except asyncpg.UniqueViolationError as exc:
            existing = await self.get_by_remote(mapping.user_id, mapping.google_event_id)
            raise MappingConflictError(
                remote_event_id=mapping.google_event_id,
                existing_block_id=existing.block_id if existing else "<unknown>",
                block_id=mapping.block_id,
            ) from exc

    async def _insert(self, mapping: EventMapping) -> None:
        async with acquire_conn(self._pool) as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE}
                    (user_id, block_id, google_event_id, google_etag, sync_direction,
                     last_synced_at)
                VALUES ($1, $2, $3, $4, $5, COALESCE($6, now()))
                ON CONFLICT (user_id, block_id) DO UPDATE SET
                    google_event_id = EXCLUDED.google_event_id,
                    google_etag     = EXCLUDED.google_etag,
                    sync_direction  = EXCLUDED.sync_direction,
                    last_synced_at  = EXCLUDED.last_synced_at
                """,
                mapping.user_id,
                mapping.block_id,
                mapping.google_event_id,
                mapping.google_etag,
                str(mapping.sync_direction),
                mapping.last_synced_at,
            )

    async def update_etag(self, user_id: str, block_id: str, etag: str | None) -> None:
        async with acquire_conn(self._pool) as conn:
            await conn.execute(
                f"""
                UPDATE {_TABLE} SET google_etag = $3, last_synced_at = now()
                WHERE user_id = $1 AND block_id = $2
                """,
                user_id,
                block_id,
                etag,
            )

    async def delete_by_block(self, user_id: str, block_id: str) -> bool:
        async with acquire_conn(self._pool) as conn:
            status = await conn.execute(
                f"DELETE FROM {_TABLE} WHERE user_id = $1 AND block_id = $2",
                user_id,
                block_id,
            )
        return _rows_affected(status) > 0

    async def delete_by_remote_ids(self, user_id: str, google_event_ids: Sequence[str]) -> int:
        if not google_event_ids:
            return 0
        async with acquire_conn(self._pool) as conn:
            status = await conn.execute(
                f"DELETE FROM {_TABLE} WHERE user_id = $1 AND google_event_id = ANY($2::text[])",
                user_id,
                list(google_event_ids),
            )
        return _rows_affected(status)
