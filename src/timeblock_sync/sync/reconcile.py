"""Event Mapping Reconciler: identity rules over the mapping store.

The mapping table is the single source of identity truth: one remote event
is never claimed by two local blocks.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime

from timeblock_sync.errors import MappingConflictError
from timeblock_sync.models import EventMapping, PollResult, RemoteEventSnapshot, SyncDirection
from timeblock_sync.stores.mappings import EventMappingRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EventMappingReconciler:
    """Binds, refreshes, and unbinds block <-> remote event mappings."""

    def __init__(
        self,
        mappings: EventMappingRepository,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._mappings = mappings
        self._clock = clock

    # ------------------------------------------------------------------
    # Pull path
    # ------------------------------------------------------------------

    async def classify_candidates(
        self,
        user_id: str,
        candidates: Iterable[RemoteEventSnapshot],
    ) -> tuple[list[RemoteEventSnapshot], list[RemoteEventSnapshot]]:
        """Split candidates into ``(new, updated)``; unchanged events are dropped.

        One batched lookup by remote id: no mapping means new, a differing
        etag means updated.
        """
        candidate_list = list(candidates)
        if not candidate_list:
            return [], []

        existing = await self._mappings.get_many_by_remote(
            user_id, [snapshot.id for snapshot in candidate_list]
        )
        new: list[RemoteEventSnapshot] = []
        updated: list[RemoteEventSnapshot] = []
        for snapshot in candidate_list:
            mapping = existing.get(snapshot.id)
            if mapping is None:
                new.append(snapshot)
            elif mapping.google_etag != snapshot.etag:
                updated.append(snapshot)
        return new, updated

    async def unbind_remote_ids(self, user_id: str, google_event_ids: Iterable[str]) -> int:
        """Drop mappings for remotely cancelled events."""
        ids = list(dict.fromkeys(google_event_ids))
        if not ids:
            return 0
        removed = await self._mappings.delete_by_remote_ids(user_id, ids)
        if removed:
            logger.info("Removed %d mapping(s) for cancelled remote events", removed)
        return removed

    async def bind_pulled(
        self, user_id: str, block_id: str, snapshot: RemoteEventSnapshot
    ) -> EventMapping:
        """Record that *snapshot* was materialized locally as *block_id*."""
        return await self._bind(
            user_id,
            block_id=block_id,
            google_event_id=snapshot.id,
            etag=snapshot.etag,
            direction=SyncDirection.GOOGLE_TO_APP,
        )

    async def acknowledge_pull(
        self,
        user_id: str,
        result: PollResult,
        created_blocks: Mapping[str, str],
    ) -> int:
        """Bind newly created blocks and store etags of applied updates.

        *created_blocks* maps remote event id to the block id the caller
        created for it.  A conflicting binding is logged and skipped so one
        bad event does not abort the rest.
        """
        acknowledged = 0
        by_id = {snapshot.id: snapshot for snapshot in result.new}
        for remote_id, block_id in created_blocks.items():
            snapshot = by_id.get(remote_id)
            if snapshot is None:
                logger.warning("Ignoring binding for unknown pulled event %s", remote_id)
                continue
            try:
                await self.bind_pulled(user_id, block_id, snapshot)
            except MappingConflictError:
                continue
            acknowledged += 1

        if result.updated:
            existing = await self._mappings.get_many_by_remote(
                user_id, [snapshot.id for snapshot in result.updated]
            )
            for snapshot in result.updated:
                mapping = existing.get(snapshot.id)
                if mapping is not None:
                    await self._mappings.update_etag(user_id, mapping.block_id, snapshot.etag)
                    acknowledged += 1
        return acknowledged

    # ------------------------------------------------------------------
    # Push path
    # ------------------------------------------------------------------

    async def lookup_block(self, user_id: str, block_id: str) -> EventMapping | None:
        return await self._mappings.get_by_block(user_id, block_id)

    async def bind_pushed(
        self, user_id: str, block_id: str, google_event_id: str, etag: str | None
    ) -> EventMapping:
        """Record a mapping after a push-create.

        Raises
        ------
        MappingConflictError
            If *google_event_id* is already mapped to another block; the
            existing mapping is left unchanged.
        """
        return await self._bind(
            user_id,
            block_id=block_id,
            google_event_id=google_event_id,
            etag=etag,
            direction=SyncDirection.APP_TO_GOOGLE,
        )

    async def refresh_etag(self, user_id: str, block_id: str, etag: str | None) -> None:
        await self._mappings.update_etag(user_id, block_id, etag)

    async def unbind_block(self, user_id: str, block_id: str) -> bool:
        return await self._mappings.delete_by_block(user_id, block_id)

    # ------------------------------------------------------------------

    async def _bind(
        self,
        user_id: str,
        *,
        block_id: str,
        google_event_id: str,
        etag: str | None,
        direction: SyncDirection,
    ) -> EventMapping:
        existing = await self._mappings.get_by_remote(user_id, google_event_id)
        if existing is not None and existing.block_id != block_id:
            logger.error(
                "Mapping invariant violation: remote event %s already bound to block %s, "
                "refusing to bind block %s",
                google_event_id,
                existing.block_id,
                block_id,
            )
            raise MappingConflictError(
                remote_event_id=google_event_id,
                existing_block_id=existing.block_id,
                block_id=block_id,
            )

        mapping = EventMapping(
            user_id=user_id,
            block_id=block_id,
            google_event_id=google_event_id,
            google_etag=etag,
            sync_direction=direction,
            last_synced_at=self._clock(),
        )
        await self._mappings.insert(mapping)
        return mapping
