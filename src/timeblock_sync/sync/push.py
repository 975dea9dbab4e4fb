"""Push Adapter: local block mutations -> Google create/update/delete.

Pushing is best-effort.  Every failure is logged and reported through the
``notifier`` as a "sync failed" signal; nothing is raised into the caller's
local mutation path.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from timeblock_sync.core.logging import user_context
from timeblock_sync.errors import CalendarRequestError, PushError, sanitize_error_message
from timeblock_sync.google.client import GoogleCalendarClient
from timeblock_sync.google.events import build_google_event_body
from timeblock_sync.models import BlockEventData, PushAction, PushResult
from timeblock_sync.stores.connections import ConnectionRepository
from timeblock_sync.sync.reconcile import EventMappingReconciler

logger = logging.getLogger(__name__)

PushFailureNotifier = Callable[[str, PushError], Awaitable[None] | None]

_REMOTE_GONE_STATUSES = (404, 410)


class PushAdapter:
    """Mirrors local block mutations into the selected Google calendar."""

    def __init__(
        self,
        *,
        connections: ConnectionRepository,
        reconciler: EventMappingReconciler,
        calendar_client: GoogleCalendarClient,
        notifier: PushFailureNotifier | None = None,
    ) -> None:
        self._connections = connections
        self._reconciler = reconciler
        self._calendar = calendar_client
        self._notifier = notifier

    async def push_block(
        self,
        user_id: str,
        block_id: str,
        action: PushAction | str,
        event_data: BlockEventData | dict[str, Any] | None = None,
    ) -> PushResult | None:
        """Apply one block mutation remotely.

        Returns ``None`` when the user is not connected, has no calendar
        selected, or the push failed.
        """
        with user_context(user_id):
            connection = await self._connections.get(user_id)
            calendar_id = connection.selected_calendar_id if connection is not None else None
            if connection is None or not connection.is_active or not calendar_id:
                logger.debug("Skipping push for block %s: calendar not connected", block_id)
                return None

            action_name = str(action)
            try:
                push_action = PushAction(action)
                data = (
                    BlockEventData.model_validate(event_data)
                    if isinstance(event_data, dict)
                    else event_data
                )
                if push_action is PushAction.CREATE:
                    return await self._create(user_id, calendar_id, block_id, data)
                if push_action is PushAction.UPDATE:
                    return await self._update(user_id, calendar_id, block_id, data)
                return await self._delete(user_id, calendar_id, block_id)
            except Exception as exc:
                error = PushError(
                    block_id=block_id,
                    action=action_name,
                    message=sanitize_error_message(exc),
                )
                logger.warning("Calendar push failed: %s", error)
                await self._notify(user_id, error)
                return None

    async def _create(
        self,
        user_id: str,
        calendar_id: str,
        block_id: str,
        data: BlockEventData | None,
    ) -> PushResult:
        if data is None:
            raise ValueError("event data is required to create a calendar event")
        event = await self._calendar.insert_event(
            user_id=user_id, calendar_id=calendar_id, body=build_google_event_body(data)
        )
        event_id = event.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise CalendarRequestError(
                status_code=200, message="Google Calendar insert response is missing an event id"
            )
        etag = event.get("etag")
        await self._reconciler.bind_pushed(user_id, block_id, event_id, etag)
        logger.info("Created calendar event %s for block %s", event_id, block_id)
        return PushResult(
            block_id=block_id, action=PushAction.CREATE, google_event_id=event_id, etag=etag
        )

    async def _update(
        self,
        user_id: str,
        calendar_id: str,
        block_id: str,
        data: BlockEventData | None,
    ) -> PushResult:
        if data is None:
            raise ValueError("event data is required to update a calendar event")
        mapping = await self._reconciler.lookup_block(user_id, block_id)
        if mapping is None:
            logger.info("No mapping for block %s; creating its calendar event instead", block_id)
            return await self._create(user_id, calendar_id, block_id, data)

        try:
            event = await self._calendar.update_event(
                user_id=user_id,
                calendar_id=calendar_id,
                event_id=mapping.google_event_id,
                body=build_google_event_body(data),
            )
        except CalendarRequestError as exc:
            if exc.status_code not in _REMOTE_GONE_STATUSES:
                raise
            logger.info(
                "Calendar event %s for block %s was deleted remotely; recreating",
                mapping.google_event_id,
                block_id,
            )
            await self._reconciler.unbind_block(user_id, block_id)
            return await self._create(user_id, calendar_id, block_id, data)

        etag = event.get("etag")
        await self._reconciler.refresh_etag(user_id, block_id, etag)
        return PushResult(
            block_id=block_id,
            action=PushAction.UPDATE,
            google_event_id=mapping.google_event_id,
            etag=etag,
        )

    async def _delete(self, user_id: str, calendar_id: str, block_id: str) -> PushResult:
        mapping = await self._reconciler.lookup_block(user_id, block_id)
        if mapping is None:
            return PushResult(block_id=block_id, action=PushAction.DELETE)

        await self._calendar.delete_event(
            user_id=user_id, calendar_id=calendar_id, event_id=mapping.google_event_id
        )
        await self._reconciler.unbind_block(user_id, block_id)
        logger.info("Deleted calendar event %s for block %s", mapping.google_event_id, block_id)
        return PushResult(
            block_id=block_id, action=PushAction.DELETE, google_event_id=mapping.google_event_id
        )

    async def _notify(self, user_id: str, error: PushError) -> None:
        if self._notifier is None:
            return
        try:
            outcome = self._notifier(user_id, error)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Push failure notifier raised")
