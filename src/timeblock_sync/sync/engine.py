"""Change Poller: full/incremental fetch, classification, and reconciliation.

A poll reads the user's selected calendar through Google's sync-token
protocol and returns what changed.  It never writes local schedule data;
applying the result is the caller's job.

The stored cursor only ever advances after every page of a poll has been
fetched, so a failure mid-pagination cannot silently skip the remainder.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from timeblock_sync.core.logging import user_context
from timeblock_sync.errors import (
    CalendarAuthError,
    CalendarNotSelectedError,
    CalendarSyncTokenExpiredError,
    NoConnectionError,
    sanitize_error_message,
)
from timeblock_sync.google.client import AccessTokenSource, GoogleCalendarClient
from timeblock_sync.google.events import (
    UnsupportedEventError,
    event_id_of,
    is_cancelled,
    snapshot_from_google,
)
from timeblock_sync.models import (
    PollResult,
    RemoteEventSnapshot,
    SyncState,
    SyncStatusValue,
)
from timeblock_sync.stores.connections import ConnectionRepository
from timeblock_sync.stores.sync_state import SyncStateRepository
from timeblock_sync.sync.reconcile import EventMappingReconciler

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 250
DEFAULT_PAST_DAYS = 30
DEFAULT_FUTURE_DAYS = 90

TOKEN_FAILURE_MESSAGE = "Failed to get valid access token"
RETRY_EXHAUSTED_MESSAGE = "Sync token was rejected twice; full resync did not complete"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ChangePoller:
    """Runs one poll of a user's selected Google calendar."""

    def __init__(
        self,
        *,
        connections: ConnectionRepository,
        sync_states: SyncStateRepository,
        reconciler: EventMappingReconciler,
        calendar_client: GoogleCalendarClient,
        token_source: AccessTokenSource,
        page_size: int = DEFAULT_PAGE_SIZE,
        full_sync_past_days: int = DEFAULT_PAST_DAYS,
        full_sync_future_days: int = DEFAULT_FUTURE_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._connections = connections
        self._sync_states = sync_states
        self._reconciler = reconciler
        self._calendar = calendar_client
        self._token_source = token_source
        self._page_size = page_size
        self._past = timedelta(days=full_sync_past_days)
        self._future = timedelta(days=full_sync_future_days)
        self._clock = clock

    async def sync(self, user_id: str) -> PollResult:
        """Poll, recovering once from an invalidated cursor with a full sync.

        Raises
        ------
        CalendarSyncTokenExpiredError
            If the retry also reports an invalid cursor.
        """
        result = await self.poll_changes(user_id)
        if not result.requires_retry:
            return result

        logger.info("Sync cursor invalidated for user=%s; retrying as full sync", user_id)
        result = await self.poll_changes(user_id)
        if result.requires_retry:
            state = await self._sync_states.load(user_id)
            state.sync_status = SyncStatusValue.ERROR
            state.last_error = RETRY_EXHAUSTED_MESSAGE
            await self._sync_states.save(state)
            raise CalendarSyncTokenExpiredError(RETRY_EXHAUSTED_MESSAGE)
        return result

    async def poll_changes(self, user_id: str) -> PollResult:
        """Fetch and classify remote changes since the stored cursor.

        Returns ``requires_retry=True`` (and clears the cursor, keeping the
        status ``active``) when Google rejects the cursor.  Other failures
        are recorded as ``status=error`` with the cursor untouched, then
        re-raised.
        """
        with user_context(user_id):
            calendar_id = await self._selected_calendar(user_id)
            state = await self._sync_states.load(user_id)

            try:
                await self._token_source.get_valid_access_token(user_id)
            except CalendarAuthError:
                state.sync_status = SyncStatusValue.ERROR
                state.last_error = TOKEN_FAILURE_MESSAGE
                await self._sync_states.save(state)
                raise

            cursor = state.sync_token
            if cursor is not None and state.calendar_id not in (None, calendar_id):
                logger.info(
                    "Selected calendar changed (%s -> %s); discarding stored cursor",
                    state.calendar_id,
                    calendar_id,
                )
                cursor = None
            is_full_sync = cursor is None

            try:
                items, next_sync_token = await self._collect_pages(
                    user_id=user_id, calendar_id=calendar_id, cursor=cursor
                )
            except CalendarSyncTokenExpiredError:
                logger.warning(
                    "Sync token rejected by Google for user=%s calendar=%s; cursor cleared",
                    user_id,
                    calendar_id,
                )
                state.calendar_id = calendar_id
                state.sync_token = None
                state.sync_status = SyncStatusValue.ACTIVE
                await self._sync_states.save(state)
                return PollResult.retry(is_full_sync=is_full_sync)
            except Exception as exc:
                await self._record_failure(state, exc)
                raise

            try:
                candidates, deleted_ids = self._classify(items)
                new, updated = await self._reconciler.classify_candidates(user_id, candidates)
                await self._reconciler.unbind_remote_ids(user_id, deleted_ids)
            except Exception as exc:
                await self._record_failure(state, exc)
                raise

            now = self._clock()
            state.calendar_id = calendar_id
            if next_sync_token is not None:
                state.sync_token = next_sync_token
            else:
                logger.warning("Google did not issue a sync token for calendar %s", calendar_id)
            state.sync_status = SyncStatusValue.ACTIVE
            state.last_error = None
            if is_full_sync:
                state.last_full_sync_at = now
            else:
                state.last_incremental_sync_at = now
            await self._sync_states.save(state)

            logger.info(
                "Calendar poll complete: mode=%s fetched=%d new=%d updated=%d deleted=%d",
                "full" if is_full_sync else "incremental",
                len(items),
                len(new),
                len(updated),
                len(deleted_ids),
            )
            return PollResult(
                is_full_sync=is_full_sync,
                new=new,
                updated=updated,
                deleted=deleted_ids,
                total_fetched=len(items),
            )

    async def _selected_calendar(self, user_id: str) -> str:
        connection = await self._connections.get(user_id)
        if connection is None or not connection.is_active:
            raise NoConnectionError(user_id)
        if not connection.selected_calendar_id:
            raise CalendarNotSelectedError(user_id)
        return connection.selected_calendar_id

    async def _collect_pages(
        self,
        *,
        user_id: str,
        calendar_id: str,
        cursor: str | None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        time_min: datetime | None = None
        time_max: datetime | None = None
        if cursor is None:
            now = self._clock()
            time_min = now - self._past
            time_max = now + self._future

        items: list[dict[str, Any]] = []
        page_token: str | None = None
        next_sync_token: str | None = None

        while True:
            page = await self._calendar.list_events_page(
                user_id=user_id,
                calendar_id=calendar_id,
                sync_token=cursor,
                time_min=time_min,
                time_max=time_max,
                page_token=page_token,
                page_size=self._page_size,
            )
            items.extend(page.items)
            if page.next_sync_token is not None:
                next_sync_token = page.next_sync_token
            page_token = page.next_page_token
            if page_token is None:
                break

        return items, next_sync_token

    def _classify(
        self, items: list[dict[str, Any]]
    ) -> tuple[list[RemoteEventSnapshot], list[str]]:
        # Later pages win when an event appears more than once.
        latest: dict[str, dict[str, Any]] = {}
        for item in items:
            event_id = event_id_of(item)
            if event_id is None:
                logger.warning("Dropping calendar event without an id")
                continue
            latest.pop(event_id, None)
            latest[event_id] = item

        candidates: list[RemoteEventSnapshot] = []
        deleted_ids: list[str] = []
        for event_id, item in latest.items():
            if is_cancelled(item):
                deleted_ids.append(event_id)
                continue
            try:
                candidates.append(snapshot_from_google(item))
            except UnsupportedEventError as exc:
                logger.debug("Skipping event %s: %s", event_id, exc)
            except ValueError as exc:
                logger.warning("Dropping malformed event %s: %s", event_id, exc)
        return candidates, deleted_ids

    async def _record_failure(self, state: SyncState, exc: Exception) -> None:
        state.sync_status = SyncStatusValue.ERROR
        state.last_error = sanitize_error_message(exc)
        await self._sync_states.save(state)
        logger.warning("Calendar poll failed for user=%s: %s", state.user_id, state.last_error)
