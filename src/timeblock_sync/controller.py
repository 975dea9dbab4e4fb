"""Client Controller: connect, select calendar, sync now, disconnect.

One controller serves one user session.  It owns the connection phase, the
last surfaced error, and the guard that makes the OAuth return handshake
one-shot.  None of that state is process-global.
"""

from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from timeblock_sync.errors import CalendarSyncError, NoConnectionError, sanitize_error_message
from timeblock_sync.google.client import GoogleCalendarClient
from timeblock_sync.google.events import snapshot_from_google
from timeblock_sync.models import CalendarChoice, PollResult, RemoteEventSnapshot, SyncStatus
from timeblock_sync.oauth import GoogleOAuthFlow, decode_calendar_payload
from timeblock_sync.stores.connections import ConnectionRepository
from timeblock_sync.stores.sync_state import SyncStateRepository
from timeblock_sync.sync.engine import ChangePoller
from timeblock_sync.sync.reconcile import EventMappingReconciler

logger = logging.getLogger(__name__)

HANDSHAKE_PARAMS = ("oauth", "calendars", "email", "error")

_ERROR_SEPARATORS = re.compile(r"[_\-+]+")


class ControllerPhase(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CALENDAR_SELECTION_PENDING = "calendar_selection_pending"
    CONNECTED = "connected"


class NoticeLevel(StrEnum):
    SUCCESS = "success"
    ERROR = "error"


Notifier = Callable[[NoticeLevel, str], Awaitable[None] | None]


class RedirectTransport(Protocol):
    """The user agent's location, as seen by the controller."""

    def current_params(self) -> Mapping[str, str]: ...

    def strip_params(self, names: tuple[str, ...]) -> None: ...

    def navigate(self, url: str) -> None: ...


class UrlTransport:
    """A :class:`RedirectTransport` over a plain URL string."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.navigations: list[str] = []

    def current_params(self) -> Mapping[str, str]:
        return dict(parse_qsl(urlsplit(self.url).query, keep_blank_values=True))

    def strip_params(self, names: tuple[str, ...]) -> None:
        parts = urlsplit(self.url)
        kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in names]
        self.url = urlunsplit(parts._replace(query=urlencode(kept)))

    def navigate(self, url: str) -> None:
        self.navigations.append(url)


class LocalScheduleSink(Protocol):
    """Applies pulled changes to local schedule storage.

    Returns the block ids created for new remote events, keyed by remote id.
    """

    async def apply(self, user_id: str, result: PollResult) -> Mapping[str, str]: ...


def humanize_error_code(code: str) -> str:
    """``"access_denied"`` -> ``"access denied"``."""
    return " ".join(_ERROR_SEPARATORS.sub(" ", code).split()) or "unknown error"


async def load_sync_status(
    user_id: str,
    *,
    connections: ConnectionRepository,
    sync_states: SyncStateRepository,
) -> SyncStatus:
    connection = await connections.get(user_id)
    if connection is None or not connection.is_active:
        return SyncStatus(connected=False, calendar_selected=False)
    state = await sync_states.load(user_id)
    return SyncStatus(
        connected=True,
        calendar_selected=connection.calendar_selected,
        calendar_id=connection.selected_calendar_id,
        calendar_name=connection.selected_calendar_name,
        sync_status=state.sync_status,
        last_sync_at=state.last_sync_at,
        last_error=state.last_error,
        account_email=connection.account_email,
    )


async def list_window_events(
    user_id: str,
    *,
    connections: ConnectionRepository,
    calendar_client: GoogleCalendarClient,
    start_at: datetime,
    end_at: datetime,
) -> list[RemoteEventSnapshot]:
    """Timed events of the selected calendar in ``[start_at, end_at)``; empty when not connected."""
    if end_at <= start_at:
        raise ValueError("end must be after start")
    connection = await connections.get(user_id)
    calendar_id = connection.selected_calendar_id if connection is not None else None
    if connection is None or not connection.is_active or not calendar_id:
        return []
    items = await calendar_client.list_events_in_window(
        user_id=user_id,
        calendar_id=calendar_id,
        start_at=start_at,
        end_at=end_at,
    )
    snapshots: list[RemoteEventSnapshot] = []
    for item in items:
        try:
            snapshots.append(snapshot_from_google(item))
        except ValueError:
            continue
    return snapshots


@dataclass
class ControllerState:
    phase: ControllerPhase = ControllerPhase.DISCONNECTED
    calendars: list[CalendarChoice] = field(default_factory=list)
    account_email: str | None = None
    last_error: str | None = None
    syncing: bool = False
    last_result: PollResult | None = None
    status: SyncStatus | None = None


class ClientController:
    """Orchestrates the calendar connection for one user."""

    def __init__(
        self,
        user_id: str,
        *,
        oauth_flow: GoogleOAuthFlow,
        connections: ConnectionRepository,
        sync_states: SyncStateRepository,
        poller: ChangePoller,
        reconciler: EventMappingReconciler,
        calendar_client: GoogleCalendarClient,
        transport: RedirectTransport,
        sink: LocalScheduleSink | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.user_id = user_id
        self.state = ControllerState()
        self._oauth_flow = oauth_flow
        self._connections = connections
        self._sync_states = sync_states
        self._poller = poller
        self._reconciler = reconciler
        self._calendar = calendar_client
        self._transport = transport
        self._sink = sink
        self._notifier = notifier
        self._handshake_consumed = False

    # ------------------------------------------------------------------
    # Connect / handshake
    # ------------------------------------------------------------------

    async def connect(self, *, origin: str | None = None, return_path: str | None = None) -> str:
        self.state.phase = ControllerPhase.CONNECTING
        self.state.last_error = None
        try:
            url = self._oauth_flow.build_authorization_url(
                self.user_id, origin=origin, return_path=return_path
            )
        except Exception as exc:
            self.state.phase = ControllerPhase.DISCONNECTED
            await self._surface_error(sanitize_error_message(exc))
            raise
        self._transport.navigate(url)
        return url

    async def handle_oauth_return(self) -> bool:
        """Consume the OAuth redirect payload once; returns whether it was processed."""
        if self._handshake_consumed:
            return False
        params = self._transport.current_params()
        outcome = params.get("oauth")
        if outcome not in ("success", "error"):
            return False

        self._handshake_consumed = True
        self._transport.strip_params(HANDSHAKE_PARAMS)

        if outcome == "error":
            self.state.phase = ControllerPhase.DISCONNECTED
            await self._surface_error(humanize_error_code(params.get("error") or "unknown_error"))
            return True

        try:
            calendars = decode_calendar_payload(params.get("calendars") or "[]")
        except ValueError:
            self.state.phase = ControllerPhase.DISCONNECTED
            await self._surface_error(humanize_error_code("invalid_calendar_payload"))
            return True

        self.state.calendars = calendars
        self.state.account_email = params.get("email") or None
        self.state.last_error = None
        self.state.phase = ControllerPhase.CALENDAR_SELECTION_PENDING
        await self._notify(NoticeLevel.SUCCESS, "Google Calendar connected; choose a calendar")
        return True

    # ------------------------------------------------------------------
    # Calendar selection / sync
    # ------------------------------------------------------------------

    async def select_calendar(self, calendar_id: str, calendar_name: str) -> PollResult | None:
        connection = await self._connections.get(self.user_id)
        if connection is None or not connection.is_active:
            self.state.phase = ControllerPhase.DISCONNECTED
            await self._surface_error(sanitize_error_message(NoConnectionError(self.user_id)))
            return None
        await self._connections.select_calendar(
            self.user_id, calendar_id=calendar_id, calendar_name=calendar_name
        )
        self.state.phase = ControllerPhase.CONNECTED
        self.state.calendars = []
        await self._notify(NoticeLevel.SUCCESS, f"Syncing with {calendar_name}")
        return await self.sync_now()

    async def sync_now(self) -> PollResult | None:
        """Run a recovering sync; a second call while one is running is ignored."""
        if self.state.syncing:
            logger.info("Sync already in progress for user=%s; ignoring request", self.user_id)
            return None

        self.state.syncing = True
        try:
            result = await self._poller.sync(self.user_id)
            if self._sink is not None:
                created = await self._sink.apply(self.user_id, result)
                await self._reconciler.acknowledge_pull(self.user_id, result, created)
            self.state.last_result = result
            self.state.last_error = None
            return result
        except CalendarSyncError as exc:
            await self._surface_error(sanitize_error_message(exc))
            return None
        finally:
            self.state.syncing = False
            await self.refresh_status()

    async def list_events(self, start_at: datetime, end_at: datetime) -> list[RemoteEventSnapshot]:
        """Read-through view of the selected calendar in a window."""
        return await list_window_events(
            self.user_id,
            connections=self._connections,
            calendar_client=self._calendar,
            start_at=start_at,
            end_at=end_at,
        )

    # ------------------------------------------------------------------
    # Disconnect / status
    # ------------------------------------------------------------------

    async def disconnect(self, *, revoke: bool = False) -> None:
        if revoke:
            try:
                await self._oauth_flow.revoke(self.user_id)
            except Exception:
                logger.warning("Provider-side revocation failed for user=%s", self.user_id)
        await self._connections.deactivate(self.user_id)
        self.state = ControllerState()
        self._handshake_consumed = False
        await self._notify(NoticeLevel.SUCCESS, "Google Calendar disconnected")
        await self.refresh_status()

    async def refresh_status(self) -> SyncStatus:
        status = await load_sync_status(
            self.user_id, connections=self._connections, sync_states=self._sync_states
        )
        if status.connected and status.calendar_selected:
            self.state.phase = ControllerPhase.CONNECTED
        elif status.connected and self.state.phase is ControllerPhase.DISCONNECTED:
            self.state.phase = ControllerPhase.CALENDAR_SELECTION_PENDING
        elif not status.connected and self.state.phase is not ControllerPhase.CONNECTING:
            self.state.phase = ControllerPhase.DISCONNECTED
        if self.state.last_error and status.last_error is None:
            status = status.model_copy(update={"last_error": self.state.last_error})
        self.state.status = status
        return status

    # ------------------------------------------------------------------

    async def _surface_error(self, message: str) -> None:
        self.state.last_error = message
        logger.warning("Calendar sync error surfaced to user=%s: %s", self.user_id, message)
        await self._notify(NoticeLevel.ERROR, message)

    async def _notify(self, level: NoticeLevel, message: str) -> None:
        if self._notifier is None:
            return
        outcome = self._notifier(level, message)
        if inspect.isawaitable(outcome):
            await outcome
