"""Wiring of the sync components for the HTTP API and CLI."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import httpx

from timeblock_sync.config import ConfigError, SyncSettings
from timeblock_sync.crypto import TokenCipher
from timeblock_sync.errors import CalendarSyncError
from timeblock_sync.google.client import GoogleCalendarClient
from timeblock_sync.google.oauth_client import GoogleOAuthClient
from timeblock_sync.oauth import GoogleOAuthFlow, OAuthStateStore
from timeblock_sync.stores.connections import ConnectionRepository, PostgresConnectionStore
from timeblock_sync.stores.mappings import EventMappingRepository, PostgresEventMappingStore
from timeblock_sync.stores.sync_state import PostgresSyncStateStore, SyncStateRepository
from timeblock_sync.sync.engine import ChangePoller
from timeblock_sync.sync.push import PushAdapter, PushFailureNotifier
from timeblock_sync.sync.reconcile import EventMappingReconciler
from timeblock_sync.tokens import Clock, TokenLifecycleManager, utcnow

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_URI = "http://localhost:8080/api/oauth/google/callback"


class SyncInProgressError(CalendarSyncError):
    """Raised when a poll is requested while another is running for the same user."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"A calendar sync is already running for user {user_id!r}")


class UserLocks:
    """In-process per-user locks serializing polls."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def is_locked(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def exclusive(self, user_id: str) -> AsyncIterator[None]:
        """Hold the user's lock, failing fast if it is already held."""
        lock = self._lock_for(user_id)
        if lock.locked():
            raise SyncInProgressError(user_id)
        try:
            async with lock:
                yield
        finally:
            # exclusive() never waits, so a released lock has no waiters.
            if not lock.locked() and self._locks.get(user_id) is lock:
                del self._locks[user_id]


def _log_push_failure(user_id: str, error: Exception) -> None:
    logger.warning("Background calendar sync failed for user=%s: %s", user_id, error)


@dataclass
class SyncServices:
    """Every component a request handler needs, sharing one HTTP client."""

    settings: SyncSettings
    connections: ConnectionRepository
    sync_states: SyncStateRepository
    mappings: EventMappingRepository
    cipher: TokenCipher
    oauth_client: GoogleOAuthClient
    tokens: TokenLifecycleManager
    calendar: GoogleCalendarClient
    reconciler: EventMappingReconciler
    poller: ChangePoller
    pusher: PushAdapter
    oauth_flow: GoogleOAuthFlow
    http_client: httpx.AsyncClient
    locks: UserLocks = field(default_factory=UserLocks)

    async def aclose(self) -> None:
        await self.http_client.aclose()


def build_services(
    settings: SyncSettings,
    *,
    connections: ConnectionRepository,
    sync_states: SyncStateRepository,
    mappings: EventMappingRepository,
    http_client: httpx.AsyncClient | None = None,
    push_notifier: PushFailureNotifier | None = None,
    state_store: OAuthStateStore | None = None,
    clock: Clock = utcnow,
) -> SyncServices:
    """Construct the component graph from *settings* and the given stores."""
    client_id, client_secret = settings.google.require_client()
    cipher = TokenCipher.from_settings(settings.sync.token_encryption_key)
    http = http_client or httpx.AsyncClient(timeout=30.0)

    oauth_client = GoogleOAuthClient(
        client_id=client_id, client_secret=client_secret, http_client=http
    )
    tokens = TokenLifecycleManager(
        connections=connections,
        cipher=cipher,
        oauth_client=oauth_client,
        refresh_buffer=timedelta(seconds=settings.sync.refresh_buffer_seconds),
        clock=clock,
    )
    calendar = GoogleCalendarClient(tokens, http)
    reconciler = EventMappingReconciler(mappings, clock=clock)
    poller = ChangePoller(
        connections=connections,
        sync_states=sync_states,
        reconciler=reconciler,
        calendar_client=calendar,
        token_source=tokens,
        page_size=settings.sync.page_size,
        full_sync_past_days=settings.sync.full_sync_past_days,
        full_sync_future_days=settings.sync.full_sync_future_days,
        clock=clock,
    )
    pusher = PushAdapter(
        connections=connections,
        reconciler=reconciler,
        calendar_client=calendar,
        notifier=push_notifier or _log_push_failure,
    )
    oauth_flow = GoogleOAuthFlow(
        config=settings.oauth,
        redirect_uri=settings.google.redirect_uri or DEFAULT_REDIRECT_URI,
        oauth_client=oauth_client,
        calendar_client=calendar,
        connections=connections,
        cipher=cipher,
        state_store=state_store,
        clock=clock,
    )
    return SyncServices(
        settings=settings,
        connections=connections,
        sync_states=sync_states,
        mappings=mappings,
        cipher=cipher,
        oauth_client=oauth_client,
        tokens=tokens,
        calendar=calendar,
        reconciler=reconciler,
        poller=poller,
        pusher=pusher,
        oauth_flow=oauth_flow,
        http_client=http,
    )


def build_postgres_services(settings: SyncSettings, pool: Any) -> SyncServices:
    if pool is None:
        raise ConfigError("A database pool is required")
    return build_services(
        settings,
        connections=PostgresConnectionStore(pool),
        sync_states=PostgresSyncStateStore(pool),
        mappings=PostgresEventMappingStore(pool),
    )
