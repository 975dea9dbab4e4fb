"""Shared fixtures for the calendar sync tests.

Everything runs in-process: stores are dict-backed doubles of the Postgres
repositories, and Google is a stateful fake served through
``httpx.MockTransport``.  No database or network access is required.
"""

from __future__ import annotations

import base64
import json
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest

from timeblock_sync.config import GoogleConfig, SyncConfig, SyncSettings
from timeblock_sync.crypto import FIELD_ACCESS_TOKEN, FIELD_REFRESH_TOKEN, TokenCipher
from timeblock_sync.errors import MappingConflictError, PushError
from timeblock_sync.models import ConnectionRecord, EventMapping, SyncState
from timeblock_sync.oauth import OAuthStateStore
from timeblock_sync.service import SyncServices, build_services

TEST_KEY = base64.urlsafe_b64encode(bytes(range(32))).decode("ascii")
TEST_USER = "user-1"
WORK_CALENDAR = "work-cal"
REDIRECT_URI = "http://localhost:8080/api/oauth/google/callback"

_START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class FrozenClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime = _START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class MonotonicClock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------


class InMemoryConnectionStore:
    def __init__(self) -> None:
        self.records: dict[str, ConnectionRecord] = {}

    async def get(self, user_id: str) -> ConnectionRecord | None:
        record = self.records.get(user_id)
        return record.model_copy() if record is not None else None

    async def upsert(self, record: ConnectionRecord) -> None:
        existing = self.records.get(record.user_id)
        refresh = record.refresh_token_encrypted or (
            existing.refresh_token_encrypted if existing is not None else None
        )
        self.records[record.user_id] = record.model_copy(
            update={"refresh_token_encrypted": refresh}
        )

    async def update_tokens(
        self,
        user_id: str,
        *,
        access_token_encrypted: str,
        token_expiry: datetime,
        refresh_token_encrypted: str | None = None,
    ) -> None:
        update: dict[str, Any] = {
            "access_token_encrypted": access_token_encrypted,
            "token_expiry": token_expiry,
        }
        if refresh_token_encrypted is not None:
            update["refresh_token_encrypted"] = refresh_token_encrypted
        self.records[user_id] = self.records[user_id].model_copy(update=update)

    async def select_calendar(self, user_id: str, *, calendar_id: str, calendar_name: str) -> None:
        self.records[user_id] = self.records[user_id].model_copy(
            update={
                "selected_calendar_id": calendar_id,
                "selected_calendar_name": calendar_name,
                "is_active": True,
            }
        )

    async def deactivate(self, user_id: str) -> bool:
        record = self.records.get(user_id)
        if record is None:
            return False
        self.records[user_id] = record.model_copy(update={"is_active": False})
        return True


class InMemorySyncStateStore:
    def __init__(self) -> None:
        self.states: dict[str, SyncState] = {}
        self.saves = 0

    async def load(self, user_id: str) -> SyncState:
        state = self.states.get(user_id)
        return state.model_copy() if state is not None else SyncState(user_id=user_id)

    async def save(self, state: SyncState) -> None:
        self.saves += 1
        self.states[state.user_id] = state.model_copy()

    def current(self, user_id: str = TEST_USER) -> SyncState:
        return self.states.get(user_id) or SyncState(user_id=user_id)


class InMemoryEventMappingStore:
    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], EventMapping] = {}

    async def get_by_block(self, user_id: str, block_id: str) -> EventMapping | None:
        return self.rows.get((user_id, block_id))

    async def get_by_remote(self, user_id: str, google_event_id: str) -> EventMapping | None:
        for mapping in self.rows.values():
            if mapping.user_id == user_id and mapping.google_event_id == google_event_id:
                return mapping
        return None

    async def get_many_by_remote(
        self, user_id: str, google_event_ids: Sequence[str]
    ) -> dict[str, EventMapping]:
        wanted = set(google_event_ids)
        return {
            mapping.google_event_id: mapping
            for mapping in self.rows.values()
            if mapping.user_id == user_id and mapping.google_event_id in wanted
        }

    async def insert(self, mapping: EventMapping) -> None:
        existing = await self.get_by_remote(mapping.user_id, mapping.google_event_id)
        if existing is not None and existing.block_id != mapping.block_id:
            raise MappingConflictError(
                remote_event_id=mapping.google_event_id,
                existing_block_id=existing.block_id,
                block_id=mapping.block_id,
            )
        self.rows[(mapping.user_id, mapping.block_id)] = mapping

    async def update_etag(self, user_id: str, block_id: str, etag: str | None) -> None:
        mapping = self.rows.get((user_id, block_id))
        if mapping is not None:
            self.rows[(user_id, block_id)] = mapping.model_copy(update={"google_etag": etag})

    async def delete_by_block(self, user_id: str, block_id: str) -> bool:
        return self.rows.pop((user_id, block_id), None) is not None

    async def delete_by_remote_ids(self, user_id: str, google_event_ids: Sequence[str]) -> int:
        wanted = set(google_event_ids)
        doomed = [
            key
            for key, mapping in self.rows.items()
            if mapping.user_id == user_id and mapping.google_event_id in wanted
        ]
        for key in doomed:
            del self.rows[key]
        return len(doomed)


# ---------------------------------------------------------------------------
# Fake Google (Calendar v3 + OAuth endpoints)
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str) -> httpx.Response:
    return httpx.Response(status_code, json={"error": {"code": status_code, "message": message}})


class FakeGoogle:
    """A small, stateful stand-in for the Google endpoints the sync core calls.

    Sync tokens are ``st-<version>``: an incremental listing returns every
    event touched after that version, cancelled ones included.
    """

    def __init__(self) -> None:
        self.calendars: list[dict[str, Any]] = [
            {"id": WORK_CALENDAR, "summary": "Work", "accessRole": "writer"},
            {"id": "primary-cal", "summary": "Personal", "primary": True, "accessRole": "owner"},
        ]
        self.events: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.version = 0
        self.valid_access_tokens: set[str] = {"access-0"}
        self.valid_refresh_tokens: set[str] = {"refresh-0"}
        self.expired_sync_tokens: set[str] = set()
        self.issue_refresh_token = True
        self.account: dict[str, Any] = {"id": "google-user-1", "email": "planner@example.com"}
        self.requests: list[httpx.Request] = []
        self.revoked: list[str] = []
        self._versions: dict[tuple[str, str], int] = {}
        self._scripted: list[dict[str, Any]] = []
        self._token_counter = 0
        self._event_counter = 0

    # -- test controls -------------------------------------------------

    def script(
        self,
        method: str,
        path_suffix: str,
        status_code: int,
        *,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        times: int = 1,
        when: Callable[[httpx.Request], bool] | None = None,
    ) -> None:
        """Answer the next *times* matching requests with a canned response."""
        self._scripted.append(
            {
                "method": method,
                "suffix": path_suffix,
                "status": status_code,
                "json": json_body,
                "headers": headers or {},
                "remaining": times,
                "when": when,
            }
        )

    def add_event(
        self,
        calendar_id: str = WORK_CALENDAR,
        *,
        title: str | None = "Focus block",
        start: datetime | None = None,
        duration: timedelta = timedelta(hours=1),
        all_day: bool = False,
        description: str | None = None,
    ) -> str:
        self._event_counter += 1
        event_id = f"evt-{self._event_counter}"
        start = start or (_START + timedelta(hours=self._event_counter))
        payload: dict[str, Any] = {"id": event_id, "status": "confirmed"}
        if title is not None:
            payload["summary"] = title
        if description is not None:
            payload["description"] = description
        if all_day:
            payload["start"] = {"date": start.date().isoformat()}
            payload["end"] = {"date": (start + timedelta(days=1)).date().isoformat()}
        else:
            payload["start"] = {"dateTime": start.isoformat(), "timeZone": "UTC"}
            payload["end"] = {"dateTime": (start + duration).isoformat(), "timeZone": "UTC"}
        self.events[calendar_id][event_id] = payload
        self._touch(calendar_id, event_id)
        return event_id

    def add_events(self, count: int, calendar_id: str = WORK_CALENDAR) -> list[str]:
        return [self.add_event(calendar_id, title=f"Block {n}") for n in range(count)]

    def change_event(self, event_id: str, calendar_id: str = WORK_CALENDAR, **fields: Any) -> None:
        self.events[calendar_id][event_id].update(fields)
        self._touch(calendar_id, event_id)

    def cancel_event(self, event_id: str, calendar_id: str = WORK_CALENDAR) -> None:
        self.change_event(event_id, calendar_id, status="cancelled")

    def sync_token(self) -> str:
        return f"st-{self.version}"

    def calendar_requests(self, method: str = "GET", suffix: str = "/events") -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method
            and request.url.path.startswith("/calendar/v3/")
            and request.url.path.endswith(suffix)
        ]

    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == "oauth2.googleapis.com"]

    # -- transport -----------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        scripted = self._match_script(request)
        if scripted is not None:
            return scripted

        host = request.url.host
        path = request.url.path
        if host == "oauth2.googleapis.com" and path == "/token":
            return self._token(request)
        if host == "oauth2.googleapis.com" and path == "/revoke":
            self.revoked.append(dict(parse_qsl(request.content.decode()))["token"])
            return httpx.Response(200, json={})
        if host == "www.googleapis.com" and path == "/oauth2/v2/userinfo":
            if not self._authorized(request):
                return _error(401, "Invalid Credentials")
            return httpx.Response(200, json=self.account)
        if host == "www.googleapis.com" and path.startswith("/calendar/v3/"):
            if not self._authorized(request):
                return _error(401, "Invalid Credentials")
            return self._calendar(request, path[len("/calendar/v3") :])
        return _error(404, "Not Found")

    def _match_script(self, request: httpx.Request) -> httpx.Response | None:
        for entry in self._scripted:
            if entry["remaining"] <= 0:
                continue
            if request.method != entry["method"] or not request.url.path.endswith(entry["suffix"]):
                continue
            if entry["when"] is not None and not entry["when"](request):
                continue
            entry["remaining"] -= 1
            if entry["json"] is None:
                return httpx.Response(entry["status"], headers=entry["headers"])
            return httpx.Response(entry["status"], json=entry["json"], headers=entry["headers"])
        return None

    def _authorized(self, request: httpx.Request) -> bool:
        header = request.headers.get("Authorization", "")
        return header.startswith("Bearer ") and header[len("Bearer ") :] in self.valid_access_tokens

    def _issue_access_token(self) -> str:
        self._token_counter += 1
        token = f"access-{self._token_counter}"
        self.valid_access_tokens.add(token)
        return token

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        grant_type = form.get("grant_type")
        if grant_type == "refresh_token":
            if form.get("refresh_token") not in self.valid_refresh_tokens:
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "Token has been revoked."},
                )
            return httpx.Response(
                200,
                json={
                    "access_token": self._issue_access_token(),
                    "expires_in": 3600,
                    "token_type": "Bearer",
                },
            )
        if grant_type == "authorization_code":
            if form.get("code") == "bad-code":
                return httpx.Response(400, json={"error": "invalid_grant"})
            payload: dict[str, Any] = {
                "access_token": self._issue_access_token(),
                "expires_in": 3599,
                "token_type": "Bearer",
            }
            if self.issue_refresh_token:
                payload["refresh_token"] = "refresh-new"
                self.valid_refresh_tokens.add("refresh-new")
            return httpx.Response(200, json=payload)
        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def _calendar(self, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/users/me/calendarList":
            return httpx.Response(200, json={"items": self.calendars})

        parts = path.split("/")  # ['', 'calendars', <id>, 'events', <event id>?]
        if len(parts) < 4 or parts[1] != "calendars" or parts[3] != "events":
            return _error(404, "Not Found")
        calendar_id = parts[2]
        if len(parts) == 4:
            if request.method == "GET":
                return self._list(request, calendar_id)
            if request.method == "POST":
                return self._insert(request, calendar_id)
        elif len(parts) == 5:
            event_id = parts[4]
            if request.method == "PUT":
                return self._update(request, calendar_id, event_id)
            if request.method == "DELETE":
                return self._delete(calendar_id, event_id)
        return _error(405, "Method Not Allowed")

    def _list(self, request: httpx.Request, calendar_id: str) -> httpx.Response:
        params = request.url.params
        page_size = int(params.get("maxResults", "250"))
        page_token = params.get("pageToken")
        offset = int(page_token[2:]) if page_token else 0
        sync_token = params.get("syncToken")
        calendar = self.events[calendar_id]

        if sync_token is not None:
            if sync_token in self.expired_sync_tokens or not sync_token.startswith("st-"):
                return _error(410, "Sync token is no longer valid, a full sync is required.")
            since = int(sync_token[3:])
            items = [
                event
                for event_id, event in calendar.items()
                if self._versions[(calendar_id, event_id)] > since
            ]
        else:
            items = [event for event in calendar.values() if event.get("status") != "cancelled"]

        ordered = params.get("orderBy") == "startTime"
        if ordered:
            items = sorted(
                items, key=lambda event: event["start"].get("dateTime") or event["start"]["date"]
            )

        page = items[offset : offset + page_size]
        body: dict[str, Any] = {"kind": "calendar#events", "items": [dict(e) for e in page]}
        if offset + page_size < len(items):
            body["nextPageToken"] = f"p-{offset + page_size}"
        elif not ordered:
            body["nextSyncToken"] = self.sync_token()
        return httpx.Response(200, json=body)

    def _insert(self, request: httpx.Request, calendar_id: str) -> httpx.Response:
        self._event_counter += 1
        event_id = f"evt-{self._event_counter}"
        self.events[calendar_id][event_id] = {
            "id": event_id,
            "status": "confirmed",
            **json.loads(request.content),
        }
        self._touch(calendar_id, event_id)
        return httpx.Response(200, json=self.events[calendar_id][event_id])

    def _update(self, request: httpx.Request, calendar_id: str, event_id: str) -> httpx.Response:
        existing = self.events[calendar_id].get(event_id)
        if existing is None or existing.get("status") == "cancelled":
            return _error(404, "Not Found")
        self.events[calendar_id][event_id] = {
            "id": event_id,
            "status": "confirmed",
            **json.loads(request.content),
        }
        self._touch(calendar_id, event_id)
        return httpx.Response(200, json=self.events[calendar_id][event_id])

    def _delete(self, calendar_id: str, event_id: str) -> httpx.Response:
        existing = self.events[calendar_id].get(event_id)
        if existing is None:
            return _error(404, "Not Found")
        if existing.get("status") == "cancelled":
            return _error(410, "Resource has been deleted")
        existing["status"] = "cancelled"
        self._touch(calendar_id, event_id)
        return httpx.Response(204)

    def _touch(self, calendar_id: str, event_id: str) -> None:
        self.version += 1
        self._versions[(calendar_id, event_id)] = self.version
        event = self.events[calendar_id][event_id]
        event["etag"] = f'"{self.version}"'
        event["updated"] = (_START + timedelta(seconds=self.version)).isoformat()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def monotonic() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TEST_KEY)


@pytest.fixture
def connections() -> InMemoryConnectionStore:
    return InMemoryConnectionStore()


@pytest.fixture
def sync_states() -> InMemorySyncStateStore:
    return InMemorySyncStateStore()


@pytest.fixture
def mappings() -> InMemoryEventMappingStore:
    return InMemoryEventMappingStore()


@pytest.fixture
def google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
async def http_client(google: FakeGoogle) -> AsyncIterator[httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(google.handler))
    yield client
    await client.aclose()


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(
        google=GoogleConfig(
            client_id="test-client-id",
            client_secret="test-client-secret",
            redirect_uri=REDIRECT_URI,
        ),
        sync=SyncConfig(token_encryption_key=TEST_KEY),
    )


@pytest.fixture
def push_failures() -> list[tuple[str, PushError]]:
    return []


@pytest.fixture
def services(
    settings: SyncSettings,
    connections: InMemoryConnectionStore,
    sync_states: InMemorySyncStateStore,
    mappings: InMemoryEventMappingStore,
    http_client: httpx.AsyncClient,
    clock: FrozenClock,
    monotonic: MonotonicClock,
    push_failures: list[tuple[str, PushError]],
) -> SyncServices:
    def record_failure(user_id: str, error: PushError) -> None:
        push_failures.append((user_id, error))

    return build_services(
        settings,
        connections=connections,
        sync_states=sync_states,
        mappings=mappings,
        http_client=http_client,
        push_notifier=record_failure,
        state_store=OAuthStateStore(300, clock=monotonic),
        clock=clock,
    )


def make_connection(
    cipher: TokenCipher,
    clock: FrozenClock,
    *,
    user_id: str = TEST_USER,
    access_token: str = "access-0",
    refresh_token: str | None = "refresh-0",
    expires_in: timedelta = timedelta(hours=1),
    calendar_id: str | None = WORK_CALENDAR,
    calendar_name: str | None = "Work",
    is_active: bool = True,
) -> ConnectionRecord:
    return ConnectionRecord(
        user_id=user_id,
        google_user_id="google-user-1",
        account_email="planner@example.com",
        access_token_encrypted=cipher.encrypt(
            access_token, user_id=user_id, field=FIELD_ACCESS_TOKEN
        ),
        refresh_token_encrypted=(
            cipher.encrypt(refresh_token, user_id=user_id, field=FIELD_REFRESH_TOKEN)
            if refresh_token
            else None
        ),
        token_expiry=clock() + expires_in,
        selected_calendar_id=calendar_id,
        selected_calendar_name=calendar_name if calendar_id else None,
        is_active=is_active,
    )


@pytest.fixture
def connection_factory(
    cipher: TokenCipher, clock: FrozenClock, connections: InMemoryConnectionStore
) -> Callable[..., ConnectionRecord]:
    """Store a connection for ``user-1`` (overridable) and return it."""

    def _factory(**kwargs: Any) -> ConnectionRecord:
        record = make_connection(cipher, clock, **kwargs)
        connections.records[record.user_id] = record
        return record

    return _factory


@pytest.fixture
def connected_user(connection_factory: Callable[..., ConnectionRecord]) -> ConnectionRecord:
    """``user-1`` connected, with a fresh access token and ``work-cal`` selected."""
    return connection_factory()
