"""Google Calendar v3 client with bearer auth, 401 refresh, and rate-limit retry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from timeblock_sync.errors import (
    CalendarRequestError,
    CalendarSyncTokenExpiredError,
    safe_google_error_message,
)
from timeblock_sync.google.events import google_rfc3339
from timeblock_sync.models import CalendarChoice

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

MAX_PAGE_SIZE = 250
WINDOW_LIST_LIMIT = 100


class AccessTokenSource(Protocol):
    """Supplies a valid bearer token for a user."""

    async def get_valid_access_token(self, user_id: str, *, force_refresh: bool = False) -> str:
        ...


@dataclass
class EventsPage:
    """One page of an events.list response."""

    items: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None


class GoogleCalendarClient:
    """Thin async wrapper over the Calendar v3 endpoints used by sync."""

    def __init__(
        self,
        token_source: AccessTokenSource,
        http_client: httpx.AsyncClient | None = None,
        *,
        sleep: Any = asyncio.sleep,
    ) -> None:
        self._token_source = token_source
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        user_id: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        access_token: str | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method,
            path=path,
            user_id=user_id,
            params=params,
            json_body=json_body,
            access_token=access_token,
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        if response.status_code == 204:
            return {}

        return _json_object(response)

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        user_id: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        access_token: str | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method,
            url=url,
            user_id=user_id,
            params=params,
            json_body=json_body,
            access_token=access_token,
            force_refresh=False,
        )

        # An explicit token belongs to the caller; only stored tokens are refreshed.
        if response.status_code == 401 and access_token is None:
            logger.info("Calendar API returned 401; forcing token refresh and retrying once")
            response = await self._request_once(
                method=method,
                url=url,
                user_id=user_id,
                params=params,
                json_body=json_body,
                access_token=None,
                force_refresh=True,
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await self._sleep(backoff)
            response = await self._request_once(
                method=method,
                url=url,
                user_id=user_id,
                params=params,
                json_body=json_body,
                access_token=access_token,
                force_refresh=False,
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        user_id: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        access_token: str | None,
        force_refresh: bool,
    ) -> httpx.Response:
        token = access_token or await self._token_source.get_valid_access_token(
            user_id, force_refresh=force_refresh
        )
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarRequestError(
                status_code=0,
                message=f"Google Calendar request failed: {type(exc).__name__}",
            ) from exc

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def list_events_page(
        self,
        *,
        user_id: str,
        calendar_id: str,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        page_token: str | None = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> EventsPage:
        """Fetch one page of events.

        With ``sync_token`` the request is incremental and carries no date
        bounds; without it the request is a bounded full listing that omits
        deleted events.

        Raises
        ------
        CalendarSyncTokenExpiredError
            When Google answers 410 Gone for the supplied sync token.
        """
        params: dict[str, Any] = {
            "singleEvents": "true",
            "maxResults": page_size,
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
        else:
            params["showDeleted"] = "false"
            if time_min is not None:
                params["timeMin"] = google_rfc3339(time_min)
            if time_max is not None:
                params["timeMax"] = google_rfc3339(time_max)
        if page_token is not None:
            params["pageToken"] = page_token

        response = await self._request_with_bearer(
            method="GET",
            path=f"/calendars/{quote(calendar_id, safe='')}/events",
            user_id=user_id,
            params=params,
        )

        # 410 Gone means the sync token is expired; caller must do full re-sync.
        if response.status_code == 410:
            raise CalendarSyncTokenExpiredError(
                f"Sync token expired for calendar '{calendar_id}'; full re-sync required"
            )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        payload = _json_object(response)
        items = payload.get("items")
        return EventsPage(
            items=[item for item in items if isinstance(item, dict)]
            if isinstance(items, list)
            else [],
            next_page_token=_optional_token(payload.get("nextPageToken")),
            next_sync_token=_optional_token(payload.get("nextSyncToken")),
        )

    async def list_events_in_window(
        self,
        *,
        user_id: str,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
        limit: int = WINDOW_LIST_LIMIT,
    ) -> list[dict[str, Any]]:
        """Read-through listing of events in ``[start_at, end_at)`` ordered by start."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        payload = await self._request_google_json(
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            user_id=user_id,
            params={
                "timeMin": google_rfc3339(start_at),
                "timeMax": google_rfc3339(end_at),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": min(limit, MAX_PAGE_SIZE),
            },
        )
        items = payload.get("items")
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    async def insert_event(
        self, *, user_id: str, calendar_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request_google_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            user_id=user_id,
            json_body=body,
        )

    async def update_event(
        self, *, user_id: str, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace an event (PUT)."""
        return await self._request_google_json(
            "PUT",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            user_id=user_id,
            json_body=body,
        )

    async def delete_event(self, *, user_id: str, calendar_id: str, event_id: str) -> bool:
        """Delete an event; returns ``False`` when it was already gone."""
        response = await self._request_with_bearer(
            method="DELETE",
            path=f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            user_id=user_id,
        )

        # 404/410 mean the event was already deleted; treat as success.
        if response.status_code in (404, 410):
            logger.debug("delete_event: event '%s' already deleted; treating as success", event_id)
            return False

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
        return True

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def list_calendars(
        self, *, user_id: str, access_token: str | None = None
    ) -> list[CalendarChoice]:
        """List calendars the account can write to, primary first."""
        payload = await self._request_google_json(
            "GET",
            "/users/me/calendarList",
            user_id=user_id,
            params={"minAccessRole": "writer"},
            access_token=access_token,
        )
        items = payload.get("items")
        choices: list[CalendarChoice] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                continue
            choices.append(
                CalendarChoice(
                    id=item["id"],
                    name=str(item.get("summaryOverride") or item.get("summary") or item["id"]),
                    primary=bool(item.get("primary", False)),
                    access_role=item.get("accessRole"),
                )
            )
        choices.sort(key=lambda choice: (not choice.primary, choice.name.lower()))
        return choices

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


def _optional_token(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise CalendarRequestError(
            status_code=response.status_code,
            message="Google Calendar API returned invalid JSON for a successful response",
        ) from exc
    if not isinstance(payload, dict):
        raise CalendarRequestError(
            status_code=response.status_code,
            message="Google Calendar API returned an unexpected JSON payload shape",
        )
    return payload
