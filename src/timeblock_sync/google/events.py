"""Conversion between Google event payloads and sync value types."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from timeblock_sync.models import BlockEventData, RemoteEventSnapshot

PULLED_EVENT_DEFAULT_TITLE = "Untitled"


class UnsupportedEventError(ValueError):
    """The event has no concrete start/end ``dateTime`` (all-day or malformed)."""


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_optional_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_google_datetime(value)
    except ValueError:
        return None


def is_cancelled(payload: dict[str, Any]) -> bool:
    status = payload.get("status")
    return isinstance(status, str) and status.strip().lower() == "cancelled"


def event_id_of(payload: dict[str, Any]) -> str | None:
    return _normalize_optional_text(payload.get("id"))


def _timed_boundary(payload: Any, *, event_id: str, side: str) -> tuple[datetime, str | None]:
    if not isinstance(payload, dict):
        raise UnsupportedEventError(f"Event {event_id!r} is missing its {side} payload")
    date_time = payload.get("dateTime")
    if not isinstance(date_time, str) or not date_time.strip():
        if payload.get("date"):
            raise UnsupportedEventError(f"Event {event_id!r} is an all-day event")
        raise UnsupportedEventError(f"Event {event_id!r} has no {side} dateTime")
    return parse_google_datetime(date_time), _normalize_optional_text(payload.get("timeZone"))


def snapshot_from_google(payload: dict[str, Any]) -> RemoteEventSnapshot:
    """Build a snapshot from a non-cancelled timed event.

    Raises
    ------
    UnsupportedEventError
        For all-day events and events without concrete start/end times.
    ValueError
        For payloads without an id or with unparseable timestamps.
    """
    event_id = event_id_of(payload)
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_at, start_tz = _timed_boundary(payload.get("start"), event_id=event_id, side="start")
    end_at, end_tz = _timed_boundary(payload.get("end"), event_id=event_id, side="end")

    return RemoteEventSnapshot(
        id=event_id,
        title=_normalize_optional_text(payload.get("summary")) or PULLED_EVENT_DEFAULT_TITLE,
        description=_normalize_optional_text(payload.get("description")),
        start_at=start_at,
        end_at=end_at,
        timezone=start_tz or end_tz,
        etag=_normalize_optional_text(payload.get("etag")),
        updated_at=_parse_optional_timestamp(payload.get("updated")),
        html_link=_normalize_optional_text(payload.get("htmlLink")),
        cancelled=is_cancelled(payload),
    )


def build_google_event_body(data: BlockEventData) -> dict[str, Any]:
    """Render a full event resource for insert/update (PUT semantics)."""
    body: dict[str, Any] = {
        "summary": data.title,
        "start": {"dateTime": data.start_at.isoformat(), "timeZone": data.timezone},
        "end": {"dateTime": data.end_at.isoformat(), "timeZone": data.timezone},
    }
    if data.description is not None:
        body["description"] = data.description
    return body
