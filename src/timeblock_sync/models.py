"""Persistent records and transient value types for calendar sync."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_BLOCK_TITLE = "Untitled Block"
DEFAULT_EVENT_TIMEZONE = "UTC"


class SyncStatusValue(StrEnum):
    ACTIVE = "active"
    ERROR = "error"


class SyncDirection(StrEnum):
    """Which side created the mapped event."""

    APP_TO_GOOGLE = "app_to_google"
    GOOGLE_TO_APP = "google_to_app"


class PushAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class ConnectionRecord(BaseModel):
    """One user's Google Calendar connection.

    Token columns hold AEAD ciphertexts produced by
    :class:`timeblock_sync.crypto.TokenCipher`, never plaintext.
    """

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    google_user_id: str | None = None
    account_email: str | None = None
    access_token_encrypted: str
    refresh_token_encrypted: str | None = None
    token_expiry: datetime | None = None
    selected_calendar_id: str | None = None
    selected_calendar_name: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def calendar_selected(self) -> bool:
        return bool(self.selected_calendar_id)


class SyncState(BaseModel):
    """Incremental-sync cursor and health for one user's selected calendar."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    calendar_id: str | None = None
    sync_token: str | None = None
    sync_status: SyncStatusValue = SyncStatusValue.ACTIVE
    last_error: str | None = None
    last_full_sync_at: datetime | None = None
    last_incremental_sync_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def last_sync_at(self) -> datetime | None:
        candidates = [
            value
            for value in (self.last_full_sync_at, self.last_incremental_sync_at)
            if value is not None
        ]
        return max(candidates) if candidates else None


class EventMapping(BaseModel):
    """Identity link between one local schedule block and one remote event."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    block_id: str = Field(min_length=1)
    google_event_id: str = Field(min_length=1)
    google_etag: str | None = None
    sync_direction: SyncDirection = SyncDirection.APP_TO_GOOGLE
    last_synced_at: datetime | None = None


# ---------------------------------------------------------------------------
# Transient values
# ---------------------------------------------------------------------------


class RemoteEventSnapshot(BaseModel):
    """A timed Google event as seen during one poll."""

    id: str
    title: str
    description: str | None = None
    start_at: datetime
    end_at: datetime
    timezone: str | None = None
    etag: str | None = None
    updated_at: datetime | None = None
    html_link: str | None = None
    cancelled: bool = False


class BlockEventData(BaseModel):
    """Event fields derived from a local schedule block for a push."""

    model_config = ConfigDict(extra="forbid")

    title: str = DEFAULT_BLOCK_TITLE
    description: str | None = None
    start_at: datetime
    end_at: datetime
    timezone: str = DEFAULT_EVENT_TIMEZONE

    @field_validator("title", mode="before")
    @classmethod
    def _default_title(cls, value: str | None) -> str:
        if value is None:
            return DEFAULT_BLOCK_TITLE
        normalized = str(value).strip()
        return normalized or DEFAULT_BLOCK_TITLE

    @field_validator("timezone", mode="before")
    @classmethod
    def _default_timezone(cls, value: str | None) -> str:
        if value is None:
            return DEFAULT_EVENT_TIMEZONE
        normalized = str(value).strip()
        return normalized or DEFAULT_EVENT_TIMEZONE

    @field_validator("description")
    @classmethod
    def _normalize_description(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @model_validator(mode="after")
    def _validate_window(self) -> BlockEventData:
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class PollResult(BaseModel):
    """Classified changes from one poll, for the caller to apply locally."""

    is_full_sync: bool
    new: list[RemoteEventSnapshot] = Field(default_factory=list)
    updated: list[RemoteEventSnapshot] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    requires_retry: bool = False
    total_fetched: int = 0

    @classmethod
    def retry(cls, *, is_full_sync: bool) -> PollResult:
        return cls(is_full_sync=is_full_sync, requires_retry=True)

    @property
    def is_empty(self) -> bool:
        return not (self.new or self.updated or self.deleted)


class PushResult(BaseModel):
    block_id: str
    action: PushAction
    google_event_id: str | None = None
    etag: str | None = None


class CalendarChoice(BaseModel):
    """A calendar the connected account may select as its sync target."""

    id: str
    name: str
    primary: bool = False
    access_role: str | None = None


class SyncStatus(BaseModel):
    """Connection and sync health for display."""

    connected: bool
    calendar_selected: bool
    calendar_id: str | None = None
    calendar_name: str | None = None
    sync_status: SyncStatusValue | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    account_email: str | None = None
