"""Pydantic request/response models for the calendar sync API.

Request bodies accept camelCase keys (``blockId``) as well as snake_case.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from timeblock_sync.models import BlockEventData, PollResult, PushAction


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """Generic API response wrapper: ``{"data": T, "meta": {...}}``."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class PushRequest(_CamelModel):
    block_id: str = Field(min_length=1)
    action: PushAction
    event_data: BlockEventData | None = None


class PushResponse(BaseModel):
    pushed: bool
    google_event_id: str | None = None
    etag: str | None = None


class ConnectRequest(_CamelModel):
    origin: str | None = None
    return_path: str | None = None


class ConnectResponse(BaseModel):
    url: str


class SelectCalendarRequest(_CamelModel):
    calendar_id: str = Field(min_length=1)
    calendar_name: str = Field(min_length=1)


class DisconnectRequest(_CamelModel):
    revoke: bool = False


class DisconnectResponse(BaseModel):
    disconnected: bool


class AcknowledgePullRequest(_CamelModel):
    """Which pulled events the caller stored locally.

    ``result`` is the poll result as returned by ``POST /sync``;
    ``created_blocks`` maps each stored remote event id to its new block id.
    """

    result: PollResult
    created_blocks: dict[str, str] = Field(default_factory=dict)


class AcknowledgePullResponse(BaseModel):
    acknowledged: int
