"""Calendar sync endpoints: poll, acknowledge, push, connect, select, status, disconnect."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query

from timeblock_sync.api.deps import get_services, get_user_id
from timeblock_sync.api.models import (
    AcknowledgePullRequest,
    AcknowledgePullResponse,
    ApiResponse,
    ConnectRequest,
    ConnectResponse,
    DisconnectRequest,
    DisconnectResponse,
    PushRequest,
    PushResponse,
    SelectCalendarRequest,
)
from timeblock_sync.controller import list_window_events, load_sync_status
from timeblock_sync.models import PollResult, RemoteEventSnapshot, SyncStatus
from timeblock_sync.service import SyncServices

router = APIRouter(prefix="/api/calendar-sync", tags=["calendar-sync"])
logger = logging.getLogger(__name__)


@router.post("/sync", response_model=ApiResponse[PollResult])
async def run_sync(
    recover: bool = Query(
        default=True,
        description="If true (default), retry once as a full sync when Google rejects the "
        "stored cursor. If false, return requires_retry to the caller instead.",
    ),
    user_id: str = Depends(get_user_id),
    services: SyncServices = Depends(get_services),
) -> ApiResponse[PollResult]:
    """Poll the selected calendar for changes since the last sync."""
    async with services.locks.exclusive(user_id):
        if recover:
            result = await services.poller.sync(user_id)
        else:
            result = await services.poller.poll_changes(user_id)
    return ApiResponse[PollResult](data=result)


@router.post("/sync/ack", response_model=ApiResponse[AcknowledgePullResponse])
async def acknowledge_sync(
    body: AcknowledgePullRequest,
    user_id: str = Depends(get_user_id),
    services: SyncServices = Depends(get_services),
) -> ApiResponse[AcknowledgePullResponse]:
    """Record the blocks created for pulled events and the updates applied locally.

    Without this step a pulled event stays unmapped and is reported as new
    again on the next full sync.
    """
    acknowledged = await services.reconciler.acknowledge_pull(
        user_id, body.result, body.created_blocks
    )
    return ApiResponse[AcknowledgePullResponse](
        data=AcknowledgePullResponse(acknowledged=acknowledged)
    )


@router.post("/push", response_model=ApiResponse[PushResponse])
async def push_block(
    body: PushRequest,
    user_id: str = Depends(get_user_id),
    services: SyncServices = Depends(get_services),
) -> ApiResponse[PushResponse]:
    """Mirror one local block mutation into Google.

    Failures are reported as ``pushed: false``; they never fail the request.
    """
    result = await services.pusher.push_block(
        user_id, body.block_id, body.action, body.event_data
    )
    if result is None:
        return ApiResponse[PushResponse](data=PushResponse(pushed=False))
    return ApiResponse[PushResponse](
        data=PushResponse(pushed=True, google_event_id=result.google_event_id, etag=result.etag)
    )


@router.post("/connect", response_model=ApiResponse[ConnectResponse])
async def start_connect(
    body: ConnectRequest,
    user_id: str = Depends(get_user_id),
    services: SyncServices = Depends(get_services),
) -> ApiResponse[ConnectResponse]:
    url = services.oauth_flow.build_authorization_url(
        user_id, origin=body.origin, return_path=body.return_path
    )
    return ApiResponse[ConnectResponse](data=ConnectResponse(url=url))


@router.post("/calendar", response_model=ApiResponse[PollResult])
async def select_calendar(
    body: SelectCalendarRequest,
    user_id: str = Depends(get_user_id),
    services: SyncServices = Depends(get_services),
) -> ApiResponse[PollResult]:
    """Persist the chosen calendar and run the first sync against it."""
    async with services.locks.exclusive(user_id):
        await services.connections.select_calendar(
            user_id, calendar_id=body.calendar_id, calendar_name=body.calendar_name
        )
        logger.info("User %s selected calendar %s", user_id, body.calendar_id)
        result = await services.poller.sync(user_id)
    return ApiResponse[PollResult](data=result)


@router.get("/status", response_model=ApiResponse[SyncStatus])
async def get_status(
    user_id: str = Depends(get_user_id),
    services: SyncServices = Depends(get_services),
) -> ApiResponse[SyncStatus]:
    status = await load_sync_status(
        user_id, connections=services.connections, sync_states=services.sync_states
    )
    return ApiResponse[SyncStatus](data=status)


@router.get("/events", response_model=ApiResponse[list[RemoteEventSnapshot]])
async def list_events(
    start: datetime = Query(..., description="Window start (RFC 3339)."),
    end: datetime = Query(..., description="Window end (RFC 3339)."),
    user_id: str = Depends(get_user_id),
    services: SyncServices = Depends(get_services),
) -> ApiResponse[list[RemoteEventSnapshot]]:
    """Read-through listing of the selected calendar; nothing is stored."""
    events = await list_window_events(
        user_id,
        connections=services.connections,
        calendar_client=services.calendar,
        start_at=start,
        end_at=end,
    )
    return ApiResponse[list[RemoteEventSnapshot]](data=events)


@router.post("/disconnect", response_model=ApiResponse[DisconnectResponse])
async def disconnect(
    body: DisconnectRequest | None = None,
    user_id: str = Depends(get_user_id),
    services: SyncServices = Depends(get_services),
) -> ApiResponse[DisconnectResponse]:
    if body is not None and body.revoke:
        revoked = await services.oauth_flow.revoke(user_id)
        logger.info("Provider-side revocation for user=%s: %s", user_id, revoked)
    disconnected = await services.connections.deactivate(user_id)
    return ApiResponse[DisconnectResponse](data=DisconnectResponse(disconnected=disconnected))
