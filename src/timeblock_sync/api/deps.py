"""FastAPI dependencies for the calendar sync routers."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request

from timeblock_sync.core.logging import set_user_context
from timeblock_sync.service import SyncServices


def get_services(request: Request) -> SyncServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Calendar sync services are not initialized")
    return services


def get_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    """Caller identity, supplied by the surrounding application's auth layer."""
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    set_user_context(user_id)
    return user_id
