"""Google OAuth callback endpoint.

The connect step itself lives in the calendar-sync router (``POST /connect``)
because it needs the caller's identity; the callback is reached by the
browser straight from Google and identifies the user through ``state``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse, Response

from timeblock_sync.api.deps import get_services
from timeblock_sync.service import SyncServices

router = APIRouter(prefix="/api/oauth", tags=["oauth"])
logger = logging.getLogger(__name__)


@router.get("/google/callback")
async def oauth_google_callback(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="CSRF state token."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    error_description: str | None = Query(
        default=None, description="Human-readable error from Google."
    ),
    services: SyncServices = Depends(get_services),
) -> Response:
    """Finish the authorization flow and send the browser back to the app.

    Always answers with a 302; failures travel as ``?oauth=error&error=<code>``.
    """
    url = await services.oauth_flow.handle_callback(
        code=code, state=state, error=error, error_description=error_description
    )
    return RedirectResponse(url=url, status_code=302)
