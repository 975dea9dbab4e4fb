"""Google OAuth connect flow: authorization URL, callback, and redirect payload.

The callback always ends in a browser redirect back to the app:

- success: ``{origin}{return_path}?oauth=success&calendars=<json>&email=<email>``
- failure: ``{origin}{return_path}?oauth=error&error=<code>``

State tokens are random, single-use, and expire after ``state_ttl_seconds``.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode, urlparse

from timeblock_sync.config import OAuthConfig
from timeblock_sync.crypto import FIELD_ACCESS_TOKEN, FIELD_REFRESH_TOKEN, TokenCipher
from timeblock_sync.errors import CalendarRequestError
from timeblock_sync.google.client import GoogleCalendarClient
from timeblock_sync.google.oauth_client import (
    GOOGLE_AUTH_URL,
    GoogleOAuthClient,
    TokenExchangeError,
)
from timeblock_sync.models import CalendarChoice, ConnectionRecord
from timeblock_sync.stores.connections import ConnectionRepository

logger = logging.getLogger(__name__)

OAUTH_SCOPES = " ".join(
    [
        "https://www.googleapis.com/auth/calendar",
        "https://www.googleapis.com/auth/userinfo.email",
    ]
)

# Error codes carried back to the app in ``?oauth=error&error=<code>``.
ERROR_MISSING_CODE = "missing_authorization_code"
ERROR_INVALID_STATE = "invalid_state_data"
ERROR_STATE_EXPIRED = "authorization_expired_please_try_again"
ERROR_TOKEN_EXCHANGE = "token_exchange_failed"
ERROR_NO_REFRESH_TOKEN = "no_refresh_token"
ERROR_ACCOUNT_LOOKUP = "failed_to_fetch_account"
ERROR_SAVE_CONNECTION = "failed_to_save_connection"


# ---------------------------------------------------------------------------
# One-time state store
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PendingAuthorization:
    user_id: str
    origin: str
    return_path: str
    expires_at: float


class OAuthStateStore:
    """Process-local, one-time-use CSRF state tokens.

    NOTE: process-local; run a single worker process or state validation
    fails across workers.
    """

    def __init__(self, ttl_seconds: int = 300, *, clock: Callable[[], float] = time.monotonic):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._pending: dict[str, PendingAuthorization] = {}

    def issue(self, *, user_id: str, origin: str, return_path: str) -> str:
        self._evict_expired()
        state = secrets.token_urlsafe(32)
        self._pending[state] = PendingAuthorization(
            user_id=user_id,
            origin=origin,
            return_path=return_path,
            expires_at=self._clock() + self._ttl_seconds,
        )
        return state

    def consume(self, state: str) -> tuple[PendingAuthorization | None, bool]:
        """Pop *state*; returns ``(pending, expired)``.

        An unknown state yields ``(None, False)``; a known but expired one
        yields ``(pending, True)``.
        """
        pending = self._pending.pop(state, None)
        if pending is None:
            return None, False
        return pending, self._clock() >= pending.expires_at

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, pending in self._pending.items() if now >= pending.expires_at]
        for key in expired:
            del self._pending[key]

    def __len__(self) -> int:
        return len(self._pending)


# ---------------------------------------------------------------------------
# Origin policy
# ---------------------------------------------------------------------------


class OriginPolicy:
    """Allow-list for where the browser may be sent back to."""

    def __init__(self, config: OAuthConfig) -> None:
        self._default_origin = config.default_origin
        self._hosts = set(config.allowed_hosts)
        self._suffixes = tuple(
            suffix.lstrip(".") for suffix in config.allowed_host_suffixes if suffix.lstrip(".")
        )
        default_host = urlparse(config.default_origin).hostname
        if default_host:
            self._hosts.add(default_host.lower())

    @property
    def default_origin(self) -> str:
        return self._default_origin

    def is_allowed(self, origin: str) -> bool:
        parsed = urlparse(origin)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return False
        host = parsed.hostname.lower()
        return host in self._hosts or any(
            host == suffix or host.endswith(f".{suffix}") for suffix in self._suffixes
        )

    def resolve(self, origin: str | None) -> str:
        if origin and self.is_allowed(origin):
            parsed = urlparse(origin)
            return f"{parsed.scheme}://{parsed.netloc}"
        if origin:
            logger.warning("Rejected OAuth return origin %r; using default", origin)
        return self._default_origin


def _normalize_return_path(return_path: str | None, default: str) -> str:
    if not return_path or not return_path.startswith("/") or return_path.startswith("//"):
        return default
    return return_path


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------


class GoogleOAuthFlow:
    """Runs the authorization-code flow and stores the resulting connection."""

    def __init__(
        self,
        *,
        config: OAuthConfig,
        redirect_uri: str,
        oauth_client: GoogleOAuthClient,
        calendar_client: GoogleCalendarClient,
        connections: ConnectionRepository,
        cipher: TokenCipher,
        state_store: OAuthStateStore | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._config = config
        self._redirect_uri = redirect_uri
        self._oauth_client = oauth_client
        self._calendar = calendar_client
        self._connections = connections
        self._cipher = cipher
        self._states = (
            state_store if state_store is not None else OAuthStateStore(config.state_ttl_seconds)
        )
        self._origins = OriginPolicy(config)
        self._clock = clock

    def build_authorization_url(
        self,
        user_id: str,
        *,
        origin: str | None = None,
        return_path: str | None = None,
    ) -> str:
        state = self._states.issue(
            user_id=user_id,
            origin=self._origins.resolve(origin),
            return_path=_normalize_return_path(return_path, self._config.default_return_path),
        )
        params = {
            "client_id": self._oauth_client.client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": OAUTH_SCOPES,
            "access_type": "offline",
            "prompt": "consent",  # Force refresh token to be returned
            "state": state,
        }
        logger.info("Google OAuth started for user=%s (state=%s...)", user_id, state[:8])
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(
        self,
        *,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> str:
        """Complete the flow and return the URL to redirect the browser to."""
        pending, expired = self._states.consume(state) if state else (None, False)
        origin = pending.origin if pending else self._origins.default_origin
        return_path = pending.return_path if pending else self._config.default_return_path

        def fail(error_code: str) -> str:
            return _redirect(origin, return_path, {"oauth": "error", "error": error_code})

        if error:
            logger.warning("Google OAuth provider error: %s", error)
            if error_description:
                logger.debug("Google OAuth provider error_description: %s", error_description)
            return fail(error)
        if not code:
            return fail(ERROR_MISSING_CODE)
        if pending is None:
            logger.warning("OAuth callback received unknown state token")
            return fail(ERROR_INVALID_STATE)
        if expired:
            logger.warning("OAuth callback received expired state for user=%s", pending.user_id)
            return fail(ERROR_STATE_EXPIRED)

        user_id = pending.user_id
        try:
            grant = await self._oauth_client.exchange_code(
                code=code, redirect_uri=self._redirect_uri
            )
        except TokenExchangeError as exc:
            logger.warning("Google OAuth token exchange failed for user=%s: %s", user_id, exc)
            return fail(ERROR_TOKEN_EXCHANGE)

        existing = await self._connections.get(user_id)
        has_stored_refresh = existing is not None and bool(existing.refresh_token_encrypted)
        if grant.refresh_token is None and not has_stored_refresh:
            logger.warning("Google OAuth token response did not include a refresh token")
            return fail(ERROR_NO_REFRESH_TOKEN)

        try:
            account = await self._oauth_client.fetch_account(grant.access_token)
            calendars = await self._calendar.list_calendars(
                user_id=user_id, access_token=grant.access_token
            )
        except CalendarRequestError as exc:
            logger.warning("Google account lookup failed for user=%s: %s", user_id, exc)
            return fail(ERROR_ACCOUNT_LOOKUP)

        record = ConnectionRecord(
            user_id=user_id,
            google_user_id=account.id,
            account_email=account.email,
            access_token_encrypted=self._cipher.encrypt(
                grant.access_token, user_id=user_id, field=FIELD_ACCESS_TOKEN
            ),
            refresh_token_encrypted=(
                self._cipher.encrypt(grant.refresh_token, user_id=user_id, field=FIELD_REFRESH_TOKEN)
                if grant.refresh_token
                else None
            ),
            token_expiry=self._clock() + timedelta(seconds=grant.expires_in),
            # Reconnecting keeps the previously chosen calendar.
            selected_calendar_id=existing.selected_calendar_id if existing else None,
            selected_calendar_name=existing.selected_calendar_name if existing else None,
            is_active=True,
        )
        try:
            await self._connections.upsert(record)
        except Exception:
            logger.exception("Failed to store calendar connection for user=%s", user_id)
            return fail(ERROR_SAVE_CONNECTION)

        logger.info(
            "Google OAuth complete for user=%s (%d calendars available)", user_id, len(calendars)
        )
        return _redirect(
            origin,
            return_path,
            {
                "oauth": "success",
                "calendars": encode_calendar_payload(calendars),
                "email": account.email or "",
            },
        )

    async def revoke(self, user_id: str) -> bool:
        """Best-effort provider-side revocation of the stored refresh token."""
        record = await self._connections.get(user_id)
        if record is None or not record.refresh_token_encrypted:
            return False
        try:
            token = self._cipher.decrypt(
                record.refresh_token_encrypted, user_id=user_id, field=FIELD_REFRESH_TOKEN
            )
        except Exception:
            logger.warning("Could not decrypt refresh token for revocation (user=%s)", user_id)
            return False
        return await self._oauth_client.revoke(token)


def encode_calendar_payload(calendars: list[CalendarChoice]) -> str:
    return json.dumps(
        [
            {
                "id": choice.id,
                "summary": choice.name,
                "primary": choice.primary,
                "accessRole": choice.access_role,
            }
            for choice in calendars
        ],
        separators=(",", ":"),
    )


def decode_calendar_payload(raw: str) -> list[CalendarChoice]:
    """Parse the ``calendars`` redirect parameter.

    Raises
    ------
    ValueError
        If the payload is not a JSON list of calendar objects.
    """
    payload = json.loads(raw)
    if not isinstance(payload, list):
        raise ValueError("calendars payload must be a list")
    choices: list[CalendarChoice] = []
    for item in payload:
        if not isinstance(item, dict) or not isinstance(item.get("id"), str):
            raise ValueError("calendar entries must be objects with an id")
        choices.append(
            CalendarChoice(
                id=item["id"],
                name=str(item.get("summary") or item["id"]),
                primary=bool(item.get("primary", False)),
                access_role=item.get("accessRole"),
            )
        )
    return choices


def _redirect(origin: str, return_path: str, params: dict[str, str]) -> str:
    return f"{origin}{return_path}?{urlencode(params)}"
