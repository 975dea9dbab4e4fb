"""Google OAuth token endpoint and userinfo helpers.

All credential values stay out of logs and exception messages.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from timeblock_sync.errors import CalendarRequestError, TokenRefreshError, safe_google_error_message

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

DEFAULT_EXPIRES_IN_SECONDS = 3600


class TokenGrant(BaseModel):
    """Parsed token-endpoint response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    expires_in: int = DEFAULT_EXPIRES_IN_SECONDS
    refresh_token: str | None = None
    scope: str | None = None

    @field_validator("access_token")
    @classmethod
    def _strip_access_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("access_token must be a non-empty string")
        return normalized

    @field_validator("expires_in", mode="before")
    @classmethod
    def _coerce_expires_in(cls, value: Any) -> int:
        return _coerce_expires_in_seconds(value)

    @field_validator("refresh_token", mode="before")
    @classmethod
    def _blank_refresh_token(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value


class GoogleAccount(BaseModel):
    """The Google account that granted access."""

    model_config = ConfigDict(extra="ignore")

    id: str
    email: str | None = None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


class TokenExchangeError(RuntimeError):
    """Raised when the authorization code -> token exchange fails."""


class GoogleOAuthClient:
    """Calls Google's OAuth token, userinfo, and revocation endpoints."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client

    @property
    def client_id(self) -> str:
        return self._client_id

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Run a refresh-token grant.

        Raises
        ------
        TokenRefreshError
            On transport failure, non-2xx status, an ``error`` payload, or a
            response without ``access_token``.
        """
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"Google OAuth token refresh request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

        payload = _json_object(response, error_cls=TokenRefreshError)
        if "error" in payload:
            raise TokenRefreshError(
                f"Google OAuth token refresh failed: {safe_google_error_message(response)}"
            )
        try:
            return TokenGrant.model_validate(payload)
        except ValueError as exc:
            raise TokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            ) from exc

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenGrant:
        """Exchange an authorization code for tokens."""
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as exc:
            raise TokenExchangeError(f"Network error during token exchange: {exc}") from exc

        if response.status_code != 200:
            # Status only; the body may echo the code
            raise TokenExchangeError(f"Token endpoint returned HTTP {response.status_code}")

        payload = _json_object(response, error_cls=TokenExchangeError)
        try:
            return TokenGrant.model_validate(payload)
        except ValueError as exc:
            raise TokenExchangeError("Token response did not include an access_token") from exc

    async def fetch_account(self, access_token: str) -> GoogleAccount:
        """Return the Google user id and email for *access_token*."""
        try:
            response = await self._http_client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarRequestError(
                status_code=0, message=f"Userinfo request failed: {type(exc).__name__}"
            ) from exc
        if response.status_code != 200:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
        try:
            return GoogleAccount.model_validate(_json_object(response, error_cls=ValueError))
        except ValueError as exc:
            raise CalendarRequestError(
                status_code=response.status_code,
                message="Userinfo response did not include an account id",
            ) from exc

    async def revoke(self, token: str) -> bool:
        """Best-effort revocation; returns whether Google accepted it."""
        try:
            response = await self._http_client.post(
                GOOGLE_REVOKE_URL,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Google token revocation failed: %s", type(exc).__name__)
            return False
        if response.status_code != 200:
            logger.warning("Google token revocation returned HTTP %d", response.status_code)
            return False
        return True


def _json_object(response: httpx.Response, *, error_cls: type[Exception]) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise error_cls("Google OAuth endpoint returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise error_cls("Google OAuth endpoint returned an unexpected JSON payload shape")
    return payload
