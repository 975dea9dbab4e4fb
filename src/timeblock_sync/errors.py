"""Exception hierarchy and error-message sanitizers for calendar sync."""

from __future__ import annotations

import re

import httpx

MAX_ERROR_MESSAGE_LENGTH = 200


class CalendarSyncError(RuntimeError):
    """Base error for the calendar sync core."""


# ---------------------------------------------------------------------------
# Auth errors: never auto-retried, the user must reconnect
# ---------------------------------------------------------------------------


class CalendarAuthError(CalendarSyncError):
    """Base error for missing or unusable calendar credentials."""


class NoConnectionError(CalendarAuthError):
    """Raised when the user has no active calendar connection."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No active Google Calendar connection for user {user_id!r}")


class CalendarNotSelectedError(CalendarAuthError):
    """Raised when the connection exists but no calendar has been chosen yet."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No calendar selected for user {user_id!r}")


class TokenRefreshError(CalendarAuthError):
    """Raised when refresh-token exchange fails."""


class CredentialDecryptionError(CalendarAuthError):
    """Raised when a stored token cannot be authenticated/decrypted."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class CalendarSyncTokenExpiredError(CalendarSyncError):
    """Raised when a sync token is expired or invalid; caller should do a full sync."""


class CalendarRequestError(CalendarSyncError):
    """Raised when a Google API request fails.

    ``status_code`` is ``0`` when no HTTP response was received.
    """

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


# ---------------------------------------------------------------------------
# Push / mapping errors
# ---------------------------------------------------------------------------


class PushError(CalendarSyncError):
    """A push to the provider failed; reported to the notifier, never raised to callers."""

    def __init__(self, *, block_id: str, action: str, message: str) -> None:
        self.block_id = block_id
        self.action = action
        self.message = message
        super().__init__(f"Failed to {action} calendar event for block {block_id!r}: {message}")


class MappingConflictError(CalendarSyncError):
    """Raised when a remote event id is already bound to a different local block."""

    def __init__(self, *, remote_event_id: str, existing_block_id: str, block_id: str) -> None:
        self.remote_event_id = remote_event_id
        self.existing_block_id = existing_block_id
        self.block_id = block_id
        super().__init__(
            f"Remote event {remote_event_id!r} is already mapped to block "
            f"{existing_block_id!r}; refusing to bind it to {block_id!r}"
        )


# ---------------------------------------------------------------------------
# Message sanitizers
# ---------------------------------------------------------------------------


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error message from a Google error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:MAX_ERROR_MESSAGE_LENGTH]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                error_payload = f"{error_payload}: {description}"
            return " ".join(error_payload.split())[:MAX_ERROR_MESSAGE_LENGTH]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:MAX_ERROR_MESSAGE_LENGTH]
    return "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message.

    Tokens live encrypted in the database, so redaction is pattern-based.
    """
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;]+)",
        r"\1: [REDACTED]",
        redacted,
    )
    # Bearer headers
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error_message(exc: BaseException | str) -> str:
    """Return a redacted, whitespace-collapsed, truncated message for persistence."""
    raw_message = exc if isinstance(exc, str) else str(exc)
    redacted = redact_credential_values(raw_message)
    sanitized = " ".join(redacted.split())[:MAX_ERROR_MESSAGE_LENGTH]
    return sanitized or (type(exc).__name__ if not isinstance(exc, str) else "Unknown error")
