"""Google OAuth and Calendar v3 HTTP clients."""

from timeblock_sync.google.client import GoogleCalendarClient
from timeblock_sync.google.oauth_client import GoogleAccount, GoogleOAuthClient, TokenGrant

__all__ = ["GoogleAccount", "GoogleCalendarClient", "GoogleOAuthClient", "TokenGrant"]
