"""Error taxonomy for the calendar sync engine.

Every failure is scoped to one user's one operation; nothing here is fatal to
the process.  Callable sync operations let these propagate untranslated in
kind so the serving layer can map them to user-facing messages, while the
push-notification receiver swallows them after logging.
"""

from __future__ import annotations

import re
from typing import Any


class CalendarSyncError(RuntimeError):
    """Base error raised by the calendar sync engine."""


class TokenUnavailableError(CalendarSyncError):
    """Raised when no usable bearer credential can be produced for a user."""

    def __init__(self, user_id: str, message: str) -> None:
        self.user_id = user_id
        super().__init__(message)


class NotConnectedError(TokenUnavailableError):
    """The user has never connected a remote calendar account (no token fields)."""

    def __init__(self, user_id: str) -> None:
        super().__init__(user_id, f"Google Calendar is not connected for user '{user_id}'")


class TokenExpiredNoRefreshError(TokenUnavailableError):
    """The access token is expired (or has no expiry) and no refresh token is stored."""

    def __init__(self, user_id: str) -> None:
        super().__init__(
            user_id,
            f"Access token for user '{user_id}' is expired and no refresh token is available",
        )


class RemoteCalendarError(CalendarSyncError):
    """Raised when a Google Calendar (or OAuth) request fails."""

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        status = status_code if status_code is not None else "n/a"
        super().__init__(f"Google Calendar request failed ({status}): {message}")


class RemoteUnauthorizedError(RemoteCalendarError):
    """The bearer credential was rejected (401) or the refresh grant is invalid."""


class RemoteRateLimitedError(RemoteCalendarError):
    """The remote API throttled the request (429, or 403 with a rate-limit reason)."""

    def __init__(
        self,
        *,
        status_code: int | None,
        message: str,
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(status_code=status_code, message=message)


class RemoteNotFoundError(RemoteCalendarError):
    """The requested resource does not exist (404) or is gone (410)."""


class RemoteTransientError(RemoteCalendarError):
    """Server-side (5xx) or transport failure; safe for the caller to retry later."""


class RemoteUnknownError(RemoteCalendarError):
    """Any other failure, including malformed success payloads."""


class UnknownChannelError(CalendarSyncError):
    """A push notification referenced a channel id no user currently owns."""

    def __init__(self, channel_id: str) -> None:
        self.channel_id = channel_id
        super().__init__(f"No user is subscribed on watch channel '{channel_id}'")


class MalformedNotificationError(ValueError):
    """An inbound push notification is missing its channel or resource id."""


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from a free-form message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
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
    # Authorization headers
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-~+/]+=*", "Bearer [REDACTED]", redacted)
    return redacted


def build_structured_error(exc: Exception, *, user_id: str | None = None) -> dict[str, Any]:
    """Build a sanitized ``{"status": "error", ...}`` dict for logs and CLI output."""
    sanitized = " ".join(redact_credential_values(str(exc)).split())[:200]
    return {
        "status": "error",
        "error": sanitized,
        "error_type": type(exc).__name__,
        "user_id": user_id,
    }
