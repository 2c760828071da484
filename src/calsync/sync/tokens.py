"""Access-token coordination for calendar sync.

``TokenCoordinator`` is the only gate the rest of the engine uses to obtain a
bearer credential.  It reads the token fields from the user record handed to
it, refreshes through ``GoogleTokenRefresher`` when the access token is
expired (or has no recorded expiry), and persists the new access token and
expiry through the store before returning.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from calsync.sync.errors import (
    NotConnectedError,
    RemoteTransientError,
    RemoteUnknownError,
    TokenExpiredNoRefreshError,
)
from calsync.sync.google import remote_error_from_response
from calsync.sync.models import Credential, UserRecord
from calsync.sync.store import EventStore

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_EXPIRES_IN_SECONDS = 3600


class GoogleTokenRefresher:
    """Exchanges a refresh token for a fresh access token at the OAuth endpoint."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._token_url = token_url
        self._clock = clock or (lambda: datetime.now(UTC))

    def __repr__(self) -> str:
        return f"GoogleTokenRefresher(client_id={self._client_id!r}, client_secret=<REDACTED>)"

    async def refresh(self, refresh_token: str) -> Credential:
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise RemoteTransientError(
                status_code=None,
                message=f"Google OAuth token refresh request failed: {exc}",
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise remote_error_from_response(response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteUnknownError(
                status_code=response.status_code,
                message="Google OAuth token endpoint returned invalid JSON",
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise RemoteUnknownError(
                status_code=response.status_code,
                message="Google OAuth token response is missing a non-empty access_token",
            )

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        return Credential(
            access_token=access_token.strip(),
            expires_at=self._clock() + timedelta(seconds=expires_in_seconds),
        )


class TokenCoordinator:
    """Produces a valid bearer credential for a user, refreshing when needed.

    Holds no token state of its own; every call works from the user record
    it is given, so callers must re-read the user at the start of each
    operation.
    """

    def __init__(
        self,
        store: EventStore,
        refresher: GoogleTokenRefresher,
        *,
        expiry_skew_seconds: int = 60,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._expiry_skew = timedelta(seconds=expiry_skew_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def get_valid_credential(self, user: UserRecord) -> Credential:
        if not user.has_any_token:
            logger.info("User %s has no stored Google tokens; calendar not connected", user.user_id)
            raise NotConnectedError(user.user_id)

        now = self._clock()
        if (
            user.access_token
            and user.token_expires_at is not None
            and user.token_expires_at > now + self._expiry_skew
        ):
            return Credential(access_token=user.access_token, expires_at=user.token_expires_at)

        if not user.refresh_token:
            # Without a refresh token the skew does not apply.
            if (
                user.access_token
                and user.token_expires_at is not None
                and user.token_expires_at > now
            ):
                return Credential(
                    access_token=user.access_token, expires_at=user.token_expires_at
                )
            logger.warning(
                "Access token for user %s expired at %s and no refresh token is stored",
                user.user_id,
                user.token_expires_at.isoformat() if user.token_expires_at else "unknown",
            )
            raise TokenExpiredNoRefreshError(user.user_id)

        credential = await self._refresher.refresh(user.refresh_token)
        await self._store.update_user_tokens(
            user.user_id,
            access_token=credential.access_token,
            expires_at=credential.expires_at,
        )
        logger.info(
            "Refreshed Google access token for user %s (expires %s)",
            user.user_id,
            credential.expires_at.isoformat() if credential.expires_at else "unknown",
        )
        return credential


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS
