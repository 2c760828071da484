"""Push-notification parsing and resolution.

Inbound Google notifications carry no event body, only the channel and
resource they concern.  They are parsed once at ingress into a tagged union
(``SyncHandshake`` | ``ChangeNotification``) and then resolved by
``WebhookResolver`` into one concrete action:

- targeted refresh of the local event that carries the resource id
- look-back scan for a new event with that resource id
- optional windowed reconciliation when nothing matches
- nothing (handshake, or no usable credential)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from calsync.core.logging import user_context
from calsync.sync.errors import (
    MalformedNotificationError,
    RemoteNotFoundError,
    TokenUnavailableError,
    UnknownChannelError,
)
from calsync.sync.google import RemoteCalendar
from calsync.sync.models import Credential, EventRecord, SyncResult, UserRecord
from calsync.sync.reconcile import ReconciliationEngine
from calsync.sync.store import EventStore
from calsync.sync.tokens import TokenCoordinator

logger = logging.getLogger(__name__)

CHANNEL_ID_HEADER = "x-goog-channel-id"
RESOURCE_ID_HEADER = "x-goog-resource-id"
RESOURCE_STATE_HEADER = "x-goog-resource-state"
RESOURCE_URI_HEADER = "x-goog-resource-uri"
MESSAGE_NUMBER_HEADER = "x-goog-message-number"
CHANNEL_EXPIRATION_HEADER = "x-goog-channel-expiration"

SYNC_RESOURCE_STATE = "sync"
DEFAULT_LOOKBACK_MINUTES = 10

WebhookFallback = Literal["none", "window"]


class SyncHandshake(BaseModel):
    """The initial ``sync`` message Google sends when a channel is created."""

    kind: Literal["sync"] = "sync"
    channel_id: str
    resource_id: str
    message_number: int | None = None


class ChangeNotification(BaseModel):
    """A change signal for the watched resource (``exists``, ``not_exists``, ...)."""

    kind: Literal["change"] = "change"
    channel_id: str
    resource_id: str
    message_number: int | None = None
    resource_state: str | None = None
    resource_uri: str | None = None
    channel_expiration: str | None = None


Notification = Annotated[SyncHandshake | ChangeNotification, Field(discriminator="kind")]


def parse_notification_headers(headers: Mapping[str, str]) -> SyncHandshake | ChangeNotification:
    """Parse Google's ``X-Goog-*`` headers into a notification.

    Raises ``MalformedNotificationError`` when the channel or resource id is
    missing.
    """
    normalized = {key.lower(): value for key, value in headers.items()}

    channel_id = _header_text(normalized, CHANNEL_ID_HEADER)
    resource_id = _header_text(normalized, RESOURCE_ID_HEADER)
    if channel_id is None or resource_id is None:
        raise MalformedNotificationError("Missing required headers: channel id and resource id")

    message_number = _parse_message_number(_header_text(normalized, MESSAGE_NUMBER_HEADER))
    resource_state = _header_text(normalized, RESOURCE_STATE_HEADER)
    if resource_state == SYNC_RESOURCE_STATE:
        return SyncHandshake(
            channel_id=channel_id,
            resource_id=resource_id,
            message_number=message_number,
        )
    return ChangeNotification(
        channel_id=channel_id,
        resource_id=resource_id,
        message_number=message_number,
        resource_state=resource_state,
        resource_uri=_header_text(normalized, RESOURCE_URI_HEADER),
        channel_expiration=_header_text(normalized, CHANNEL_EXPIRATION_HEADER),
    )


def _header_text(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _parse_message_number(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class WebhookAction(StrEnum):
    """What the resolver did with a notification."""

    handshake = "handshake"
    skipped = "skipped"
    targeted = "targeted"
    untracked = "untracked"
    window = "window"


class WebhookResolution(BaseModel):
    action: WebhookAction
    user_id: str
    result: SyncResult = Field(default_factory=SyncResult)


class WebhookResolver:
    """Maps a parsed notification to a sync action for the channel's owner."""

    def __init__(
        self,
        store: EventStore,
        tokens: TokenCoordinator,
        engine: ReconciliationEngine,
        client_factory: Callable[[Credential], RemoteCalendar],
        *,
        lookback_minutes: int = DEFAULT_LOOKBACK_MINUTES,
        fallback: WebhookFallback = "none",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._engine = engine
        self._client_factory = client_factory
        self._lookback = timedelta(minutes=lookback_minutes)
        self._fallback = fallback
        self._clock = clock or (lambda: datetime.now(UTC))

    async def resolve(self, notification: SyncHandshake | ChangeNotification) -> WebhookResolution:
        user = await self._store.find_user_by_channel(notification.channel_id)
        if user is None:
            raise UnknownChannelError(notification.channel_id)

        with user_context(user.user_id):
            return await self._resolve_for_user(user, notification)

    async def _resolve_for_user(
        self, user: UserRecord, notification: SyncHandshake | ChangeNotification
    ) -> WebhookResolution:
        if isinstance(notification, SyncHandshake):
            logger.info(
                "Watch channel %s handshake acknowledged for user %s",
                notification.channel_id,
                user.user_id,
            )
            return WebhookResolution(action=WebhookAction.handshake, user_id=user.user_id)

        try:
            credential = await self._tokens.get_valid_credential(user)
        except TokenUnavailableError as exc:
            logger.warning(
                "Skipping webhook sync for user %s: %s (%s)",
                user.user_id,
                type(exc).__name__,
                exc,
            )
            return WebhookResolution(action=WebhookAction.skipped, user_id=user.user_id)

        client = self._client_factory(credential)
        local_event = await self._store.find_event_by_resource(
            user.user_id, notification.resource_id
        )
        if local_event is not None:
            result = await self._refresh_tracked(user.user_id, client, local_event)
            return WebhookResolution(
                action=WebhookAction.targeted, user_id=user.user_id, result=result
            )
        return await self._resolve_untracked(user.user_id, client, notification.resource_id)

    async def _refresh_tracked(
        self,
        user_id: str,
        client: RemoteCalendar,
        local_event: EventRecord,
    ) -> SyncResult:
        try:
            remote = await client.get_event(local_event.event_id)
        except RemoteNotFoundError:
            remote = None

        if remote is None or remote.is_cancelled:
            deleted = await self._store.delete_events(user_id, [local_event.event_id])
            logger.info(
                "Event %s removed remotely; deleted locally for user %s",
                local_event.event_id,
                user_id,
            )
            return SyncResult(synced=0, deleted=deleted)

        if remote.start_at is None:
            logger.warning(
                "Event %s for user %s has no parseable start; leaving local copy unchanged",
                local_event.event_id,
                user_id,
            )
            return SyncResult()

        if remote.start_at <= self._clock():
            deleted = await self._store.delete_events(user_id, [local_event.event_id])
            logger.info(
                "Event %s moved into the past; deleted locally for user %s",
                local_event.event_id,
                user_id,
            )
            return SyncResult(synced=0, deleted=deleted)

        synced = await self._engine.apply_remote_event(user_id, remote)
        return SyncResult(synced=1 if synced else 0, deleted=0)

    async def _resolve_untracked(
        self,
        user_id: str,
        client: RemoteCalendar,
        resource_id: str,
    ) -> WebhookResolution:
        now = self._clock()
        window_start = now - self._lookback
        recent_events = await client.list_events_since(window_start)
        match = next((event for event in recent_events if event.resource_id == resource_id), None)

        if match is not None:
            if not match.is_cancelled and match.start_at is not None and match.start_at > now:
                synced = await self._engine.apply_remote_event(user_id, match)
                result = SyncResult(synced=1 if synced else 0, deleted=0)
            else:
                result = SyncResult()
            return WebhookResolution(action=WebhookAction.untracked, user_id=user_id, result=result)

        if self._fallback == "window":
            result = await self._engine.reconcile_window(user_id, client, window_start=window_start)
            return WebhookResolution(action=WebhookAction.window, user_id=user_id, result=result)

        logger.info(
            "No event matching resource %s found for user %s in the last %s; nothing to sync",
            resource_id,
            user_id,
            self._lookback,
        )
        return WebhookResolution(action=WebhookAction.untracked, user_id=user_id)
