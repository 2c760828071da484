"""Push-notification channel lifecycle: create, record, and tear down watches.

A user's watch is ``Inactive`` (no watch fields) or ``Active`` (channel id
and resource id recorded, expiry when the remote reported a parseable one).
Expiry is advisory; readers report an expired channel as inactive but
nothing here evicts it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from calsync.sync.errors import RemoteNotFoundError
from calsync.sync.google import RemoteCalendar
from calsync.sync.models import UserRecord, WatchStatus
from calsync.sync.store import EventStore

logger = logging.getLogger(__name__)

DEFAULT_WATCH_TTL_SECONDS = 86400


def build_channel_id(user_id: str) -> str:
    return f"calendar-watch-{user_id}-{uuid.uuid4()}"


def parse_channel_expiration(value: str | None) -> datetime | None:
    """Parse Google's channel expiration (milliseconds since the epoch).

    Returns ``None`` for a missing or unparseable value instead of raising.
    """
    if value is None or not str(value).strip():
        return None
    raw = str(value).strip()
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=UTC)
    except (ValueError, OverflowError, OSError):
        pass
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable watch channel expiration %r", raw)
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


class WatchLifecycleManager:
    """Creates and cancels watch channels and keeps the user's watch fields in step."""

    def __init__(
        self,
        store: EventStore,
        *,
        ttl_seconds: int = DEFAULT_WATCH_TTL_SECONDS,
        channel_id_factory: Callable[[str], str] = build_channel_id,
    ) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._channel_id_factory = channel_id_factory

    async def setup_watch(
        self,
        user: UserRecord,
        client: RemoteCalendar,
        webhook_url: str,
    ) -> WatchStatus:
        """Create a watch channel for *user* and record it.

        An existing watch is stopped first so the old channel stops
        delivering; if that fails the error propagates and nothing changes.
        """
        if user.has_watch:
            logger.info(
                "User %s already has watch channel %s; replacing it",
                user.user_id,
                user.watch_channel_id,
            )
            await self.stop_watch(user, client)

        requested_channel_id = self._channel_id_factory(user.user_id)

        channel = await client.watch(
            channel_id=requested_channel_id,
            webhook_url=webhook_url,
            ttl_seconds=self._ttl_seconds,
        )
        if channel.channel_id != requested_channel_id:
            logger.info(
                "Remote assigned channel id %s (requested %s) for user %s",
                channel.channel_id,
                requested_channel_id,
                user.user_id,
            )

        expires_at = parse_channel_expiration(channel.expiration)
        await self._store.update_user_watch(
            user.user_id,
            resource_id=channel.resource_id,
            channel_id=channel.channel_id,
            expires_at=expires_at,
        )
        logger.info(
            "Watch channel %s active for user %s (expires %s)",
            channel.channel_id,
            user.user_id,
            expires_at.isoformat() if expires_at else "unknown",
        )
        return WatchStatus(
            active=True,
            channel_id=channel.channel_id,
            resource_id=channel.resource_id,
            expires_at=expires_at,
        )

    async def stop_watch(self, user: UserRecord, client: RemoteCalendar) -> bool:
        """Cancel the user's watch and clear its fields.

        Returns ``False`` when no watch was recorded.  A channel the remote
        no longer knows about counts as stopped; any other remote failure
        propagates and leaves the recorded watch in place.
        """
        if not user.has_watch:
            logger.debug("User %s has no watch channel; nothing to stop", user.user_id)
            return False

        if user.watch_channel_id and user.watch_resource_id:
            try:
                await client.stop_watch(
                    channel_id=user.watch_channel_id,
                    resource_id=user.watch_resource_id,
                )
            except RemoteNotFoundError:
                logger.info(
                    "Watch channel %s for user %s was already gone remotely",
                    user.watch_channel_id,
                    user.user_id,
                )

        await self._store.update_user_watch(
            user.user_id,
            resource_id=None,
            channel_id=None,
            expires_at=None,
        )
        logger.info("Watch channel %s stopped for user %s", user.watch_channel_id, user.user_id)
        return True
