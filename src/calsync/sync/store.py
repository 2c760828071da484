"""Persistence capability consumed by the sync engine.

Every event operation is scoped by owner; the event key is
``(owner_user_id, event_id)``.  User token and watch fields live on the user
record, which the engine re-reads at the start of every operation.
"""

from __future__ import annotations

import abc
from collections.abc import Iterable
from datetime import datetime

from calsync.sync.models import EventRecord, UserRecord

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100


class EventStore(abc.ABC):
    """Read/write operations the engine needs against local events and users."""

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def find_event_ids(
        self,
        user_id: str,
        *,
        start_at_or_after: datetime | None = None,
    ) -> set[str]:
        """Return the user's local event ids, optionally only those starting in a window."""
        ...

    @abc.abstractmethod
    async def upsert_event(self, event: EventRecord) -> None:
        """Insert or replace an event and its attendees; tags are left untouched."""
        ...

    @abc.abstractmethod
    async def delete_events(self, user_id: str, event_ids: Iterable[str]) -> int:
        """Delete the given events (with attendees and tags); return how many existed."""
        ...

    @abc.abstractmethod
    async def find_event_by_resource(self, user_id: str, resource_id: str) -> EventRecord | None:
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        user_id: str,
        *,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[EventRecord]:
        """Return events ordered by start time, bounded on ``start_time`` when given."""
        ...

    @abc.abstractmethod
    async def replace_event_tags(self, user_id: str, event_id: str, tags: list[str]) -> None:
        ...

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> UserRecord | None:
        ...

    @abc.abstractmethod
    async def find_user_by_channel(self, channel_id: str) -> UserRecord | None:
        ...

    @abc.abstractmethod
    async def store_user_tokens(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> None:
        """Create or update the user's tokens after an OAuth connect."""
        ...

    @abc.abstractmethod
    async def update_user_tokens(
        self,
        user_id: str,
        *,
        access_token: str,
        expires_at: datetime | None,
    ) -> None:
        """Persist a refreshed access token and its expiry in one write."""
        ...

    @abc.abstractmethod
    async def update_user_watch(
        self,
        user_id: str,
        *,
        resource_id: str | None,
        channel_id: str | None,
        expires_at: datetime | None,
    ) -> None:
        """Set or clear the user's watch fields together in one write."""
        ...


def validate_watch_fields(
    resource_id: str | None,
    channel_id: str | None,
    expires_at: datetime | None,
) -> None:
    """Reject a half-populated watch: channel and resource are set or cleared together."""
    if (resource_id is None) != (channel_id is None):
        raise ValueError("watch resource_id and channel_id must be set or cleared together")
    if channel_id is None and expires_at is not None:
        raise ValueError("watch expiry cannot be recorded without a channel")


def validate_list_limit(limit: int) -> int:
    if limit < 1 or limit > MAX_LIST_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_LIST_LIMIT}")
    return limit
