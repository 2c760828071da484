"""Diff-and-apply reconciliation between a remote event set and the local mirror."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from calsync.sync.google import RemoteCalendar
from calsync.sync.models import (
    DEFAULT_CALENDAR_ID,
    UNTITLED_EVENT_TITLE,
    EventRecord,
    RemoteEvent,
    SyncResult,
)
from calsync.sync.store import EventStore

logger = logging.getLogger(__name__)


def project_remote_event(
    remote: RemoteEvent,
    *,
    owner_user_id: str,
    updated_at: datetime,
) -> EventRecord | None:
    """Project a remote event onto a local record.

    Every field except ``updated_at`` is a pure function of ``remote``, so
    applying the same snapshot twice stores the same record.  Returns
    ``None`` when the event has no parseable start or end.
    """
    if remote.start_at is None or remote.end_at is None:
        return None

    return EventRecord(
        owner_user_id=owner_user_id,
        event_id=remote.event_id,
        title=remote.summary or UNTITLED_EVENT_TITLE,
        description=remote.description,
        calendar_id=remote.organizer_email or DEFAULT_CALENDAR_ID,
        remote_resource_id=remote.resource_id,
        start_time=remote.start_at,
        end_time=remote.end_at,
        is_cancelled=remote.is_cancelled,
        is_recurring=bool(remote.recurrence),
        recurrence_rules=list(remote.recurrence) if remote.recurrence is not None else None,
        attendees=[attendee.model_copy() for attendee in remote.attendees],
        updated_at=updated_at,
    )


class ReconciliationEngine:
    """Applies remote snapshots to the ``EventStore`` for one user at a time."""

    def __init__(
        self,
        store: EventStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    async def reconcile_full(self, user_id: str, client: RemoteCalendar) -> SyncResult:
        """Mirror every future remote event and delete local events the remote no longer lists."""
        remote_events = await client.list_future_events()
        local_ids = await self._store.find_event_ids(user_id)
        result = await self._apply(user_id, remote_events, local_ids)
        logger.info(
            "Full reconciliation for user %s: synced=%d deleted=%d",
            user_id,
            result.synced,
            result.deleted,
        )
        return result

    async def reconcile_window(
        self,
        user_id: str,
        client: RemoteCalendar,
        *,
        window_start: datetime,
    ) -> SyncResult:
        """Reconcile only remote events since ``window_start`` against local events starting in it.

        Local events that started before the window are never deleted here;
        only full reconciliation guarantees pruning of past events.
        """
        remote_events = await client.list_events_since(window_start)
        local_ids = await self._store.find_event_ids(user_id, start_at_or_after=window_start)
        result = await self._apply(user_id, remote_events, local_ids)
        logger.info(
            "Windowed reconciliation for user %s since %s: synced=%d deleted=%d",
            user_id,
            window_start.isoformat(),
            result.synced,
            result.deleted,
        )
        return result

    async def apply_remote_event(self, user_id: str, remote: RemoteEvent) -> bool:
        """Upsert a single remote event; returns ``False`` when it could not be projected."""
        record = project_remote_event(remote, owner_user_id=user_id, updated_at=self._clock())
        if record is None:
            logger.warning(
                "Skipping event %s for user %s: no parseable start/end",
                remote.event_id,
                user_id,
            )
            return False
        await self._store.upsert_event(record)
        return True

    async def _apply(
        self,
        user_id: str,
        remote_events: Iterable[RemoteEvent],
        local_ids: set[str],
    ) -> SyncResult:
        remaining = set(local_ids)
        synced = 0
        for remote in remote_events:
            # Listed remotely, so never a deletion candidate even if unprojectable.
            remaining.discard(remote.event_id)
            if await self.apply_remote_event(user_id, remote):
                synced += 1

        deleted = await self._store.delete_events(user_id, remaining) if remaining else 0
        return SyncResult(synced=synced, deleted=deleted)
