"""Shared fixtures: a frozen clock, an in-memory store, and a remote calendar double."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from calsync.config import CalsyncConfig, GoogleConfig, WatchConfig
from calsync.sync.errors import RemoteNotFoundError
from calsync.sync.google import RemoteCalendar
from calsync.sync.models import RemoteEvent, UserRecord, WatchChannel
from calsync.sync.service import CalendarSyncService
from calsync.testing import InMemoryEventStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
USER_ID = "user-1"


class FakeRemoteCalendar(RemoteCalendar):
    """Remote calendar double backed by a dict of events.

    ``calls`` records every operation in order; ``errors`` maps an operation
    name to an exception raised on its next call.
    """

    def __init__(self) -> None:
        self.events: dict[str, RemoteEvent] = {}
        self.calls: list[tuple[str, Any]] = []
        self.errors: dict[str, Exception] = {}
        self.watch_response: WatchChannel | None = None

    def add(self, *events: RemoteEvent) -> None:
        for event in events:
            self.events[event.event_id] = event

    def _maybe_raise(self, operation: str) -> None:
        error = self.errors.pop(operation, None)
        if error is not None:
            raise error

    async def list_future_events(self) -> list[RemoteEvent]:
        self.calls.append(("list_future_events", None))
        self._maybe_raise("list_future_events")
        return list(self.events.values())

    async def list_events_since(self, window_start: datetime) -> list[RemoteEvent]:
        self.calls.append(("list_events_since", window_start))
        self._maybe_raise("list_events_since")
        return [
            event
            for event in self.events.values()
            if event.end_at is None or event.end_at > window_start
        ]

    async def get_event(self, event_id: str) -> RemoteEvent:
        self.calls.append(("get_event", event_id))
        self._maybe_raise("get_event")
        if event_id not in self.events:
            raise RemoteNotFoundError(status_code=404, message="Not Found")
        return self.events[event_id]

    async def watch(self, *, channel_id: str, webhook_url: str, ttl_seconds: int) -> WatchChannel:
        self.calls.append(("watch", (channel_id, webhook_url, ttl_seconds)))
        self._maybe_raise("watch")
        if self.watch_response is not None:
            return self.watch_response
        return WatchChannel(
            channel_id=channel_id,
            resource_id="watched-resource-1",
            expiration=str(int((NOW + timedelta(days=1)).timestamp() * 1000)),
        )

    async def stop_watch(self, *, channel_id: str, resource_id: str) -> None:
        self.calls.append(("stop_watch", (channel_id, resource_id)))
        self._maybe_raise("stop_watch")

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
def remote() -> FakeRemoteCalendar:
    return FakeRemoteCalendar()


@pytest.fixture
def connected_user() -> UserRecord:
    return UserRecord(
        user_id=USER_ID,
        access_token="access-1",
        refresh_token="refresh-1",
        token_expires_at=NOW + timedelta(hours=1),
    )


@pytest.fixture
def store(connected_user: UserRecord) -> InMemoryEventStore:
    return InMemoryEventStore(users=[connected_user])


@pytest.fixture
def make_remote_event() -> Callable[..., RemoteEvent]:
    def _make(
        event_id: str,
        *,
        start: datetime | None = None,
        duration: timedelta = timedelta(hours=1),
        resource_id: str | None = None,
        **overrides: Any,
    ) -> RemoteEvent:
        start_at = start if start is not None else NOW + timedelta(hours=2)
        fields: dict[str, Any] = {
            "event_id": event_id,
            "status": "confirmed",
            "summary": f"Event {event_id}",
            "html_link": f"https://www.google.com/calendar/event?eid=res-{event_id}",
            "resource_id": resource_id if resource_id is not None else f"res-{event_id}",
            "start_at": start_at,
            "end_at": start_at + duration,
        }
        fields.update(overrides)
        return RemoteEvent(**fields)

    return _make


@pytest.fixture
def calsync_config() -> CalsyncConfig:
    return CalsyncConfig(
        google=GoogleConfig(client_id="cid", client_secret="secret"),
        watch=WatchConfig(webhook_url="https://example.com/api/calendar/webhook"),
    )


@pytest.fixture
async def service(
    store: InMemoryEventStore,
    calsync_config: CalsyncConfig,
    remote: FakeRemoteCalendar,
    clock: Callable[[], datetime],
) -> AsyncIterator[CalendarSyncService]:
    def _unexpected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": f"unexpected {request.url}"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(_unexpected)) as http_client:
        yield CalendarSyncService(
            store,
            calsync_config,
            http_client,
            clock=clock,
            client_factory=lambda credential: remote,
        )
