"""Tests for watch channel setup and teardown."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calsync.sync.errors import RemoteNotFoundError, RemoteTransientError
from calsync.sync.models import WatchChannel
from calsync.sync.watch import (
    WatchLifecycleManager,
    build_channel_id,
    parse_channel_expiration,
)

pytestmark = pytest.mark.unit

USER_ID = "user-1"


@pytest.fixture
def manager(store) -> WatchLifecycleManager:
    return WatchLifecycleManager(
        store,
        ttl_seconds=3600,
        channel_id_factory=lambda user_id: f"calendar-watch-{user_id}-fixed",
    )


class TestChannelHelpers:
    def test_build_channel_id_is_unique_per_call(self) -> None:
        first = build_channel_id(USER_ID)
        second = build_channel_id(USER_ID)
        assert first.startswith("calendar-watch-user-1-")
        assert first != second

    def test_parses_millisecond_epoch(self) -> None:
        assert parse_channel_expiration("1772452800000") == datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

    def test_parses_iso_timestamp(self) -> None:
        assert parse_channel_expiration("2026-03-02T12:00:00Z") == datetime(
            2026, 3, 2, 12, 0, tzinfo=UTC
        )

    @pytest.mark.parametrize("value", [None, "", "next tuesday"])
    def test_unparseable_expiration_is_none(self, value) -> None:
        assert parse_channel_expiration(value) is None


class TestSetupWatch:
    async def test_records_remote_channel(
        self, manager, store, remote, connected_user, now
    ) -> None:
        status = await manager.setup_watch(
            connected_user, remote, "https://example.com/api/calendar/webhook"
        )

        assert remote.calls == [
            (
                "watch",
                (
                    "calendar-watch-user-1-fixed",
                    "https://example.com/api/calendar/webhook",
                    3600,
                ),
            )
        ]
        assert status.active is True
        assert status.channel_id == "calendar-watch-user-1-fixed"
        assert status.resource_id == "watched-resource-1"
        assert status.expires_at == now + timedelta(days=1)

        user = store.users[USER_ID]
        assert user.watch_channel_id == "calendar-watch-user-1-fixed"
        assert user.watch_resource_id == "watched-resource-1"
        assert user.watch_expires_at == now + timedelta(days=1)

    async def test_persists_channel_id_returned_by_remote(
        self, manager, store, remote, connected_user
    ) -> None:
        remote.watch_response = WatchChannel(
            channel_id="remote-assigned", resource_id="res-9", expiration="garbage"
        )

        status = await manager.setup_watch(connected_user, remote, "https://example.com/hook")

        assert status.channel_id == "remote-assigned"
        assert status.expires_at is None
        assert store.users[USER_ID].watch_channel_id == "remote-assigned"
        assert store.users[USER_ID].watch_expires_at is None

    async def test_replacing_watch_stops_previous_channel(
        self, manager, store, remote, connected_user
    ) -> None:
        watched = connected_user.model_copy(
            update={"watch_channel_id": "old-channel", "watch_resource_id": "old-resource"}
        )
        store.users[USER_ID] = watched

        status = await manager.setup_watch(watched, remote, "https://example.com/hook")

        assert remote.call_names() == ["stop_watch", "watch"]
        assert remote.calls[0] == ("stop_watch", ("old-channel", "old-resource"))
        assert status.channel_id == "calendar-watch-user-1-fixed"
        assert store.users[USER_ID].watch_channel_id == "calendar-watch-user-1-fixed"

    async def test_replacing_watch_tolerates_previous_channel_gone(
        self, manager, store, remote, connected_user
    ) -> None:
        watched = connected_user.model_copy(
            update={"watch_channel_id": "old-channel", "watch_resource_id": "old-resource"}
        )
        store.users[USER_ID] = watched
        remote.errors["stop_watch"] = RemoteNotFoundError(status_code=404, message="Not Found")

        status = await manager.setup_watch(watched, remote, "https://example.com/hook")

        assert status.active is True
        assert store.users[USER_ID].watch_channel_id == "calendar-watch-user-1-fixed"

    async def test_failure_stopping_previous_channel_keeps_it(
        self, manager, store, remote, connected_user
    ) -> None:
        watched = connected_user.model_copy(
            update={"watch_channel_id": "old-channel", "watch_resource_id": "old-resource"}
        )
        store.users[USER_ID] = watched
        remote.errors["stop_watch"] = RemoteTransientError(status_code=503, message="down")

        with pytest.raises(RemoteTransientError):
            await manager.setup_watch(watched, remote, "https://example.com/hook")

        assert remote.call_names() == ["stop_watch"]
        assert store.users[USER_ID].watch_channel_id == "old-channel"

    async def test_remote_failure_leaves_watch_unset(
        self, manager, store, remote, connected_user
    ) -> None:
        remote.errors["watch"] = RemoteTransientError(status_code=500, message="boom")

        with pytest.raises(RemoteTransientError):
            await manager.setup_watch(connected_user, remote, "https://example.com/hook")

        assert store.users[USER_ID].watch_channel_id is None
        assert store.mutations == []


class TestStopWatch:
    async def test_stops_and_clears_fields(self, manager, store, remote, connected_user) -> None:
        await manager.setup_watch(connected_user, remote, "https://example.com/hook")
        watched = store.users[USER_ID]

        stopped = await manager.stop_watch(watched, remote)

        assert stopped is True
        assert remote.calls[-1] == (
            "stop_watch",
            ("calendar-watch-user-1-fixed", "watched-resource-1"),
        )
        user = store.users[USER_ID]
        assert user.watch_channel_id is None
        assert user.watch_resource_id is None
        assert user.watch_expires_at is None

    async def test_without_watch_is_noop(self, manager, store, remote, connected_user) -> None:
        assert await manager.stop_watch(connected_user, remote) is False
        assert remote.calls == []
        assert store.mutations == []

    async def test_channel_already_gone_counts_as_stopped(
        self, manager, store, remote, connected_user
    ) -> None:
        await manager.setup_watch(connected_user, remote, "https://example.com/hook")
        remote.errors["stop_watch"] = RemoteNotFoundError(status_code=404, message="Not Found")

        assert await manager.stop_watch(store.users[USER_ID], remote) is True
        assert store.users[USER_ID].watch_channel_id is None

    async def test_other_remote_failures_keep_watch(
        self, manager, store, remote, connected_user
    ) -> None:
        await manager.setup_watch(connected_user, remote, "https://example.com/hook")
        remote.errors["stop_watch"] = RemoteTransientError(status_code=503, message="down")

        with pytest.raises(RemoteTransientError):
            await manager.stop_watch(store.users[USER_ID], remote)

        assert store.users[USER_ID].watch_channel_id == "calendar-watch-user-1-fixed"
