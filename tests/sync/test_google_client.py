"""Tests for the Google Calendar client, error mapping, and payload parsing."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import httpx
import pytest

from calsync.sync.errors import (
    RemoteNotFoundError,
    RemoteRateLimitedError,
    RemoteTransientError,
    RemoteUnauthorizedError,
    RemoteUnknownError,
)
from calsync.sync.google import (
    GoogleCalendarClient,
    derive_resource_id,
    google_rfc3339,
    parse_remote_event,
    remote_error_from_response,
)
from calsync.sync.models import AttendeeResponseStatus, Credential

pytestmark = pytest.mark.unit

BASE_URL = "https://calendar.test/v3"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _event_payload(event_id: str, *, start: str = "2026-03-02T09:00:00Z", **extra) -> dict:
    payload = {
        "id": event_id,
        "status": "confirmed",
        "summary": f"Event {event_id}",
        "htmlLink": f"https://www.google.com/calendar/event?eid=res-{event_id}",
        "start": {"dateTime": start},
        "end": {"dateTime": "2026-03-02T10:00:00Z"},
    }
    payload.update(extra)
    return payload


def _make_client(handler, **kwargs) -> tuple[GoogleCalendarClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = GoogleCalendarClient(
        Credential(access_token="access-1"),
        http_client,
        base_url=BASE_URL,
        clock=lambda: NOW,
        **kwargs,
    )
    return client, http_client


class TestListEvents:
    async def test_follows_page_tokens_and_sends_list_params(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.params.get("pageToken") == "page-2":
                return httpx.Response(200, json={"items": [_event_payload("evt-2")]})
            return httpx.Response(
                200,
                json={"items": [_event_payload("evt-1")], "nextPageToken": "page-2"},
            )

        client, http_client = _make_client(handler, page_size=10)
        async with http_client:
            events = await client.list_future_events()

        assert [event.event_id for event in events] == ["evt-1", "evt-2"]
        assert len(requests) == 2
        first = requests[0]
        assert first.url.path == "/v3/calendars/primary/events"
        assert first.url.params["singleEvents"] == "true"
        assert first.url.params["showDeleted"] == "false"
        assert first.url.params["orderBy"] == "startTime"
        assert first.url.params["maxResults"] == "10"
        assert first.url.params["timeMin"] == "2026-03-01T12:00:00Z"
        assert "pageToken" not in first.url.params
        assert first.headers["Authorization"] == "Bearer access-1"

    async def test_list_events_since_uses_window_start(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.params["timeMin"])
            return httpx.Response(200, json={"items": []})

        client, http_client = _make_client(handler)
        async with http_client:
            events = await client.list_events_since(NOW - timedelta(minutes=10))

        assert events == []
        assert seen == ["2026-03-01T11:50:00Z"]

    async def test_items_without_id_are_dropped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"items": [{"summary": "no id"}, "garbage", _event_payload("evt-1")]},
            )

        client, http_client = _make_client(handler)
        async with http_client:
            events = await client.list_future_events()

        assert [event.event_id for event in events] == ["evt-1"]

    async def test_non_array_items_is_unknown_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"items": {"id": "evt-1"}})

        client, http_client = _make_client(handler)
        async with http_client:
            with pytest.raises(RemoteUnknownError):
                await client.list_future_events()

    async def test_calendar_id_is_path_encoded(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.raw_path.decode())
            return httpx.Response(200, json={"items": []})

        client, http_client = _make_client(handler, calendar_id="team@example.com")
        async with http_client:
            await client.list_future_events()

        assert paths[0].startswith("/v3/calendars/team%40example.com/events")

    def test_rejects_out_of_range_page_size(self) -> None:
        with pytest.raises(ValueError, match="page_size"):
            GoogleCalendarClient(
                Credential(access_token="access-1"),
                httpx.AsyncClient(),
                page_size=0,
            )


class TestGetEvent:
    async def test_returns_parsed_event(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path == "/v3/calendars/primary/events/evt-1"
            return httpx.Response(200, json=_event_payload("evt-1"))

        client, http_client = _make_client(handler)
        async with http_client:
            event = await client.get_event("evt-1")

        assert event.event_id == "evt-1"
        assert event.resource_id == "res-evt-1"
        assert event.start_at == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    async def test_missing_event_raises_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})

        client, http_client = _make_client(handler)
        async with http_client:
            with pytest.raises(RemoteNotFoundError) as exc_info:
                await client.get_event("evt-missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "Not Found"

    async def test_blank_event_id_is_rejected(self) -> None:
        client, http_client = _make_client(lambda request: httpx.Response(200, json={}))
        async with http_client:
            with pytest.raises(ValueError):
                await client.get_event("   ")

    async def test_transport_failure_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client, http_client = _make_client(handler)
        async with http_client:
            with pytest.raises(RemoteTransientError) as exc_info:
                await client.get_event("evt-1")

        assert exc_info.value.status_code is None

    async def test_invalid_json_success_is_unknown_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>oops</html>")

        client, http_client = _make_client(handler)
        async with http_client:
            with pytest.raises(RemoteUnknownError):
                await client.get_event("evt-1")


class TestWatchChannels:
    async def test_watch_posts_channel_and_returns_remote_ids(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/v3/calendars/primary/events/watch"
            bodies.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "kind": "api#channel",
                    "id": "remote-channel-1",
                    "resourceId": "watched-resource-1",
                    "resourceUri": "https://www.googleapis.com/calendar/v3/calendars/primary",
                    "expiration": "1772452800000",
                },
            )

        client, http_client = _make_client(handler)
        async with http_client:
            channel = await client.watch(
                channel_id="calendar-watch-user-1-abc",
                webhook_url="https://example.com/api/calendar/webhook",
                ttl_seconds=86400,
            )

        assert bodies == [
            {
                "id": "calendar-watch-user-1-abc",
                "type": "web_hook",
                "address": "https://example.com/api/calendar/webhook",
                "params": {"ttl": "86400"},
            }
        ]
        assert channel.channel_id == "remote-channel-1"
        assert channel.resource_id == "watched-resource-1"
        assert channel.expiration == "1772452800000"

    async def test_watch_without_resource_id_is_unknown_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "remote-channel-1"})

        client, http_client = _make_client(handler)
        async with http_client:
            with pytest.raises(RemoteUnknownError):
                await client.watch(channel_id="c", webhook_url="https://x", ttl_seconds=60)

    async def test_stop_watch_posts_channel_and_resource(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        client, http_client = _make_client(handler)
        async with http_client:
            await client.stop_watch(channel_id="channel-1", resource_id="resource-1")

        assert requests[0].url.path == "/v3/channels/stop"
        assert json.loads(requests[0].content) == {"id": "channel-1", "resourceId": "resource-1"}


class TestRemoteErrorMapping:
    def test_401_is_unauthorized(self) -> None:
        error = remote_error_from_response(
            httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})
        )
        assert isinstance(error, RemoteUnauthorizedError)
        assert error.message == "Invalid Credentials"

    def test_oauth_invalid_grant_is_unauthorized(self) -> None:
        error = remote_error_from_response(
            httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "Token has been revoked."},
            )
        )
        assert isinstance(error, RemoteUnauthorizedError)
        assert error.message == "invalid_grant: Token has been revoked."

    def test_429_is_rate_limited_with_retry_after(self) -> None:
        error = remote_error_from_response(
            httpx.Response(429, headers={"Retry-After": "30"}, json={"error": {"message": "slow"}})
        )
        assert isinstance(error, RemoteRateLimitedError)
        assert error.retry_after == 30.0

    def test_403_rate_limit_reason_is_rate_limited(self) -> None:
        error = remote_error_from_response(
            httpx.Response(
                403,
                json={
                    "error": {
                        "message": "Rate Limit Exceeded",
                        "errors": [{"reason": "userRateLimitExceeded"}],
                    }
                },
            )
        )
        assert isinstance(error, RemoteRateLimitedError)
        assert error.retry_after is None

    def test_plain_403_is_unknown(self) -> None:
        error = remote_error_from_response(
            httpx.Response(403, json={"error": {"message": "Forbidden"}})
        )
        assert isinstance(error, RemoteUnknownError)

    @pytest.mark.parametrize("status", [404, 410])
    def test_gone_statuses_are_not_found(self, status: int) -> None:
        assert isinstance(remote_error_from_response(httpx.Response(status)), RemoteNotFoundError)

    def test_5xx_is_transient(self) -> None:
        error = remote_error_from_response(httpx.Response(503, text="Service Unavailable"))
        assert isinstance(error, RemoteTransientError)
        assert error.message == "Service Unavailable"

    def test_empty_body_has_fallback_message(self) -> None:
        error = remote_error_from_response(httpx.Response(418))
        assert isinstance(error, RemoteUnknownError)
        assert error.message == "Request failed without an error payload"


class TestPayloadParsing:
    def test_derive_resource_id_prefers_eid(self) -> None:
        assert derive_resource_id("https://www.google.com/calendar/event?eid=abc123") == "abc123"

    def test_derive_resource_id_falls_back_to_last_segment(self) -> None:
        assert derive_resource_id("https://calendar.example.com/events/xyz/") == "xyz"

    @pytest.mark.parametrize("value", [None, "", "   ", 42])
    def test_derive_resource_id_without_link(self, value) -> None:
        assert derive_resource_id(value) is None

    def test_google_rfc3339_uses_z_suffix(self) -> None:
        naive = datetime(2026, 3, 1, 8, 30)
        assert google_rfc3339(naive) == "2026-03-01T08:30:00Z"

    def test_all_day_event_uses_event_timezone(self) -> None:
        event = parse_remote_event(
            {
                "id": "allday",
                "start": {"date": "2026-03-05", "timeZone": "America/New_York"},
                "end": {"date": "2026-03-06", "timeZone": "America/New_York"},
            },
            fallback_timezone="UTC",
        )
        assert event is not None
        assert event.start_at == datetime(2026, 3, 5, tzinfo=ZoneInfo("America/New_York"))

    def test_all_day_event_falls_back_to_configured_timezone(self) -> None:
        event = parse_remote_event(
            {"id": "allday", "start": {"date": "2026-03-05"}, "end": {"date": "2026-03-06"}},
            fallback_timezone="Europe/Berlin",
        )
        assert event is not None
        assert event.start_at == datetime(2026, 3, 5, tzinfo=ZoneInfo("Europe/Berlin"))

    def test_unparseable_boundaries_become_none(self) -> None:
        event = parse_remote_event(
            {"id": "broken", "start": {"dateTime": "not-a-date"}, "end": {}},
            fallback_timezone="UTC",
        )
        assert event is not None
        assert event.start_at is None
        assert event.end_at is None

    def test_recurrence_attendees_and_organizer(self) -> None:
        event = parse_remote_event(
            _event_payload(
                "evt-1",
                organizer={"email": "owner@example.com"},
                recurrence=["RRULE:FREQ=WEEKLY;BYDAY=MO", 7],
                attendees=[
                    {"email": "a@example.com", "responseStatus": "accepted"},
                    {"email": "b@example.com", "responseStatus": "maybe"},
                    {"displayName": "no email"},
                ],
            ),
            fallback_timezone="UTC",
        )
        assert event is not None
        assert event.organizer_email == "owner@example.com"
        assert event.recurrence == ["RRULE:FREQ=WEEKLY;BYDAY=MO"]
        assert [(a.email, a.response_status) for a in event.attendees] == [
            ("a@example.com", AttendeeResponseStatus.accepted),
            ("b@example.com", AttendeeResponseStatus.needs_action),
        ]

    def test_cancelled_status_is_flagged(self) -> None:
        event = parse_remote_event(
            _event_payload("evt-1", status="cancelled"), fallback_timezone="UTC"
        )
        assert event is not None
        assert event.is_cancelled is True
