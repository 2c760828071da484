"""Google Calendar I/O boundary.

This module defines:
- ``RemoteCalendar``: the read/list/get/watch/stop contract the engine consumes
- ``GoogleCalendarClient``: httpx implementation bound to one bearer credential
- payload helpers that turn Google event JSON into ``RemoteEvent`` values

No retries happen here.  Every non-2xx response is mapped onto the
``RemoteCalendarError`` taxonomy and raised to the caller.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, tzinfo
from typing import Any
from urllib.parse import parse_qs, quote, urlsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from calsync.sync.errors import (
    RemoteCalendarError,
    RemoteNotFoundError,
    RemoteRateLimitedError,
    RemoteTransientError,
    RemoteUnauthorizedError,
    RemoteUnknownError,
)
from calsync.sync.models import (
    DEFAULT_CALENDAR_ID,
    AttendeeRecord,
    AttendeeResponseStatus,
    Credential,
    RemoteEvent,
    WatchChannel,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_PAGE_SIZE = 250
MAX_PAGE_SIZE = 2500
WATCH_CHANNEL_TYPE = "web_hook"

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
_OAUTH_UNAUTHORIZED_ERRORS = {"invalid_grant", "invalid_client", "unauthorized_client"}


class RemoteCalendar(abc.ABC):
    """Remote calendar operations, already bound to a credential and calendar."""

    @abc.abstractmethod
    async def list_future_events(self) -> list[RemoteEvent]:
        """Return every single-occurrence event that has not ended yet."""
        ...

    @abc.abstractmethod
    async def list_events_since(self, window_start: datetime) -> list[RemoteEvent]:
        """Return every single-occurrence event ending after ``window_start``."""
        ...

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> RemoteEvent:
        """Fetch one event; raises ``RemoteNotFoundError`` when it no longer exists."""
        ...

    @abc.abstractmethod
    async def watch(self, *, channel_id: str, webhook_url: str, ttl_seconds: int) -> WatchChannel:
        """Request a push-notification channel for the calendar's events."""
        ...

    @abc.abstractmethod
    async def stop_watch(self, *, channel_id: str, resource_id: str) -> None:
        """Cancel a push-notification channel."""
        ...


class GoogleCalendarClient(RemoteCalendar):
    """Google Calendar v3 client bound to a single bearer credential."""

    def __init__(
        self,
        credential: Credential,
        http_client: httpx.AsyncClient,
        *,
        calendar_id: str = DEFAULT_CALENDAR_ID,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        page_size: int = DEFAULT_PAGE_SIZE,
        fallback_timezone: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        self._credential = credential
        self._http_client = http_client
        self._calendar_id = calendar_id
        self._base_url = base_url.rstrip("/")
        self._page_size = page_size
        self._fallback_timezone = fallback_timezone
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def calendar_id(self) -> str:
        return self._calendar_id

    async def list_future_events(self) -> list[RemoteEvent]:
        return await self._list_events(time_min=self._clock())

    async def list_events_since(self, window_start: datetime) -> list[RemoteEvent]:
        return await self._list_events(time_min=window_start)

    async def get_event(self, event_id: str) -> RemoteEvent:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        payload = await self._request_json(
            "GET",
            f"{self._events_path()}/{quote(normalized_event_id, safe='')}",
        )
        event = parse_remote_event(payload, fallback_timezone=self._fallback_timezone)
        if event is None:
            raise RemoteUnknownError(
                status_code=200,
                message=f"get_event response for '{normalized_event_id}' is missing an id",
            )
        return event

    async def watch(self, *, channel_id: str, webhook_url: str, ttl_seconds: int) -> WatchChannel:
        payload = await self._request_json(
            "POST",
            f"{self._events_path()}/watch",
            json_body={
                "id": channel_id,
                "type": WATCH_CHANNEL_TYPE,
                "address": webhook_url,
                "params": {"ttl": str(ttl_seconds)},
            },
        )
        returned_channel_id = _normalize_optional_text(payload.get("id"))
        resource_id = _normalize_optional_text(payload.get("resourceId"))
        if returned_channel_id is None or resource_id is None:
            raise RemoteUnknownError(
                status_code=200,
                message="watch response is missing id or resourceId",
            )
        expiration_raw = payload.get("expiration")
        return WatchChannel(
            channel_id=returned_channel_id,
            resource_id=resource_id,
            resource_uri=_normalize_optional_text(payload.get("resourceUri")),
            expiration=str(expiration_raw) if expiration_raw is not None else None,
        )

    async def stop_watch(self, *, channel_id: str, resource_id: str) -> None:
        await self._request_json(
            "POST",
            "/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
        )

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    def _events_path(self) -> str:
        return f"/calendars/{quote(self._calendar_id, safe='')}/events"

    async def _list_events(self, *, time_min: datetime) -> list[RemoteEvent]:
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": self._page_size,
            "timeMin": google_rfc3339(time_min),
        }

        events: list[RemoteEvent] = []
        page_token: str | None = None
        while True:
            page_params = dict(params)
            if page_token is not None:
                page_params["pageToken"] = page_token

            payload = await self._request_json("GET", self._events_path(), params=page_params)
            items = payload.get("items", [])
            if not isinstance(items, list):
                raise RemoteUnknownError(
                    status_code=200,
                    message="events.list response has a non-array items field",
                )
            for item in items:
                if not isinstance(item, dict):
                    continue
                event = parse_remote_event(item, fallback_timezone=self._fallback_timezone)
                if event is not None:
                    events.append(event)

            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token.strip():
                break
            page_token = next_page_token.strip()

        logger.debug(
            "Listed %d event(s) from calendar %s since %s",
            len(events),
            self._calendar_id,
            time_min.isoformat(),
        )
        return events

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path if path.startswith('/') else f'/{path}'}"
        headers = {
            "Authorization": f"Bearer {self._credential.access_token}",
            "Accept": "application/json",
        }
        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteTransientError(
                status_code=None,
                message=f"{method} {path} failed: {exc}",
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise remote_error_from_response(response)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteUnknownError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON for a successful response",
            ) from exc

        if not isinstance(payload, dict):
            raise RemoteUnknownError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def remote_error_from_response(response: httpx.Response) -> RemoteCalendarError:
    """Map a non-2xx Google API or OAuth response onto the remote error taxonomy."""
    status = response.status_code
    message = safe_google_error_message(response)
    payload = _safe_json(response)

    if status == 401:
        return RemoteUnauthorizedError(status_code=status, message=message)
    if status == 400 and _oauth_error_code(payload) in _OAUTH_UNAUTHORIZED_ERRORS:
        return RemoteUnauthorizedError(status_code=status, message=message)
    if status == 429 or (status == 403 and _google_error_reasons(payload) & _RATE_LIMIT_REASONS):
        return RemoteRateLimitedError(
            status_code=status,
            message=message,
            retry_after=_parse_retry_after(response),
        )
    if status in (404, 410):
        return RemoteNotFoundError(status_code=status, message=message)
    if status >= 500:
        return RemoteTransientError(status_code=status, message=message)
    return RemoteUnknownError(status_code=status, message=message)


def safe_google_error_message(response: httpx.Response) -> str:
    payload = _safe_json(response)

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return " ".join(f"{error_payload}: {description}".split())[:200]
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _oauth_error_code(payload: Any) -> str | None:
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"].strip()
    return None


def _google_error_reasons(payload: Any) -> set[str]:
    if not isinstance(payload, dict):
        return set()
    error_payload = payload.get("error")
    if not isinstance(error_payload, dict):
        return set()
    errors = error_payload.get("errors")
    if not isinstance(errors, list):
        return set()
    return {
        entry["reason"]
        for entry in errors
        if isinstance(entry, dict) and isinstance(entry.get("reason"), str)
    }


def _parse_retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("Retry-After")
    if header is None:
        return None
    try:
        return float(header)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def derive_resource_id(html_link: Any) -> str | None:
    """Derive the secondary resource identifier from an event's canonical link.

    Google links look like ``https://www.google.com/calendar/event?eid=<id>``;
    the ``eid`` query value is used when present, otherwise the last path
    segment.
    """
    if not isinstance(html_link, str) or not html_link.strip():
        return None
    parsed = urlsplit(html_link.strip())
    eid_values = parse_qs(parsed.query).get("eid")
    if eid_values and eid_values[0].strip():
        return eid_values[0].strip()
    segments = [segment for segment in parsed.path.split("/") if segment]
    return segments[-1] if segments else None


def parse_remote_event(payload: dict[str, Any], *, fallback_timezone: str) -> RemoteEvent | None:
    """Build a ``RemoteEvent`` from a Google payload; ``None`` when it has no id."""
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        return None

    start_at = _parse_event_boundary(payload.get("start"), fallback_timezone=fallback_timezone)
    end_at = _parse_event_boundary(payload.get("end"), fallback_timezone=fallback_timezone)
    if start_at is None or end_at is None:
        logger.debug("Event %s has no parseable start/end boundary", event_id)

    html_link = _normalize_optional_text(payload.get("htmlLink"))
    status_raw = payload.get("status")

    return RemoteEvent(
        event_id=event_id,
        status=status_raw.strip() if isinstance(status_raw, str) else None,
        summary=_normalize_optional_text(payload.get("summary")),
        description=_normalize_optional_text(payload.get("description")),
        html_link=html_link,
        resource_id=derive_resource_id(html_link),
        organizer_email=_extract_organizer_email(payload.get("organizer")),
        start_at=start_at,
        end_at=end_at,
        recurrence=_extract_recurrence(payload.get("recurrence")),
        attendees=_extract_attendees(payload.get("attendees")),
    )


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _parse_event_boundary(payload: Any, *, fallback_timezone: str) -> datetime | None:
    if not isinstance(payload, dict):
        return None

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        try:
            return parse_google_datetime(date_time)
        except ValueError:
            return None

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value.strip())
        except ValueError:
            return None
        timezone = _normalize_optional_text(payload.get("timeZone")) or fallback_timezone
        return datetime(
            parsed_date.year,
            parsed_date.month,
            parsed_date.day,
            tzinfo=_coerce_zoneinfo(timezone),
        )
    return None


def _extract_organizer_email(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    return _normalize_optional_text(payload.get("email"))


def _extract_recurrence(payload: Any) -> list[str] | None:
    if not isinstance(payload, list):
        return None
    return [entry for entry in payload if isinstance(entry, str)]


def _extract_attendees(payload: Any) -> list[AttendeeRecord]:
    if not isinstance(payload, list):
        return []

    attendees: list[AttendeeRecord] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue

        response_status = AttendeeResponseStatus.needs_action
        response_status_raw = entry.get("responseStatus")
        if isinstance(response_status_raw, str):
            try:
                response_status = AttendeeResponseStatus(response_status_raw.strip())
            except ValueError:
                pass

        attendees.append(AttendeeRecord(email=email, response_status=response_status))
    return attendees
