"""Record shapes shared by the sync engine, its stores, and its remote client."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CALENDAR_ID = "primary"
UNTITLED_EVENT_TITLE = "Untitled Event"


class AttendeeResponseStatus(StrEnum):
    """RSVP response status for an event attendee."""

    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"


class AttendeeRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    response_status: AttendeeResponseStatus = AttendeeResponseStatus.needs_action


class EventRecord(BaseModel):
    """Local mirror of one remote event, keyed by ``(owner_user_id, event_id)``.

    Every field except ``updated_at`` and ``tags`` is a deterministic
    projection of the remote payload.  Tags are local labels and survive
    upserts.
    """

    model_config = ConfigDict(extra="forbid")

    owner_user_id: str
    event_id: str
    title: str = UNTITLED_EVENT_TITLE
    description: str | None = None
    calendar_id: str = DEFAULT_CALENDAR_ID
    remote_resource_id: str | None = None
    start_time: datetime
    end_time: datetime
    is_cancelled: bool = False
    is_recurring: bool = False
    recurrence_rules: list[str] | None = None
    attendees: list[AttendeeRecord] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    updated_at: datetime

    def snapshot(self) -> dict:
        """Return the remote-derived fields, excluding write timestamps and local tags."""
        return self.model_dump(exclude={"updated_at", "tags"})


class UserRecord(BaseModel):
    """Token and watch state for one user, owned by the external auth layer."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    watch_resource_id: str | None = None
    watch_channel_id: str | None = None
    watch_expires_at: datetime | None = None

    @property
    def has_any_token(self) -> bool:
        return bool(self.access_token) or bool(self.refresh_token)

    @property
    def has_watch(self) -> bool:
        return bool(self.watch_channel_id) or bool(self.watch_resource_id)

    def __repr__(self) -> str:
        return (
            f"UserRecord("
            f"user_id={self.user_id!r}, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"token_expires_at={self.token_expires_at!r}, "
            f"watch_channel_id={self.watch_channel_id!r}, "
            f"watch_resource_id={self.watch_resource_id!r}, "
            f"watch_expires_at={self.watch_expires_at!r})"
        )

    # Pydantic's default __str__ would expose token values verbatim.
    __str__ = __repr__


class Credential(BaseModel):
    """A bearer credential known to be valid at the time it was issued."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_token: str = Field(min_length=1)
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return f"Credential(access_token=<REDACTED>, expires_at={self.expires_at!r})"

    __str__ = __repr__


class SyncResult(BaseModel):
    """Counts reported by every sync path."""

    synced: int = 0
    deleted: int = 0


class WatchStatus(BaseModel):
    active: bool = False
    channel_id: str | None = None
    resource_id: str | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_user(cls, user: UserRecord, *, now: datetime) -> WatchStatus:
        """Project a user's watch fields; an expired channel is reported inactive."""
        active = bool(user.watch_channel_id) and (
            user.watch_expires_at is None or user.watch_expires_at > now
        )
        return cls(
            active=active,
            channel_id=user.watch_channel_id,
            resource_id=user.watch_resource_id,
            expires_at=user.watch_expires_at,
        )


class RemoteEvent(BaseModel):
    """Typed view of one Google Calendar event payload.

    ``start_at``/``end_at`` are ``None`` when the payload carries no parseable
    boundary; callers decide how to treat such events.
    """

    event_id: str
    status: str | None = None
    summary: str | None = None
    description: str | None = None
    html_link: str | None = None
    resource_id: str | None = None
    organizer_email: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    recurrence: list[str] | None = None
    attendees: list[AttendeeRecord] = Field(default_factory=list)

    @property
    def is_cancelled(self) -> bool:
        return (self.status or "").lower() == "cancelled"


class WatchChannel(BaseModel):
    """The subscription the remote system actually created for a watch request."""

    channel_id: str
    resource_id: str
    resource_uri: str | None = None
    expiration: str | None = None
