"""asyncpg-backed ``EventStore``.

Tables:
- ``calsync_users``: token and watch state per user
- ``calsync_events``: local event mirror keyed by ``(owner_user_id, event_id)``
- ``calsync_event_attendees`` / ``calsync_event_tags``: owned by an event and
  removed with it through ``ON DELETE CASCADE``

Call ``ensure_schema()`` once after pool creation; it is idempotent.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from calsync.sync.models import AttendeeRecord, AttendeeResponseStatus, EventRecord, UserRecord
from calsync.sync.store import (
    DEFAULT_LIST_LIMIT,
    EventStore,
    validate_list_limit,
    validate_watch_fields,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_USERS_TABLE = "calsync_users"
_EVENTS_TABLE = "calsync_events"
_ATTENDEES_TABLE = "calsync_event_attendees"
_TAGS_TABLE = "calsync_event_tags"

_USERS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_USERS_TABLE} (
    id                TEXT PRIMARY KEY,
    access_token      TEXT,
    refresh_token     TEXT,
    token_expires_at  TIMESTAMPTZ,
    watch_resource_id TEXT,
    watch_channel_id  TEXT,
    watch_expires_at  TIMESTAMPTZ,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_USERS_CHANNEL_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_calsync_users_watch_channel_id
ON {_USERS_TABLE} (watch_channel_id)
"""

_EVENTS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_EVENTS_TABLE} (
    owner_user_id      TEXT NOT NULL REFERENCES {_USERS_TABLE} (id) ON DELETE CASCADE,
    event_id           TEXT NOT NULL,
    title              TEXT NOT NULL,
    description        TEXT,
    calendar_id        TEXT NOT NULL DEFAULT 'primary',
    remote_resource_id TEXT,
    start_time         TIMESTAMPTZ NOT NULL,
    end_time           TIMESTAMPTZ NOT NULL,
    is_cancelled       BOOLEAN NOT NULL DEFAULT false,
    is_recurring       BOOLEAN NOT NULL DEFAULT false,
    recurrence_rules   TEXT[],
    updated_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (owner_user_id, event_id)
)
"""

_EVENTS_RESOURCE_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_calsync_events_owner_resource
ON {_EVENTS_TABLE} (owner_user_id, remote_resource_id)
"""

_EVENTS_START_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_calsync_events_owner_start
ON {_EVENTS_TABLE} (owner_user_id, start_time)
"""

_ATTENDEES_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_ATTENDEES_TABLE} (
    owner_user_id   TEXT NOT NULL,
    event_id        TEXT NOT NULL,
    email           TEXT NOT NULL,
    response_status TEXT NOT NULL DEFAULT 'needsAction',
    PRIMARY KEY (owner_user_id, event_id, email),
    FOREIGN KEY (owner_user_id, event_id)
        REFERENCES {_EVENTS_TABLE} (owner_user_id, event_id) ON DELETE CASCADE
)
"""

_TAGS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TAGS_TABLE} (
    owner_user_id TEXT NOT NULL,
    event_id      TEXT NOT NULL,
    tag           TEXT NOT NULL,
    PRIMARY KEY (owner_user_id, event_id, tag),
    FOREIGN KEY (owner_user_id, event_id)
        REFERENCES {_EVENTS_TABLE} (owner_user_id, event_id) ON DELETE CASCADE
)
"""

SCHEMA_DDL: tuple[str, ...] = (
    _USERS_TABLE_DDL,
    _USERS_CHANNEL_INDEX_DDL,
    _EVENTS_TABLE_DDL,
    _EVENTS_RESOURCE_INDEX_DDL,
    _EVENTS_START_INDEX_DDL,
    _ATTENDEES_TABLE_DDL,
    _TAGS_TABLE_DDL,
)

_EVENT_COLUMNS = """
    owner_user_id, event_id, title, description, calendar_id, remote_resource_id,
    start_time, end_time, is_cancelled, is_recurring, recurrence_rules, updated_at
"""

_USER_COLUMNS = """
    id, access_token, refresh_token, token_expires_at,
    watch_resource_id, watch_channel_id, watch_expires_at
"""


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the calsync tables and indexes if they do not exist."""
    async with pool.acquire() as conn:
        for statement in SCHEMA_DDL:
            await conn.execute(statement)
    logger.info("calsync schema ensured")


class PostgresEventStore(EventStore):
    """``EventStore`` over an asyncpg pool; each operation acquires its own connection."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    def __repr__(self) -> str:
        return f"PostgresEventStore(pool={self.pool!r})"

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def find_event_ids(
        self,
        user_id: str,
        *,
        start_at_or_after: datetime | None = None,
    ) -> set[str]:
        async with self.pool.acquire() as conn:
            if start_at_or_after is None:
                rows = await conn.fetch(
                    f"SELECT event_id FROM {_EVENTS_TABLE} WHERE owner_user_id = $1",
                    user_id,
                )
            else:
                rows = await conn.fetch(
                    f"""
                    SELECT event_id FROM {_EVENTS_TABLE}
                    WHERE owner_user_id = $1 AND start_time >= $2
                    """,
                    user_id,
                    start_at_or_after,
                )
        return {row["event_id"] for row in rows}

    async def upsert_event(self, event: EventRecord) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO {_EVENTS_TABLE} ({_EVENT_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    ON CONFLICT (owner_user_id, event_id) DO UPDATE SET
                        title              = EXCLUDED.title,
                        description        = EXCLUDED.description,
                        calendar_id        = EXCLUDED.calendar_id,
                        remote_resource_id = EXCLUDED.remote_resource_id,
                        start_time         = EXCLUDED.start_time,
                        end_time           = EXCLUDED.end_time,
                        is_cancelled       = EXCLUDED.is_cancelled,
                        is_recurring       = EXCLUDED.is_recurring,
                        recurrence_rules   = EXCLUDED.recurrence_rules,
                        updated_at         = EXCLUDED.updated_at
                    """,
                    event.owner_user_id,
                    event.event_id,
                    event.title,
                    event.description,
                    event.calendar_id,
                    event.remote_resource_id,
                    event.start_time,
                    event.end_time,
                    event.is_cancelled,
                    event.is_recurring,
                    event.recurrence_rules,
                    event.updated_at,
                )
                await conn.execute(
                    f"DELETE FROM {_ATTENDEES_TABLE} WHERE owner_user_id = $1 AND event_id = $2",
                    event.owner_user_id,
                    event.event_id,
                )
                if event.attendees:
                    await conn.executemany(
                        f"""
                        INSERT INTO {_ATTENDEES_TABLE}
                            (owner_user_id, event_id, email, response_status)
                        VALUES ($1, $2, $3, $4)
                        ON CONFLICT (owner_user_id, event_id, email) DO UPDATE SET
                            response_status = EXCLUDED.response_status
                        """,
                        [
                            (
                                event.owner_user_id,
                                event.event_id,
                                attendee.email,
                                str(attendee.response_status),
                            )
                            for attendee in event.attendees
                        ],
                    )

    async def delete_events(self, user_id: str, event_ids: Iterable[str]) -> int:
        ids = sorted(set(event_ids))
        if not ids:
            return 0
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"""
                DELETE FROM {_EVENTS_TABLE}
                WHERE owner_user_id = $1 AND event_id = ANY($2::text[])
                """,
                user_id,
                ids,
            )
        # asyncpg returns a status string like "DELETE 3"
        return _affected_rows(result)

    async def find_event_by_resource(self, user_id: str, resource_id: str) -> EventRecord | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_EVENT_COLUMNS} FROM {_EVENTS_TABLE}
                WHERE owner_user_id = $1 AND remote_resource_id = $2
                ORDER BY start_time
                LIMIT 1
                """,
                user_id,
                resource_id,
            )
            if row is None:
                return None
            events = await _hydrate_events(conn, user_id, [row])
        return events[0]

    async def list_events(
        self,
        user_id: str,
        *,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[EventRecord]:
        validate_list_limit(limit)
        conditions = ["owner_user_id = $1"]
        params: list[Any] = [user_id]
        if start_at is not None:
            params.append(start_at)
            conditions.append(f"start_time >= ${len(params)}")
        if end_at is not None:
            params.append(end_at)
            conditions.append(f"start_time <= ${len(params)}")
        params.append(limit)
        query = f"""
            SELECT {_EVENT_COLUMNS} FROM {_EVENTS_TABLE}
            WHERE {" AND ".join(conditions)}
            ORDER BY start_time, event_id
            LIMIT ${len(params)}
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
            return await _hydrate_events(conn, user_id, rows)

    async def replace_event_tags(self, user_id: str, event_id: str, tags: list[str]) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"DELETE FROM {_TAGS_TABLE} WHERE owner_user_id = $1 AND event_id = $2",
                    user_id,
                    event_id,
                )
                if tags:
                    await conn.executemany(
                        f"""
                        INSERT INTO {_TAGS_TABLE} (owner_user_id, event_id, tag)
                        VALUES ($1, $2, $3)
                        ON CONFLICT DO NOTHING
                        """,
                        [(user_id, event_id, tag) for tag in tags],
                    )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> UserRecord | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_USER_COLUMNS} FROM {_USERS_TABLE} WHERE id = $1",
                user_id,
            )
        return _row_to_user(row) if row is not None else None

    async def find_user_by_channel(self, channel_id: str) -> UserRecord | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_USER_COLUMNS} FROM {_USERS_TABLE} WHERE watch_channel_id = $1 LIMIT 1",
                channel_id,
            )
        return _row_to_user(row) if row is not None else None

    async def store_user_tokens(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {_USERS_TABLE} (id, access_token, refresh_token, token_expires_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO UPDATE SET
                    access_token     = EXCLUDED.access_token,
                    refresh_token    = EXCLUDED.refresh_token,
                    token_expires_at = EXCLUDED.token_expires_at,
                    updated_at       = now()
                """,
                user_id,
                access_token,
                refresh_token,
                expires_at,
            )
        # NEVER include token values.
        logger.info("Stored Google tokens for user %s", user_id)

    async def update_user_tokens(
        self,
        user_id: str,
        *,
        access_token: str,
        expires_at: datetime | None,
    ) -> None:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {_USERS_TABLE}
                SET access_token = $2, token_expires_at = $3, updated_at = now()
                WHERE id = $1
                """,
                user_id,
                access_token,
                expires_at,
            )
        if _affected_rows(result) == 0:
            logger.warning("Token update matched no user row for %s", user_id)

    async def update_user_watch(
        self,
        user_id: str,
        *,
        resource_id: str | None,
        channel_id: str | None,
        expires_at: datetime | None,
    ) -> None:
        validate_watch_fields(resource_id, channel_id, expires_at)
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {_USERS_TABLE}
                SET watch_resource_id = $2,
                    watch_channel_id  = $3,
                    watch_expires_at  = $4,
                    updated_at        = now()
                WHERE id = $1
                """,
                user_id,
                resource_id,
                channel_id,
                expires_at,
            )
        if _affected_rows(result) == 0:
            logger.warning("Watch update matched no user row for %s", user_id)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _affected_rows(result: str | None) -> int:
    if not result:
        return 0
    try:
        return int(result.split()[-1])
    except ValueError:
        return 0


def _ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC timezone to a naive datetime returned by asyncpg."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _row_to_user(row: Any) -> UserRecord:
    return UserRecord(
        user_id=row["id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        token_expires_at=_ensure_utc(row["token_expires_at"]),
        watch_resource_id=row["watch_resource_id"],
        watch_channel_id=row["watch_channel_id"],
        watch_expires_at=_ensure_utc(row["watch_expires_at"]),
    )


def _coerce_response_status(value: Any) -> AttendeeResponseStatus:
    try:
        return AttendeeResponseStatus(value)
    except ValueError:
        return AttendeeResponseStatus.needs_action


async def _hydrate_events(
    conn: asyncpg.Connection,
    user_id: str,
    rows: list[Any],
) -> list[EventRecord]:
    if not rows:
        return []
    event_ids = [row["event_id"] for row in rows]

    attendee_rows = await conn.fetch(
        f"""
        SELECT event_id, email, response_status FROM {_ATTENDEES_TABLE}
        WHERE owner_user_id = $1 AND event_id = ANY($2::text[])
        ORDER BY event_id, email
        """,
        user_id,
        event_ids,
    )
    tag_rows = await conn.fetch(
        f"""
        SELECT event_id, tag FROM {_TAGS_TABLE}
        WHERE owner_user_id = $1 AND event_id = ANY($2::text[])
        ORDER BY event_id, tag
        """,
        user_id,
        event_ids,
    )

    attendees: dict[str, list[AttendeeRecord]] = {}
    for attendee_row in attendee_rows:
        attendees.setdefault(attendee_row["event_id"], []).append(
            AttendeeRecord(
                email=attendee_row["email"],
                response_status=_coerce_response_status(attendee_row["response_status"]),
            )
        )
    tags: dict[str, list[str]] = {}
    for tag_row in tag_rows:
        tags.setdefault(tag_row["event_id"], []).append(tag_row["tag"])

    return [
        EventRecord(
            owner_user_id=row["owner_user_id"],
            event_id=row["event_id"],
            title=row["title"],
            description=row["description"],
            calendar_id=row["calendar_id"],
            remote_resource_id=row["remote_resource_id"],
            start_time=_ensure_utc(row["start_time"]),
            end_time=_ensure_utc(row["end_time"]),
            is_cancelled=row["is_cancelled"],
            is_recurring=row["is_recurring"],
            recurrence_rules=list(row["recurrence_rules"])
            if row["recurrence_rules"] is not None
            else None,
            attendees=attendees.get(row["event_id"], []),
            tags=tags.get(row["event_id"], []),
            updated_at=_ensure_utc(row["updated_at"]),
        )
        for row in rows
    ]
