"""Callable sync operations, wired from one store, one config, and one HTTP client.

``CalendarSyncService`` is what the CLI and the API lifespan construct.  Every
operation re-reads the user record first; nothing is cached between calls.
Errors propagate in kind: ``NotConnectedError`` / ``TokenExpiredNoRefreshError``
when no credential can be produced, ``RemoteCalendarError`` subclasses for
remote failures.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx

from calsync.config import CalsyncConfig
from calsync.core.telemetry import sync_span
from calsync.sync.errors import NotConnectedError
from calsync.sync.google import GoogleCalendarClient, RemoteCalendar
from calsync.sync.models import Credential, EventRecord, SyncResult, UserRecord, WatchStatus
from calsync.sync.reconcile import ReconciliationEngine
from calsync.sync.store import DEFAULT_LIST_LIMIT, EventStore, validate_list_limit
from calsync.sync.tokens import GoogleTokenRefresher, TokenCoordinator
from calsync.sync.watch import WatchLifecycleManager
from calsync.sync.webhook import (
    ChangeNotification,
    SyncHandshake,
    WebhookResolution,
    WebhookResolver,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TOKEN_TTL = timedelta(hours=1)


class CalendarSyncService:
    def __init__(
        self,
        store: EventStore,
        config: CalsyncConfig,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], datetime] | None = None,
        client_factory: Callable[[Credential], RemoteCalendar] | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self._http_client = http_client
        self._clock = clock or (lambda: datetime.now(UTC))
        self._client_factory = client_factory

        refresher = GoogleTokenRefresher(
            client_id=config.google.client_id,
            client_secret=config.google.client_secret,
            http_client=http_client,
            token_url=config.google.token_url,
            clock=self._clock,
        )
        self.tokens = TokenCoordinator(
            store,
            refresher,
            expiry_skew_seconds=config.sync.token_expiry_skew_seconds,
            clock=self._clock,
        )
        self.engine = ReconciliationEngine(store, clock=self._clock)
        self.watches = WatchLifecycleManager(store, ttl_seconds=config.watch.ttl_seconds)
        self.resolver = WebhookResolver(
            store,
            self.tokens,
            self.engine,
            self.client_for,
            lookback_minutes=config.sync.webhook_lookback_minutes,
            fallback="window" if config.sync.webhook_fallback == "window" else "none",
            clock=self._clock,
        )

    def client_for(self, credential: Credential) -> RemoteCalendar:
        """Bind a remote client to *credential* and the configured calendar."""
        if self._client_factory is not None:
            return self._client_factory(credential)
        return GoogleCalendarClient(
            credential,
            self._http_client,
            calendar_id=self.config.google.calendar_id,
            base_url=self.config.google.api_base_url,
            page_size=self.config.sync.page_size,
            fallback_timezone=self.config.sync.default_timezone,
            clock=self._clock,
        )

    async def _require_user(self, user_id: str) -> UserRecord:
        user = await self.store.get_user(user_id)
        if user is None:
            logger.info("User %s has no record; calendar not connected", user_id)
            raise NotConnectedError(user_id)
        return user

    async def _connect(self, user_id: str) -> tuple[UserRecord, RemoteCalendar]:
        user = await self._require_user(user_id)
        credential = await self.tokens.get_valid_credential(user)
        return user, self.client_for(credential)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_full(self, user_id: str) -> SyncResult:
        with sync_span("sync_full", user_id=user_id):
            _, client = await self._connect(user_id)
            return await self.engine.reconcile_full(user_id, client)

    async def sync_recent(self, user_id: str, *, minutes: int | None = None) -> SyncResult:
        window_minutes = minutes if minutes is not None else self.config.sync.recent_window_minutes
        if window_minutes <= 0:
            raise ValueError("minutes must be a positive integer")
        with sync_span("sync_recent", user_id=user_id):
            _, client = await self._connect(user_id)
            window_start = self._clock() - timedelta(minutes=window_minutes)
            return await self.engine.reconcile_window(user_id, client, window_start=window_start)

    async def handle_notification(
        self, notification: SyncHandshake | ChangeNotification
    ) -> WebhookResolution:
        with sync_span("webhook") as span:
            span.set_attribute("calsync.channel_id", notification.channel_id)
            resolution = await self.resolver.resolve(notification)
            span.set_attribute("calsync.user_id", resolution.user_id)
            span.set_attribute("calsync.webhook_action", str(resolution.action))
            return resolution

    # ------------------------------------------------------------------
    # Watch lifecycle
    # ------------------------------------------------------------------

    async def setup_watch(self, user_id: str, webhook_url: str | None = None) -> WatchStatus:
        url = webhook_url or self.config.watch.webhook_url
        if not url:
            raise ValueError("webhook_url is required (pass one or set watch.webhook_url)")
        with sync_span("setup_watch", user_id=user_id):
            user, client = await self._connect(user_id)
            return await self.watches.setup_watch(user, client, url)

    async def stop_watch(self, user_id: str) -> bool:
        with sync_span("stop_watch", user_id=user_id):
            user = await self._require_user(user_id)
            if not user.has_watch:
                return False
            credential = await self.tokens.get_valid_credential(user)
            return await self.watches.stop_watch(user, self.client_for(credential))

    async def get_watch_status(self, user_id: str) -> WatchStatus:
        user = await self.store.get_user(user_id)
        if user is None:
            return WatchStatus()
        return WatchStatus.from_user(user, now=self._clock())

    # ------------------------------------------------------------------
    # Local reads and connect
    # ------------------------------------------------------------------

    async def list_events(
        self,
        user_id: str,
        *,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[EventRecord]:
        validate_list_limit(limit)
        return await self.store.list_events(user_id, start_at=start_at, end_at=end_at, limit=limit)

    async def store_user_tokens(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        """Record tokens obtained by the OAuth connect flow; expiry defaults to one hour."""
        if not access_token.strip():
            raise ValueError("access_token must be a non-empty string")
        await self.store.store_user_tokens(
            user_id,
            access_token=access_token.strip(),
            refresh_token=refresh_token,
            expires_at=expires_at or self._clock() + DEFAULT_CONNECT_TOKEN_TTL,
        )

    async def tag_event(self, user_id: str, event_id: str, tags: list[str]) -> list[str]:
        """Replace the local labels on one of *user_id*'s events.

        Tags are normalized (stripped, blanks and duplicates dropped, order
        kept) and survive later syncs of the same event.
        """
        if event_id not in await self.store.find_event_ids(user_id):
            raise ValueError(f"Unknown event {event_id!r} for user {user_id!r}")
        normalized = list(dict.fromkeys(tag.strip() for tag in tags if tag.strip()))
        await self.store.replace_event_tags(user_id, event_id, normalized)
        logger.info("Tagged event %s for user %s with %s", event_id, user_id, normalized)
        return normalized
