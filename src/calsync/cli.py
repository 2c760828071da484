"""CLI for calsync — run sync operations for a user and serve the webhook receiver."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import click
import httpx

from calsync import __version__
from calsync.config import CalsyncConfig, ConfigError, resolve_config
from calsync.core.logging import configure_logging
from calsync.core.telemetry import init_telemetry
from calsync.db import Database
from calsync.sync.errors import CalendarSyncError, build_structured_error
from calsync.sync.postgres import PostgresEventStore, ensure_schema
from calsync.sync.service import CalendarSyncService
from calsync.sync.store import MAX_LIST_LIMIT

logger = logging.getLogger(__name__)

T = TypeVar("T")


@asynccontextmanager
async def _open_service(config: CalsyncConfig) -> AsyncIterator[CalendarSyncService]:
    """Yield a service over a fresh pool and HTTP client, closing both afterwards."""
    database = Database.from_env(config.database.name, schema=config.database.schema)
    pool = await database.connect()
    try:
        async with httpx.AsyncClient(timeout=config.google.request_timeout_s) as http_client:
            yield CalendarSyncService(PostgresEventStore(pool), config, http_client)
    finally:
        await database.close()


def _run_with_service(
    ctx: click.Context,
    operation: Callable[[CalendarSyncService], Awaitable[T]],
    *,
    user_id: str | None = None,
) -> T:
    config: CalsyncConfig = ctx.obj["config"]

    async def _runner() -> T:
        async with _open_service(config) as service:
            return await operation(service)

    try:
        return asyncio.run(_runner())
    except (CalendarSyncError, ValueError) as exc:
        click.echo(json.dumps(build_structured_error(exc, user_id=user_id)), err=True)
        sys.exit(1)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to calsync.toml (defaults to ./calsync.toml, then environment variables)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync — keep a local event store in step with Google Calendar."""
    try:
        config = resolve_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name="cli",
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command()
@click.argument("user_id")
@click.pass_context
def sync(ctx: click.Context, user_id: str) -> None:
    """Run full reconciliation for USER_ID."""
    result = _run_with_service(ctx, lambda service: service.sync_full(user_id), user_id=user_id)
    _echo_json(result.model_dump())


@cli.command("sync-recent")
@click.argument("user_id")
@click.option("--minutes", type=click.IntRange(min=1), default=None, help="Trailing window size")
@click.pass_context
def sync_recent(ctx: click.Context, user_id: str, minutes: int | None) -> None:
    """Reconcile only the trailing window of events for USER_ID."""
    result = _run_with_service(
        ctx,
        lambda service: service.sync_recent(user_id, minutes=minutes),
        user_id=user_id,
    )
    _echo_json(result.model_dump())


@cli.command()
@click.argument("user_id")
@click.option("--webhook-url", default=None, help="Notification address (defaults to config)")
@click.pass_context
def watch(ctx: click.Context, user_id: str, webhook_url: str | None) -> None:
    """Register a push-notification channel for USER_ID."""
    status = _run_with_service(
        ctx,
        lambda service: service.setup_watch(user_id, webhook_url),
        user_id=user_id,
    )
    _echo_json(status.model_dump(mode="json"))


@cli.command()
@click.argument("user_id")
@click.pass_context
def unwatch(ctx: click.Context, user_id: str) -> None:
    """Stop USER_ID's push-notification channel (no-op when none is active)."""
    stopped = _run_with_service(ctx, lambda service: service.stop_watch(user_id), user_id=user_id)
    _echo_json({"stopped": stopped})


@cli.command()
@click.argument("user_id")
@click.pass_context
def status(ctx: click.Context, user_id: str) -> None:
    """Show USER_ID's watch channel status."""
    watch_status = _run_with_service(
        ctx, lambda service: service.get_watch_status(user_id), user_id=user_id
    )
    _echo_json(watch_status.model_dump(mode="json"))


@cli.command()
@click.argument("user_id")
@click.option("--limit", type=click.IntRange(1, MAX_LIST_LIMIT), default=50, show_default=True)
@click.option("--start", "start_at", type=click.DateTime(), default=None, help="Earliest start")
@click.option("--end", "end_at", type=click.DateTime(), default=None, help="Latest start")
@click.pass_context
def events(
    ctx: click.Context,
    user_id: str,
    limit: int,
    start_at: datetime | None,
    end_at: datetime | None,
) -> None:
    """List USER_ID's locally mirrored events ordered by start time."""
    records = _run_with_service(
        ctx,
        lambda service: service.list_events(
            user_id, start_at=_as_utc(start_at), end_at=_as_utc(end_at), limit=limit
        ),
        user_id=user_id,
    )
    _echo_json([record.model_dump(mode="json") for record in records])


@cli.command()
@click.argument("user_id")
@click.argument("event_id")
@click.argument("tags", nargs=-1)
@click.pass_context
def tag(ctx: click.Context, user_id: str, event_id: str, tags: tuple[str, ...]) -> None:
    """Replace the local tags on EVENT_ID (no TAGS clears them)."""
    stored = _run_with_service(
        ctx,
        lambda service: service.tag_event(user_id, event_id, list(tags)),
        user_id=user_id,
    )
    _echo_json({"event_id": event_id, "tags": stored})


@cli.command()
@click.argument("user_id")
@click.option("--access-token", required=True, help="OAuth access token")
@click.option("--refresh-token", default=None, help="OAuth refresh token")
@click.option("--expires-at", type=click.DateTime(), default=None, help="Access token expiry")
@click.pass_context
def connect(
    ctx: click.Context,
    user_id: str,
    access_token: str,
    refresh_token: str | None,
    expires_at: datetime | None,
) -> None:
    """Store OAuth tokens for USER_ID (expiry defaults to one hour from now)."""
    _run_with_service(
        ctx,
        lambda service: service.store_user_tokens(
            user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=_as_utc(expires_at),
        ),
        user_id=user_id,
    )
    click.echo(f"Stored Google tokens for {user_id}")


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database (if missing) and the calsync tables."""
    config: CalsyncConfig = ctx.obj["config"]

    async def _init() -> None:
        database = Database.from_env(config.database.name, schema=config.database.schema)
        await database.provision()
        pool = await database.connect()
        try:
            await ensure_schema(pool)
        finally:
            await database.close()

    asyncio.run(_init())
    click.echo(f"Database {config.database.name} is ready")


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the push-notification receiver."""
    import uvicorn

    from calsync.api.app import create_app

    config: CalsyncConfig = ctx.obj["config"]
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name="serve",
    )
    init_telemetry("calsync")
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
