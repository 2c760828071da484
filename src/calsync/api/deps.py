"""Process-wide dependencies for the calsync API.

``init_dependencies()`` runs in the app lifespan: it opens the database
pool, ensures the schema, creates the shared httpx client, and builds the
``CalendarSyncService``.  Route handlers receive the service through the
``get_sync_service`` FastAPI dependency; tests replace it via
``app.dependency_overrides``.
"""

from __future__ import annotations

import logging

import httpx

from calsync.config import CalsyncConfig
from calsync.db import Database
from calsync.sync.postgres import PostgresEventStore, ensure_schema
from calsync.sync.service import CalendarSyncService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singletons for FastAPI dependency injection
# ---------------------------------------------------------------------------

_database: Database | None = None
_http_client: httpx.AsyncClient | None = None
_sync_service: CalendarSyncService | None = None


async def init_dependencies(config: CalsyncConfig) -> CalendarSyncService:
    """Open the pool and HTTP client and build the sync service singleton."""
    global _database, _http_client, _sync_service  # noqa: PLW0603

    database = Database.from_env(config.database.name, schema=config.database.schema)
    pool = await database.connect()
    await ensure_schema(pool)

    http_client = httpx.AsyncClient(timeout=config.google.request_timeout_s)
    service = CalendarSyncService(PostgresEventStore(pool), config, http_client)

    _database = database
    _http_client = http_client
    _sync_service = service
    logger.info("Sync service initialized for database %s", config.database.name)
    return service


async def shutdown_dependencies() -> None:
    """Close the HTTP client and pool. Called during app shutdown."""
    global _database, _http_client, _sync_service  # noqa: PLW0603

    _sync_service = None
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
    if _database is not None:
        await _database.close()
        _database = None


def get_sync_service() -> CalendarSyncService:
    """FastAPI dependency: provides the ``CalendarSyncService`` singleton."""
    if _sync_service is None:
        raise RuntimeError("CalendarSyncService not initialized — call init_dependencies() first")
    return _sync_service
