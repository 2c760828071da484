"""Fixtures for the calsync API tests."""

from __future__ import annotations

import pytest
from fastapi import FastAPI

from calsync.api.app import create_app
from calsync.api.deps import get_sync_service


@pytest.fixture
def app(calsync_config) -> FastAPI:
    """App built from an explicit config; the lifespan never runs under ASGITransport."""
    return create_app(calsync_config)


@pytest.fixture
def wired_app(app: FastAPI, service) -> FastAPI:
    """App whose routes use the in-memory sync service."""
    app.dependency_overrides[get_sync_service] = lambda: service
    return app
