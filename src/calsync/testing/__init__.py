"""Test support utilities for the calsync package.

Helpers here have no dependency on pytest itself, so they can back local
development runs as well as the test suite.
"""

from __future__ import annotations

from calsync.testing.memory_store import InMemoryEventStore

__all__ = ["InMemoryEventStore"]
