"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from fakes import FakeChainClient, RecordingBroadcaster

from position_indexer.storage.database import DatabaseManager


@pytest.fixture
async def db_manager(tmp_path) -> AsyncIterator[DatabaseManager]:
    """File-backed SQLite store shared across sessions of one test."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}")
    await manager.init_schema()
    yield manager
    await manager.dispose()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()
