"""Shared test fixtures."""

from __future__ import annotations

import pytest

from spendsync.adapters.db.facade import DB


@pytest.fixture
def db() -> DB:
    """Fresh in-memory database with all tables created."""
    database = DB("sqlite:///:memory:")
    database.create_schema()
    return database


@pytest.fixture(autouse=True)
def _clear_provider_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's .env from leaking pipeline settings into tests."""
    for name in (
        "DATABASE_URL",
        "SPENDSYNC_LOG_LEVEL",
        "SPENDSYNC_FETCH_TIMEOUT_SECONDS",
        "SPENDSYNC_SYNC_WINDOW_DAYS",
        "SPENDSYNC_STALE_SYNC_MINUTES",
    ):
        monkeypatch.delenv(name, raising=False)
