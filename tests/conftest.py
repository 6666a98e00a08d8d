"""Shared fixtures for CalendarSync tests."""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from calendarsync.config.settings import SyncSettings
from calendarsync.runlog.database import RunLogDatabase
from tests.fixtures.memory_store import InMemoryCalendarStore

FIXED_NOW = datetime(2024, 3, 1, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config: Any) -> None:
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "critical_path: Core functionality tests")


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep host environment variables and config files out of settings."""
    for key in list(os.environ):
        if key.startswith("CALENDARSYNC_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def clock() -> Any:
    """Clock returning a fixed instant."""
    return lambda: FIXED_NOW


@pytest.fixture
def sync_settings(tmp_path: Path) -> SyncSettings:
    """Settings isolated from any user configuration."""
    return SyncSettings(
        feed_url="https://example.com/feed.ics",
        target_calendar_id="target",
        config_dir=tmp_path / "config",
        data_dir=tmp_path / "data",
        config_path=tmp_path / "missing.yaml",
        store_call_timeout=1.0,
    )


@pytest.fixture
def memory_store() -> InMemoryCalendarStore:
    return InMemoryCalendarStore()


@pytest.fixture
def feed_fetcher() -> AsyncMock:
    """Fetcher double; set ``feed_fetcher.fetch_text.return_value`` to the feed text."""
    fetcher = AsyncMock()
    fetcher.fetch_text.return_value = ""
    return fetcher


@pytest_asyncio.fixture
async def run_log(tmp_path: Path) -> AsyncGenerator[RunLogDatabase, None]:
    """Run log backed by a temporary SQLite file."""
    database = RunLogDatabase(tmp_path / "runlog.db")
    await database.initialize()
    yield database
