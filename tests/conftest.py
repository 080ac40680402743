"""Pytest fixtures shared by the tick engine tests."""

import random
from pathlib import Path

import pytest

from tracker.core.config import TrackerConfig
from tracker.core.db import SQLiteTickStore
from tracker.core.file_store import FileTickStore
from tracker.core.locking import FileLock
from tracker.core.service import TickService

# 2024-06-10 06:13:20 UTC
NOW = 1_718_000_000_000
# 2024-06-10 00:00:00 UTC
DAY_START = 1_717_977_600_000
HOUR = 3_600_000


@pytest.fixture
def config() -> TrackerConfig:
    """UTC days, no random housekeeping, small archival threshold."""
    return TrackerConfig.from_dict({
        "retention": {"timezone": "UTC", "min_archive_points": 2},
        "cache": {"cleanup_probability": 0.0},
        "api": {"housekeeping_probability": 0.0},
    })


@pytest.fixture
def file_store(tmp_path: Path, config: TrackerConfig) -> FileTickStore:
    storage_dir = tmp_path / "data"
    lock = FileLock(storage_dir / "tick-history.lock", timeout=0.2)
    return FileTickStore(
        storage_dir,
        config.RETENTION.retention_ms,
        backup_every=1,
        lock=lock,
    )


@pytest.fixture
def sqlite_store(tmp_path: Path, config: TrackerConfig) -> SQLiteTickStore:
    store = SQLiteTickStore(tmp_path / "signatures.db", config.RETENTION.retention_ms)
    yield store
    store.close()


@pytest.fixture(params=["file", "sqlite"])
def store(request, file_store, sqlite_store):
    """Run a test against both backends."""
    return file_store if request.param == "file" else sqlite_store


@pytest.fixture
def service(file_store, config) -> TickService:
    return TickService(
        file_store,
        config,
        rng=random.Random(0),
        clock=lambda: NOW,
    )
