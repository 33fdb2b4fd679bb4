"""
tests/conftest.py

Shared fixtures for the indexer test suite.

Every test gets its own SQLite file under tmp_path. PostgreSQL tests are
marked ``integration`` and only run when TEST_DATABASE_URL is set.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Generator

import pytest

from indexer.config import Settings, reset_settings
from indexer.db import CheckpointStore
from indexer.models import DelegationRecord


@pytest.fixture(autouse=True)
def _isolated_settings() -> Generator[None, None, None]:
    """Drop cached settings between tests."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "delegations.db"


@pytest.fixture
def store(db_path: Path) -> Generator[CheckpointStore, None, None]:
    """Initialized checkpoint store backed by a temporary SQLite file."""
    checkpoint_store = CheckpointStore(f"sqlite:///{db_path}")
    checkpoint_store.initialize()
    yield checkpoint_store
    checkpoint_store.close()


def make_record(
    timestamp: str = "2023-09-01T12:00:00Z",
    delegator: str = "tz1Test",
    amount: int = 123456,
    level: int = 4_100_000,
) -> DelegationRecord:
    return DelegationRecord(timestamp=timestamp, amount=amount, delegator=delegator, level=level)


def tzkt_item(
    timestamp: str = "2023-09-01T12:00:00Z",
    address: str = "tz1Test",
    amount: int = 123456,
    level: int = 4_100_000,
    **extra: Any,
) -> dict[str, Any]:
    """A delegation as the TzKT API returns it (only the fields we read, plus extras)."""
    item: dict[str, Any] = {
        "type": "delegation",
        "id": 1,
        "level": level,
        "timestamp": timestamp,
        "sender": {"address": address},
        "amount": amount,
        "status": "applied",
    }
    item.update(extra)
    return item


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def tzkt_item_factory():
    return tzkt_item
