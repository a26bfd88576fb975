"""Unit test fixtures: cache clearing and a fresh database per test."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from campfire_service.config import clear_settings_cache
from campfire_service.core.state import reset_app_state
from campfire_service.services.database import Database
from campfire_service.services.ledger import Ledger
from campfire_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "campfire.db")


@pytest.fixture
def db(db_path: str) -> Iterator[Database]:
    database = Database(db_path)
    yield database
    database.close()


@pytest.fixture
def store(db: Database) -> TaskStore:
    return TaskStore(db)


@pytest.fixture
def ledger(db: Database) -> Ledger:
    return Ledger(db)
