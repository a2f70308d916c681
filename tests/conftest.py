"""
Pytest configuration and shared fixtures for tasker tests.
"""

import pytest
from pathlib import Path
from typing import AsyncGenerator

from tasker.registry.storage import RegistryStorage
from tasker.storage.database import SQLiteDatabase
from tasker.utils.logging import setup_logging

from tests.fixtures import FakeClock, FakeProcessTable, RegistryFixtures


setup_logging(log_level="DEBUG", enable_json=False, enable_files=False)


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock shared by storage and the components under test."""
    return FakeClock()


@pytest.fixture
def process_table() -> FakeProcessTable:
    return FakeProcessTable()


@pytest.fixture
async def storage(tmp_path: Path, clock: FakeClock) -> AsyncGenerator[RegistryStorage, None]:
    """Registry storage on a fresh SQLite file."""
    storage = RegistryStorage(SQLiteDatabase(tmp_path / "tasker.db"), clock=clock)
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
async def task_id(storage: RegistryStorage) -> int:
    return await RegistryFixtures.create_task(storage)
