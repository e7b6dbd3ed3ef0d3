from datetime import datetime, timezone

import pytest

from lending.circulation import CirculationService
from lending.clock import FixedClock
from lending.config import LendingPolicy
from lending.database import SQLiteRepository
from lending.repository import InMemoryRepository

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def sqlite_repo(tmp_path, request):
    # A unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    return SQLiteRepository(db_file)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryRepository()
    return SQLiteRepository(str(tmp_path / "lending.db"))


@pytest.fixture
def circulation(repo, clock):
    return CirculationService(repo, clock=clock, policy=LendingPolicy())
