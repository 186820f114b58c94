"""Shared fixtures: a migrated SQLite database and a controllable clock."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

import pytest

from dns_sync.db import ConnectionPool, TransactionManager
from dns_sync.migrations import MigrationRunner, SchemaCapabilities


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pool(tmp_path: Path) -> Iterator[ConnectionPool]:
    pool = ConnectionPool(str(tmp_path / "dns-sync.db"), readers=2, acquire_timeout=5)
    yield pool
    pool.close()


@pytest.fixture
def transactions(pool: ConnectionPool) -> TransactionManager:
    return TransactionManager(pool, sleep=lambda seconds: None)


@pytest.fixture
def capabilities(transactions: TransactionManager, clock: FakeClock) -> SchemaCapabilities:
    result = MigrationRunner(transactions, clock=clock).run()
    assert result.ok, result.error
    return SchemaCapabilities.detect(transactions)
