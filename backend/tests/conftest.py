from contextlib import asynccontextmanager
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest


class FakeTransaction:
    """Stands in for ``asyncpg.transaction.Transaction`` (also used for savepoints)."""

    def __init__(self, conn: "FakeConnection"):
        self.conn = conn

    async def __aenter__(self):
        self.conn.open_transactions += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.conn.open_transactions -= 1
        if exc_type is not None:
            self.conn.rollbacks += 1
        return False


class FakeConnection:
    """Scripted asyncpg connection: every query method is an AsyncMock."""

    def __init__(self):
        self.execute = AsyncMock(return_value="UPDATE 0")
        self.executemany = AsyncMock(return_value=None)
        self.fetch = AsyncMock(return_value=[])
        self.fetchrow = AsyncMock(return_value=None)
        self.fetchval = AsyncMock(return_value=None)
        self.open_transactions = 0
        self.transactions_started = 0
        self.rollbacks = 0

    def transaction(self):
        self.transactions_started += 1
        return FakeTransaction(self)


class FakePool:
    def __init__(self, conn: FakeConnection | None = None):
        self.conn = conn or FakeConnection()
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self, timeout=None):
        self.acquired += 1
        yield self.conn


class FakeClock:
    """Monotonic-style clock driven by the test."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_pool(fake_conn) -> FakePool:
    return FakePool(fake_conn)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
