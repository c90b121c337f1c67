"""Shared fixtures.

Most tests run against FakePool, a stand-in for an asyncpg pool whose
connection methods are AsyncMocks. Tests script query results with
``side_effect``/``return_value`` and inspect the issued SQL afterwards.
"""

from unittest.mock import AsyncMock

import pytest

class FakeTransaction:
    """Async context manager recording how a transaction ended."""

    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        self.conn.transactions_started += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.conn.commits += 1
        else:
            self.conn.rollbacks += 1
        return False

class FakeConnection:
    """Connection with scripted fetch/fetchrow/fetchval/execute results."""

    def __init__(self):
        self.fetch = AsyncMock(return_value=[])
        self.fetchrow = AsyncMock(return_value=None)
        self.fetchval = AsyncMock(return_value=None)
        self.execute = AsyncMock(return_value='UPDATE 1')
        self.transactions_started = 0
        self.commits = 0
        self.rollbacks = 0

    def transaction(self):
        return FakeTransaction(self)

    def executed_sql(self):
        """SQL text of every execute() call, in order."""
        return [call.args[0] for call in self.execute.call_args_list]

class _Acquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, exc_type, exc, tb):
        return False

class FakePool:
    """Pool handing out a single FakeConnection."""

    def __init__(self, conn=None):
        self.conn = conn or FakeConnection()

    def acquire(self):
        return _Acquire(self.conn)

@pytest.fixture
def conn():
    return FakeConnection()

@pytest.fixture
def pool(conn):
    return FakePool(conn)
