"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import pytest
import pytest_asyncio

from recordkit.adapters.base import StorageAdapter, TransactionContext
from recordkit.adapters.sqlite import SQLiteAdapter
from recordkit.session import init_session, reset_session


class RecordingAdapter(StorageAdapter):
    """Wraps an adapter and records every statement it runs."""

    def __init__(self, inner: StorageAdapter) -> None:
        self.inner = inner
        self.grammar = inner.grammar
        self.statements: list[tuple[str, list[Any]]] = []

    @property
    def queries(self) -> list[str]:
        return [sql for sql, _ in self.statements if sql.startswith("SELECT")]

    def reset(self) -> None:
        self.statements.clear()

    async def execute(self, sql: str, params: list[Any] | None = None) -> None:
        await self.inner.execute(sql, params)

    async def run_query(self, sql: str, bindings: list[Any]) -> list[dict[str, Any]]:
        self.statements.append((sql, bindings))
        return await self.inner.run_query(sql, bindings)

    async def run_command(self, table: str, sql: str, bindings: list[Any]) -> int:
        self.statements.append((sql, bindings))
        return await self.inner.run_command(table, sql, bindings)

    async def insert(self, table: str, values: dict[str, Any], key: str = "id") -> Any:
        self.statements.append(self.grammar.compile_insert_get_id(table, values, key))
        return await self.inner.insert(table, values, key)

    @asynccontextmanager
    async def transaction_context(self) -> AsyncIterator[TransactionContext]:
        async with self.inner.transaction_context() as tx:
            yield _RecordingTransaction(self, tx)

    async def close(self) -> None:
        await self.inner.close()


class _RecordingTransaction:
    def __init__(self, recorder: RecordingAdapter, tx: TransactionContext) -> None:
        self.recorder = recorder
        self.tx = tx
        self.grammar = tx.grammar

    async def run_query(self, sql: str, bindings: list[Any]) -> list[dict[str, Any]]:
        self.recorder.statements.append((sql, bindings))
        return await self.tx.run_query(sql, bindings)

    async def run_command(self, table: str, sql: str, bindings: list[Any]) -> int:
        self.recorder.statements.append((sql, bindings))
        return await self.tx.run_command(table, sql, bindings)

    async def insert(self, table: str, values: dict[str, Any], key: str = "id") -> Any:
        self.recorder.statements.append(self.grammar.compile_insert_get_id(table, values, key))
        return await self.tx.insert(table, values, key)


@pytest_asyncio.fixture
async def sqlite_adapter() -> AsyncIterator[SQLiteAdapter]:
    """An in-memory SQLite database."""
    adapter = await SQLiteAdapter.connect(":memory:")
    yield adapter
    await adapter.close()


@pytest_asyncio.fixture
async def db(sqlite_adapter: SQLiteAdapter) -> AsyncIterator[RecordingAdapter]:
    """In-memory SQLite registered as the process-wide session, with statement recording."""
    recorder = RecordingAdapter(sqlite_adapter)
    init_session(recorder, replace=True)
    yield recorder
    reset_session()


@pytest_asyncio.fixture
async def postgres_adapter() -> AsyncIterator[StorageAdapter]:
    """A PostgreSQL adapter.

    Set DATABASE_URL environment variable to use a real PostgreSQL database.
    Otherwise, this fixture is skipped.
    """
    from recordkit.adapters.postgres import PostgresAdapter

    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set")

    adapter = await PostgresAdapter.connect(url)
    yield adapter
    await adapter.close()
