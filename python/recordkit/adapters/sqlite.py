"""SQLite storage adapter backed by aiosqlite."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

from recordkit.adapters.base import StorageAdapter
from recordkit.exceptions import ConstraintViolationError, QueryError, TransactionError
from recordkit.grammar import SQLiteGrammar

logger = logging.getLogger(__name__)


def _translate(exc: sqlite3.Error, sql: str, bindings: list[Any]) -> Exception:
    if isinstance(exc, sqlite3.IntegrityError):
        return ConstraintViolationError(str(exc), sql, bindings)
    return QueryError(str(exc), sql, bindings)


class _SQLiteExecutor:
    grammar: SQLiteGrammar
    _conn: aiosqlite.Connection

    async def run_query(self, sql: str, bindings: list[Any]) -> list[dict[str, Any]]:
        try:
            async with self._conn.execute(sql, bindings) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            raise _translate(exc, sql, bindings) from exc
        return [dict(row) for row in rows]

    async def run_command(self, table: str, sql: str, bindings: list[Any]) -> int:
        try:
            async with self._conn.execute(sql, bindings) as cursor:
                return cursor.rowcount
        except sqlite3.Error as exc:
            raise _translate(exc, sql, bindings) from exc

    async def insert(self, table: str, values: dict[str, Any], key: str = "id") -> Any:
        sql, bindings = self.grammar.compile_insert_get_id(table, values, key)
        bindings = self.grammar.prepare_bindings(bindings)
        try:
            async with self._conn.execute(sql, bindings) as cursor:
                row_id = cursor.lastrowid
        except sqlite3.Error as exc:
            raise _translate(exc, sql, bindings) from exc
        if values.get(key) is not None:
            return values[key]
        return row_id


class SQLiteTransaction(_SQLiteExecutor):
    """Executor for statements issued inside an open SQLite transaction."""

    def __init__(self, adapter: SQLiteAdapter) -> None:
        self.grammar = adapter.grammar
        self._conn = adapter._conn


class SQLiteAdapter(_SQLiteExecutor, StorageAdapter):
    """Runs statements on a single aiosqlite connection in autocommit mode.

    Transactions are explicit (``BEGIN`` / ``COMMIT`` / ``ROLLBACK``) and
    serialized with a lock, since all work shares one connection.

    Example:
        >>> adapter = await SQLiteAdapter.connect(":memory:")
        >>> await adapter.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)")
        >>> init_session(adapter)
    """

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection
        self._conn.row_factory = aiosqlite.Row
        self._tx_lock = asyncio.Lock()
        self.grammar = SQLiteGrammar()

    def __repr__(self) -> str:
        return "<SQLiteAdapter>"

    @classmethod
    async def connect(cls, database: str = ":memory:", *, foreign_keys: bool = True) -> SQLiteAdapter:
        connection = await aiosqlite.connect(database, isolation_level=None)
        if foreign_keys:
            await connection.execute("PRAGMA foreign_keys = ON")
        logger.debug("Opened SQLite database %s", database)
        return cls(connection)

    async def execute(self, sql: str, params: list[Any] | None = None) -> None:
        """Run a raw statement (DDL, pragmas) outside the query builder."""
        try:
            await self._conn.execute(sql, params or [])
        except sqlite3.Error as exc:
            raise _translate(exc, sql, params or []) from exc

    @asynccontextmanager
    async def transaction_context(self) -> AsyncIterator[SQLiteTransaction]:
        async with self._tx_lock:
            await self._conn.execute("BEGIN")
            try:
                yield SQLiteTransaction(self)
            except BaseException:
                try:
                    await self._conn.execute("ROLLBACK")
                except sqlite3.Error as exc:
                    raise TransactionError("Rollback failed", was_rolled_back=False) from exc
                raise
            try:
                await self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                await self._conn.execute("ROLLBACK")
                raise TransactionError("Commit failed", was_rolled_back=True) from exc

    async def close(self) -> None:
        await self._conn.close()
