"""PostgreSQL storage adapter backed by an asyncpg pool."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import asyncpg

from recordkit.adapters.base import StorageAdapter
from recordkit.exceptions import ConstraintViolationError, QueryError, TransactionError
from recordkit.grammar import PostgresGrammar

logger = logging.getLogger(__name__)

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.exceptions.InterfaceError)
_TEXT_TYPES = ("timestamp", "timestamptz", "date", "time", "uuid")


def _translate(exc: Exception, sql: str, bindings: list[Any]) -> Exception:
    if isinstance(exc, asyncpg.exceptions.IntegrityConstraintViolationError):
        return ConstraintViolationError(str(exc), sql, bindings)
    return QueryError(str(exc), sql, bindings)


def _encode_bool(value: Any) -> str:
    if isinstance(value, str):
        return "t" if value.strip().lower() in ("1", "t", "true", "yes") else "f"
    return "t" if value else "f"


def _encode_json(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Exchange storage-form values (ISO text, 0/1, JSON text) with the server."""
    for name in _TEXT_TYPES:
        await conn.set_type_codec(name, encoder=str, decoder=str, schema="pg_catalog", format="text")
    for name in ("json", "jsonb"):
        await conn.set_type_codec(name, encoder=_encode_json, decoder=str, schema="pg_catalog", format="text")
    await conn.set_type_codec(
        "bool", encoder=_encode_bool, decoder=lambda value: value == "t", schema="pg_catalog", format="text"
    )


def _rowcount(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 3" or "INSERT 0 1"
    last = status.rsplit(" ", 1)[-1] if status else ""
    return int(last) if last.isdigit() else 0


class PostgresTransaction:
    """Executor for statements issued on the connection holding a transaction."""

    def __init__(self, connection: asyncpg.Connection, grammar: PostgresGrammar) -> None:
        self._conn = connection
        self.grammar = grammar

    async def run_query(self, sql: str, bindings: list[Any]) -> list[dict[str, Any]]:
        try:
            records = await self._conn.fetch(sql, *bindings)
        except _DRIVER_ERRORS as exc:
            raise _translate(exc, sql, bindings) from exc
        return [dict(record) for record in records]

    async def run_command(self, table: str, sql: str, bindings: list[Any]) -> int:
        try:
            status = await self._conn.execute(sql, *bindings)
        except _DRIVER_ERRORS as exc:
            raise _translate(exc, sql, bindings) from exc
        return _rowcount(status)

    async def insert(self, table: str, values: dict[str, Any], key: str = "id") -> Any:
        sql, bindings = self.grammar.compile_insert_get_id(table, values, key)
        bindings = self.grammar.prepare_bindings(bindings)
        try:
            return await self._conn.fetchval(sql, *bindings)
        except _DRIVER_ERRORS as exc:
            raise _translate(exc, sql, bindings) from exc


class PostgresAdapter(StorageAdapter):
    """Runs statements on pooled asyncpg connections.

    Example:
        >>> adapter = await PostgresAdapter.connect("postgresql://localhost/mydb")
        >>> init_session(adapter)
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self.grammar = PostgresGrammar()

    def __repr__(self) -> str:
        return "<PostgresAdapter>"

    @classmethod
    async def connect(
        cls,
        url: str,
        *,
        min_connections: int = 1,
        max_connections: int = 10,
    ) -> PostgresAdapter:
        pool = await asyncpg.create_pool(
            url,
            min_size=min_connections,
            max_size=max_connections,
            init=_init_connection,
        )
        logger.debug("Opened PostgreSQL pool (%d-%d connections)", min_connections, max_connections)
        return cls(pool)

    async def execute(self, sql: str, params: list[Any] | None = None) -> None:
        """Run a raw statement (DDL) outside the query builder."""
        async with self._pool.acquire() as conn:
            try:
                await conn.execute(sql, *(params or []))
            except _DRIVER_ERRORS as exc:
                raise _translate(exc, sql, params or []) from exc

    async def run_query(self, sql: str, bindings: list[Any]) -> list[dict[str, Any]]:
        async with self._pool.acquire() as conn:
            return await PostgresTransaction(conn, self.grammar).run_query(sql, bindings)

    async def run_command(self, table: str, sql: str, bindings: list[Any]) -> int:
        async with self._pool.acquire() as conn:
            return await PostgresTransaction(conn, self.grammar).run_command(table, sql, bindings)

    async def insert(self, table: str, values: dict[str, Any], key: str = "id") -> Any:
        async with self._pool.acquire() as conn:
            return await PostgresTransaction(conn, self.grammar).insert(table, values, key)

    @asynccontextmanager
    async def transaction_context(self) -> AsyncIterator[PostgresTransaction]:
        async with self._pool.acquire() as conn:
            transaction = conn.transaction()
            await transaction.start()
            try:
                yield PostgresTransaction(conn, self.grammar)
            except BaseException:
                try:
                    await transaction.rollback()
                except _DRIVER_ERRORS as exc:
                    raise TransactionError("Rollback failed", was_rolled_back=False) from exc
                raise
            await transaction.commit()

    async def close(self) -> None:
        await self._pool.close()
