"""Process-wide database session and transactions."""

from __future__ import annotations

import logging
import threading
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, TypeVar

from recordkit.exceptions import SessionNotInitializedError

if TYPE_CHECKING:
    from recordkit.adapters.base import StorageAdapter, TransactionContext
    from recordkit.grammar import Grammar

logger = logging.getLogger(__name__)

R = TypeVar("R")

_session: Session | None = None
_session_lock = threading.Lock()
_scoped_session: ContextVar[Session | None] = ContextVar("recordkit_scoped_session", default=None)
_active_transaction: ContextVar[TransactionContext | None] = ContextVar("recordkit_active_transaction", default=None)


class Session:
    """Routes statements to the storage adapter or the active transaction.

    Every statement is logged on the ``recordkit.session`` logger at DEBUG
    (INFO when ``echo`` is set).

    Example:
        >>> adapter = await SQLiteAdapter.connect(":memory:")
        >>> session = init_session(adapter)
        >>> async with session.begin():
        ...     await User.create(name="Alice")
        ...     await Profile.create(user_id=1)
    """

    def __init__(self, adapter: StorageAdapter, *, echo: bool = False) -> None:
        self.adapter = adapter
        self.echo = echo

    def __repr__(self) -> str:
        return f"<Session {self.adapter!r}>"

    @property
    def grammar(self) -> Grammar:
        return self.adapter.grammar

    @property
    def in_transaction(self) -> bool:
        return _active_transaction.get() is not None

    def connection(self) -> StorageAdapter | TransactionContext:
        """The active transaction context if there is one, else the adapter."""
        tx = _active_transaction.get()
        return tx if tx is not None else self.adapter

    def _log(self, sql: str, bindings: list[Any]) -> None:
        level = logging.INFO if self.echo else logging.DEBUG
        if logger.isEnabledFor(level):
            logger.log(level, "%s %r", sql, bindings)

    async def select(self, sql: str, bindings: list[Any]) -> list[dict[str, Any]]:
        self._log(sql, bindings)
        return await self.connection().run_query(sql, self.grammar.prepare_bindings(bindings))

    async def statement(self, table: str, sql: str, bindings: list[Any]) -> int:
        self._log(sql, bindings)
        return await self.connection().run_command(table, sql, self.grammar.prepare_bindings(bindings))

    async def insert(self, table: str, values: dict[str, Any], key: str = "id") -> Any:
        if logger.isEnabledFor(logging.DEBUG) or self.echo:
            self._log(*self.grammar.compile_insert_get_id(table, values, key))
        return await self.connection().insert(table, values, key)

    async def transaction(self, callback: Callable[[TransactionContext], Awaitable[R]]) -> R:
        """Run ``callback`` inside a transaction.

        Commits when the callback returns, rolls back and re-raises the
        original error when it raises. A nested call joins the outer
        transaction.

        Example:
            >>> async def transfer(tx):
            ...     await alice.update(balance=alice.balance - 10)
            ...     await bob.update(balance=bob.balance + 10)
            >>> await session.transaction(transfer)
        """
        current = _active_transaction.get()
        if current is not None:
            return await callback(current)

        async def run(tx: TransactionContext) -> R:
            token = _active_transaction.set(tx)
            try:
                return await callback(tx)
            finally:
                _active_transaction.reset(token)

        logger.debug("BEGIN")
        result = await self.adapter.begin_transaction(run)
        logger.debug("COMMIT")
        return result

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[TransactionContext]:
        """Begin a transaction that auto-commits on success.

        Example:
            >>> async with session.begin():
            ...     await user.save()
            ...     await post.save()
            ...     # commits automatically on exit
        """
        current = _active_transaction.get()
        if current is not None:
            yield current
            return

        async with self.adapter.transaction_context() as tx:
            token = _active_transaction.set(tx)
            try:
                yield tx
            finally:
                _active_transaction.reset(token)

    async def close(self) -> None:
        await self.adapter.close()


def init_session(adapter: StorageAdapter, *, echo: bool = False, replace: bool = False) -> Session:
    """Register the process-wide storage adapter.

    Raises:
        RuntimeError: If a different adapter is already registered and
            ``replace`` is not set
    """
    global _session
    with _session_lock:
        if _session is not None and not replace:
            if _session.adapter is adapter:
                return _session
            raise RuntimeError("A database session is already initialized; pass replace=True to swap it")
        _session = Session(adapter, echo=echo)
        return _session


def get_session() -> Session:
    """Return the session for the current context.

    A session bound with :func:`session_context` takes precedence over the
    process-wide one.
    """
    scoped = _scoped_session.get()
    if scoped is not None:
        return scoped
    if _session is None:
        raise SessionNotInitializedError()
    return _session


def reset_session() -> None:
    """Forget the process-wide session (the adapter is not closed)."""
    global _session
    with _session_lock:
        _session = None


def create_session(adapter: StorageAdapter, **kwargs: Any) -> Session:
    """Create a session without registering it globally.

    Example:
        >>> session = create_session(adapter)
    """
    return Session(adapter, **kwargs)


@asynccontextmanager
async def session_context(adapter: StorageAdapter, **kwargs: Any) -> AsyncIterator[Session]:
    """Bind a session to the current context for the duration of the block.

    Example:
        >>> async with session_context(adapter) as session:
        ...     await User.create(name="Alice")
    """
    session = Session(adapter, **kwargs)
    token = _scoped_session.set(session)
    try:
        yield session
    finally:
        _scoped_session.reset(token)


async def transaction(callback: Callable[[TransactionContext], Awaitable[R]]) -> R:
    """Run ``callback`` in a transaction on the current session."""
    return await get_session().transaction(callback)
