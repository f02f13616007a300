"""Tests for sessions and transactions."""

from __future__ import annotations

import pytest

from recordkit import (
    Mapped,
    Model,
    SessionNotInitializedError,
    connect,
    get_session,
    init_session,
    mapped_column,
    reset_session,
    session_context,
    transaction,
)
from recordkit.adapters.base import sqlite_path
from recordkit.adapters.sqlite import SQLiteAdapter


class Wallet(Model):
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner: Mapped[str]
    balance: Mapped[int] = mapped_column(default=0)


@pytest.fixture
async def wallets(db):
    await db.execute("CREATE TABLE wallets (id INTEGER PRIMARY KEY AUTOINCREMENT, owner TEXT, balance INTEGER)")
    return db


class TestTransactions:
    """Test commit, rollback and nesting."""

    async def test_rollback_on_error(self, wallets) -> None:
        async def work(tx):
            await Wallet.create(owner="alice", balance=10)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await get_session().transaction(work)

        assert await Wallet.query().count() == 0
        assert get_session().in_transaction is False

    async def test_commit_on_success(self, wallets) -> None:
        async def work(tx):
            await Wallet.create(owner="alice", balance=10)
            await Wallet.create(owner="bob", balance=5)
            return "done"

        assert await transaction(work) == "done"
        assert await Wallet.query().sum("balance") == 15

    async def test_statements_route_through_transaction(self, wallets) -> None:
        async def work(tx):
            assert get_session().in_transaction
            assert get_session().connection() is tx
            await Wallet.create(owner="alice")

        await transaction(work)
        assert len(wallets.statements) == 1

    async def test_begin_context_manager(self, wallets) -> None:
        async with get_session().begin():
            await Wallet.create(owner="alice")
            await Wallet.create(owner="bob")

        assert await Wallet.query().count() == 2

    async def test_begin_rolls_back(self, wallets) -> None:
        with pytest.raises(ValueError):
            async with get_session().begin():
                await Wallet.create(owner="alice")
                raise ValueError("nope")

        assert await Wallet.query().count() == 0

    async def test_nested_transaction_joins_outer(self, wallets) -> None:
        async def inner(tx):
            await Wallet.create(owner="inner")
            return tx

        async def outer(tx):
            await Wallet.create(owner="outer")
            joined = await transaction(inner)
            assert joined is tx
            raise RuntimeError("undo both")

        with pytest.raises(RuntimeError):
            await transaction(outer)

        assert await Wallet.query().count() == 0

    async def test_model_writes_inside_transaction(self, wallets) -> None:
        alice = await Wallet.create(owner="alice", balance=10)
        bob = await Wallet.create(owner="bob", balance=0)

        async def transfer(tx):
            await alice.update(balance=alice.balance - 4)
            await bob.update(balance=bob.balance + 4)

        await transaction(transfer)

        assert (await alice.fresh()).balance == 6
        assert (await bob.fresh()).balance == 4


class TestSessionRegistry:
    """Test the process-wide and context-bound sessions."""

    async def test_get_session_without_init(self) -> None:
        reset_session()
        with pytest.raises(SessionNotInitializedError):
            get_session()

    async def test_init_same_adapter_returns_existing(self, sqlite_adapter) -> None:
        reset_session()
        try:
            session = init_session(sqlite_adapter)
            assert init_session(sqlite_adapter) is session
        finally:
            reset_session()

    async def test_init_different_adapter_requires_replace(self, sqlite_adapter) -> None:
        reset_session()
        other = await SQLiteAdapter.connect(":memory:")
        try:
            init_session(sqlite_adapter)
            with pytest.raises(RuntimeError, match="already initialized"):
                init_session(other)

            replaced = init_session(other, replace=True)
            assert get_session() is replaced
            assert replaced.adapter is other
        finally:
            reset_session()
            await other.close()

    async def test_session_context_takes_precedence(self, wallets) -> None:
        other = await SQLiteAdapter.connect(":memory:")
        try:
            await other.execute(
                "CREATE TABLE wallets (id INTEGER PRIMARY KEY AUTOINCREMENT, owner TEXT, balance INTEGER)"
            )
            async with session_context(other) as session:
                assert get_session() is session
                await Wallet.create(owner="scoped")
                assert await Wallet.query().count() == 1

            assert get_session().adapter is wallets
            assert await Wallet.query().count() == 0
        finally:
            await other.close()


class TestConnect:
    """Test opening adapters from URLs."""

    async def test_connect_sqlite_memory(self) -> None:
        adapter = await connect("sqlite::memory:")
        try:
            assert isinstance(adapter, SQLiteAdapter)
            await adapter.execute("CREATE TABLE t (id INTEGER PRIMARY KEY)")
            assert await adapter.run_query("SELECT COUNT(*) AS n FROM t", []) == [{"n": 0}]
        finally:
            await adapter.close()

    async def test_connect_unsupported_url(self) -> None:
        with pytest.raises(ValueError, match="Unsupported"):
            await connect("mysql://localhost/db")

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("sqlite::memory:", ":memory:"),
            ("sqlite:///:memory:", ":memory:"),
            ("sqlite:///data/app.db", "data/app.db"),
            ("sqlite://app.db", "app.db"),
            ("sqlite:app.db", "app.db"),
        ],
    )
    def test_sqlite_path(self, url: str, expected: str) -> None:
        assert sqlite_path(url) == expected
