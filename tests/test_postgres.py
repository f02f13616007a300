"""Tests against a real PostgreSQL server (skipped unless DATABASE_URL is set)."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from recordkit import ConstraintViolationError, Mapped, Model, init_session, mapped_column, reset_session, transaction
from recordkit.fields import JSON


class Widget(Model):
    __tablename__ = "recordkit_widgets"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]
    active: Mapped[bool] = mapped_column(default=True)
    specs: Mapped[dict] = mapped_column(JSON, nullable=True)
    built_at: Mapped[datetime | None]


@pytest.fixture
async def pg(postgres_adapter):
    await postgres_adapter.execute("DROP TABLE IF EXISTS recordkit_widgets")
    await postgres_adapter.execute(
        "CREATE TABLE recordkit_widgets ("
        "id SERIAL PRIMARY KEY, name TEXT UNIQUE, active BOOLEAN, specs JSONB, built_at TIMESTAMPTZ)"
    )
    init_session(postgres_adapter, replace=True)
    yield postgres_adapter
    reset_session()
    await postgres_adapter.execute("DROP TABLE IF EXISTS recordkit_widgets")


class TestPostgresCrud:
    """Test the model lifecycle against PostgreSQL."""

    async def test_create_returns_generated_id(self, pg) -> None:
        first = await Widget.create(name="gear")
        second = await Widget.create(name="cog")

        assert isinstance(first.id, int)
        assert second.id == first.id + 1

    async def test_round_trip_casts(self, pg) -> None:
        built = datetime(2024, 5, 1, 12, 30, tzinfo=UTC)
        widget = await Widget.create(name="gear", active=False, specs={"teeth": 12}, built_at=built)

        stored = await Widget.find(widget.id)

        assert stored.active is False
        assert stored.specs == {"teeth": 12}
        assert stored.built_at == built

    async def test_update_and_delete(self, pg) -> None:
        widget = await Widget.create(name="gear")
        await widget.update(name="sprocket")

        assert (await Widget.find(widget.id)).name == "sprocket"
        assert await Widget.query().where("name", "sprocket").update(active=False) == 1

        await widget.delete()
        assert await Widget.query().count() == 0

    async def test_ilike(self, pg) -> None:
        await Widget.create(name="Gear")
        assert await Widget.query().where("name", "ilike", "gear").count() == 1

    async def test_unique_violation(self, pg) -> None:
        await Widget.create(name="gear")
        with pytest.raises(ConstraintViolationError):
            await Widget.create(name="gear")

    async def test_transaction_rollback(self, pg) -> None:
        async def work(tx):
            await Widget.create(name="gear")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await transaction(work)

        assert await Widget.query().count() == 0
