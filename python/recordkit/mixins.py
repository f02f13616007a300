"""Mixins for common model patterns.

Each mixin is a capability: the record calls its ``_capability_<event>``
hooks at fixed points of the lifecycle, ordered by ``__capability_rank__``
(UUID keys, then timestamps, then the record's own ``on_<event>`` hooks).
The base order of a model does not matter.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar

from recordkit.fields import ColumnInfo
from recordkit.scopes import SoftDeletingScope

if TYPE_CHECKING:
    from recordkit.base import Model
    from recordkit.query import QueryBuilder


class SoftDeleteMixin:
    """Mixin that adds soft delete functionality to models.

    When applied to a model, adds a `deleted_at` column. Records with
    `deleted_at != NULL` are excluded from normal queries by default.

    The mixin provides:
    - `deleted_at` column for tracking deletion time
    - `trashed` property to check deletion status
    - the `soft_delete` global scope hiding deleted rows
    - `with_trashed()` to include soft-deleted records
    - `only_trashed()` to query only soft-deleted records

    Example:
        >>> from recordkit import Model, Mapped, mapped_column
        >>> from recordkit.mixins import SoftDeleteMixin
        >>>
        >>> class Article(Model, SoftDeleteMixin):
        ...     __tablename__ = "articles"
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     title: Mapped[str]
        >>>
        >>> # Normal queries exclude deleted
        >>> articles = await Article.all()
        >>>
        >>> # Include deleted records
        >>> all_articles = await Article.with_trashed().get()
        >>>
        >>> # Only deleted records
        >>> deleted = await Article.only_trashed().get()
        >>>
        >>> await article.delete()        # sets deleted_at
        >>> await article.restore()       # clears it
        >>> await article.force_delete()  # removes the row
    """

    __soft_delete__: ClassVar[bool] = True
    __deleted_at_column__: ClassVar[str] = "deleted_at"
    __capability_rank__: ClassVar[int] = 30
    __global_scopes__: ClassVar[dict[str, Any]] = {"soft_delete": SoftDeletingScope()}

    deleted_at = ColumnInfo(name="deleted_at", python_type=datetime, nullable=True, cast="datetime")

    _force_deleting: bool = False

    @property
    def trashed(self) -> bool:
        """Check if this instance is soft-deleted."""
        return self.get_raw_attribute(self.__deleted_at_column__) is not None

    async def _capability_delete(self: Model) -> None:
        column = self.__deleted_at_column__
        if self._force_deleting:
            await self._key_query().delete()
            self.exists = False
            return

        self.set_attribute(column, datetime.now(UTC))
        values = {column: self.attributes[column]}
        if "updated_at" in self.__columns__ and getattr(self, "__touch_on_save__", False):
            self.set_attribute("updated_at", datetime.now(UTC))
            values["updated_at"] = self.attributes["updated_at"]
        await self._key_query().update(values)
        self.original.update(values)

    async def restore(self: Model) -> bool:
        """Clear the deletion marker and save."""
        self.set_attribute(self.__deleted_at_column__, None)
        return await self.save()

    async def force_delete(self: Model) -> bool:
        """Permanently delete the row, running the delete hooks."""
        self._force_deleting = True
        try:
            return await self.delete()
        finally:
            self._force_deleting = False

    @classmethod
    def with_trashed(cls) -> QueryBuilder:
        return cls.query().with_trashed()

    @classmethod
    def only_trashed(cls) -> QueryBuilder:
        return cls.query().only_trashed()


class TimestampsMixin:
    """Maintains ``created_at`` and ``updated_at``.

    Every save of an existing record bumps ``updated_at``, even when nothing
    else changed. Set ``__touch_on_save__ = False`` to bump it only when
    other attributes are dirty.

    Example:
        >>> class Post(Model, TimestampsMixin):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     title: Mapped[str]
    """

    __capability_rank__: ClassVar[int] = 20
    __touch_on_save__: ClassVar[bool] = True

    created_at = ColumnInfo(name="created_at", python_type=datetime, nullable=True, cast="datetime")
    updated_at = ColumnInfo(name="updated_at", python_type=datetime, nullable=True, cast="datetime")

    async def _capability_creating(self: Model) -> None:
        now = datetime.now(UTC)
        if self.get_raw_attribute("created_at") is None:
            self.set_attribute("created_at", now)
        if self.get_raw_attribute("updated_at") is None:
            self.set_attribute("updated_at", now)

    async def _capability_updating(self: Model) -> None:
        if not self.is_dirty("updated_at"):
            self.set_attribute("updated_at", datetime.now(UTC))

    def _capability_force_write(self: Model) -> bool:
        return self.__touch_on_save__

    async def touch(self: Model) -> bool:
        """Bump ``updated_at`` and save."""
        self.set_attribute("updated_at", datetime.now(UTC))
        return await self.save()


class UuidMixin:
    """Generates a random UUID primary key on insert.

    Example:
        >>> class ApiKey(Model, UuidMixin):
        ...     id: Mapped[str] = mapped_column(primary_key=True)
        ...     label: Mapped[str]
    """

    __capability_rank__: ClassVar[int] = 10
    __incrementing__: ClassVar[bool] = False

    async def _capability_creating(self: Model) -> None:
        if self.get_raw_attribute(self.__primary_key__) is None:
            self.set_attribute(self.__primary_key__, str(uuid.uuid4()))
