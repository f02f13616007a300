"""Declarative base for records."""

from __future__ import annotations

import copy
import inspect
import logging
import sys
import typing
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import replace
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Self, TypeVar

from recordkit.casts import cast_enum, cast_from_storage, cast_to_storage
from recordkit.exceptions import MassAssignmentError, ModelNotFoundError, RelationNotFoundError, RelationNotLoadedError
from recordkit.fields import ColumnInfo, Mapped, cast_for_type, extract_mapped_type
from recordkit.query import QueryBuilder
from recordkit.relationships import RelationSpec, register_model

if TYPE_CHECKING:
    from recordkit.resolvers import MorphTo, Relation
    from recordkit.scopes import Scope

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

_unguarded: ContextVar[bool] = ContextVar("recordkit_unguarded", default=False)


class ModelMeta(type):
    """Metaclass for records that collects columns, casts, relations and capabilities."""

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> ModelMeta:
        cls = super().__new__(mcs, name, bases, namespace, **kwargs)

        # Skip the Model class itself and abstract bases
        if not any(isinstance(b, ModelMeta) for b in bases) or namespace.get("__abstract__", False):
            return cls

        cls.__tablename__ = namespace.get("__tablename__") or name.lower() + "s"

        hints = _class_hints(cls)
        columns: dict[str, ColumnInfo] = {}

        # Columns from parent models and mixins, cloned so classes never share them
        for base in reversed(cls.__mro__[1:]):
            for attr_name, attr_value in vars(base).items():
                if isinstance(attr_value, ColumnInfo):
                    columns[attr_name] = attr_value.copy(attr_name)

        for attr_name, attr_value in namespace.items():
            if isinstance(attr_value, ColumnInfo):
                attr_value.name = attr_name
                columns[attr_name] = attr_value

        # Bare ``name: Mapped[T]`` annotations become columns too
        for attr_name, hint in hints.items():
            if attr_name not in columns and _is_mapped(hint) and not isinstance(namespace.get(attr_name), RelationSpec):
                columns[attr_name] = ColumnInfo(name=attr_name)

        for attr_name, column in columns.items():
            hint = hints.get(attr_name)
            if hint is not None and _is_mapped(hint) and not isinstance(hint, str):
                python_type, optional = extract_mapped_type(hint)
                column.python_type = python_type
                column.nullable = column.nullable or optional
            if column.cast is None:
                column.cast = cast_for_type(column.python_type)
            column.table = cls.__tablename__
            setattr(cls, attr_name, column)

        casts: dict[str, Any] = {}
        for base in reversed(cls.__mro__[1:]):
            casts.update(vars(base).get("__casts__", {}))
        casts.update({col_name: col.cast for col_name, col in columns.items() if col.cast is not None})
        casts.update(namespace.get("__casts__", {}))

        relationships: dict[str, RelationSpec] = {}
        for base in reversed(cls.__mro__[1:]):
            for rel_name, spec in vars(base).get("__relationships__", {}).items():
                relationships[rel_name] = replace(spec, owner=cls)
        for attr_name, attr_value in namespace.items():
            if isinstance(attr_value, RelationSpec):
                attr_value.name = attr_name
                attr_value.owner = cls
                relationships[attr_name] = attr_value
                # Loaded values are served by __getattr__
                delattr(cls, attr_name)

        primary_key = namespace.get("__primary_key__")
        if primary_key is None:
            primary_key = next((col_name for col_name, col in columns.items() if col.primary_key), None)
        if primary_key is None:
            primary_key = getattr(cls, "__primary_key__", "id")

        scopes: dict[str, Any] = {}
        for base in reversed(cls.__mro__):
            scopes.update(vars(base).get("__global_scopes__", {}))

        capabilities = sorted(
            (klass for klass in cls.__mro__ if "__capability_rank__" in vars(klass)),
            key=lambda klass: klass.__capability_rank__,
        )

        cls.__columns__ = columns  # type: ignore[attr-defined]
        cls.__casts__ = casts  # type: ignore[attr-defined]
        cls.__relationships__ = relationships  # type: ignore[attr-defined]
        cls.__primary_key__ = primary_key  # type: ignore[attr-defined]
        cls.__global_scopes__ = scopes  # type: ignore[attr-defined]
        cls.__capabilities__ = tuple(capabilities)  # type: ignore[attr-defined]

        register_model(cls)  # type: ignore[arg-type]
        return cls


def _is_mapped(hint: Any) -> bool:
    if isinstance(hint, str):
        return hint.startswith("Mapped")
    return hint is Mapped or typing.get_origin(hint) is Mapped


def _class_hints(cls: type) -> dict[str, Any]:
    """Public annotations across the MRO, resolved in each class's own module.

    Annotations that cannot be resolved are kept as strings.
    """
    hints: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        module = sys.modules.get(klass.__module__)
        globalns = {**(vars(module) if module is not None else {}), "Mapped": Mapped, "ClassVar": ClassVar}
        try:
            annotations = inspect.get_annotations(klass, globals=globalns, eval_str=True)
        except (NameError, AttributeError, TypeError, SyntaxError):
            annotations = inspect.get_annotations(klass)
        for attr_name, hint in annotations.items():
            if attr_name.startswith("_"):
                continue
            if typing.get_origin(hint) is ClassVar:
                continue
            hints[attr_name] = hint
    return hints


class Model(metaclass=ModelMeta):
    """Base class for records.

    A record keeps its row as ``attributes`` (storage form) next to an
    ``original`` snapshot taken when it was loaded or last written.

    Example:
        >>> class User(Model):
        ...     __tablename__ = "users"
        ...     __fillable__ = ("name", "email")
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str]
        ...     email: Mapped[str | None]
        ...     posts = has_many("Post")
        >>>
        >>> user = await User.create(name="Alice")
        >>> user.name = "Alicia"
        >>> user.get_dirty()
        {'name': 'Alicia'}
        >>> await user.save()
    """

    __tablename__: ClassVar[str]
    __columns__: ClassVar[dict[str, ColumnInfo]] = {}
    __casts__: ClassVar[dict[str, Any]] = {}
    __relationships__: ClassVar[dict[str, RelationSpec]] = {}
    __primary_key__: ClassVar[str] = "id"
    __global_scopes__: ClassVar[dict[str, Any]] = {}
    __capabilities__: ClassVar[tuple[type, ...]] = ()
    __fillable__: ClassVar[tuple[str, ...]] = ()
    __guarded__: ClassVar[tuple[str, ...]] = ("*",)
    __hidden__: ClassVar[tuple[str, ...]] = ()

    attributes: dict[str, Any]
    original: dict[str, Any]
    exists: bool
    relations: dict[str, Any]
    pivot: Model | None

    def __init__(self, **attributes: Any) -> None:
        """Create an unsaved record; column defaults fill what is not given."""
        self._init_state()
        for col_name, column in self.__columns__.items():
            if col_name not in attributes and column.default is not None:
                self.set_attribute(col_name, column.default_value())
        self.force_fill(**attributes)

    def _init_state(self) -> None:
        self.attributes = {}
        self.original = {}
        self.exists = False
        self.relations = {}
        self.pivot = None
        self.changes: dict[str, Any] = {}

    def __repr__(self) -> str:
        pk = self.__primary_key__
        if self.attributes.get(pk) is not None:
            return f"<{type(self).__name__} {pk}={self.attributes[pk]!r}>"
        return f"<{type(self).__name__}>"

    def __getattr__(self, name: str) -> Any:
        """Serve loaded relations and undeclared attributes."""
        if name.startswith("_") or name in ("attributes", "original", "relations", "exists", "pivot", "changes"):
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

        relations = self.__dict__.get("relations", {})
        if name in relations:
            return relations[name]
        if name in type(self).__relationships__:
            raise RelationNotLoadedError(name, type(self).__name__)
        if name in self.__dict__.get("attributes", {}):
            return self.get_attribute(name)
        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    def __getitem__(self, key: str) -> Any:
        return self.get_attribute(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.set_attribute(key, value)

    # ========== Attributes ==========

    def get_attribute(self, key: str) -> Any:
        """Read an attribute, cast from its storage form."""
        return cast_from_storage(self.attributes.get(key), self.__casts__.get(key), self.attributes)

    def set_attribute(self, key: str, value: Any) -> Self:
        """Write an attribute, converted to its storage form immediately."""
        self.attributes[key] = cast_to_storage(value, self.__casts__.get(key), self.attributes)
        return self

    def get_raw_attribute(self, key: str) -> Any:
        return self.attributes.get(key)

    def get_enum(self, key: str, enum_type: type[E]) -> E | None:
        """Read an attribute as a member of ``enum_type`` (by name, then index)."""
        return cast_enum(self.attributes.get(key), enum_type)

    @classmethod
    def hydrate(cls, row: dict[str, Any]) -> Self:
        """Build an existing record from a storage row."""
        instance = cls.__new__(cls)
        instance._init_state()
        instance.attributes = dict(row)
        instance.exists = True
        instance.sync_original()
        return instance

    def dehydrate(self) -> dict[str, Any]:
        """The row this record would store."""
        return dict(self.attributes)

    def copy(self) -> Self:
        """A detached twin with the same state and loaded relations."""
        twin = type(self).__new__(type(self))
        twin._init_state()
        twin.attributes = dict(self.attributes)
        twin.original = copy.deepcopy(self.original)
        twin.exists = self.exists
        twin.relations = dict(self.relations)
        return twin

    # ========== Dirty tracking ==========

    def sync_original(self) -> Self:
        self.original = copy.deepcopy(self.attributes)
        return self

    def get_dirty(self) -> dict[str, Any]:
        """Attributes whose value differs from the original snapshot."""
        return {key: value for key, value in self.attributes.items() if value != self.original.get(key)}

    def is_dirty(self, *keys: str) -> bool:
        if keys:
            return any(self.attributes.get(key) != self.original.get(key) for key in keys)
        return bool(self.get_dirty())

    def is_clean(self, *keys: str) -> bool:
        return not self.is_dirty(*keys)

    def was_changed(self, *keys: str) -> bool:
        """Whether the last save wrote any of ``keys`` (or anything at all)."""
        if keys:
            return any(key in self.changes for key in keys)
        return bool(self.changes)

    def get_original(self, key: str | None = None) -> Any:
        if key is None:
            return dict(self.original)
        return cast_from_storage(self.original.get(key), self.__casts__.get(key), self.original)

    # ========== Mass assignment ==========

    @classmethod
    @contextmanager
    def unguarded(cls) -> Iterator[None]:
        """Disable mass-assignment protection for every model inside the block.

        Example:
            >>> with Model.unguarded():
            ...     user.fill({"is_admin": True})
        """
        token = _unguarded.set(True)
        try:
            yield
        finally:
            _unguarded.reset(token)

    @classmethod
    def is_fillable(cls, key: str) -> bool:
        if _unguarded.get():
            return True
        if key in cls.__fillable__:
            return True
        if "*" in cls.__guarded__ or key in cls.__guarded__:
            return False
        return not cls.__fillable__ and not key.startswith("_")

    def fill(self, values: dict[str, Any] | None = None, *, strict: bool = False, **kwargs: Any) -> Self:
        """Assign attributes allowed by ``__fillable__`` / ``__guarded__``.

        Rejected keys are dropped, or raise :class:`MassAssignmentError`
        when ``strict`` is set.
        """
        for key, value in {**(values or {}), **kwargs}.items():
            if self.is_fillable(key):
                self.set_attribute(key, value)
            elif strict:
                raise MassAssignmentError(key, type(self).__name__)
            else:
                logger.debug("Discarding guarded attribute %s on %s", key, type(self).__name__)
        return self

    def force_fill(self, values: dict[str, Any] | None = None, **kwargs: Any) -> Self:
        """Assign attributes ignoring mass-assignment rules."""
        for key, value in {**(values or {}), **kwargs}.items():
            self.set_attribute(key, value)
        return self

    # ========== Hooks ==========

    async def on_saving(self) -> bool | None:
        """Called before insert or update; return False to cancel the save."""
        return None

    async def on_saved(self) -> None:
        return None

    async def on_creating(self) -> bool | None:
        return None

    async def on_created(self) -> None:
        return None

    async def on_updating(self) -> bool | None:
        return None

    async def on_updated(self) -> None:
        return None

    async def on_deleting(self) -> bool | None:
        return None

    async def on_deleted(self) -> None:
        return None

    async def _fire(self, event: str) -> bool:
        """Run capability hooks in rank order, then the record's own hook.

        Returns False as soon as any of them vetoes.
        """
        for capability in self.__capabilities__:
            handler = vars(capability).get(f"_capability_{event}")
            if handler is not None and await handler(self) is False:
                logger.debug("%s hook of %s cancelled %s", event, capability.__name__, type(self).__name__)
                return False
        if await getattr(self, f"on_{event}")() is False:
            logger.debug("%s hook cancelled %s", event, type(self).__name__)
            return False
        return True

    def _capability_call(self, name: str, *args: Any) -> tuple[bool, Any]:
        for capability in self.__capabilities__:
            handler = vars(capability).get(f"_capability_{name}")
            if handler is not None:
                return True, handler(self, *args)
        return False, None

    def _should_force_write(self) -> bool:
        """Whether a capability wants an update even with no dirty attributes."""
        return any(
            vars(capability)["_capability_force_write"](self)
            for capability in self.__capabilities__
            if "_capability_force_write" in vars(capability)
        )

    # ========== Persistence ==========

    @classmethod
    def query(cls) -> QueryBuilder[Self]:
        """Start a query with this model's global scopes."""
        return QueryBuilder(cls)

    def _key_query(self) -> QueryBuilder[Self]:
        key = self.attributes.get(self.__primary_key__)
        if key is None:
            raise ValueError(f"{type(self).__name__} has no {self.__primary_key__} value")
        query = type(self).query().without_global_scopes()
        return query.where(f"{self.__tablename__}.{self.__primary_key__}", key)

    async def save(self) -> bool:
        """Insert or update this record.

        Returns:
            False when a hook cancelled the save, True otherwise
        """
        if not await self._fire("saving"):
            return False

        if self.exists:
            saved = await self._perform_update()
        else:
            saved = await self._perform_insert()
        if not saved:
            return False

        await self._fire("saved")
        return True

    async def _perform_insert(self) -> bool:
        if not await self._fire("creating"):
            return False

        pk = self.__primary_key__
        values = dict(self.attributes)
        incrementing = getattr(self, "__incrementing__", True)
        if incrementing and values.get(pk) is None:
            values.pop(pk, None)

        key = await type(self).query().insert_get_id(values, pk)
        if incrementing and self.attributes.get(pk) is None:
            self.attributes[pk] = key

        self.exists = True
        self.changes = dict(self.attributes)
        self.sync_original()
        await self._fire("created")
        return True

    async def _perform_update(self) -> bool:
        if not self.get_dirty() and not self._should_force_write():
            logger.debug("Skipping update of %r: nothing changed", self)
            self.changes = {}
            return True

        if not await self._fire("updating"):
            return False

        dirty = {key: value for key, value in self.get_dirty().items() if key != self.__primary_key__}
        if dirty:
            await self._key_query().update(dirty)
        self.changes = dirty
        self.sync_original()
        await self._fire("updated")
        return True

    async def delete(self) -> bool:
        """Delete this record (soft delete when the model supports it).

        Returns:
            False when the record does not exist or a hook cancelled the delete
        """
        if not self.exists:
            return False
        if not await self._fire("deleting"):
            return False
        await self._perform_delete()
        await self._fire("deleted")
        return True

    async def _perform_delete(self) -> None:
        handled, result = self._capability_call("delete")
        if handled:
            await result
            return
        await self._key_query().delete()
        self.exists = False

    async def refresh(self) -> Self:
        """Reload attributes (and loaded relations) from storage."""
        row = await self._key_query().first()
        if row is None:
            raise ModelNotFoundError(type(self).__name__, self.attributes.get(self.__primary_key__))
        self.attributes = dict(row.attributes)
        self.sync_original()
        if self.relations:
            names = list(self.relations)
            self.relations = {}
            await self.load(*names)
        return self

    async def fresh(self) -> Self | None:
        """A newly loaded copy of this record, or None if it no longer exists."""
        if not self.exists:
            return None
        return await self._key_query().first()

    def replicate(self, *, exclude: tuple[str, ...] = ()) -> Self:
        """An unsaved copy without the primary key and timestamps."""
        skipped = {self.__primary_key__, "created_at", "updated_at", *exclude}
        clone = type(self).__new__(type(self))
        clone._init_state()
        clone.attributes = {key: copy.deepcopy(value) for key, value in self.attributes.items() if key not in skipped}
        clone.relations = dict(self.relations)
        return clone

    async def update(self, values: dict[str, Any] | None = None, **kwargs: Any) -> bool:
        """Assign attributes and save.

        Example:
            >>> await user.update(name="Bob", active=False)
        """
        self.force_fill(values, **kwargs)
        return await self.save()

    def to_dict(self, include_relationships: bool = False) -> dict[str, Any]:
        """Convert to a dictionary of cast values."""
        result = {
            key: self.get_attribute(key)
            for key in self.attributes
            if key not in self.__hidden__
        }
        if include_relationships:
            for rel_name, value in self.relations.items():
                if isinstance(value, list):
                    result[rel_name] = [item.to_dict(include_relationships) for item in value]
                elif value is not None:
                    result[rel_name] = value.to_dict(include_relationships)
                else:
                    result[rel_name] = None
            if self.pivot is not None:
                result["pivot"] = self.pivot.to_dict()
        return result

    # ========== Relations ==========

    @classmethod
    def get_relation_spec(cls, name: str) -> RelationSpec:
        spec = cls.__relationships__.get(name)
        if spec is None:
            raise RelationNotFoundError(name, cls.__name__)
        return spec

    def related(self, name: str) -> Relation | MorphTo:
        """The lazy relation builder for ``name``, constrained to this record.

        Example:
            >>> posts = await user.related("posts").where("published", True).get()
            >>> await user.related("roles").attach(admin_role)
        """
        return self.get_relation_spec(name).bind(self)

    async def load(self, *paths: str, **constrained: Any) -> Self:
        """Eager load relations onto this already-fetched record.

        Example:
            >>> await post.load("author", "comments.author")
        """
        query = type(self).query().with_(*paths, **constrained)
        await query.eager_load_relations([self])
        return self

    def set_relation(self, name: str, value: Any) -> Self:
        self.relations[name] = value
        return self

    def get_relation(self, name: str) -> Any:
        if name not in self.relations:
            raise RelationNotLoadedError(name, type(self).__name__)
        return self.relations[name]

    def relation_loaded(self, name: str) -> bool:
        return name in self.relations

    # ========== Class-level shortcuts ==========

    @classmethod
    def add_global_scope(cls, name: str, scope: Scope | Any) -> None:
        """Register a constraint applied to every query of this model.

        Example:
            >>> Post.add_global_scope("published", lambda q: q.where("published", True))
        """
        cls.__global_scopes__ = {**cls.__global_scopes__, name: scope}

    @classmethod
    async def find(cls, id: Any) -> Self | None:
        return await cls.query().find(id)

    @classmethod
    async def find_or_fail(cls, id: Any) -> Self:
        return await cls.query().find_or_fail(id)

    @classmethod
    async def all(cls) -> list[Self]:
        return await cls.query().get()

    @classmethod
    async def create(cls, **attributes: Any) -> Self:
        """Create and save a record.

        Example:
            >>> user = await User.create(name="Alice", email="alice@example.com")
        """
        instance = cls(**attributes)
        await instance.save()
        return instance

    @classmethod
    async def destroy(cls, *ids: Any) -> int:
        """Delete records by key, running their delete hooks."""
        count = 0
        for model in await cls.query().find_many(ids):
            if await model.delete():
                count += 1
        return count

    @classmethod
    def where(cls, *args: Any, **kwargs: Any) -> QueryBuilder[Self]:
        return cls.query().where(*args, **kwargs)

    @classmethod
    def with_(cls, *relations: Any, **constrained: Any) -> QueryBuilder[Self]:
        return cls.query().with_(*relations, **constrained)


class Pivot(Model):
    """A row of a many-to-many pivot table, attached to related records as ``.pivot``.

    Pivot rows are written through their relation (``attach``, ``detach``,
    ``sync``), never saved on their own.
    """

    __abstract__ = True

    @classmethod
    def from_row(cls, table: str, attributes: dict[str, Any]) -> Pivot:
        instance = cls.hydrate(attributes)
        instance.__tablename__ = table
        return instance

    async def save(self) -> bool:
        raise TypeError("Pivot rows are managed through their relation (attach, detach, sync)")

    async def delete(self) -> bool:
        raise TypeError("Pivot rows are managed through their relation (attach, detach, sync)")
