"""Relation resolvers: one class per relation kind.

A resolver is a :class:`QueryBuilder` over the related model. Bound to one
owner (``owner.related(name)``) it carries the key constraint for that
owner; built with :meth:`Relation.for_eager` it loads the relation for a
whole set of owners with one batched query per hop.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Self, TypeVar

from recordkit.query import QueryBuilder
from recordkit.relationships import (
    RelationSpec,
    foreign_key_for,
    get_morph_class,
    resolve_morph_type,
    singularize,
)

if TYPE_CHECKING:
    from recordkit.base import Model, Pivot

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="Model")

EagerConstraint = Callable[[QueryBuilder], Any] | None

# Alias prefix for pivot columns selected alongside related rows
PIVOT_PREFIX = "pivot__"


def _key(value: Any) -> str:
    """Normalize key values so ``1`` and ``"1"`` land in the same bucket."""
    return str(value)


def _unique(values: Iterable[Any]) -> list[Any]:
    seen: dict[str, Any] = {}
    for value in values:
        if value is not None and _key(value) not in seen:
            seen[_key(value)] = value
    return list(seen.values())


class Relation(QueryBuilder[T]):
    """Base class for relations backed by a single related model."""

    def __init__(self, owner: Model | None, spec: RelationSpec, *, owner_model: type[Model] | None = None) -> None:
        super().__init__(spec.related_model())
        self.spec = spec
        self.name = spec.name
        self.owner = owner
        self.owner_model = type(owner) if owner is not None else owner_model
        self.constrained = owner is not None
        self.init_keys()
        if self.constrained:
            with self.constraining():
                self.add_constraints()

    @classmethod
    def for_eager(cls, owner_model: type[Model], spec: RelationSpec) -> Self:
        return cls(None, spec, owner_model=owner_model)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.owner_model.__name__}.{self.name} -> {self.table}>"

    def init_keys(self) -> None:
        """Resolve key names from the declaration and naming conventions."""

    def add_constraints(self) -> None:
        """Constrain the query to the bound owner."""

    def _never(self) -> None:
        # A missing parent key must never match rows with NULL keys
        self.where_in(self.qualified_key, [])

    def _prepare_eager(self, nested: dict[str, EagerConstraint], constraint: EagerConstraint) -> None:
        if nested:
            self.with_(nested)
        if constraint is not None:
            constraint(self)

    async def get_results(self) -> Any:
        return await self.get()

    async def eager_load(
        self,
        owners: list[Model],
        name: str,
        nested: dict[str, EagerConstraint],
        constraint: EagerConstraint,
    ) -> None:
        raise NotImplementedError


# ========== One-to-one / one-to-many ==========


class HasOneOrMany(Relation[T]):
    many = True

    def init_keys(self) -> None:
        self.foreign_key = self.spec.foreign_key or foreign_key_for(self.owner_model.__tablename__)
        self.local_key = self.spec.local_key or self.owner_model.__primary_key__

    @property
    def qualified_foreign_key(self) -> str:
        return f"{self.table}.{self.foreign_key}"

    def add_constraints(self) -> None:
        value = self.owner.get_raw_attribute(self.local_key)
        if value is None:
            self._never()
            return
        self.where(self.qualified_foreign_key, value)

    def empty_result(self) -> Any:
        return [] if self.many else None

    def match(self, models: list[T]) -> Any:
        if self.many:
            return models
        return models[0] if models else None

    async def get_results(self) -> Any:
        if self.owner.get_raw_attribute(self.local_key) is None:
            return self.empty_result()
        if self.many:
            return await self.get()
        return await self.first()

    async def eager_load(self, owners, name, nested, constraint) -> None:
        keys = _unique(owner.get_raw_attribute(self.local_key) for owner in owners)
        if not keys:
            for owner in owners:
                owner.set_relation(name, self.empty_result())
            return

        self._prepare_eager(nested, constraint)
        with self.constraining():
            self.where_in(self.qualified_foreign_key, keys)
        results = await self.get()

        buckets: dict[str, list[T]] = defaultdict(list)
        for model in results:
            buckets[_key(model.get_raw_attribute(self.foreign_key))].append(model)
        for owner in owners:
            value = owner.get_raw_attribute(self.local_key)
            owner.set_relation(name, self.match(buckets.get(_key(value), []) if value is not None else []))

    def _owner_keys(self) -> dict[str, Any]:
        return {self.foreign_key: self.owner.get_raw_attribute(self.local_key)}

    async def create(self, **attributes: Any) -> T:
        """Create and save a related record pointing at the owner."""
        model = self.model(**attributes)
        return await self.save(model)

    async def save(self, model: T) -> T:
        """Point ``model`` at the owner and save it."""
        for column, value in self._owner_keys().items():
            model.set_attribute(column, value)
        await model.save()
        return model


class HasOne(HasOneOrMany[T]):
    """Example: a user has one profile (``profiles.user_id``)."""

    many = False


class HasMany(HasOneOrMany[T]):
    """Example: a user has many posts (``posts.user_id``)."""

    many = True


class MorphOneOrMany(HasOneOrMany[T]):
    """Polymorphic variant: the child stores ``{name}_id`` and ``{name}_type``."""

    def init_keys(self) -> None:
        name = self.spec.morph_name
        self.foreign_key = f"{name}_id"
        self.morph_type = f"{name}_type"
        self.morph_class = get_morph_class(self.owner_model)
        self.local_key = self.spec.local_key or self.owner_model.__primary_key__

    def add_constraints(self) -> None:
        super().add_constraints()
        self.where(f"{self.table}.{self.morph_type}", self.morph_class)

    async def eager_load(self, owners, name, nested, constraint) -> None:
        with self.constraining():
            self.where(f"{self.table}.{self.morph_type}", self.morph_class)
        await super().eager_load(owners, name, nested, constraint)

    def _owner_keys(self) -> dict[str, Any]:
        return {**super()._owner_keys(), self.morph_type: self.morph_class}


class MorphOne(MorphOneOrMany[T]):
    many = False


class MorphMany(MorphOneOrMany[T]):
    many = True


# ========== Inverse one-to-many ==========


class BelongsTo(Relation[T]):
    """Example: a post belongs to its author (``posts.user_id -> users.id``)."""

    def init_keys(self) -> None:
        self.foreign_key = self.spec.foreign_key or foreign_key_for(self.table)
        self.owner_key = self.spec.owner_key or self.model.__primary_key__

    def add_constraints(self) -> None:
        value = self.owner.get_raw_attribute(self.foreign_key)
        if value is None:
            self._never()
            return
        self.where(f"{self.table}.{self.owner_key}", value)

    async def get_results(self) -> T | None:
        if self.owner.get_raw_attribute(self.foreign_key) is None:
            return None
        return await self.first()

    async def eager_load(self, owners, name, nested, constraint) -> None:
        ids = _unique(owner.get_raw_attribute(self.foreign_key) for owner in owners)
        if not ids:
            for owner in owners:
                owner.set_relation(name, None)
            return

        self._prepare_eager(nested, constraint)
        with self.constraining():
            self.where_in(f"{self.table}.{self.owner_key}", ids)
        results = await self.get()

        by_key = {_key(model.get_raw_attribute(self.owner_key)): model for model in results}
        for owner in owners:
            value = owner.get_raw_attribute(self.foreign_key)
            owner.set_relation(name, by_key.get(_key(value)) if value is not None else None)

    def associate(self, model: T) -> Model:
        """Point the owner's foreign key at ``model`` (not saved)."""
        self.owner.set_attribute(self.foreign_key, model.get_raw_attribute(self.owner_key))
        self.owner.set_relation(self.name, model)
        return self.owner

    def dissociate(self) -> Model:
        self.owner.set_attribute(self.foreign_key, None)
        self.owner.set_relation(self.name, None)
        return self.owner


# ========== Many-to-many ==========


class BelongsToMany(Relation[T]):
    """Many-to-many through a pivot table.

    Example:
        >>> roles = user.related("roles")
        >>> await roles.attach([1, 2], {"granted_by": "admin"})
        >>> await roles.detach(2)
        >>> admins = await roles.where_pivot("granted_by", "admin").get()
    """

    def init_keys(self) -> None:
        from recordkit.base import Pivot

        owner_table = self.owner_model.__tablename__
        default_pivot = "_".join(sorted([singularize(owner_table), singularize(self.table)]))
        self.pivot_table = self.spec.pivot_table or default_pivot
        self.foreign_pivot_key = self.spec.foreign_pivot_key or foreign_key_for(owner_table)
        self.related_pivot_key = self.spec.related_pivot_key or foreign_key_for(self.table)
        self.parent_key = self.spec.parent_key or self.owner_model.__primary_key__
        self.related_key = self.spec.related_key or self.model.__primary_key__
        self.pivot_columns: list[str] = list(self.spec.pivot_columns)
        self.pivot_class: type[Pivot] = self.spec.pivot_class or Pivot
        self.pivot_timestamps = self.spec.pivot_timestamps
        self.pivot_type: tuple[str, str] | None = None
        self.pivot_filters: list[tuple[str, str, tuple[Any, ...]]] = []
        if self.pivot_timestamps:
            self._add_pivot_columns("created_at", "updated_at")

    def clone(self) -> Self:
        new = super().clone()
        new.pivot_columns = list(self.pivot_columns)
        new.pivot_filters = list(self.pivot_filters)
        return new

    def _add_pivot_columns(self, *columns: str) -> None:
        for column in columns:
            if column not in self.pivot_columns:
                self.pivot_columns.append(column)

    @property
    def all_pivot_columns(self) -> list[str]:
        columns = [self.foreign_pivot_key, self.related_pivot_key]
        if self.pivot_type is not None:
            columns.append(self.pivot_type[0])
        return columns + [column for column in self.pivot_columns if column not in columns]

    def add_constraints(self) -> None:
        self._select_with_pivot()
        self.join(
            self.pivot_table,
            f"{self.table}.{self.related_key}",
            "=",
            f"{self.pivot_table}.{self.related_pivot_key}",
        )
        value = self.owner.get_raw_attribute(self.parent_key)
        if value is None:
            self._never()
        else:
            self.where(f"{self.pivot_table}.{self.foreign_pivot_key}", value)
        if self.pivot_type is not None:
            self.where(f"{self.pivot_table}.{self.pivot_type[0]}", self.pivot_type[1])

    def _select_with_pivot(self) -> None:
        self.select(
            f"{self.table}.*",
            *(f"{self.pivot_table}.{column} as {PIVOT_PREFIX}{column}" for column in self.all_pivot_columns),
        )

    def hydrate_row(self, row: dict[str, Any]) -> T:
        attributes: dict[str, Any] = {}
        pivot: dict[str, Any] = {}
        for column, value in row.items():
            if column.startswith(PIVOT_PREFIX):
                pivot[column[len(PIVOT_PREFIX):]] = value
            else:
                attributes[column] = value
        model = self.model.hydrate(attributes)
        if pivot:
            model.pivot = self.pivot_class.from_row(self.pivot_table, pivot)
        return model

    async def get_results(self) -> list[T]:
        if self.owner.get_raw_attribute(self.parent_key) is None:
            return []
        return await self.get()

    # ---------- configuration ----------

    def with_pivot(self, *columns: str) -> Self:
        """Also select ``columns`` from the pivot table into ``model.pivot``."""
        self._add_pivot_columns(*columns)
        if self.constrained:
            self._select_with_pivot()
        return self

    def with_timestamps(self) -> Self:
        self.pivot_timestamps = True
        return self.with_pivot("created_at", "updated_at")

    def using(self, pivot_class: type[Pivot]) -> Self:
        """Hydrate pivot rows as ``pivot_class``."""
        self.pivot_class = pivot_class
        return self

    # ---------- pivot filters ----------

    def _pivot_filter(self, method: str, column: str, *args: Any) -> Self:
        self.pivot_filters.append((method, column, args))
        if self.constrained:
            getattr(QueryBuilder, method)(self, f"{self.pivot_table}.{column}", *args)
        return self

    def where_pivot(self, column: str, *args: Any) -> Self:
        return self._pivot_filter("where", column, *args)

    def or_where_pivot(self, column: str, *args: Any) -> Self:
        return self._pivot_filter("or_where", column, *args)

    def where_pivot_in(self, column: str, values: Iterable[Any]) -> Self:
        return self._pivot_filter("where_in", column, list(values))

    def where_pivot_not_in(self, column: str, values: Iterable[Any]) -> Self:
        return self._pivot_filter("where_not_in", column, list(values))

    def where_pivot_null(self, column: str) -> Self:
        return self._pivot_filter("where_null", column)

    def where_pivot_not_null(self, column: str) -> Self:
        return self._pivot_filter("where_not_null", column)

    def _pivot_query(self, parent: Any = None) -> QueryBuilder:
        query = QueryBuilder(table=self.pivot_table)
        with query.constraining():
            if parent is not None:
                query.where(self.foreign_pivot_key, parent)
            if self.pivot_type is not None:
                query.where(self.pivot_type[0], self.pivot_type[1])
        for method, column, args in self.pivot_filters:
            getattr(query, method)(column, *args)
        return query

    # ---------- eager loading ----------

    async def eager_load(self, owners, name, nested, constraint) -> None:
        self._prepare_eager(nested, constraint)

        parent_ids = _unique(owner.get_raw_attribute(self.parent_key) for owner in owners)
        if not parent_ids:
            for owner in owners:
                owner.set_relation(name, [])
            return

        pivot_query = self._pivot_query().select(*self.all_pivot_columns)
        with pivot_query.constraining():
            pivot_query.where_in(self.foreign_pivot_key, parent_ids)
        pivot_rows = await pivot_query.get()
        related_ids = _unique(row[self.related_pivot_key] for row in pivot_rows)
        related: list[T] = []
        if related_ids:
            with self.constraining():
                self.where_in(f"{self.table}.{self.related_key}", related_ids)
            related = await self.get()

        pivots_by_related: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for row in pivot_rows:
            pivots_by_related[_key(row[self.related_pivot_key])].append(row)

        # Each owner gets its own copy carrying its own pivot row
        buckets: dict[str, list[T]] = defaultdict(list)
        for model in related:
            for row in pivots_by_related.get(_key(model.get_raw_attribute(self.related_key)), []):
                copy = model.copy()
                copy.pivot = self.pivot_class.from_row(self.pivot_table, dict(row))
                buckets[_key(row[self.foreign_pivot_key])].append(copy)

        for owner in owners:
            value = owner.get_raw_attribute(self.parent_key)
            owner.set_relation(name, buckets.get(_key(value), []) if value is not None else [])

    # ---------- pivot writes ----------

    def _parent_id(self) -> Any:
        value = self.owner.get_raw_attribute(self.parent_key)
        if value is None:
            raise ValueError(f"Cannot modify '{self.name}' on an unsaved {self.owner_model.__name__}")
        return value

    def _parse_ids(self, ids: Any) -> dict[str, tuple[Any, dict[str, Any]]]:
        """Normalize ids (scalars, models, lists, ``{id: attributes}``) keyed by ``_key``."""
        from recordkit.base import Model

        if isinstance(ids, dict):
            items = [(key, dict(value or {})) for key, value in ids.items()]
        elif isinstance(ids, (list, tuple, set)):
            items = [(item, {}) for item in ids]
        else:
            items = [(ids, {})]

        parsed: dict[str, tuple[Any, dict[str, Any]]] = {}
        for item, attributes in items:
            value = item.get_raw_attribute(self.related_key) if isinstance(item, Model) else item
            parsed[_key(value)] = (value, attributes)
        return parsed

    def _pivot_row(self, parent: Any, related_id: Any, attributes: dict[str, Any]) -> dict[str, Any]:
        row = {self.foreign_pivot_key: parent, self.related_pivot_key: related_id, **attributes}
        if self.pivot_type is not None:
            row[self.pivot_type[0]] = self.pivot_type[1]
        if self.pivot_timestamps:
            now = datetime.now(UTC)
            row.setdefault("created_at", now)
            row.setdefault("updated_at", now)
        return row

    async def attach(self, ids: Any, attributes: dict[str, Any] | None = None) -> None:
        """Insert pivot rows linking the owner to ``ids``.

        Example:
            >>> await user.related("roles").attach(admin)
            >>> await user.related("roles").attach([1, 2], {"granted_by": "ops"})
            >>> await user.related("roles").attach({1: {"expires": "2030-01-01"}})
        """
        parent = self._parent_id()
        rows = [
            self._pivot_row(parent, value, {**(attributes or {}), **extra})
            for value, extra in self._parse_ids(ids).values()
        ]
        if rows:
            await QueryBuilder(table=self.pivot_table).insert(rows)

    async def detach(self, ids: Any = None) -> int:
        """Delete pivot rows for ``ids``, or every pivot row of the owner when omitted."""
        query = self._pivot_query(self._parent_id())
        if ids is not None:
            values = [value for value, _ in self._parse_ids(ids).values()]
            if not values:
                return 0
            query.where_in(self.related_pivot_key, values)
        return await query.delete()

    async def _current_ids(self) -> list[Any]:
        return await self._pivot_query(self._parent_id()).pluck(self.related_pivot_key)

    async def sync(self, ids: Any, detaching: bool = True) -> dict[str, list[Any]]:
        """Make the owner's pivot rows match ``ids`` exactly.

        Returns:
            The ids that were ``attached``, ``detached`` and ``updated``
        """
        desired = self._parse_ids(ids)
        current = {_key(value): value for value in await self._current_ids()}
        changes: dict[str, list[Any]] = {"attached": [], "detached": [], "updated": []}

        if detaching:
            stale = [value for key, value in current.items() if key not in desired]
            if stale:
                await self.detach(stale)
                changes["detached"] = stale

        for key, (value, attributes) in desired.items():
            if key not in current:
                await self.attach(value, attributes)
                changes["attached"].append(value)
            elif attributes:
                await self.update_existing_pivot(value, attributes)
                changes["updated"].append(value)
        return changes

    async def sync_without_detaching(self, ids: Any) -> dict[str, list[Any]]:
        return await self.sync(ids, detaching=False)

    async def toggle(self, ids: Any) -> dict[str, list[Any]]:
        """Attach the ids that are missing and detach the ones present."""
        requested = self._parse_ids(ids)
        current = {_key(value) for value in await self._current_ids()}
        changes: dict[str, list[Any]] = {"attached": [], "detached": []}

        to_detach = [value for key, (value, _) in requested.items() if key in current]
        if to_detach:
            await self.detach(to_detach)
            changes["detached"] = to_detach
        for key, (value, attributes) in requested.items():
            if key not in current:
                await self.attach(value, attributes)
                changes["attached"].append(value)
        return changes

    async def update_existing_pivot(self, id: Any, attributes: dict[str, Any]) -> int:
        if self.pivot_timestamps:
            attributes = {**attributes, "updated_at": datetime.now(UTC)}
        query = self._pivot_query(self._parent_id())
        return await query.where(self.related_pivot_key, id).update(attributes)


class MorphToMany(BelongsToMany[T]):
    """Polymorphic many-to-many; the pivot stores ``{name}_id`` and ``{name}_type``.

    Declared with :func:`~recordkit.relationships.morph_to_many` on the owning
    side (``Post.tags``) and :func:`~recordkit.relationships.morphed_by_many`
    on the shared side (``Tag.posts``).
    """

    def init_keys(self) -> None:
        super().init_keys()
        name = self.spec.morph_name
        self.pivot_table = self.spec.pivot_table or f"{name}s"
        if self.spec.inverse:
            self.foreign_pivot_key = foreign_key_for(self.owner_model.__tablename__)
            self.related_pivot_key = f"{name}_id"
            self.pivot_type = (f"{name}_type", get_morph_class(self.model))
        else:
            self.foreign_pivot_key = f"{name}_id"
            self.related_pivot_key = foreign_key_for(self.table)
            self.pivot_type = (f"{name}_type", get_morph_class(self.owner_model))


# ========== Distant relations ==========


class HasManyThrough(Relation[T]):
    """Example: a country has many posts through its users."""

    def init_keys(self) -> None:
        through = self.spec.through_model()
        self.through_model = through
        self.through_table = through.__tablename__
        self.local_key = self.spec.local_key or self.owner_model.__primary_key__
        self.second_local_key = self.spec.second_local_key or through.__primary_key__
        self.second_key = self.spec.second_key or foreign_key_for(self.through_table)
        self.through_type: tuple[str, str] | None = None
        if self.spec.morph_name:
            self.first_key = f"{self.spec.morph_name}_id"
            self.through_type = (f"{self.spec.morph_name}_type", get_morph_class(self.owner_model))
        else:
            self.first_key = self.spec.first_key or foreign_key_for(self.owner_model.__tablename__)

    def add_constraints(self) -> None:
        self.select(f"{self.table}.*")
        self.join(
            self.through_table,
            f"{self.through_table}.{self.second_local_key}",
            "=",
            f"{self.table}.{self.second_key}",
        )
        value = self.owner.get_raw_attribute(self.local_key)
        if value is None:
            self._never()
        else:
            self.where(f"{self.through_table}.{self.first_key}", value)
        if self.through_type is not None:
            self.where(f"{self.through_table}.{self.through_type[0]}", self.through_type[1])
        if getattr(self.through_model, "__soft_delete__", False):
            self.where_null(f"{self.through_table}.{self.through_model.__deleted_at_column__}")

    async def get_results(self) -> list[T]:
        if self.owner.get_raw_attribute(self.local_key) is None:
            return []
        return await self.get()

    async def eager_load(self, owners, name, nested, constraint) -> None:
        keys = _unique(owner.get_raw_attribute(self.local_key) for owner in owners)
        if not keys:
            for owner in owners:
                owner.set_relation(name, [])
            return

        through_query = self.through_model.query().select(self.second_local_key, self.first_key)
        through_query.where_in(self.first_key, keys)
        if self.through_type is not None:
            through_query.where(self.through_type[0], self.through_type[1])
        intermediates = await through_query.get()

        owners_by_intermediate: dict[str, list[str]] = defaultdict(list)
        for intermediate in intermediates:
            owners_by_intermediate[_key(intermediate.get_raw_attribute(self.second_local_key))].append(
                _key(intermediate.get_raw_attribute(self.first_key))
            )

        buckets: dict[str, list[T]] = defaultdict(list)
        intermediate_ids = _unique(row.get_raw_attribute(self.second_local_key) for row in intermediates)
        if intermediate_ids:
            self._prepare_eager(nested, constraint)
            with self.constraining():
                self.where_in(f"{self.table}.{self.second_key}", intermediate_ids)
            for model in await self.get():
                for owner_key in owners_by_intermediate.get(_key(model.get_raw_attribute(self.second_key)), []):
                    buckets[owner_key].append(model)

        for owner in owners:
            value = owner.get_raw_attribute(self.local_key)
            owner.set_relation(name, buckets.get(_key(value), []) if value is not None else [])


# ========== Polymorphic parent ==========


class MorphTo:
    """Resolves the polymorphic parent stored in ``{name}_id`` / ``{name}_type``.

    The target class depends on each record's discriminator, so this is not
    a query builder: lazily it builds a query for the one resolved class,
    eagerly it issues one query per distinct discriminator.
    """

    def __init__(self, owner: Model | None, spec: RelationSpec, *, owner_model: type[Model] | None = None) -> None:
        self.spec = spec
        self.name = spec.name
        self.owner = owner
        self.owner_model = type(owner) if owner is not None else owner_model
        self.type_column = f"{spec.morph_name}_type"
        self.id_column = f"{spec.morph_name}_id"

    @classmethod
    def for_eager(cls, owner_model: type[Model], spec: RelationSpec) -> MorphTo:
        return cls(None, spec, owner_model=owner_model)

    def __repr__(self) -> str:
        return f"<MorphTo {self.owner_model.__name__}.{self.name}>"

    def resolve_type(self, value: Any) -> type[Model] | None:
        model = resolve_morph_type(value, self.spec.type_map)
        if model is None and value is not None:
            logger.warning(
                "Unknown morph type %r for %s.%s; resolving to None", value, self.owner_model.__name__, self.name
            )
        return model

    def query(self) -> QueryBuilder | None:
        """Builder for the owner's parent, or ``None`` when it cannot be resolved."""
        target = self.resolve_type(self.owner.get_raw_attribute(self.type_column))
        parent_id = self.owner.get_raw_attribute(self.id_column)
        if target is None or parent_id is None:
            return None
        query = target.query()
        with query.constraining():
            query.where(f"{target.__tablename__}.{target.__primary_key__}", parent_id)
        return query

    async def get_results(self) -> Model | None:
        query = self.query()
        if query is None:
            return None
        return await query.first()

    async def eager_load(self, owners, name, nested, constraint) -> None:
        groups: dict[str, list[Model]] = defaultdict(list)
        type_values: dict[str, Any] = {}
        for owner in owners:
            type_value = owner.get_raw_attribute(self.type_column)
            if type_value is None or owner.get_raw_attribute(self.id_column) is None:
                owner.set_relation(name, None)
                continue
            groups[_key(type_value)].append(owner)
            type_values[_key(type_value)] = type_value

        for group_key, members in groups.items():
            target = self.resolve_type(type_values[group_key])
            if target is None:
                for owner in members:
                    owner.set_relation(name, None)
                continue

            query = target.query()
            if nested:
                query.with_(nested)
            if constraint is not None:
                constraint(query)
            ids = _unique(owner.get_raw_attribute(self.id_column) for owner in members)
            with query.constraining():
                query.where_in(f"{target.__tablename__}.{target.__primary_key__}", ids)
            by_key = {_key(model.get_raw_attribute(target.__primary_key__)): model for model in await query.get()}
            for owner in members:
                owner.set_relation(name, by_key.get(_key(owner.get_raw_attribute(self.id_column))))

    def associate(self, model: Model) -> Model:
        self.owner.set_attribute(self.id_column, model.get_raw_attribute(model.__primary_key__))
        self.owner.set_attribute(self.type_column, get_morph_class(model))
        self.owner.set_relation(self.name, model)
        return self.owner


RESOLVERS: dict[str, type[Relation] | type[MorphTo]] = {
    "has_one": HasOne,
    "has_many": HasMany,
    "belongs_to": BelongsTo,
    "belongs_to_many": BelongsToMany,
    "morph_one": MorphOne,
    "morph_many": MorphMany,
    "morph_to": MorphTo,
    "morph_to_many": MorphToMany,
    "has_many_through": HasManyThrough,
}
