"""Fluent query builder.

Builder methods only accumulate state; nothing is rendered or executed until
a terminal coroutine (``get``, ``first``, ``count``, ``update``, ...) runs.
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import AsyncIterator, Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, Self, TypeVar

from recordkit.clauses import (
    COMPARISON_OPERATORS,
    DIRECTIONS,
    Condition,
    Join,
    Order,
    Q,
    RawExpression,
    Union,
    apply_filter,
    column_name,
    normalize_boolean,
    normalize_operator,
    parse_filter_key,
    validate_column_reference,
    validate_identifier,
)
from recordkit.exceptions import InvalidQueryError, ModelNotFoundError
from recordkit.session import get_session

if TYPE_CHECKING:
    from recordkit.base import Model
    from recordkit.grammar import Grammar
    from recordkit.scopes import Scope

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="Model")
_ItemT = TypeVar("_ItemT")

_MISSING: Any = object()
_AGGREGATE_RE = re.compile(
    r"^[A-Za-z_]+\(\s*(DISTINCT\s+)?(\*|[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*(\.\*)?)\s*\)$",
    re.IGNORECASE,
)


@dataclass
class Page(Generic[_ItemT]):
    """One page of results from :meth:`QueryBuilder.paginate`."""

    items: list[_ItemT]
    total: int
    page: int
    per_page: int

    @property
    def last_page(self) -> int:
        return max(1, -(-self.total // self.per_page))

    @property
    def has_more(self) -> bool:
        return self.page < self.last_page


class QueryBuilder(Generic[T]):
    """Accumulates query intent for one table.

    Example:
        >>> users = await (
        ...     User.query()
        ...     .where("age", ">", 18)
        ...     .or_where(vip=True)
        ...     .order_by("-created_at")
        ...     .limit(10)
        ...     .get()
        ... )

    A builder without a model works on plain rows:

        >>> rows = await QueryBuilder(table="audit_log").where("level", "error").get()
    """

    def __init__(
        self,
        model: type[T] | None = None,
        table: str | None = None,
        *,
        grammar: Grammar | None = None,
    ) -> None:
        if model is None and table is None:
            raise ValueError("QueryBuilder needs a model or a table name")
        self.model = model
        self.table: str = table if table is not None else model.__tablename__
        self._grammar = grammar

        self.columns: list[str | RawExpression] = []
        self.is_distinct = False
        self.wheres: list[Condition] = []
        self.constraints: list[Condition] = []
        self.joins: list[Join] = []
        self.groups: list[str] = []
        self.havings: list[Condition] = []
        self.orders: list[Order] = []
        self.limit_value: int | None = None
        self.offset_value: int | None = None
        self.unions: list[Union] = []
        self.eager_loads: dict[str, Callable[[QueryBuilder], Any] | None] = {}

        self.scopes: dict[str, Scope] = {}
        self.removed_scopes: set[str] = set()
        self._scopes_applied = False

        if model is not None:
            self.scopes.update(getattr(model, "__global_scopes__", {}))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.table}>"

    @property
    def grammar(self) -> Grammar:
        if self._grammar is not None:
            return self._grammar
        return get_session().grammar

    def clone(self) -> Self:
        """Return an independent copy of this builder."""
        new = copy.copy(self)
        new.columns = list(self.columns)
        new.wheres = list(self.wheres)
        new.constraints = list(self.constraints)
        new.joins = list(self.joins)
        new.groups = list(self.groups)
        new.havings = list(self.havings)
        new.orders = list(self.orders)
        new.unions = list(self.unions)
        new.eager_loads = dict(self.eager_loads)
        new.scopes = dict(self.scopes)
        new.removed_scopes = set(self.removed_scopes)
        return new

    def new_query(self) -> QueryBuilder:
        """A fresh builder over the same table, without scopes or model."""
        return QueryBuilder(table=self.table, grammar=self._grammar)

    @property
    def qualified_key(self) -> str:
        key = self.model.__primary_key__ if self.model is not None else "id"
        return f"{self.table}.{key}"

    # ========== Predicates ==========

    def where(
        self,
        column: Any = None,
        operator: Any = _MISSING,
        value: Any = _MISSING,
        *,
        boolean: str = "AND",
        **filters: Any,
    ) -> Self:
        """Add a WHERE condition.

        Accepts ``(column, value)``, ``(column, operator, value)``, a dict of
        equalities, a :class:`Q` object, a callback receiving a nested
        builder, or Django-style keyword filters.

        Example:
            >>> query.where("name", "Alice")
            >>> query.where("age", ">=", 18)
            >>> query.where(User.age, ">=", 18)
            >>> query.where(age__gte=18, name__startswith="A")
            >>> query.where(lambda q: q.where("a", 1).or_where("b", 2))
        """
        boolean = normalize_boolean(boolean)
        column = column_name(column)

        if isinstance(column, Q):
            column.apply(self, boolean)
        elif isinstance(column, dict):
            for key, item in column.items():
                self.where(key, "=", item, boolean=boolean)
        elif callable(column):
            self.where_group(column, boolean=boolean)
        elif column is not None:
            if value is _MISSING:
                if operator is _MISSING:
                    raise InvalidQueryError(f"where({column!r}) requires a value")
                operator, value = "=", operator
            self._add_basic(self.wheres, column, operator, value, boolean)

        for key, item in filters.items():
            col, op = parse_filter_key(key)
            apply_filter(self, col, op, item, boolean)
        return self

    def or_where(self, column: Any = None, operator: Any = _MISSING, value: Any = _MISSING, **filters: Any) -> Self:
        return self.where(column, operator, value, boolean="OR", **filters)

    def filter(self, *q_objects: Q, **kwargs: Any) -> Self:
        """Add filter conditions using Django-style kwargs or Q objects.

        Example:
            >>> query.filter(name="Alice", age__gt=18)
            >>> query.filter(Q(age__gt=18) | Q(vip=True))
        """
        for q in q_objects:
            self.where(q)
        return self.where(**kwargs)

    def _add_basic(self, target: list[Condition], column: str, operator: Any, value: Any, boolean: str) -> None:
        op = normalize_operator(operator)
        validate_identifier(column)
        if value is None:
            if op == "=":
                target.append(Condition("null", column, boolean=boolean))
                return
            if op in ("!=", "<>"):
                target.append(Condition("not_null", column, boolean=boolean))
                return
            raise InvalidQueryError(f"Cannot compare {column!r} to NULL with {op}")
        target.append(Condition("basic", column, op, value, boolean))

    def where_in(
        self, column: str, values: Iterable[Any] | QueryBuilder, *, boolean: str = "AND", negate: bool = False
    ) -> Self:
        """Add ``column IN (...)``; an empty sequence matches nothing."""
        column = column_name(column)
        validate_identifier(column)
        kind = "not_in" if negate else "in"
        if not isinstance(values, QueryBuilder):
            values = tuple(values)
        self.wheres.append(Condition(kind, column, value=values, boolean=normalize_boolean(boolean)))
        return self

    def or_where_in(self, column: str, values: Iterable[Any] | QueryBuilder) -> Self:
        return self.where_in(column, values, boolean="OR")

    def where_not_in(self, column: str, values: Iterable[Any] | QueryBuilder, *, boolean: str = "AND") -> Self:
        return self.where_in(column, values, boolean=boolean, negate=True)

    def or_where_not_in(self, column: str, values: Iterable[Any] | QueryBuilder) -> Self:
        return self.where_in(column, values, boolean="OR", negate=True)

    def where_null(self, column: str, *, boolean: str = "AND", negate: bool = False) -> Self:
        column = column_name(column)
        validate_identifier(column)
        kind = "not_null" if negate else "null"
        self.wheres.append(Condition(kind, column, boolean=normalize_boolean(boolean)))
        return self

    def or_where_null(self, column: str) -> Self:
        return self.where_null(column, boolean="OR")

    def where_not_null(self, column: str, *, boolean: str = "AND") -> Self:
        return self.where_null(column, boolean=boolean, negate=True)

    def or_where_not_null(self, column: str) -> Self:
        return self.where_null(column, boolean="OR", negate=True)

    def where_between(self, column: str, values: Iterable[Any], *, boolean: str = "AND", negate: bool = False) -> Self:
        column = column_name(column)
        validate_identifier(column)
        kind = "not_between" if negate else "between"
        self.wheres.append(Condition(kind, column, value=tuple(values), boolean=normalize_boolean(boolean)))
        return self

    def or_where_between(self, column: str, values: Iterable[Any]) -> Self:
        return self.where_between(column, values, boolean="OR")

    def where_not_between(self, column: str, values: Iterable[Any], *, boolean: str = "AND") -> Self:
        return self.where_between(column, values, boolean=boolean, negate=True)

    def where_column(
        self,
        first: str | list[tuple[str, ...]],
        operator: str | None = None,
        second: str | None = None,
        *,
        boolean: str = "AND",
    ) -> Self:
        """Compare two columns.

        Example:
            >>> query.where_column("updated_at", ">", "created_at")
            >>> query.where_column([("first_name", "last_name"), ("a", "<", "b")])
        """
        if isinstance(first, list):
            for item in first:
                self.where_column(*item, boolean=boolean)
            return self
        if second is None:
            operator, second = "=", operator
        if operator not in COMPARISON_OPERATORS:
            raise InvalidQueryError(f"Invalid column comparison operator: {operator!r}")
        first, second = column_name(first), column_name(second)
        validate_identifier(first)
        validate_identifier(second)
        self.wheres.append(Condition("column", first, operator, second, normalize_boolean(boolean)))
        return self

    def or_where_column(self, first: str, operator: str | None = None, second: str | None = None) -> Self:
        return self.where_column(first, operator, second, boolean="OR")

    def where_exists(self, query: QueryBuilder, *, boolean: str = "AND", negate: bool = False) -> Self:
        """Add ``EXISTS (sub-query)``; the sub-query's bindings are merged in place."""
        kind = "not_exists" if negate else "exists"
        self.wheres.append(Condition(kind, boolean=normalize_boolean(boolean), query=query))
        return self

    def or_where_exists(self, query: QueryBuilder) -> Self:
        return self.where_exists(query, boolean="OR")

    def where_not_exists(self, query: QueryBuilder, *, boolean: str = "AND") -> Self:
        return self.where_exists(query, boolean=boolean, negate=True)

    def where_raw(self, sql: str, bindings: Iterable[Any] = (), *, boolean: str = "AND") -> Self:
        """Add a raw SQL condition using ``?`` markers for its bindings."""
        expression = RawExpression(sql, tuple(bindings))
        self.wheres.append(Condition("raw", value=expression, boolean=normalize_boolean(boolean)))
        return self

    def or_where_raw(self, sql: str, bindings: Iterable[Any] = ()) -> Self:
        return self.where_raw(sql, bindings, boolean="OR")

    def where_group(
        self, callback: Callable[[QueryBuilder], Any], *, boolean: str = "AND", negate: bool = False
    ) -> Self:
        """Fold the conditions added by ``callback`` into one parenthesised group.

        Example:
            >>> query.where("active", True).where_group(
            ...     lambda q: q.where("role", "admin").or_where("role", "owner")
            ... )
        """
        nested = self.new_query()
        callback(nested)
        if nested.wheres:
            operator = "NOT" if negate else "="
            self.wheres.append(Condition("nested", operator=operator, boolean=normalize_boolean(boolean), query=nested))
        return self

    def or_where_group(self, callback: Callable[[QueryBuilder], Any]) -> Self:
        return self.where_group(callback, boolean="OR")

    # ========== Projection ==========

    def select(self, *columns: str | RawExpression | Iterable[str]) -> Self:
        """Replace the selected columns.

        Example:
            >>> query.select("id", "name as display_name")
            >>> query.select(User.id, User.name)
        """
        self.columns = []
        return self.add_select(*columns)

    def add_select(self, *columns: str | RawExpression | Iterable[str]) -> Self:
        for column in columns:
            column = column_name(column)
            if isinstance(column, RawExpression):
                self.columns.append(column)
            elif isinstance(column, str):
                self.columns.append(validate_column_reference(column))
            else:
                self.add_select(*column)
        return self

    def select_raw(self, expression: str, bindings: Iterable[Any] = ()) -> Self:
        self.columns.append(RawExpression(expression, tuple(bindings)))
        return self

    def distinct(self) -> Self:
        self.is_distinct = True
        return self

    # ========== Joins ==========

    def join(
        self,
        table: str,
        first: str,
        operator: str | None = None,
        second: str | None = None,
        *,
        kind: str = "INNER",
    ) -> Self:
        """Add a join.

        Example:
            >>> query.join("posts", "users.id", "=", "posts.user_id")
            >>> query.left_join("profiles", "users.id", "profiles.user_id")
        """
        if second is None:
            operator, second = "=", operator
        if operator not in COMPARISON_OPERATORS:
            raise InvalidQueryError(f"Invalid join operator: {operator!r}")
        validate_column_reference(table)
        validate_identifier(first)
        validate_identifier(second)
        self.joins.append(Join(kind.upper(), table, first, operator, second))
        return self

    def left_join(self, table: str, first: str, operator: str | None = None, second: str | None = None) -> Self:
        return self.join(table, first, operator, second, kind="LEFT")

    def right_join(self, table: str, first: str, operator: str | None = None, second: str | None = None) -> Self:
        return self.join(table, first, operator, second, kind="RIGHT")

    def cross_join(self, table: str) -> Self:
        validate_column_reference(table)
        self.joins.append(Join("CROSS", table))
        return self

    # ========== Grouping ==========

    def group_by(self, *columns: str) -> Self:
        for column in columns:
            self.groups.append(validate_identifier(column_name(column)))
        return self

    def having(self, column: str, operator: Any = _MISSING, value: Any = _MISSING, *, boolean: str = "AND") -> Self:
        """Add a HAVING condition; ``column`` may be an aggregate like ``COUNT(id)``.

        Example:
            >>> query.group_by("status").having("COUNT(*)", ">", 5)
        """
        if value is _MISSING:
            if operator is _MISSING:
                raise InvalidQueryError(f"having({column!r}) requires a value")
            operator, value = "=", operator
        op = normalize_operator(operator, COMPARISON_OPERATORS)
        _validate_having_column(column)
        self.havings.append(Condition("basic", column, op, value, normalize_boolean(boolean)))
        return self

    def or_having(self, column: str, operator: Any = _MISSING, value: Any = _MISSING) -> Self:
        return self.having(column, operator, value, boolean="OR")

    def having_raw(self, sql: str, bindings: Iterable[Any] = (), *, boolean: str = "AND") -> Self:
        expression = RawExpression(sql, tuple(bindings))
        self.havings.append(Condition("raw", value=expression, boolean=normalize_boolean(boolean)))
        return self

    def or_having_raw(self, sql: str, bindings: Iterable[Any] = ()) -> Self:
        return self.having_raw(sql, bindings, boolean="OR")

    def having_null(self, column: str, *, boolean: str = "AND", negate: bool = False) -> Self:
        _validate_having_column(column)
        kind = "not_null" if negate else "null"
        self.havings.append(Condition(kind, column, boolean=normalize_boolean(boolean)))
        return self

    def having_not_null(self, column: str, *, boolean: str = "AND") -> Self:
        return self.having_null(column, boolean=boolean, negate=True)

    def having_between(self, column: str, values: Iterable[Any], *, boolean: str = "AND", negate: bool = False) -> Self:
        _validate_having_column(column)
        kind = "not_between" if negate else "between"
        self.havings.append(Condition(kind, column, value=tuple(values), boolean=normalize_boolean(boolean)))
        return self

    # ========== Ordering & paging ==========

    def order_by(self, column: str, direction: str = "asc") -> Self:
        """Add ORDER BY; a leading ``-`` means descending.

        Example:
            >>> query.order_by("name")
            >>> query.order_by("created_at", "desc")
            >>> query.order_by("-created_at")
        """
        column = column_name(column)
        if column.startswith("-"):
            column, direction = column[1:], "desc"
        direction = direction.upper()
        if direction not in DIRECTIONS:
            raise InvalidQueryError(f"Order direction must be ASC or DESC, got {direction!r}")
        if "(" in column:
            _validate_having_column(column)
        else:
            validate_identifier(column)
        self.orders.append(Order(column, direction))
        return self

    def order_by_desc(self, column: str) -> Self:
        return self.order_by(column, "desc")

    def latest(self, column: str = "created_at") -> Self:
        return self.order_by(column, "desc")

    def oldest(self, column: str = "created_at") -> Self:
        return self.order_by(column, "asc")

    def order_by_raw(self, sql: str, bindings: Iterable[Any] = ()) -> Self:
        self.orders.append(Order(RawExpression(sql, tuple(bindings))))
        return self

    def reorder(self) -> Self:
        self.orders = []
        return self

    def limit(self, n: int) -> Self:
        if not isinstance(n, int) or isinstance(n, bool) or n < 0:
            raise InvalidQueryError(f"Limit must be a non-negative integer, got {n!r}")
        self.limit_value = n
        return self

    def take(self, n: int) -> Self:
        return self.limit(n)

    def offset(self, n: int) -> Self:
        if not isinstance(n, int) or isinstance(n, bool) or n < 0:
            raise InvalidQueryError(f"Offset must be a non-negative integer, got {n!r}")
        self.offset_value = n
        return self

    def skip(self, n: int) -> Self:
        return self.offset(n)

    def for_page(self, page: int, per_page: int = 15) -> Self:
        return self.offset(max(page - 1, 0) * per_page).limit(per_page)

    # ========== Set operations ==========

    def union(self, query: QueryBuilder, all: bool = False) -> Self:
        self.unions.append(Union(query, "UNION", all))
        return self

    def union_all(self, query: QueryBuilder) -> Self:
        return self.union(query, all=True)

    def intersect(self, query: QueryBuilder) -> Self:
        self.unions.append(Union(query, "INTERSECT"))
        return self

    def except_(self, query: QueryBuilder) -> Self:
        self.unions.append(Union(query, "EXCEPT"))
        return self

    # ========== Eager loading ==========

    def with_(
        self,
        *relations: str | dict[str, Callable[[QueryBuilder], Any] | None],
        **constrained: Callable[[QueryBuilder], Any],
    ) -> Self:
        """Eager load relations, optionally nested with dot paths.

        Example:
            >>> User.query().with_("posts.comments.author")
            >>> User.query().with_(posts=lambda q: q.where("published", True))
            >>> User.query().with_({"posts": lambda q: q.latest()})
        """
        for item in relations:
            if isinstance(item, dict):
                for path, constraint in item.items():
                    self._add_eager_load(path, constraint)
            else:
                self._add_eager_load(item, None)
        for path, constraint in constrained.items():
            self._add_eager_load(path, constraint)
        return self

    def _add_eager_load(self, path: str, constraint: Callable[[QueryBuilder], Any] | None) -> None:
        if constraint is not None or path not in self.eager_loads:
            self.eager_loads[path] = constraint

    def without(self, *relations: str) -> Self:
        for name in relations:
            self.eager_loads.pop(name, None)
        return self

    async def eager_load_relations(self, models: list[T]) -> None:
        from recordkit.relationships import parse_eager_paths

        for name, (constraint, nested) in parse_eager_paths(self.eager_loads).items():
            spec = self.model.get_relation_spec(name)
            await spec.eager_load(self.model, models, name, nested, constraint)

    # ========== Global scopes ==========

    def with_global_scope(self, name: str, scope: Scope | Callable[[QueryBuilder], Any]) -> Self:
        self.scopes[name] = scope
        self.removed_scopes.discard(name)
        return self

    def without_global_scope(self, *names: str) -> Self:
        self.removed_scopes.update(names)
        return self

    def without_global_scopes(self) -> Self:
        self.removed_scopes.update(self.scopes)
        return self

    def with_trashed(self) -> Self:
        """Include soft-deleted rows."""
        return self.without_global_scope("soft_delete")

    def only_trashed(self) -> Self:
        """Return only soft-deleted rows."""
        column = getattr(self.model, "__deleted_at_column__", "deleted_at")
        return self.with_trashed().where_not_null(f"{self.table}.{column}")

    @contextmanager
    def constraining(self) -> Iterator[Self]:
        """Move WHERE conditions added inside the block into ``constraints``.

        Constraints always render first and ANDed with the rest, so a
        caller's ``or_where`` cannot widen them.

        Example:
            >>> with query.constraining():
            ...     query.where("posts.user_id", 1)
        """
        start = len(self.wheres)
        try:
            yield self
        finally:
            self.constraints.extend(self.wheres[start:])
            del self.wheres[start:]

    def apply_scopes(self) -> Self:
        """Return a copy with every active global scope applied once."""
        if self._scopes_applied:
            return self
        active = [(name, scope) for name, scope in self.scopes.items() if name not in self.removed_scopes]
        query = self.clone()
        query._scopes_applied = True

        # Keep user OR-conditions from escaping relation and scope constraints
        if (active or query.constraints) and any(condition.boolean == "OR" for condition in query.wheres):
            group = query.new_query()
            group.wheres = query.wheres
            query.wheres = [Condition("nested", boolean="AND", query=group)]
        query.wheres = query.constraints + query.wheres
        query.constraints = []

        for _name, scope in active:
            if hasattr(scope, "apply"):
                scope.apply(query, self.model)
            else:
                scope(query)
        return query

    # ========== Rendering ==========

    def to_sql(self) -> tuple[str, list[Any]]:
        """Render the SELECT statement and its bindings."""
        query = self.apply_scopes()
        return query.grammar.compile_select(query)

    def get_bindings(self) -> list[Any]:
        return self.to_sql()[1]

    def to_raw_sql(self) -> str:
        """Render the SELECT with bindings inlined. For debugging only."""
        sql, bindings = self.to_sql()
        return self.grammar.substitute_bindings(sql, bindings)

    def dump(self) -> Self:
        sql, bindings = self.to_sql()
        logger.debug("%s %r", sql, bindings)
        return self

    # ========== Reads ==========

    async def get(self) -> list[T]:
        """Execute the query and return hydrated models (or rows without a model)."""
        query = self.apply_scopes()
        sql, bindings = query.grammar.compile_select(query)
        rows = await get_session().select(sql, bindings)
        return await query.hydrate_results(rows)

    async def all(self) -> list[T]:
        return await self.get()

    async def hydrate_results(self, rows: list[dict[str, Any]]) -> list[T]:
        if self.model is None:
            return rows
        models = [self.hydrate_row(row) for row in rows]
        if models and self.eager_loads:
            await self.eager_load_relations(models)
        return models

    def hydrate_row(self, row: dict[str, Any]) -> T:
        return self.model.hydrate(row)

    async def first(self) -> T | None:
        results = await self.clone().limit(1).get()
        return results[0] if results else None

    async def first_or_fail(self) -> T:
        result = await self.first()
        if result is None:
            raise ModelNotFoundError(self._model_name())
        return result

    async def find(self, id: Any) -> T | None:
        """Find a record by primary key."""
        if isinstance(id, (list, tuple, set)):
            return await self.find_many(id)
        return await self.clone().where(self.qualified_key, id).first()

    async def find_or_fail(self, id: Any) -> T:
        if isinstance(id, (list, tuple, set)):
            results = await self.find_many(id)
            if len(results) != len(set(id)):
                raise ModelNotFoundError(self._model_name(), list(id))
            return results
        result = await self.find(id)
        if result is None:
            raise ModelNotFoundError(self._model_name(), id)
        return result

    async def find_many(self, ids: Iterable[Any]) -> list[T]:
        return await self.clone().where_in(self.qualified_key, list(ids)).get()

    async def exists(self) -> bool:
        query = self.apply_scopes()
        sql, bindings = query.grammar.compile_exists(query)
        rows = await get_session().select(sql, bindings)
        return bool(rows and rows[0]["exists"])

    async def doesnt_exist(self) -> bool:
        return not await self.exists()

    async def aggregate(self, function: str, column: str = "*") -> Any:
        column = column_name(column)
        if column != "*":
            validate_identifier(column)
        query = self.apply_scopes()
        sql, bindings = query.grammar.compile_aggregate(query, function, column)
        rows = await get_session().select(sql, bindings)
        return rows[0]["aggregate"] if rows else None

    async def count(self, column: str = "*") -> int:
        """Count matching rows; grouped queries count their groups."""
        return int(await self.aggregate("count", column) or 0)

    async def sum(self, column: str) -> Any:
        self._ensure_ungrouped("sum")
        return await self.aggregate("sum", column)

    async def avg(self, column: str) -> Any:
        self._ensure_ungrouped("avg")
        return await self.aggregate("avg", column)

    async def min(self, column: str) -> Any:
        self._ensure_ungrouped("min")
        return await self.aggregate("min", column)

    async def max(self, column: str) -> Any:
        self._ensure_ungrouped("max")
        return await self.aggregate("max", column)

    def _ensure_ungrouped(self, function: str) -> None:
        if self.groups or self.havings:
            raise InvalidQueryError(f"{function}() cannot be used on a grouped query")

    async def pluck(self, column: str, key: str | None = None) -> list[Any] | dict[Any, Any]:
        """Fetch one column's values, optionally keyed by another column."""
        column, key = column_name(column), column_name(key)
        query = self.clone().select(column) if key is None else self.clone().select(column, key)
        query.eager_loads = {}
        sql, bindings = query.to_sql()
        rows = await get_session().select(sql, bindings)
        value_name = column.rsplit(".", 1)[-1]
        if key is None:
            return [row[value_name] for row in rows]
        key_name = key.rsplit(".", 1)[-1]
        return {row[key_name]: row[value_name] for row in rows}

    async def value(self, column: str) -> Any:
        values = await self.clone().limit(1).pluck(column)
        return values[0] if values else None

    async def paginate(self, page: int = 1, per_page: int = 15) -> Page[T]:
        total = await self.clone().reorder().count()
        items = await self.clone().for_page(page, per_page).get()
        return Page(items=items, total=total, page=page, per_page=per_page)

    async def chunk(self, size: int) -> AsyncIterator[list[T]]:
        """Iterate over results ``size`` rows at a time.

        Example:
            >>> async for users in User.query().chunk(500):
            ...     await notify(users)
        """
        if size <= 0:
            raise InvalidQueryError("Chunk size must be positive")
        query = self.clone()
        if not query.orders:
            query.order_by(query.qualified_key)
        page = 1
        while True:
            results = await query.clone().for_page(page, size).get()
            if not results:
                return
            yield results
            if len(results) < size:
                return
            page += 1

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        async for batch in self.chunk(1000):
            for item in batch:
                yield item

    # ========== Bulk writes (no model hooks) ==========

    async def insert(self, values: dict[str, Any] | list[dict[str, Any]]) -> int:
        """Insert one or more rows directly. Model hooks are not run."""
        rows = [values] if isinstance(values, dict) else list(values)
        if not rows:
            return 0
        for row in rows:
            for column in row:
                validate_identifier(column)
        sql, bindings = self.grammar.compile_insert(self.table, rows)
        return await get_session().statement(self.table, sql, bindings)

    async def insert_all(self, rows: list[dict[str, Any]]) -> int:
        return await self.insert(rows)

    async def insert_get_id(self, values: dict[str, Any], key: str | None = None) -> Any:
        """Insert one row and return its generated key. Model hooks are not run."""
        for column in values:
            validate_identifier(column)
        if key is None:
            key = self.model.__primary_key__ if self.model is not None else "id"
        return await get_session().insert(self.table, values, key)

    async def update(self, values: dict[str, Any] | None = None, **kwargs: Any) -> int:
        """Update every matching row. Model hooks are not run.

        Example:
            >>> await User.query().where("active", False).update(status="archived")
        """
        values = {**(values or {}), **kwargs}
        if not values:
            return 0
        for column in values:
            validate_identifier(column)
        query = self.apply_scopes()
        sql, bindings = query.grammar.compile_update(query, values)
        return await get_session().statement(self.table, sql, bindings)

    async def increment(self, column: str, amount: int | float = 1, extra: dict[str, Any] | None = None) -> int:
        validate_identifier(column)
        expression = RawExpression(f"{self.grammar.wrap(column)} + ?", (amount,))
        return await self.update({column: expression, **(extra or {})})

    async def decrement(self, column: str, amount: int | float = 1, extra: dict[str, Any] | None = None) -> int:
        validate_identifier(column)
        expression = RawExpression(f"{self.grammar.wrap(column)} - ?", (amount,))
        return await self.update({column: expression, **(extra or {})})

    async def delete(self) -> int:
        """Delete every matching row. Model hooks are not run."""
        query = self.apply_scopes()
        sql, bindings = query.grammar.compile_delete(query)
        return await get_session().statement(self.table, sql, bindings)

    def _model_name(self) -> str:
        return self.model.__name__ if self.model is not None else self.table


def _validate_having_column(column: str) -> None:
    if "(" in column:
        if not _AGGREGATE_RE.match(column.strip()):
            raise InvalidQueryError(f"Invalid aggregate expression: {column!r}")
        return
    validate_identifier(column)
