"""Immutable clause value objects accumulated by the query builder."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from recordkit.exceptions import InvalidQueryError
from recordkit.fields import ColumnInfo

if TYPE_CHECKING:
    from recordkit.query import QueryBuilder

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_ALIAS_RE = re.compile(r"\s+as\s+", re.IGNORECASE)

COMPARISON_OPERATORS = frozenset({"=", "!=", "<>", ">", "<", ">=", "<="})
WHERE_OPERATORS = COMPARISON_OPERATORS | {"LIKE", "NOT LIKE", "ILIKE", "NOT ILIKE"}
BOOLEANS = frozenset({"AND", "OR"})
DIRECTIONS = frozenset({"ASC", "DESC"})


def validate_identifier(name: str) -> str:
    """Check a column or table reference, optionally dotted.

    Raises:
        InvalidQueryError: If ``name`` is not a plain identifier
    """
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        raise InvalidQueryError(f"Invalid identifier: {name!r}")
    return name


def column_name(column: Any) -> Any:
    """Resolve a model column such as ``User.name`` to ``"users.name"``.

    Anything else is returned unchanged for the usual validation.
    """
    if isinstance(column, ColumnInfo):
        return column.qualified_name
    return column


def validate_column_reference(name: str) -> str:
    """Validate a projected column: ``col``, ``t.col``, ``*``, ``t.*`` or ``col as alias``."""
    if not isinstance(name, str):
        raise InvalidQueryError(f"Invalid column: {name!r}")
    if name == "*":
        return name
    if name.endswith(".*"):
        validate_identifier(name[:-2])
        return name
    parts = _ALIAS_RE.split(name.strip())
    if len(parts) == 2:
        validate_identifier(parts[0])
        validate_identifier(parts[1])
        return name
    return validate_identifier(name)


def split_alias(name: str) -> tuple[str, str | None]:
    """Split ``"col as alias"`` into its two halves."""
    parts = _ALIAS_RE.split(name.strip())
    if len(parts) == 2:
        return parts[0], parts[1]
    return name, None


def normalize_operator(operator: str, allowed: frozenset[str] = WHERE_OPERATORS) -> str:
    op = " ".join(str(operator).split()).upper()
    if op not in allowed:
        raise InvalidQueryError(f"Invalid operator: {operator!r}")
    return op


def normalize_boolean(boolean: str) -> str:
    value = boolean.upper()
    if value not in BOOLEANS:
        raise InvalidQueryError(f"Invalid boolean connective: {boolean!r}")
    return value


@dataclass(frozen=True, slots=True)
class RawExpression:
    """A SQL fragment rendered verbatim, with ``?`` markers for its bindings.

    Example:
        >>> query.select_raw("COUNT(*) AS total")
        >>> query.where_raw("age > ? AND age < ?", [18, 65])
    """

    sql: str
    bindings: tuple[Any, ...] = ()

    def __str__(self) -> str:
        return self.sql


@dataclass(frozen=True)
class Condition:
    """One predicate in a WHERE or HAVING list.

    ``kind`` selects how the grammar renders it:

    - ``basic``: ``column operator value``
    - ``in`` / ``not_in``: ``value`` is a tuple (or a sub-query builder)
    - ``null`` / ``not_null``
    - ``between`` / ``not_between``: ``value`` is a 2-tuple
    - ``column``: ``value`` is the second column name
    - ``exists`` / ``not_exists``: ``query`` holds the sub-query
    - ``raw``: ``value`` is a :class:`RawExpression`
    - ``nested``: ``query`` holds a builder whose wheres form a group
    """

    kind: str
    column: str | None = None
    operator: str = "="
    value: Any = None
    boolean: str = "AND"
    query: QueryBuilder | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.kind in ("between", "not_between"):
            if not isinstance(self.value, tuple) or len(self.value) != 2:
                raise InvalidQueryError("BETWEEN requires exactly two values")
        if self.kind in ("in", "not_in") and not isinstance(self.value, tuple):
            if not _is_builder(self.value):
                raise InvalidQueryError("IN requires a sequence of values or a sub-query")

    def with_boolean(self, boolean: str) -> Condition:
        return Condition(self.kind, self.column, self.operator, self.value, boolean, self.query)


@dataclass(frozen=True, slots=True)
class Join:
    """A join clause; joins carry no bindings."""

    kind: str
    table: str
    first: str | None = None
    operator: str | None = None
    second: str | None = None


@dataclass(frozen=True, slots=True)
class Order:
    column: str | RawExpression
    direction: str = "ASC"


@dataclass(frozen=True)
class Union:
    """A set operation appended to the query (``UNION``, ``INTERSECT``, ``EXCEPT``)."""

    query: QueryBuilder = field(compare=False)
    kind: str = "UNION"
    all: bool = False


# ========== Q Objects for Complex Conditions ==========

FILTER_OPERATORS = {
    "eq": "=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "ne": "!=",
    "like": "LIKE",
    "ilike": "ILIKE",
    "in": "IN",
    "notin": "NOT IN",
    "isnull": "IS NULL",
    "isnotnull": "IS NOT NULL",
    "contains": "LIKE",
    "icontains": "ILIKE",
    "startswith": "LIKE",
    "istartswith": "ILIKE",
    "endswith": "LIKE",
    "iendswith": "ILIKE",
    "between": "BETWEEN",
}


def parse_filter_key(key: str) -> tuple[str, str]:
    """Parse Django-style filter key into column and operator name.

    Example:
        >>> parse_filter_key("age__gte")
        ('age', 'gte')
        >>> parse_filter_key("posts.title__contains")
        ('posts.title', 'contains')
    """
    if "__" in key:
        parts = key.rsplit("__", 1)
        if len(parts) == 2 and parts[1] in FILTER_OPERATORS:
            return parts[0], parts[1]
    return key, "eq"


def apply_filter(query: QueryBuilder, column: str, op: str, value: Any, boolean: str = "AND") -> None:
    """Translate one parsed filter into builder calls."""
    if op == "eq":
        query.where(column, "=", value, boolean=boolean)
    elif op == "in":
        query.where_in(column, value, boolean=boolean)
    elif op == "notin":
        query.where_not_in(column, value, boolean=boolean)
    elif op == "isnull":
        if value:
            query.where_null(column, boolean=boolean)
        else:
            query.where_not_null(column, boolean=boolean)
    elif op == "isnotnull":
        if value:
            query.where_not_null(column, boolean=boolean)
        else:
            query.where_null(column, boolean=boolean)
    elif op == "between":
        query.where_between(column, value, boolean=boolean)
    elif op in ("contains", "icontains"):
        query.where(column, FILTER_OPERATORS[op], f"%{value}%", boolean=boolean)
    elif op in ("startswith", "istartswith"):
        query.where(column, FILTER_OPERATORS[op], f"{value}%", boolean=boolean)
    elif op in ("endswith", "iendswith"):
        query.where(column, FILTER_OPERATORS[op], f"%{value}", boolean=boolean)
    else:
        query.where(column, FILTER_OPERATORS[op], value, boolean=boolean)


class Q:
    """Django-style Q object for complex query conditions.

    Supports AND (&) and OR (|) operations for building complex WHERE clauses.

    Example:
        >>> # OR condition
        >>> User.query().where(Q(age__gt=18) | Q(vip=True))

        >>> # Combined
        >>> User.query().where((Q(age__gt=18) | Q(vip=True)) & Q(active=True))

        >>> # Negation
        >>> User.query().where(~Q(banned=True))
    """

    def __init__(self, **kwargs: Any) -> None:
        self.filters: list[tuple[str, str, Any]] = []
        self.children: list[Q] = []
        self.connector = "AND"
        self.negated = False

        for key, value in kwargs.items():
            col, op = parse_filter_key(key)
            self.filters.append((col, op, value))

    def _combine(self, other: Q, connector: str) -> Q:
        if not isinstance(other, Q):
            return NotImplemented
        result = Q()
        result.children = [self, other]
        result.connector = connector
        return result

    def __or__(self, other: Q) -> Q:
        """Combine with OR."""
        return self._combine(other, "OR")

    def __and__(self, other: Q) -> Q:
        """Combine with AND."""
        return self._combine(other, "AND")

    def __invert__(self) -> Q:
        """Negate the condition."""
        result = Q()
        result.filters = self.filters.copy()
        result.children = self.children.copy()
        result.connector = self.connector
        result.negated = not self.negated
        return result

    def __bool__(self) -> bool:
        return bool(self.filters or self.children)

    def __repr__(self) -> str:
        inner = self.filters if self.filters else f" {self.connector} ".join(map(repr, self.children))
        return f"<Q{' NOT' if self.negated else ''} {inner}>"

    def apply(self, query: QueryBuilder, boolean: str = "AND") -> None:
        """Add this Q tree to ``query`` as one parenthesised group."""

        def build(group: QueryBuilder) -> None:
            if self.children:
                for child in self.children:
                    child.apply(group, self.connector)
            else:
                for col, op, value in self.filters:
                    apply_filter(group, col, op, value)

        if self.negated:
            query.where_group(build, boolean=boolean, negate=True)
        else:
            query.where_group(build, boolean=boolean)


def _is_builder(value: Any) -> bool:
    from recordkit.query import QueryBuilder

    return isinstance(value, QueryBuilder)
