"""Dialect grammars that render builder state into SQL and bindings.

A grammar is a stateless strategy: the same builder state always renders the
same SQL. Every component of a statement is rendered through one
:class:`CompileContext`, which hands out placeholders and records bindings in
the same pass, so placeholder ordinals and binding positions always agree
regardless of which components are present.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from recordkit.clauses import Condition, RawExpression, split_alias
from recordkit.exceptions import InvalidQueryError

if TYPE_CHECKING:
    from recordkit.query import QueryBuilder

_LITERAL_RE = re.compile(r"('(?:[^']|'')*')")
_PG_PARAM_RE = re.compile(r"\$(\d+)")


class CompileContext:
    """Accumulates bindings while a statement is rendered."""

    def __init__(self, grammar: Grammar) -> None:
        self.grammar = grammar
        self.bindings: list[Any] = []

    def parameter(self, value: Any) -> str:
        """Record ``value`` and return the placeholder for its position."""
        if isinstance(value, RawExpression):
            return self.raw(value.sql, value.bindings)
        self.bindings.append(value)
        return self.grammar.parameter(len(self.bindings))

    def raw(self, sql: str, bindings: tuple[Any, ...] | list[Any] = ()) -> str:
        """Render a raw fragment, replacing each ``?`` outside string literals."""
        values = list(bindings)
        consumed = 0
        out: list[str] = []
        for index, piece in enumerate(_LITERAL_RE.split(sql)):
            if index % 2:
                out.append(piece)
                continue
            segments = piece.split("?")
            out.append(segments[0])
            for segment in segments[1:]:
                if consumed >= len(values):
                    raise InvalidQueryError(f"Not enough bindings for raw expression: {sql!r}")
                out.append(self.parameter(values[consumed]))
                consumed += 1
                out.append(segment)
        if consumed != len(values):
            raise InvalidQueryError(f"Too many bindings for raw expression: {sql!r}")
        return "".join(out)


class Grammar:
    """Base grammar with ANSI-style double-quoted identifiers."""

    name = "generic"
    supports_returning = False
    true_literal = "1"
    false_literal = "0"

    # Column type names for schema tooling
    primary_key_type = "INTEGER PRIMARY KEY"
    timestamp_type = "TIMESTAMP"
    boolean_type = "BOOLEAN"
    json_type = "TEXT"

    def parameter(self, ordinal: int) -> str:
        """Placeholder for the binding at 1-based ``ordinal``."""
        return "?"

    def operator(self, operator: str) -> str:
        return operator

    # ========== Identifiers ==========

    def wrap(self, value: str | RawExpression) -> str:
        """Quote an identifier, segment by segment.

        Example:
            >>> SQLiteGrammar().wrap("users.name as author")
            '"users"."name" AS "author"'
        """
        if isinstance(value, RawExpression):
            return value.sql
        column, alias = split_alias(value)
        if alias is not None:
            return f"{self.wrap(column)} AS {self._wrap_segment(alias.strip())}"
        return ".".join(self._wrap_segment(segment) for segment in value.strip().split("."))

    def wrap_table(self, table: str) -> str:
        return self.wrap(table)

    def _wrap_segment(self, segment: str) -> str:
        if segment == "*":
            return segment
        if len(segment) > 1 and segment.startswith('"') and segment.endswith('"'):
            return segment
        return '"' + segment.replace('"', '""') + '"'

    def _wrap_expression(self, column: str | RawExpression) -> str:
        # Function calls (aggregates in HAVING, ...) are rendered verbatim
        if isinstance(column, RawExpression):
            return column.sql
        if "(" in column:
            return column
        return self.wrap(column)

    # ========== SELECT ==========

    def compile_select(self, query: QueryBuilder) -> tuple[str, list[Any]]:
        ctx = CompileContext(self)
        sql = self._compile_select(query, ctx)
        return sql, ctx.bindings

    def _compile_select(self, query: QueryBuilder, ctx: CompileContext) -> str:
        components = [
            self._compile_columns(query, ctx),
            self._compile_from(query),
            self._compile_joins(query),
            self._compile_wheres(query, ctx),
            self._compile_groups(query),
            self._compile_havings(query, ctx),
            self._compile_unions(query, ctx),
            self._compile_orders(query, ctx),
            self._compile_limit(query),
            self._compile_offset(query),
        ]
        return " ".join(component for component in components if component)

    def _compile_columns(self, query: QueryBuilder, ctx: CompileContext) -> str:
        select = "SELECT DISTINCT " if query.is_distinct else "SELECT "
        columns = query.columns or ["*"]
        return select + ", ".join(self._compile_column(query, column, ctx) for column in columns)

    def _compile_column(self, query: QueryBuilder, column: str | RawExpression, ctx: CompileContext) -> str:
        if isinstance(column, RawExpression):
            return ctx.raw(column.sql, column.bindings)
        name, alias = split_alias(column)
        reference = _table_reference(query.table)
        if name == "*":
            name = f"{reference}.*" if query.joins else "*"
        elif "." not in name and query.joins:
            name = f"{reference}.{name}"
        wrapped = self.wrap(name)
        if alias is not None:
            return f"{wrapped} AS {self._wrap_segment(alias.strip())}"
        return wrapped

    def _compile_from(self, query: QueryBuilder) -> str:
        return f"FROM {self.wrap_table(query.table)}"

    def _compile_joins(self, query: QueryBuilder) -> str:
        parts = []
        for join in query.joins:
            if join.kind == "CROSS":
                parts.append(f"CROSS JOIN {self.wrap_table(join.table)}")
                continue
            parts.append(
                f"{join.kind} JOIN {self.wrap_table(join.table)} "
                f"ON {self.wrap(join.first)} {join.operator} {self.wrap(join.second)}"
            )
        return " ".join(parts)

    def _compile_wheres(self, query: QueryBuilder, ctx: CompileContext) -> str:
        if not query.wheres:
            return ""
        return "WHERE " + self._compile_conditions(query.wheres, ctx)

    def _compile_conditions(self, conditions: list[Condition], ctx: CompileContext) -> str:
        parts = []
        for index, condition in enumerate(conditions):
            sql = getattr(self, f"_condition_{condition.kind}")(condition, ctx)
            # the first connective is dropped
            parts.append(sql if index == 0 else f"{condition.boolean} {sql}")
        return " ".join(parts)

    def _condition_basic(self, condition: Condition, ctx: CompileContext) -> str:
        column = self._wrap_expression(condition.column)
        operator = self.operator(condition.operator)
        return f"{column} {operator} {ctx.parameter(condition.value)}"

    def _condition_in(self, condition: Condition, ctx: CompileContext, negate: bool = False) -> str:
        column = self._wrap_expression(condition.column)
        keyword = "NOT IN" if negate else "IN"
        if not isinstance(condition.value, tuple):
            return f"{column} {keyword} ({self._compile_select(condition.value.apply_scopes(), ctx)})"
        if not condition.value:
            return "1 = 1" if negate else "0 = 1"
        placeholders = ", ".join(ctx.parameter(value) for value in condition.value)
        return f"{column} {keyword} ({placeholders})"

    def _condition_not_in(self, condition: Condition, ctx: CompileContext) -> str:
        return self._condition_in(condition, ctx, negate=True)

    def _condition_null(self, condition: Condition, ctx: CompileContext) -> str:
        return f"{self._wrap_expression(condition.column)} IS NULL"

    def _condition_not_null(self, condition: Condition, ctx: CompileContext) -> str:
        return f"{self._wrap_expression(condition.column)} IS NOT NULL"

    def _condition_between(self, condition: Condition, ctx: CompileContext, negate: bool = False) -> str:
        low, high = condition.value
        keyword = "NOT BETWEEN" if negate else "BETWEEN"
        column = self._wrap_expression(condition.column)
        return f"{column} {keyword} {ctx.parameter(low)} AND {ctx.parameter(high)}"

    def _condition_not_between(self, condition: Condition, ctx: CompileContext) -> str:
        return self._condition_between(condition, ctx, negate=True)

    def _condition_column(self, condition: Condition, ctx: CompileContext) -> str:
        return f"{self.wrap(condition.column)} {condition.operator} {self.wrap(condition.value)}"

    def _condition_exists(self, condition: Condition, ctx: CompileContext, negate: bool = False) -> str:
        keyword = "NOT EXISTS" if negate else "EXISTS"
        return f"{keyword} ({self._compile_select(condition.query.apply_scopes(), ctx)})"

    def _condition_not_exists(self, condition: Condition, ctx: CompileContext) -> str:
        return self._condition_exists(condition, ctx, negate=True)

    def _condition_raw(self, condition: Condition, ctx: CompileContext) -> str:
        return ctx.raw(condition.value.sql, condition.value.bindings)

    def _condition_nested(self, condition: Condition, ctx: CompileContext) -> str:
        inner = self._compile_conditions(condition.query.wheres, ctx)
        if condition.operator == "NOT":
            return f"NOT ({inner})"
        return f"({inner})"

    def _compile_groups(self, query: QueryBuilder) -> str:
        if not query.groups:
            return ""
        return "GROUP BY " + ", ".join(self._wrap_expression(column) for column in query.groups)

    def _compile_havings(self, query: QueryBuilder, ctx: CompileContext) -> str:
        if not query.havings:
            return ""
        return "HAVING " + self._compile_conditions(query.havings, ctx)

    def _compile_unions(self, query: QueryBuilder, ctx: CompileContext) -> str:
        parts = []
        for union in query.unions:
            keyword = f"{union.kind} ALL" if union.all else union.kind
            parts.append(f"{keyword} {self._compile_select(union.query.apply_scopes(), ctx)}")
        return " ".join(parts)

    def _compile_orders(self, query: QueryBuilder, ctx: CompileContext) -> str:
        if not query.orders:
            return ""
        parts = []
        for order in query.orders:
            if isinstance(order.column, RawExpression):
                parts.append(ctx.raw(order.column.sql, order.column.bindings))
            else:
                parts.append(f"{self._wrap_expression(order.column)} {order.direction}")
        return "ORDER BY " + ", ".join(parts)

    def _compile_limit(self, query: QueryBuilder) -> str:
        if query.limit_value is None:
            return ""
        return f"LIMIT {int(query.limit_value)}"

    def _compile_offset(self, query: QueryBuilder) -> str:
        if query.offset_value is None:
            return ""
        return f"OFFSET {int(query.offset_value)}"

    # ========== Aggregates ==========

    def compile_aggregate(self, query: QueryBuilder, function: str, column: str = "*") -> tuple[str, list[Any]]:
        """Render ``FUNCTION(column) AS aggregate`` over the query.

        Grouped, distinct, limited or compound queries are wrapped in a
        derived table so the aggregate runs over their result rows.
        """
        ctx = CompileContext(self)
        function = function.upper()
        alias = self.wrap("aggregate")

        if _needs_derived_table(query):
            inner = self._compile_select(query, ctx)
            if column == "*" or function == "COUNT":
                target = "*"
            else:
                target = self.wrap(column.rsplit(".", 1)[-1])
            sql = f"SELECT {function}({target}) AS {alias} FROM ({inner}) AS {self.wrap('temp_table')}"
            return sql, ctx.bindings

        target = "*" if column == "*" else self._wrap_expression(column)
        components = [
            f"SELECT {function}({target}) AS {alias}",
            self._compile_from(query),
            self._compile_joins(query),
            self._compile_wheres(query, ctx),
        ]
        return " ".join(component for component in components if component), ctx.bindings

    def compile_exists(self, query: QueryBuilder) -> tuple[str, list[Any]]:
        ctx = CompileContext(self)
        inner = self._compile_select(query, ctx)
        return f"SELECT EXISTS({inner}) AS {self.wrap('exists')}", ctx.bindings

    # ========== Writes ==========

    def compile_insert(self, table: str, rows: list[dict[str, Any]]) -> tuple[str, list[Any]]:
        """Render a (multi-row) INSERT with columns in sorted order."""
        ctx = CompileContext(self)
        columns = sorted({column for row in rows for column in row})
        if not columns:
            return f"INSERT INTO {self.wrap_table(table)} DEFAULT VALUES", []

        values = ", ".join(
            "(" + ", ".join(ctx.parameter(row.get(column)) for column in columns) + ")"
            for row in rows
        )
        names = ", ".join(self.wrap(column) for column in columns)
        return f"INSERT INTO {self.wrap_table(table)} ({names}) VALUES {values}", ctx.bindings

    def compile_insert_get_id(self, table: str, values: dict[str, Any], key: str = "id") -> tuple[str, list[Any]]:
        sql, bindings = self.compile_insert(table, [values])
        if self.supports_returning:
            sql = f"{sql} RETURNING {self.wrap(key)}"
        return sql, bindings

    def compile_update(self, query: QueryBuilder, values: dict[str, Any]) -> tuple[str, list[Any]]:
        """Render an UPDATE; SET bindings precede WHERE bindings."""
        ctx = CompileContext(self)
        assignments = ", ".join(f"{self.wrap(column)} = {ctx.parameter(value)}" for column, value in values.items())
        components = [
            f"UPDATE {self.wrap_table(query.table)} SET {assignments}",
            self._compile_wheres(query, ctx),
        ]
        return " ".join(component for component in components if component), ctx.bindings

    def compile_delete(self, query: QueryBuilder) -> tuple[str, list[Any]]:
        ctx = CompileContext(self)
        components = [
            f"DELETE FROM {self.wrap_table(query.table)}",
            self._compile_wheres(query, ctx),
        ]
        return " ".join(component for component in components if component), ctx.bindings

    # ========== Bindings ==========

    def prepare_bindings(self, bindings: list[Any]) -> list[Any]:
        """Convert Python values into driver-ready parameters."""
        return [self.prepare_value(value) for value in bindings]

    def prepare_value(self, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.name
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value

    def format_value_for_debug(self, value: Any) -> str:
        """Render a binding as a SQL literal, for logs and ``to_raw_sql`` only."""
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return self.true_literal if value else self.false_literal
        if isinstance(value, (int, float)):
            return str(value)
        value = self.prepare_value(value)
        if isinstance(value, bool):
            return self.true_literal if value else self.false_literal
        if isinstance(value, (int, float)):
            return str(value)
        return "'" + str(value).replace("'", "''") + "'"

    def substitute_bindings(self, sql: str, bindings: list[Any]) -> str:
        """Inline ``bindings`` into ``sql`` (debug output, never executed)."""
        values = iter(bindings)
        out = []
        for index, piece in enumerate(_LITERAL_RE.split(sql)):
            if index % 2:
                out.append(piece)
                continue
            segments = piece.split("?")
            out.append(segments[0])
            for segment in segments[1:]:
                out.append(self.format_value_for_debug(next(values, None)))
                out.append(segment)
        return "".join(out)


class SQLiteGrammar(Grammar):
    """SQLite: ``?`` placeholders, booleans stored as ``1``/``0``."""

    name = "sqlite"
    supports_returning = False

    primary_key_type = "INTEGER PRIMARY KEY AUTOINCREMENT"
    timestamp_type = "TEXT"
    boolean_type = "INTEGER"
    json_type = "TEXT"

    def operator(self, operator: str) -> str:
        # LIKE is already case-insensitive for ASCII in SQLite
        if operator == "ILIKE":
            return "LIKE"
        if operator == "NOT ILIKE":
            return "NOT LIKE"
        return operator

    def _compile_limit(self, query: QueryBuilder) -> str:
        if query.limit_value is None and query.offset_value is not None:
            return "LIMIT -1"
        return super()._compile_limit(query)

    def prepare_value(self, value: Any) -> Any:
        if isinstance(value, bool):
            return 1 if value else 0
        return super().prepare_value(value)


class PostgresGrammar(Grammar):
    """PostgreSQL: numbered ``$n`` placeholders and ``RETURNING`` for ids."""

    name = "postgresql"
    supports_returning = True
    true_literal = "TRUE"
    false_literal = "FALSE"

    primary_key_type = "SERIAL PRIMARY KEY"
    timestamp_type = "TIMESTAMP"
    boolean_type = "BOOLEAN"
    json_type = "JSONB"

    def parameter(self, ordinal: int) -> str:
        return f"${ordinal}"

    def substitute_bindings(self, sql: str, bindings: list[Any]) -> str:
        out = []
        for index, piece in enumerate(_LITERAL_RE.split(sql)):
            if index % 2:
                out.append(piece)
                continue
            out.append(
                _PG_PARAM_RE.sub(
                    lambda match: self.format_value_for_debug(_binding_at(bindings, int(match.group(1)))),
                    piece,
                )
            )
        return "".join(out)


def _binding_at(bindings: list[Any], ordinal: int) -> Any:
    if 0 < ordinal <= len(bindings):
        return bindings[ordinal - 1]
    return None


def _table_reference(table: str) -> str:
    name, alias = split_alias(table)
    return alias.strip() if alias is not None else name


def _needs_derived_table(query: QueryBuilder) -> bool:
    return bool(
        query.groups
        or query.havings
        or query.unions
        or query.is_distinct
        or query.limit_value is not None
        or query.offset_value is not None
    )


def grammar_for(dialect: str) -> Grammar:
    """Return the grammar for a dialect name (``sqlite`` or ``postgresql``)."""
    normalized = dialect.lower()
    if normalized in ("sqlite", "sqlite3"):
        return SQLiteGrammar()
    if normalized in ("postgres", "postgresql", "pg"):
        return PostgresGrammar()
    raise ValueError(f"Unsupported dialect: {dialect}")
