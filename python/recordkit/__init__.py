"""recordkit - an async Active-Record ORM for SQLite and PostgreSQL."""

from __future__ import annotations

from recordkit.adapters import StorageAdapter, TransactionContext, connect
from recordkit.base import Model, Pivot
from recordkit.casts import AttributeCast, EnumCast
from recordkit.clauses import Q, RawExpression
from recordkit.config import DatabaseConfig
from recordkit.exceptions import (
    ConstraintViolationError,
    InvalidQueryError,
    MassAssignmentError,
    ModelNotFoundError,
    QueryError,
    RecordkitError,
    RelationNotFoundError,
    RelationNotLoadedError,
    SessionNotInitializedError,
    TransactionError,
)
from recordkit.fields import JSON, ForeignKey, Mapped, mapped_column
from recordkit.grammar import Grammar, PostgresGrammar, SQLiteGrammar
from recordkit.mixins import SoftDeleteMixin, TimestampsMixin, UuidMixin
from recordkit.query import Page, QueryBuilder
from recordkit.relationships import (
    belongs_to,
    belongs_to_many,
    has_many,
    has_many_through,
    has_one,
    morph_many,
    morph_map,
    morph_one,
    morph_to,
    morph_to_many,
    morphed_by_many,
)
from recordkit.scopes import Scope
from recordkit.session import (
    Session,
    create_session,
    get_session,
    init_session,
    reset_session,
    session_context,
    transaction,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "connect",
    "init_session",
    "get_session",
    "reset_session",
    "create_session",
    "session_context",
    "transaction",
    "Session",
    "StorageAdapter",
    "TransactionContext",
    "DatabaseConfig",
    # Model definition
    "Model",
    "Pivot",
    "Mapped",
    "mapped_column",
    "ForeignKey",
    "JSON",
    "AttributeCast",
    "EnumCast",
    "SoftDeleteMixin",
    "TimestampsMixin",
    "UuidMixin",
    "Scope",
    # Relations
    "has_one",
    "has_many",
    "belongs_to",
    "belongs_to_many",
    "has_many_through",
    "morph_one",
    "morph_many",
    "morph_to",
    "morph_to_many",
    "morphed_by_many",
    "morph_map",
    # Query building
    "QueryBuilder",
    "Page",
    "Q",
    "RawExpression",
    "Grammar",
    "SQLiteGrammar",
    "PostgresGrammar",
    # Errors
    "RecordkitError",
    "ModelNotFoundError",
    "ConstraintViolationError",
    "InvalidQueryError",
    "MassAssignmentError",
    "TransactionError",
    "RelationNotFoundError",
    "RelationNotLoadedError",
    "SessionNotInitializedError",
    "QueryError",
]
