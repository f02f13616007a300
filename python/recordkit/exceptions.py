"""Exception hierarchy for recordkit.

Every error raised by the library derives from :class:`RecordkitError`.
Errors that correspond to a standard Python failure category also inherit
from the matching builtin (``LookupError``, ``ValueError``, ...) so callers
can catch them either way.
"""

from __future__ import annotations

from typing import Any


class RecordkitError(Exception):
    """Base class for all recordkit errors."""


class ModelNotFoundError(RecordkitError, LookupError):
    """A required record lookup returned nothing.

    Example:
        >>> await User.find_or_fail(42)
        Traceback (most recent call last):
        ModelNotFoundError: No User found for id=42
    """

    def __init__(self, model: str, id: Any = None) -> None:
        self.model = model
        self.id = id
        if id is None:
            message = f"No {model} found"
        else:
            message = f"No {model} found for id={id!r}"
        super().__init__(message)


class ConstraintViolationError(RecordkitError):
    """The storage engine rejected a write because of a constraint."""

    def __init__(self, message: str, sql: str | None = None, bindings: list[Any] | None = None) -> None:
        self.sql = sql
        self.bindings = bindings or []
        super().__init__(message)


class InvalidQueryError(RecordkitError, ValueError):
    """A query was built with an invalid operator, identifier or shape."""


class MassAssignmentError(RecordkitError):
    """An attribute outside the fillable set was mass-assigned in strict mode."""

    def __init__(self, attribute: str, model: str) -> None:
        self.attribute = attribute
        self.model = model
        super().__init__(f"Add [{attribute}] to fillable property to allow mass assignment on [{model}]")


class TransactionError(RecordkitError):
    """Rolling back a failed transaction also failed.

    The original failure is available as ``__context__``; the rollback
    failure is chained as ``__cause__``.
    """

    def __init__(self, message: str, was_rolled_back: bool = False) -> None:
        self.was_rolled_back = was_rolled_back
        super().__init__(message)


class RelationNotFoundError(RecordkitError, LookupError):
    """A relation name is not declared on the model."""

    def __init__(self, relation: str, model: str) -> None:
        self.relation = relation
        self.model = model
        super().__init__(f"Call to undefined relationship [{relation}] on model [{model}]")


class RelationNotLoadedError(RecordkitError, AttributeError):
    """A declared relation was accessed as an attribute before being loaded."""

    def __init__(self, relation: str, model: str) -> None:
        self.relation = relation
        self.model = model
        super().__init__(
            f"Relationship '{relation}' on {model} is not loaded. "
            f"Use {model}.query().with_('{relation}') or await instance.load('{relation}')."
        )


class SessionNotInitializedError(RecordkitError, RuntimeError):
    """No storage adapter has been registered."""

    def __init__(self) -> None:
        super().__init__("No database session. Call recordkit.init_session(adapter) first.")


class QueryError(RecordkitError):
    """The driver failed to execute a statement."""

    def __init__(self, message: str, sql: str, bindings: list[Any] | None = None) -> None:
        self.sql = sql
        self.bindings = bindings or []
        super().__init__(f"{message} (SQL: {sql})")
