"""Global scopes: named constraints added to every query of a model."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from recordkit.base import Model
    from recordkit.query import QueryBuilder


@runtime_checkable
class Scope(Protocol):
    """A reusable global scope.

    Plain callables taking the builder work as scopes too.

    Example:
        >>> class TenantScope:
        ...     def __init__(self, tenant_id):
        ...         self.tenant_id = tenant_id
        ...     def apply(self, query, model):
        ...         query.where(f"{model.__tablename__}.tenant_id", self.tenant_id)
        >>>
        >>> Invoice.add_global_scope("tenant", TenantScope(42))
        >>> await Invoice.query().without_global_scope("tenant").count()
    """

    def apply(self, query: QueryBuilder, model: type[Model]) -> Any: ...


class SoftDeletingScope:
    """Hides rows whose deletion marker is set."""

    def __repr__(self) -> str:
        return "<SoftDeletingScope>"

    def apply(self, query: QueryBuilder, model: type[Model]) -> None:
        column = getattr(model, "__deleted_at_column__", "deleted_at")
        query.where_null(f"{model.__tablename__}.{column}")
