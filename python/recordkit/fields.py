"""Column declarations for models."""

from __future__ import annotations

import types
import typing
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar, Union

from recordkit.casts import AttributeCast, EnumCast

if TYPE_CHECKING:
    from recordkit.base import Model

T = TypeVar("T")


class JSON:
    """Marker for JSON columns.

    Example:
        >>> class Product(Model):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     metadata: Mapped[dict] = mapped_column(JSON)
    """


# Type alias for Mapped - indicates a database column
class Mapped(Generic[T]):
    """Type annotation wrapper indicating a database-mapped column.

    Example:
        >>> class User(Model):
        ...     id: Mapped[int] = mapped_column(primary_key=True)
        ...     name: Mapped[str]
        ...     age: Mapped[int | None]
    """


@dataclass
class ForeignKey:
    """Defines a foreign key reference to another table.

    Example:
        >>> class Post(Model):
        ...     user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    """

    target: str
    ondelete: str | None = None
    onupdate: str | None = None

    @property
    def table(self) -> str:
        """Get the target table name."""
        return self.target.split(".")[0]

    @property
    def column(self) -> str:
        """Get the target column name."""
        parts = self.target.split(".")
        return parts[1] if len(parts) > 1 else "id"


@dataclass
class ColumnInfo:
    """Column metadata, and the descriptor that routes access through the caster.

    Reading ``instance.column`` returns the cast value; assigning converts
    the value to storage form immediately.
    """

    name: str | None = None
    python_type: type | None = None
    primary_key: bool = False
    nullable: bool = False
    default: Any = None
    foreign_key: ForeignKey | None = None
    cast: str | AttributeCast | None = None
    table: str | None = None

    def __get__(self, instance: Model | None, owner: type) -> Any:
        if instance is None:
            return self
        return instance.get_attribute(self.name)

    def __set__(self, instance: Model, value: Any) -> None:
        instance.set_attribute(self.name, value)

    def copy(self, name: str | None = None) -> ColumnInfo:
        return ColumnInfo(
            name=name or self.name,
            python_type=self.python_type,
            primary_key=self.primary_key,
            nullable=self.nullable,
            default=self.default,
            foreign_key=self.foreign_key,
            cast=self.cast,
        )

    @property
    def qualified_name(self) -> str:
        """The column as ``table.column``, or just the name before the model is built."""
        return f"{self.table}.{self.name}" if self.table else str(self.name)

    def default_value(self) -> Any:
        return self.default() if callable(self.default) else self.default


def mapped_column(
    type_or_fk: type | ForeignKey | None = None,
    /,
    *,
    primary_key: bool = False,
    nullable: bool = False,
    default: Any = None,
    cast: str | AttributeCast | None = None,
) -> Any:
    """Define a database column.

    Args:
        type_or_fk: Optional ForeignKey or JSON marker for this column
        primary_key: Whether this is the primary key column
        nullable: Whether NULL values are allowed
        default: Default value for new records (can be callable)
        cast: Explicit cast tag or converter; inferred from the annotation otherwise

    Example:
        >>> id: Mapped[int] = mapped_column(primary_key=True)
        >>> user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
        >>> settings: Mapped[dict] = mapped_column(JSON)
        >>> price: Mapped[Decimal] = mapped_column(cast=Cents())
    """
    foreign_key = None
    if isinstance(type_or_fk, ForeignKey):
        foreign_key = type_or_fk
    elif type_or_fk is JSON or (isinstance(type_or_fk, type) and issubclass(type_or_fk, JSON)):
        cast = cast or "json"

    if primary_key:
        nullable = False

    return ColumnInfo(
        primary_key=primary_key,
        nullable=nullable,
        default=default,
        foreign_key=foreign_key,
        cast=cast,
    )


def cast_for_type(python_type: Any) -> str | AttributeCast | None:
    """Infer the cast for an annotated Python type."""
    if python_type is None:
        return None
    if isinstance(python_type, type) and issubclass(python_type, Enum):
        return EnumCast(python_type)
    if python_type is bool:
        return "bool"
    if python_type is int:
        return "int"
    if python_type is float:
        return "double"
    if python_type is datetime:
        return "datetime"
    if python_type is date:
        return "date"
    if python_type is dict:
        return "object"
    if python_type is list:
        return "array"
    origin = typing.get_origin(python_type)
    if origin is dict:
        return "object"
    if origin is list:
        return "array"
    return None


def extract_mapped_type(hint: Any) -> tuple[Any, bool]:
    """Extract the inner type from ``Mapped[T]`` and whether it is optional."""
    args = typing.get_args(hint)
    inner = args[0] if args else hint
    origin = typing.get_origin(inner)
    if origin is Union or origin is types.UnionType:
        non_none = [a for a in typing.get_args(inner) if a is not type(None)]
        if len(non_none) == 1:
            return non_none[0], True
        return inner, True
    return inner, False
