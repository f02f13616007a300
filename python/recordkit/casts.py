"""Attribute casting between storage form and Python values.

Records keep their attributes in *storage form* (what the database returns
and accepts). Reads convert lazily through :func:`cast_from_storage`, writes
convert immediately through :func:`cast_to_storage`.

A cast is either a tag string (``"int"``, ``"bool"``, ``"datetime"``,
``"json"``, ...) or an :class:`AttributeCast` instance. Tag strings may carry
modifiers such as ``"int?"``, ``"json!"`` or ``"datetime:iso"``; only the base
tag is significant.
"""

from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

INT_TAGS = frozenset({"int", "integer"})
DOUBLE_TAGS = frozenset({"double", "float", "real", "num", "decimal"})
BOOL_TAGS = frozenset({"bool", "boolean"})
DATETIME_TAGS = frozenset({"datetime", "timestamp"})
DATE_TAGS = frozenset({"date"})
JSON_TAGS = frozenset({"json", "array", "object", "list", "dict", "map"})
STRING_TAGS = frozenset({"str", "string", "text"})

KNOWN_TAGS = INT_TAGS | DOUBLE_TAGS | BOOL_TAGS | DATETIME_TAGS | DATE_TAGS | JSON_TAGS | STRING_TAGS

T = TypeVar("T")
R = TypeVar("R")
E = TypeVar("E", bound=Enum)

_TRUE_STRINGS = frozenset({"1", "true", "t", "yes"})
_FALSE_STRINGS = frozenset({"0", "false", "f", "no"})


@runtime_checkable
class AttributeCast(Protocol[T, R]):
    """Custom two-way converter for a single attribute.

    ``from_storage`` turns the stored value into the Python value returned by
    attribute reads; ``to_storage`` does the reverse on writes. Both receive
    the record's full attribute map. Exceptions raised here propagate to the
    caller.

    Example:
        >>> class Money:
        ...     def from_storage(self, raw, attributes):
        ...         return Decimal(raw) / 100
        ...     def to_storage(self, value, attributes):
        ...         return int(value * 100)
        >>>
        >>> class Order(Model):
        ...     __casts__ = {"total": Money()}
    """

    def from_storage(self, raw: R, attributes: dict[str, Any]) -> T: ...

    def to_storage(self, value: T, attributes: dict[str, Any]) -> R: ...


class EnumCast:
    """Store enum members by name, read them back by name or index."""

    def __init__(self, enum_type: type[Enum]) -> None:
        self.enum_type = enum_type

    def from_storage(self, raw: Any, attributes: dict[str, Any]) -> Enum | None:
        return cast_enum(raw, self.enum_type)

    def to_storage(self, value: Any, attributes: dict[str, Any]) -> Any:
        if isinstance(value, Enum):
            return value.name
        return value

    def __repr__(self) -> str:
        return f"EnumCast({self.enum_type.__name__})"


def normalize_tag(tag: str) -> str:
    """Strip nullability markers and ``:format`` suffixes from a cast tag.

    Example:
        >>> normalize_tag("datetime:iso?")
        'datetime'
    """
    base = tag.strip().split(":", 1)[0]
    return base.rstrip("?!").strip().lower()


def cast_from_storage(value: Any, cast: str | AttributeCast | None, attributes: dict[str, Any] | None = None) -> Any:
    """Convert a stored value to its Python form.

    ``None`` is never cast. Values that cannot be parsed for a tag yield
    ``None``; custom casts propagate their own errors.
    """
    if value is None or cast is None:
        return value

    if not isinstance(cast, str):
        return cast.from_storage(value, attributes if attributes is not None else {})

    tag = normalize_tag(cast)
    if tag in INT_TAGS:
        return _to_int(value)
    if tag in DOUBLE_TAGS:
        return _to_float(value)
    if tag in BOOL_TAGS:
        return _to_bool(value)
    if tag in DATETIME_TAGS:
        return _to_datetime(value)
    if tag in DATE_TAGS:
        return _to_date(value)
    if tag in JSON_TAGS:
        return _decode_json(value, tag)
    if tag in STRING_TAGS:
        return value if isinstance(value, str) else str(value)
    return value


def cast_to_storage(
    value: Any, cast: str | AttributeCast | None = None, attributes: dict[str, Any] | None = None
) -> Any:
    """Convert a Python value to its storage form.

    Booleans become ``1``/``0``, datetimes ISO-8601 text, enum members their
    name and structured values JSON text.
    """
    if value is None:
        return None

    if cast is not None and not isinstance(cast, str):
        return cast.to_storage(value, attributes if attributes is not None else {})

    tag = normalize_tag(cast) if cast is not None else None

    # bool is an int subclass, so it goes first
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if tag in JSON_TAGS:
        if isinstance(value, str):
            return value
        return encode_json(value)
    if isinstance(value, (dict, list, tuple)):
        return encode_json(value)
    if tag in INT_TAGS and isinstance(value, float) and value.is_integer():
        return int(value)
    if _is_structured(value):
        return encode_json(value)
    return value


def cast_enum(value: Any, enum_type: type[E]) -> E | None:
    """Resolve a stored value to a member of ``enum_type``.

    Names are matched first, then an integer index into the member list.
    Anything else yields ``None``.

    Example:
        >>> cast_enum("ADMIN", Role)
        <Role.ADMIN: 'admin'>
        >>> cast_enum(0, Role)
        <Role.ADMIN: 'admin'>
    """
    if value is None:
        return None
    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        member = enum_type.__members__.get(value)
        if member is not None:
            return member
        if not value.lstrip("-").isdigit():
            return None
    index = _to_int(value)
    members = list(enum_type)
    if index is None or index < 0 or index >= len(members):
        return None
    return members[index]


def encode_json(value: Any) -> str:
    """Serialize a structured value, honouring ``to_dict``/``to_json``."""
    return json.dumps(value, default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.name
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "to_json"):
        encoded = value.to_json()
        return json.loads(encoded) if isinstance(encoded, str) else encoded
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _is_structured(value: Any) -> bool:
    if isinstance(value, (str, bytes, int, float)):
        return False
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return True
    return hasattr(value, "to_dict") or hasattr(value, "to_json")


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        try:
            return int(value)
        except (ValueError, OverflowError):
            return None
    try:
        return int(str(value).strip())
    except ValueError:
        pass
    try:
        return int(float(str(value).strip()))
    except (ValueError, OverflowError):
        return None


def _to_float(value: Any) -> float | None:
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return None


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError:
        return None


def _to_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = _to_datetime(value)
    return parsed.date() if parsed is not None else None


def _decode_json(value: Any, tag: str) -> Any:
    if isinstance(value, (bytes, bytearray, str)):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if tag in ("array", "list") and not isinstance(value, list):
        return None
    if tag in ("object", "dict", "map") and not isinstance(value, dict):
        return None
    return value
