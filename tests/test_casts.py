"""Tests for attribute casting."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum

import pytest

from recordkit.casts import EnumCast, cast_enum, cast_from_storage, cast_to_storage, normalize_tag


class Role(Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


@dataclass
class Point:
    x: int
    y: int


class Cents:
    """Store decimal amounts as integer cents."""

    def from_storage(self, raw, attributes):
        return raw / 100

    def to_storage(self, value, attributes):
        return int(round(value * 100))


class Exploding:
    def from_storage(self, raw, attributes):
        raise ValueError("bad stored value")

    def to_storage(self, value, attributes):
        raise ValueError("bad value")


class TestTags:
    """Test cast tag normalization."""

    def test_modifiers_are_ignored(self) -> None:
        assert normalize_tag("int?") == "int"
        assert normalize_tag("json!") == "json"
        assert normalize_tag("datetime:iso") == "datetime"
        assert normalize_tag(" Bool ") == "bool"

    def test_unknown_tag_passes_through(self) -> None:
        assert cast_from_storage("abc", "geometry") == "abc"

    def test_none_is_never_cast(self) -> None:
        assert cast_from_storage(None, "int") is None
        assert cast_from_storage(None, Exploding()) is None
        assert cast_to_storage(None, "json") is None


class TestReads:
    """Test storage form -> Python value."""

    def test_int(self) -> None:
        assert cast_from_storage("42", "int") == 42
        assert cast_from_storage("4.0", "integer") == 4
        assert cast_from_storage(7.9, "int") == 7
        assert cast_from_storage("abc", "int") is None

    def test_double(self) -> None:
        assert cast_from_storage("1.5", "double") == 1.5
        assert cast_from_storage(2, "float") == 2.0
        assert cast_from_storage("nope", "real") is None

    def test_bool(self) -> None:
        assert cast_from_storage(1, "bool") is True
        assert cast_from_storage(0, "bool") is False
        assert cast_from_storage("true", "boolean") is True
        assert cast_from_storage("f", "bool") is False
        assert cast_from_storage(2, "bool") is None
        assert cast_from_storage("maybe", "bool") is None

    def test_datetime(self) -> None:
        assert cast_from_storage("2024-03-01T12:30:00", "datetime") == datetime(2024, 3, 1, 12, 30)
        assert cast_from_storage("2024-03-01 12:30:00", "timestamp") == datetime(2024, 3, 1, 12, 30)
        assert cast_from_storage("yesterday", "datetime") is None

    def test_date(self) -> None:
        assert cast_from_storage("2024-03-01", "date") == date(2024, 3, 1)
        assert cast_from_storage("2024-03-01T12:30:00", "date") == date(2024, 3, 1)

    def test_json_shapes(self) -> None:
        assert cast_from_storage('{"a": 1}', "json") == {"a": 1}
        assert cast_from_storage("[1, 2]", "array") == [1, 2]
        assert cast_from_storage('{"a": 1}', "array") is None
        assert cast_from_storage("[1]", "object") is None
        assert cast_from_storage("{broken", "json") is None

    def test_non_finite_int_is_none(self) -> None:
        assert cast_from_storage("inf", "int") is None
        assert cast_from_storage(float("nan"), "int") is None
        assert cast_from_storage(float("inf"), "int") is None

    def test_json_bytes(self) -> None:
        assert cast_from_storage(b'{"a": 1}', "json") == {"a": 1}
        assert cast_from_storage(b"\xff", "json") is None

    def test_string(self) -> None:
        assert cast_from_storage(12, "string") == "12"


class TestWrites:
    """Test Python value -> storage form."""

    def test_bool_becomes_integer(self) -> None:
        assert cast_to_storage(True) == 1
        assert cast_to_storage(False, "bool") == 0

    def test_datetime_becomes_iso_text(self) -> None:
        assert cast_to_storage(datetime(2024, 3, 1, 12, 30)) == "2024-03-01T12:30:00"
        assert cast_to_storage(date(2024, 3, 1)) == "2024-03-01"

    def test_enum_becomes_name(self) -> None:
        assert cast_to_storage(Role.EDITOR) == "EDITOR"

    def test_structured_values_become_json(self) -> None:
        assert json.loads(cast_to_storage({"a": [1, 2]})) == {"a": [1, 2]}
        assert json.loads(cast_to_storage(Point(1, 2))) == {"x": 1, "y": 2}

    def test_json_tag_keeps_strings(self) -> None:
        assert cast_to_storage('{"a": 1}', "json") == '{"a": 1}'

    def test_integral_float_for_int_column(self) -> None:
        assert cast_to_storage(3.0, "int") == 3
        assert cast_to_storage(3.5, "int") == 3.5


class TestEnums:
    """Test enum resolution."""

    def test_by_name(self) -> None:
        assert cast_enum("ADMIN", Role) is Role.ADMIN

    def test_by_index(self) -> None:
        assert cast_enum(1, Role) is Role.EDITOR
        assert cast_enum("2", Role) is Role.VIEWER

    def test_unknown(self) -> None:
        assert cast_enum("OWNER", Role) is None
        assert cast_enum(9, Role) is None
        assert cast_enum(-1, Role) is None

    def test_enum_cast(self) -> None:
        cast = EnumCast(Role)
        assert cast.to_storage(Role.VIEWER, {}) == "VIEWER"
        assert cast.from_storage("VIEWER", {}) is Role.VIEWER


class TestCustomCasts:
    """Test user-supplied converters."""

    def test_round_trip(self) -> None:
        assert cast_to_storage(12.34, Cents()) == 1234
        assert cast_from_storage(1234, Cents()) == 12.34

    def test_errors_propagate(self) -> None:
        with pytest.raises(ValueError, match="bad stored value"):
            cast_from_storage(1, Exploding())
        with pytest.raises(ValueError, match="bad value"):
            cast_to_storage(1, Exploding())
