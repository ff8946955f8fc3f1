"""Tests for the named transform library."""

from datetime import UTC, datetime

import pytest

from mapspine.core.errors import FunctionNotFoundError, TransformationError
from mapspine.framework.transforms import BUILTIN_TRANSFORMS, TransformLibrary


@pytest.fixture()
def library():
    return TransformLibrary()


class TestRegistry:
    def test_builtins_present(self, library):
        assert set(BUILTIN_TRANSFORMS) <= set(library.names())
        assert "uppercase" in library
        assert "nope" not in library

    def test_unknown_transform(self, library):
        with pytest.raises(FunctionNotFoundError) as excinfo:
            library.get("nope")
        assert excinfo.value.code == "FUNCTION_NOT_FOUND"
        assert excinfo.value.name == "nope"

    def test_register_and_override(self, library):
        library.register("reverse", lambda value, options: value[::-1])
        library.register("uppercase", lambda value, options: "overridden")
        assert library.apply("reverse", "abc") == "cba"
        assert library.apply("uppercase", "abc") == "overridden"
        # the module-level table is untouched
        assert TransformLibrary().apply("uppercase", "abc") == "ABC"

    def test_constructor_extras(self):
        library = TransformLibrary({"double": lambda v, o: v * 2})
        assert library.apply("double", 4) == 8


class TestStringTransforms:
    @pytest.mark.parametrize(
        ("name", "value", "options", "expected"),
        [
            ("uppercase", "abc", {}, "ABC"),
            ("lowercase", "AbC", {}, "abc"),
            ("trim", "  x  ", {}, "x"),
            ("capitalize", "hELLO", {}, "Hello"),
            ("title", "jane DOE", {}, "Jane Doe"),
            ("replace", "a-b-c", {"pattern": "-", "replacement": "/"}, "a/b/c"),
            ("substring", "abcdef", {"start": 1, "end": 3}, "bc"),
            ("pad", "7", {"length": 3, "char": "0"}, "007"),
            ("pad", "7", {"length": 3, "char": "0", "side": "right"}, "700"),
            ("uppercase", None, {}, None),
        ],
    )
    def test_values(self, library, name, value, options, expected):
        assert library.apply(name, value, options) == expected

    def test_replace_requires_pattern(self, library):
        with pytest.raises(TransformationError):
            library.apply("replace", "x")


class TestNumberTransforms:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("42", 42), ("1,234", 1234), ("3.5", 3.5), ("", None), ("abc", None), (7, 7), (None, None)],
    )
    def test_to_number(self, library, value, expected):
        assert library.apply("to_number", value) == expected

    def test_round_is_half_up(self, library):
        assert library.apply("round", 2.5) == 3
        assert library.apply("round", "1.005", {"decimals": 2}) == 1.01

    def test_arithmetic(self, library):
        assert library.apply("abs", "-4") == 4
        assert library.apply("multiply", "3", {"factor": 1.5}) == 4.5
        assert library.apply("add", 2, {"amount": 3}) == 5
        assert library.apply("add", None, {"amount": 3}) is None
        assert library.apply("to_integer", "9.7") == 9


class TestDateTransforms:
    def test_to_iso(self, library):
        assert library.apply("to_iso", "2024-01-15T12:00:00+02:00") == "2024-01-15T10:00:00Z"
        assert library.apply("to_iso", "2024-01-15") == "2024-01-15T00:00:00Z"
        assert library.apply("to_iso", None) is None

    def test_parse_with_format(self, library):
        parsed = library.apply("parse_date", "15/01/2024", {"format": "%d/%m/%Y"})
        assert parsed == datetime(2024, 1, 15)

    def test_format_date(self, library):
        assert library.apply("format_date", "2024-01-15T08:30:00Z", {"format": "%d.%m.%Y"}) == "15.01.2024"
        assert library.apply("format_date", 0) == "1970-01-01"

    def test_unparseable(self, library):
        with pytest.raises(TransformationError, match="Cannot parse date"):
            library.apply("to_iso", "not a date")

    def test_datetime_passthrough(self, library):
        moment = datetime(2024, 1, 15, tzinfo=UTC)
        assert library.apply("parse_date", moment) is moment


class TestArrayAndTypeTransforms:
    def test_arrays(self, library):
        assert library.apply("join", ["a", None, 3], {"separator": "|"}) == "a||3"
        assert library.apply("first", [4, 5]) == 4
        assert library.apply("last", [4, 5]) == 5
        assert library.apply("first", []) is None
        assert library.apply("unique", [3, 1, 3, 2, 1]) == [3, 1, 2]
        assert library.apply("length", "abcd") == 4
        assert library.apply("length", None) == 0
        assert library.apply("join", "solo") == "solo"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("yes", True), ("OFF", False), ("", False), (0, False), ([1], True), ("maybe", True)],
    )
    def test_to_boolean(self, library, value, expected):
        assert library.apply("to_boolean", value) is expected

    def test_to_string(self, library):
        assert library.apply("to_string", None) == ""
        assert library.apply("to_string", True) == "true"
        assert library.apply("to_string", 1.5) == "1.5"


class TestConditionalTransforms:
    def test_default(self, library):
        assert library.apply("default", None, {"value": "n/a"}) == "n/a"
        assert library.apply("default", "", {"value": "n/a"}) == ""
        assert library.apply("default", "", {"value": "n/a", "empty": True}) == "n/a"
        assert library.apply("default", 0, {"value": "n/a"}) == 0

    def test_map_value(self, library):
        options = {"mapping": {"A": "Active", "1": "one"}}
        assert library.apply("map_value", "A", options) == "Active"
        assert library.apply("map_value", 1, options) == "one"
        assert library.apply("map_value", "Z", options) == "Z"
        assert library.apply("map_value", "Z", {**options, "default": "Unknown"}) == "Unknown"
