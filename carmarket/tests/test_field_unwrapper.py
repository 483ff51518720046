"""Tests for provider value envelope helpers."""

import math

from carmarket.services.field_unwrapper import (
    best_of,
    deep_unwrap,
    extract_number,
    extract_string,
    get_path,
    unwrap,
)


class TestUnwrap:

    def test_none(self):
        assert unwrap(None) is None

    def test_envelope(self):
        assert unwrap({"value": 42, "source": "api"}) == 42

    def test_envelope_with_null_value(self):
        assert unwrap({"value": None, "source": "api"}) is None

    def test_plain_values_pass_through(self):
        assert unwrap(7) == 7
        assert unwrap("Blue") == "Blue"
        assert unwrap({"other": 1}) == {"other": 1}


class TestExtractNumber:

    def test_enveloped_string(self):
        assert extract_number({"value": "83.9"}) == 83.9

    def test_trailing_units(self):
        assert extract_number("83.9 mpg") == 83.9

    def test_not_a_number(self):
        assert extract_number("abc") is None

    def test_comma_decimal_stops_at_comma(self):
        assert extract_number("83,9") == 83.0

    def test_numbers_pass_through(self):
        assert extract_number(12) == 12
        assert extract_number(0) == 0
        assert extract_number({"value": 1.5}) == 1.5

    def test_non_finite(self):
        assert extract_number(float("nan")) is None
        assert extract_number(math.inf) is None

    def test_booleans_and_containers(self):
        assert extract_number(True) is None
        assert extract_number([1]) is None
        assert extract_number(None) is None

    def test_leading_whitespace_and_sign(self):
        assert extract_number("  -4.5kg") == -4.5


class TestExtractString:

    def test_trims(self):
        assert extract_string({"value": "  Blue  "}) == "Blue"

    def test_blank_is_none(self):
        assert extract_string("   ") is None

    def test_numbers_stringified(self):
        assert extract_string(5) == "5"
        assert extract_string(5.0) == "5"
        assert extract_string(2.5) == "2.5"

    def test_other_types(self):
        assert extract_string(None) is None
        assert extract_string(True) is None
        assert extract_string(["x"]) is None


class TestBestOf:

    def test_first_present(self):
        assert best_of(None, {"value": None}, {"value": "BMW"}, "AUDI") == "BMW"

    def test_falsy_values_count(self):
        assert best_of(None, 0, 5) == 0

    def test_nothing(self):
        assert best_of(None, {"value": None}) is None


class TestDeepUnwrap:

    def test_nested_envelopes(self):
        data = {"fuelEconomy": {"urban": {"value": 40.1}, "combined": 50}, "co2": {"value": 120, "source": "x"}}
        assert deep_unwrap(data) == {"fuelEconomy": {"urban": 40.1, "combined": 50}, "co2": 120}

    def test_lists_untouched(self):
        items = [{"value": 1}]
        assert deep_unwrap({"items": items})["items"] is items


class TestGetPath:

    def test_found(self):
        assert get_path({"a": {"b": {"c": 3}}}, "a.b.c") == 3

    def test_missing_or_wrong_type(self):
        assert get_path({"a": {"b": "str"}}, "a.b.c") is None
        assert get_path({}, "a", default="x") == "x"
