from fractions import Fraction

import pytest

from moco.quantity import QuantityError, parse_quantity


def test_binary_suffix_matches_source_expectation():
    assert parse_quantity("4Gi") == 4 << 30


def test_plain_integer():
    assert parse_quantity("4") == 4


def test_binary_suffixes_scale_by_1024():
    assert parse_quantity("1024Mi") == parse_quantity("1Gi")
    assert parse_quantity("1024Ki") == parse_quantity("1Mi")


def test_decimal_suffixes_are_consistent():
    assert parse_quantity("500m") * 2 == parse_quantity("1")
    assert parse_quantity("1000k") == parse_quantity("1M")


def test_exponent_form_equals_decimal_suffix():
    assert parse_quantity("1e3") == parse_quantity("1k")
    assert parse_quantity("1E3") == parse_quantity("1k")


def test_exa_suffix_is_not_an_exponent():
    assert parse_quantity("1E") == parse_quantity("1000P")


def test_fractional_value():
    assert parse_quantity("1.5Gi") * 2 == parse_quantity("3Gi")


def test_sign():
    assert parse_quantity("-1Gi") == -parse_quantity("1Gi")
    assert parse_quantity("+2") == parse_quantity("2")


def test_ordering():
    assert parse_quantity("1Gi") < parse_quantity("10Gi")


def test_integer_input():
    assert parse_quantity(7) == Fraction(7)


@pytest.mark.parametrize("bad", ["", "abc", "1Xi", "1.2.3", "Gi", "1 Gi", "1e"])
def test_invalid_quantities(bad):
    with pytest.raises(QuantityError):
        parse_quantity(bad)


def test_non_string_rejected():
    with pytest.raises(QuantityError):
        parse_quantity(True)