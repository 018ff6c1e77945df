"""Parser for resource quantities such as ``1Gi``, ``500m`` or ``1e3``."""

from __future__ import annotations

import re
from fractions import Fraction


class QuantityError(ValueError):
    """Raised when a quantity string cannot be parsed."""


_BINARY_SUFFIXES = {
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}
_DECIMAL_SUFFIXES = {
    "n": Fraction(1, 10**9),
    "u": Fraction(1, 10**6),
    "m": Fraction(1, 10**3),
    "": Fraction(1),
    "k": Fraction(10**3),
    "M": Fraction(10**6),
    "G": Fraction(10**9),
    "T": Fraction(10**12),
    "P": Fraction(10**15),
    "E": Fraction(10**18),
}
_NUMBER = re.compile(r"([+-]?)(\d+(?:\.\d*)?|\.\d+)(.*)", re.DOTALL)
_EXPONENT = re.compile(r"[eE]([+-]?\d+)")


def _multiplier(suffix: str, text: str) -> Fraction:
    if suffix in _BINARY_SUFFIXES:
        return Fraction(_BINARY_SUFFIXES[suffix])
    if suffix in _DECIMAL_SUFFIXES:
        return _DECIMAL_SUFFIXES[suffix]
    exponent = _EXPONENT.fullmatch(suffix)
    if exponent is not None:
        return Fraction(10) ** int(exponent.group(1))
    raise QuantityError(f"unable to parse quantity's suffix: {text!r}")


def parse_quantity(text: str | int) -> Fraction:
    """Return the exact value of a quantity string."""
    if isinstance(text, bool):
        raise QuantityError(f"quantities must be strings, not {text!r}")
    if isinstance(text, int):
        return Fraction(text)
    if not isinstance(text, str):
        raise QuantityError(f"quantities must be strings, not {text!r}")
    if not text:
        raise QuantityError("quantities must match the regular expression")
    match = _NUMBER.fullmatch(text)
    if match is None:
        raise QuantityError(f"quantities must match the regular expression: {text!r}")
    sign, number, suffix = match.groups()
    value = Fraction(number) * _multiplier(suffix, text)
    return -value if sign == "-" else value