"""Exact decimal helpers for on-chain quantities and prices."""
from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_EVEN, Context, Decimal, localcontext
from typing import Union

# uint256 needs 78 digits; leave headroom for products of two scaled values.
RATIONAL_PRECISION = 160

RationalLike = Union[Decimal, int, str]


def rational_context() -> Context:
    return Context(prec=RATIONAL_PRECISION, rounding=ROUND_HALF_EVEN)


def to_rational(value: RationalLike) -> Decimal:
    """Coerce ints, decimal strings and Decimals. Floats are refused."""
    if isinstance(value, bool):
        raise TypeError("booleans are not quantities")
    if isinstance(value, float):
        raise TypeError(f"refusing float {value!r}; pass a decimal string instead")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, str)):
        return Decimal(value)
    raise TypeError(f"cannot convert {type(value).__name__} to a rational")


def make_rational(raw_value: int | str, decimals: int = 0) -> Decimal:
    """Scale a raw integer amount (wei-style units) down by ``decimals``."""
    if isinstance(raw_value, str) and raw_value.startswith("0x"):
        raw_value = int(raw_value, 16)
    return to_rational(raw_value).scaleb(-decimals, context=rational_context())


def to_raw_units(value: RationalLike, decimals: int) -> int:
    """Inverse of make_rational; fractional dust below one unit is truncated."""
    scaled = to_rational(value).scaleb(decimals, context=rational_context())
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def multiply(a: RationalLike, b: RationalLike) -> Decimal:
    with localcontext(rational_context()):
        return to_rational(a) * to_rational(b)


def divide(a: RationalLike, b: RationalLike) -> Decimal:
    with localcontext(rational_context()):
        return to_rational(a) / to_rational(b)


def format_rational(value: RationalLike, places: int) -> str:
    quantum = Decimal(1).scaleb(-places)
    rounded = to_rational(value).quantize(quantum, rounding=ROUND_HALF_EVEN, context=rational_context())
    return f"{rounded:f}"


def round_rational(value: RationalLike, places: int) -> Decimal:
    return Decimal(format_rational(value, places))
