from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .errors import InvalidAmount

CENT = Decimal("0.01")
EPSILON = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_decimal(value: Any) -> Decimal:
    # bool is an int subclass; True is not a price
    if isinstance(value, bool):
        raise InvalidAmount(f"cannot use {value!r} as an amount")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidAmount(f"cannot convert {value!r} to an amount") from None
    else:
        raise InvalidAmount(f"cannot convert {type(value).__name__} to an amount")

    if not result.is_finite():
        raise InvalidAmount(f"amount must be finite, got {value!r}")
    return result


def to_decimal(value: Any) -> Decimal:
    return quantize(parse_decimal(value))


def amounts_close(a: Decimal, b: Decimal, tolerance: Decimal = EPSILON) -> bool:
    return abs(a - b) <= tolerance


def is_settled(net: Decimal) -> bool:
    return abs(net) < EPSILON


def to_display(value: Decimal) -> float:
    return float(quantize(value))
