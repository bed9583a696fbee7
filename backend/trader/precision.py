"""
Precision handling for Binance orders

Binance rejects prices that are not multiples of PRICE_FILTER.tickSize and
quantities that are not multiples of LOT_SIZE.stepSize (error -1013).
All rounding goes through Decimal(str(x)) so 0.1 + 0.2 style float drift
never reaches an order.
"""
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[float, int, str, Decimal]


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def floor_to_increment(value: Number, increment: Number) -> float:
    """
    Round a price or amount DOWN to the nearest multiple of an increment.

    Args:
        value: The price or amount to round
        increment: Tick size or lot step (e.g. 0.01, 0.00001)

    Returns:
        Value aligned to the increment, as float

    Examples:
        >>> floor_to_increment(101.129, 0.01)
        101.12
        >>> floor_to_increment(0.123456789, 0.00001)
        0.12345
    """
    dec_increment = _to_decimal(increment)
    if dec_increment <= 0:
        return float(_to_decimal(value))

    dec_value = _to_decimal(value)
    floored = (dec_value // dec_increment) * dec_increment
    return float(floored.quantize(dec_increment, rounding=ROUND_DOWN))


def add_increments(value: Number, increment: Number, count: int = 1) -> float:
    """
    Add `count` increments to a value without float drift.

    Examples:
        >>> add_increments(101, 0.1)
        101.1
        >>> add_increments(110, 0.1, -1)
        109.9
    """
    result = _to_decimal(value) + _to_decimal(increment) * count
    return float(result)


def increment_decimals(increment: Number) -> int:
    """Number of decimal places implied by a tick size or lot step ("0.00100000" -> 3)"""
    normalized = _to_decimal(increment).normalize()
    exponent = normalized.as_tuple().exponent
    return max(-exponent, 0) if isinstance(exponent, int) else 0


def round_money(value: Number, places: int = 2) -> float:
    """Round a quote-currency amount half-up to `places` decimals"""
    quantum = Decimal(1).scaleb(-places)
    return float(_to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def format_amount(value: Number, increment: Number) -> str:
    """
    Format a price or quantity for the Binance API.

    Binance validates the string, so the number is floored to the increment
    and printed in fixed notation (never 1e-05).
    """
    floored = _to_decimal(floor_to_increment(value, increment))
    decimals = increment_decimals(increment)
    return f"{floored:.{decimals}f}"
