"""
Decimal Utilities

Exchanges send prices and amounts as strings, floats or ints. Everything that
feeds order math goes through Decimal to keep fills and averages exact.
"""

from decimal import Decimal, ROUND_DOWN, InvalidOperation
from typing import Any, Optional


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Decimal:
    """
    Convert an exchange value to Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary
    expansion.

    Raises:
        ValueError: If the value cannot be converted and no default is given
    """
    if value is None or value == "":
        if default is not None:
            return default
        raise ValueError("Cannot convert empty value to Decimal")

    if isinstance(value, Decimal):
        return value

    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        if default is not None:
            return default
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def clamp_decimal(
    value: Decimal,
    minimum: Optional[Decimal] = None,
    maximum: Optional[Decimal] = None,
    step_size: Optional[Decimal] = None
) -> Decimal:
    """
    Clamp a price or quantity into market bounds and round down to the step size.

    Examples:
        >>> clamp_decimal(Decimal("1.23456"), Decimal("0.001"), Decimal("100"), Decimal("0.01"))
        Decimal('1.23')
        >>> clamp_decimal(Decimal("500"), maximum=Decimal("100"))
        Decimal('100')
    """
    if minimum is not None and minimum > 0 and value < minimum:
        value = minimum

    if maximum is not None and maximum > 0 and value > maximum:
        value = maximum

    if step_size is not None and step_size > 0:
        value = (value / step_size).to_integral_value(rounding=ROUND_DOWN) * step_size
        # Keep the exponent of the step so 1.2300000 prints as 1.23
        value = value.quantize(step_size.normalize()) if step_size.normalize().as_tuple().exponent < 0 else value

    return value


def to_optional_decimal(value: Any) -> Optional[Decimal]:
    """Like to_decimal, but None and "" stay None."""
    if value is None or value == "":
        return None
    return to_decimal(value)
