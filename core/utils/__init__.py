"""
Core Utilities Package

Modules:
    - time: Timestamp conversion and normalization utilities
    - decimal: Decimal conversion and price/quantity clamping
"""

from core.utils.time import to_utc_datetime
from core.utils.decimal import to_decimal, to_optional_decimal, clamp_decimal

__all__ = ["to_utc_datetime", "to_decimal", "to_optional_decimal", "clamp_decimal"]
