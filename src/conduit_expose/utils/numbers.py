"""Rounding helpers shared by the collectors.

Python's round() rounds halves to even; snapshot values round halves away
from zero instead.
"""

from __future__ import annotations

import math


def round_half_up(value: float, digits: int = 0) -> float:
    """Round to `digits` decimals, halves away from zero."""
    scale = 10**digits
    return math.copysign(math.floor(abs(value) * scale + 0.5) / scale, value)


def round2(value: float) -> float:
    """Round to two decimals, the precision of every reported rate/size."""
    return round_half_up(value, 2)


def bytes_to_mb(byte_count: int | float) -> float:
    """Convert bytes to mebibytes."""
    return byte_count / (1024 * 1024)
