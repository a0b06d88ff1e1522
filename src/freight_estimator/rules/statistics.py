"""Small numeric helpers shared by the rate engine and the seasonality analysis."""
from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence, Tuple


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def standard_deviation(values: Sequence[float]) -> float:
    """Sample standard deviation (n-1); 0.0 when fewer than two values are given."""

    n = len(values)
    if n <= 1:
        return 0.0
    avg = mean(values)
    squared = sum((v - avg) ** 2 for v in values)
    return math.sqrt(squared / (n - 1))


def weighted_mean(pairs: Iterable[Tuple[float, float]]) -> Optional[float]:
    """Mean of ``(value, weight)`` pairs, or None when the weights sum to zero."""

    weighted_sum = 0.0
    total_weight = 0.0
    for value, weight in pairs:
        weighted_sum += value * weight
        total_weight += weight
    if total_weight <= 0:
        return None
    return weighted_sum / total_weight


def round_half_up(value: float, places: int = 0) -> float:
    """Round with halves away from zero (``round`` in Python is banker's rounding)."""

    exponent = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(exponent, rounding=ROUND_HALF_UP))
