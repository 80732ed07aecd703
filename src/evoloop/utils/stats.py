"""Small numeric helpers shared by the detection and learning code.

These operate on plain sequences of floats. Empty input yields 0.0 rather
than raising, since callers treat "no data" as a neutral value.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    """Clamp ``value`` into ``[lower, upper]``."""
    return max(lower, min(upper, value))


def mean(values: Iterable[float]) -> float:
    items = list(values)
    if not items:
        return 0.0
    return math.fsum(items) / len(items)


def population_std(values: Sequence[float], center: float | None = None) -> float:
    """Population standard deviation (divides by n, not n - 1)."""
    if not values:
        return 0.0
    mu = mean(values) if center is None else center
    return math.sqrt(math.fsum((v - mu) ** 2 for v in values) / len(values))


def median(values: Iterable[float]) -> float:
    """Upper median: for even-length input the higher middle element."""
    ordered = sorted(values)
    if not ordered:
        return 0.0
    return ordered[len(ordered) // 2]


def is_finite_number(value: object) -> bool:
    """True for int/float values that are finite. Booleans are excluded."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
