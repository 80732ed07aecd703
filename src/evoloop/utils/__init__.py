"""Shared utilities for evoloop.

Contains cross-cutting helpers used by multiple components.
"""

from evoloop.utils.stats import clamp, mean, median, population_std
from evoloop.utils.time import utc_now

__all__ = [
    "clamp",
    "mean",
    "median",
    "population_std",
    "utc_now",
]
