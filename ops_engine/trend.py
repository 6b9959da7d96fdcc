# ops_engine/trend.py
from typing import NamedTuple, Sequence

import numpy as np

from .custom_exceptions import InsufficientDataError


class TrendFit(NamedTuple):
    slope: float
    intercept: float


def fit_trend(values: Sequence[float]) -> TrendFit:
    """
    Ordinary least-squares line through `values` against the index 0..n-1.
    Raises InsufficientDataError when fewer than two points are given.
    """
    y = np.asarray(values, dtype=float)
    n = y.size
    if n <= 1:
        raise InsufficientDataError(f"Trend fit needs at least 2 points, got {n}.")

    x = np.arange(n, dtype=float)
    mean_x = x.mean()
    mean_y = y.mean()
    denominator = float(np.sum((x - mean_x) ** 2))
    if denominator == 0:
        raise InsufficientDataError("Trend fit is undefined for a constant index.")

    slope = float(np.sum((x - mean_x) * (y - mean_y))) / denominator
    intercept = float(mean_y - slope * mean_x)
    return TrendFit(slope=slope, intercept=intercept)
