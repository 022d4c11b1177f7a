"""Single-pass running statistics used as the row reduction's combine operator.

All functions are elementwise over numpy arrays, so one call updates every lane
of every row in a wave at once. Values stay in the dtype of the stats arrays
(the accumulation type), never in the narrower storage type.
"""

from typing import NamedTuple

import numpy as np


class RunningStats(NamedTuple):
    mean: np.ndarray
    m2: np.ndarray  # sum of squared deviations, or sum of squares in RMS mode
    count: np.ndarray

    @classmethod
    def zeros(cls, shape, dtype):
        return cls(
            np.zeros(shape, dtype=dtype),
            np.zeros(shape, dtype=dtype),
            np.zeros(shape, dtype=dtype),
        )


def _select(active, new, old):
    if active is None:
        return new
    return RunningStats(*(np.where(active, n, o) for n, o in zip(new, old)))


def welford_update(curr, stats, active=None):
    """Fold one value per lane into its running mean/variance (Welford)."""
    count = stats.count + 1
    delta = curr - stats.mean
    mean = stats.mean + delta / count
    m2 = stats.m2 + delta * (curr - mean)
    return _select(active, RunningStats(mean, m2, count), stats)


def sumsq_update(curr, stats, active=None):
    """RMS-only fold: no mean is tracked, only the sum of squares."""
    new = RunningStats(stats.mean, stats.m2 + curr * curr, stats.count + 1)
    return _select(active, new, stats)


def chan_merge(a, b):
    """Combine two partial statistics (Chan et al.).

    Two empty operands give the zero statistic instead of 0/0.
    """
    count = a.count + b.count
    nonempty = count > 0
    safe = np.where(nonempty, count, 1)
    w_a = a.count / safe
    w_b = b.count / safe
    delta = b.mean - a.mean
    mean = np.where(nonempty, w_a * a.mean + w_b * b.mean, 0)
    m2 = np.where(nonempty, a.m2 + b.m2 + delta * delta * w_a * w_b * count, 0)
    dtype = np.result_type(a.mean)
    return RunningStats(mean.astype(dtype, copy=False), m2.astype(dtype, copy=False), count)


def sumsq_merge(a, b):
    return RunningStats(a.mean, a.m2 + b.m2, a.count + b.count)


def stats_ops(rms_only):
    """(update, merge) pair for the chosen normalization mode."""
    if rms_only:
        return sumsq_update, sumsq_merge
    return welford_update, chan_merge


__all__ = [
    "RunningStats",
    "chan_merge",
    "stats_ops",
    "sumsq_merge",
    "sumsq_update",
    "welford_update",
]
