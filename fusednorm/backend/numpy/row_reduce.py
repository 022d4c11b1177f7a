from typing import NamedTuple

import numpy as np

from .lanes import LaneGroup
from .stats import RunningStats, stats_ops


class RowMoments(NamedTuple):
    mean: np.ndarray  # zeros in RMS mode
    var: np.ndarray  # biased: m2 / n2 (mean square in RMS mode)
    count: np.ndarray


def lane_index(launch):
    """Flat lane id within a cooperating unit, shaped (groups, group_size)."""
    y = np.arange(launch.groups_per_unit)[:, None]
    x = np.arange(launch.group_size)[None, :]
    return x + y * launch.group_size


def gather_lanes(rows, idx, active, dtype):
    """Per-lane element loads from each row of a wave, widened to `dtype`.

    idx and active broadcast to (rows, groups, group_size); inactive lanes read
    element 0 and their value must be discarded by the caller.
    """
    n_rows = rows.shape[0]
    idx = np.where(active, idx, 0)
    shape = (n_rows,) + np.shape(idx)[-2:]
    flat = np.broadcast_to(idx, shape).reshape(n_rows, -1)
    vals = np.take_along_axis(rows, flat, axis=1).reshape(shape)
    return vals.astype(dtype, copy=False)


class RowReducer:
    """Mean and variance of every row of a wave via the two-level reduction.

    Stage 1 folds each lane's share of the row through the online update,
    stage 2 merges lanes within a group with rotation shuffles, stage 3 merges
    group leaders through the scratch arena and broadcasts the result.
    """

    def __init__(self, launch, precision, rms_only=False):
        self.launch = launch
        self.accum = np.dtype(precision.accum)
        self.packed = bool(launch.vector_loads and precision.half_storage)
        self.rms_only = rms_only
        self.update, self.merge = stats_ops(rms_only)
        self.group = LaneGroup(launch.group_size)
        self.thrx = lane_index(launch)

    @staticmethod
    def scratch_layout(launch):
        half = max(launch.groups_per_unit // 2, 1)
        # (mean, m2) pairs and counts of the upper-half leaders; slots 0/1 of
        # "stats" and slot 0 of "count" double as the final broadcast.
        return {"stats": 2 * half, "count": half}

    def reduce(self, rows, row_offsets, arena):
        """rows: (R, n2) storage-typed; row_offsets: element offset of each row."""
        n2 = rows.shape[1]
        if self.packed:
            stats = self._accumulate_packed(rows, row_offsets)
        else:
            stats = self._accumulate(rows)
        stats = self.group.rotate_allreduce(stats, self.merge)
        if self.launch.groups_per_unit > 1:
            stats = self._reduce_groups(stats, arena)
        else:
            stats = RunningStats(*(f[:, 0, 0] for f in stats))
        var = stats.m2 / self.accum.type(n2)
        return RowMoments(stats.mean, var.astype(self.accum, copy=False), stats.count)

    def _zeros(self, n_rows):
        return RunningStats.zeros((n_rows,) + self.thrx.shape, self.accum)

    def _fold_tail(self, rows, stats, l):
        n2 = rows.shape[1]
        while True:
            active = l < n2
            if not active.any():
                return stats
            stats = self.update(gather_lanes(rows, l, active, self.accum), stats, active)
            l = np.where(active, l + 1, l)

    def _accumulate(self, rows):
        n_rows, n2 = rows.shape
        numx = self.thrx.size
        stats = self._zeros(n_rows)
        l = np.broadcast_to(4 * self.thrx, stats.mean.shape)
        # Chunks of 4 per lane while a whole chunk fits, strided by the unit.
        while True:
            active = l + 3 < n2
            if not active.any():
                break
            for k in range(4):
                curr = gather_lanes(rows, l + k, active, self.accum)
                stats = self.update(curr, stats, active)
            l = np.where(active, l + 4 * numx, l)
        return self._fold_tail(rows, stats, l)

    def _accumulate_packed(self, rows, row_offsets):
        n_rows, n2 = rows.shape
        numx = self.thrx.size
        stats = self._zeros(n_rows)
        # A row starting on an odd element is not aligned for pair loads: lane 0
        # folds the leading element alone and every lane starts one later.
        odd = (np.asarray(row_offsets) % 2 == 1)[:, None, None]
        lead = odd & (self.thrx == 0)
        if lead.any():
            head = gather_lanes(rows, np.zeros_like(self.thrx), lead, self.accum)
            stats = self.update(head, stats, lead)
        l = 8 * self.thrx + odd.astype(np.int64)
        while True:
            active = l + 7 < n2
            if not active.any():
                break
            for k in range(0, 8, 2):
                lo, hi = self._load_pair(rows, l + k, active)
                stats = self.update(lo, stats, active)
                stats = self.update(hi, stats, active)
            l = np.where(active, l + 8 * numx, l)
        return self._fold_tail(rows, stats, l)

    def _load_pair(self, rows, idx, active):
        # One aligned two-element load, each half widened to the accumulator.
        n_rows = rows.shape[0]
        shape = (n_rows,) + self.thrx.shape
        start = np.broadcast_to(np.where(active, idx, 0), shape).reshape(n_rows, -1)
        both = np.stack(
            [
                np.take_along_axis(rows, start, axis=1),
                np.take_along_axis(rows, start + 1, axis=1),
            ],
            axis=-1,
        ).astype(self.accum)
        return both[..., 0].reshape(shape), both[..., 1].reshape(shape)

    def _reduce_groups(self, stats, arena):
        n_rows = stats.mean.shape[0]
        width = self.launch.group_size
        leaders = RunningStats(*(f[:, :, 0] for f in stats))  # (R, groups)
        offset = self.launch.groups_per_unit // 2
        while offset > 0:
            upper = np.arange(offset, 2 * offset)
            slot = upper - offset
            lanes = upper * width
            arena.store("stats", 2 * slot, lanes, leaders.mean[:, upper], units=n_rows)
            arena.store("stats", 2 * slot + 1, lanes, leaders.m2[:, upper], units=n_rows)
            arena.store("count", slot, lanes, leaders.count[:, upper], units=n_rows)
            arena.barrier()
            lower = np.arange(offset)
            lanes = lower * width
            other = RunningStats(
                arena.load("stats", 2 * lower, lanes, units=n_rows),
                arena.load("stats", 2 * lower + 1, lanes, units=n_rows),
                arena.load("count", lower, lanes, units=n_rows),
            )
            mine = RunningStats(*(f[:, :offset] for f in leaders))
            merged = self.merge(mine, other)
            leaders = RunningStats(
                *(np.concatenate([m, f[:, offset:]], axis=1) for m, f in zip(merged, leaders))
            )
            arena.barrier()
            offset //= 2

        # Unit leader publishes, every lane picks the result up.
        arena.store(
            "stats",
            np.array([0, 1]),
            0,
            np.stack([leaders.mean[:, 0], leaders.m2[:, 0]], axis=1),
            units=n_rows,
        )
        arena.store("count", np.array([0]), 0, leaders.count[:, :1], units=n_rows)
        arena.barrier()
        all_lanes = self.thrx.ravel()
        zeros = np.zeros_like(all_lanes)
        mean = arena.load("stats", zeros, all_lanes, units=n_rows)
        m2 = arena.load("stats", zeros + 1, all_lanes, units=n_rows)
        count = arena.load("count", zeros, all_lanes, units=n_rows)
        return RunningStats(mean[:, 0], m2[:, 0], count[:, 0])


__all__ = ["RowMoments", "RowReducer", "gather_lanes", "lane_index"]
