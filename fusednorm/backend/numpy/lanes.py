"""Lane-level building blocks for the numpy emulation of the GPU kernels.

Lanes live on the trailing axis of an array; any leading axes (rows of a wave,
groups of a unit) are carried along untouched. A LaneGroup exchanges values
between lanes at a fixed relative offset without going through memory, the
way a warp shuffle does. Everything wider than one group goes through a
ScratchArena, which also checks that every cross-lane access is separated by
a barrier.
"""

import numpy as np

from fusednorm.errors import ScratchRaceError

_NO_LANE = -1
_MANY_LANES = -2


def _map_fields(value, fn):
    # Shuffles apply field by field to tuples of per-lane arrays.
    if isinstance(value, tuple):
        items = [fn(v) for v in value]
        if hasattr(value, "_fields"):
            return type(value)(*items)
        return tuple(items)
    return fn(value)


class LaneGroup:
    """A fixed-width set of lanes that read each other's registers directly."""

    def __init__(self, width=32):
        if width <= 0 or width & (width - 1):
            raise ValueError(f"group width must be a power of two, got {width}")
        self.width = width
        self.lane_ids = np.arange(width)

    def shuffle_rotate(self, value, offset):
        """Lane i receives the value held by lane (i + offset) mod width."""
        return _map_fields(value, lambda v: np.roll(v, -offset, axis=-1))

    def shuffle_xor(self, value, mask):
        """Lane i receives the value held by lane i ^ mask."""
        src = self.lane_ids ^ mask
        return _map_fields(value, lambda v: v[..., src])

    def rotate_allreduce(self, value, combine):
        # After step k lane i holds lanes [i, i + 2**(k+1)), so log2(width)
        # steps leave the full group result in every lane.
        offset = 1
        while offset < self.width:
            value = combine(value, self.shuffle_rotate(value, offset))
            offset *= 2
        return value

    def butterfly_allreduce(self, value, combine):
        mask = self.width // 2
        while mask > 0:
            value = combine(value, self.shuffle_xor(value, mask))
            mask //= 2
        return value


class ScratchArena:
    """Unit-local shared memory, sized once per launch and split into regions.

    The buffer holds one copy per cooperating unit. Calls take `units`, the
    number of leading units active in the current wave. Each slot remembers
    which lane wrote it and which lanes read it since the last barrier; a
    cross-lane read-after-write, write-after-read or write-after-write
    without a barrier in between raises ScratchRaceError.
    """

    def __init__(self, num_units, layout, dtype):
        self._regions = {}
        offset = 0
        for name, size in layout.items():
            self._regions[name] = (offset, int(size))
            offset += int(size)
        self.num_units = int(num_units)
        self.size = offset
        self.dtype = np.dtype(dtype)
        self.barriers = 0
        self._buf = np.zeros((self.num_units, offset), dtype=self.dtype)
        self._writer = np.full((self.num_units, offset), _NO_LANE, dtype=np.int64)
        self._reader = np.full((self.num_units, offset), _NO_LANE, dtype=np.int64)

    def region_size(self, name):
        return self._regions[name][1]

    def _index(self, name, slots):
        offset, size = self._regions[name]
        slots = np.asarray(slots, dtype=np.int64)
        if slots.size and (slots.min() < 0 or slots.max() >= size):
            raise IndexError(f"slot out of range for scratch region '{name}' of size {size}")
        return offset + slots

    def _units(self, units):
        return slice(0, self.num_units if units is None else int(units))

    def store(self, name, slots, lanes, values, units=None):
        idx = self._index(name, slots)
        lanes = np.broadcast_to(np.asarray(lanes, dtype=np.int64), idx.shape)
        u = self._units(units)
        if np.unique(idx).size != idx.size:
            raise ScratchRaceError(f"several lanes store to the same slot of '{name}'")
        writer = self._writer[u][:, idx]
        reader = self._reader[u][:, idx]
        if np.any((writer != _NO_LANE) & (writer != lanes)):
            raise ScratchRaceError(
                f"store to '{name}' overwrites another lane's value without a barrier"
            )
        if np.any((reader != _NO_LANE) & (reader != lanes)):
            raise ScratchRaceError(
                f"store to '{name}' races a pending read by another lane; barrier required"
            )
        self._buf[u, idx] = values
        self._writer[u, idx] = lanes

    def load(self, name, slots, lanes, units=None):
        idx = self._index(name, slots)
        lanes = np.broadcast_to(np.asarray(lanes, dtype=np.int64), idx.shape)
        u = self._units(units)
        writer = self._writer[u][:, idx]
        if np.any((writer != _NO_LANE) & (writer != lanes)):
            raise ScratchRaceError(
                f"load from '{name}' sees another lane's store without a barrier"
            )
        # Record the reader of each slot; two different readers collapse to MANY.
        flat_idx = idx.ravel()
        flat_lanes = lanes.ravel()
        uniq, inverse = np.unique(flat_idx, return_inverse=True)
        lo = np.full(uniq.shape, np.iinfo(np.int64).max, dtype=np.int64)
        hi = np.full(uniq.shape, _NO_LANE, dtype=np.int64)
        np.minimum.at(lo, inverse, flat_lanes)
        np.maximum.at(hi, inverse, flat_lanes)
        readers = np.where(lo == hi, lo, _MANY_LANES)
        existing = self._reader[u][:, uniq]
        self._reader[u, uniq] = np.where(
            existing == _NO_LANE,
            readers,
            np.where(existing == readers, existing, _MANY_LANES),
        )
        return self._buf[u][:, idx]

    def barrier(self):
        """Every lane of the unit has finished its stores and loads."""
        self._writer.fill(_NO_LANE)
        self._reader.fill(_NO_LANE)
        self.barriers += 1


__all__ = ["LaneGroup", "ScratchArena"]
