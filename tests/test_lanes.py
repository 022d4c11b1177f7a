import numpy as np
import pytest

from fusednorm.backend.numpy.lanes import LaneGroup, ScratchArena
from fusednorm.backend.numpy.stats import RunningStats
from fusednorm.errors import ScratchRaceError


def test_shuffle_rotate_reads_from_higher_lane():
    group = LaneGroup(8)
    v = np.arange(8)
    np.testing.assert_array_equal(group.shuffle_rotate(v, 1), [1, 2, 3, 4, 5, 6, 7, 0])
    np.testing.assert_array_equal(group.shuffle_rotate(v, 4), [4, 5, 6, 7, 0, 1, 2, 3])


def test_shuffle_xor_swaps_partners():
    group = LaneGroup(4)
    v = np.array([[10, 11, 12, 13]])
    np.testing.assert_array_equal(group.shuffle_xor(v, 1), [[11, 10, 13, 12]])
    np.testing.assert_array_equal(group.shuffle_xor(v, 2), [[12, 13, 10, 11]])


def test_shuffles_map_over_named_tuples():
    group = LaneGroup(4)
    stats = RunningStats(np.arange(4.0), np.arange(4.0) * 2, np.ones(4))
    moved = group.shuffle_rotate(stats, 1)
    assert isinstance(moved, RunningStats)
    np.testing.assert_array_equal(moved.m2, [2.0, 4.0, 6.0, 0.0])


@pytest.mark.parametrize("width", [1, 2, 8, 32])
def test_allreduce_leaves_total_in_every_lane(width):
    group = LaneGroup(width)
    v = np.random.default_rng(width).standard_normal((3, width))
    expected = np.broadcast_to(v.sum(axis=-1, keepdims=True), v.shape)
    add = lambda a, b: a + b  # noqa: E731
    np.testing.assert_allclose(group.rotate_allreduce(v, add), expected, rtol=1e-12)
    np.testing.assert_allclose(group.butterfly_allreduce(v, add), expected, rtol=1e-12)


def test_lane_group_width_must_be_power_of_two():
    with pytest.raises(ValueError):
        LaneGroup(12)


def _arena(units=2):
    return ScratchArena(units, {"a": 4, "b": 2}, np.float32)


def test_arena_regions_are_disjoint():
    arena = _arena()
    assert arena.size == 6
    assert arena.region_size("b") == 2
    arena.store("a", [0, 1, 2, 3], [0, 1, 2, 3], np.ones((2, 4)))
    arena.store("b", [0, 1], [4, 5], np.full((2, 2), 7.0))
    arena.barrier()
    np.testing.assert_array_equal(arena.load("a", [0, 3], [0, 0]), np.ones((2, 2)))
    np.testing.assert_array_equal(arena.load("b", [1], [0]), np.full((2, 1), 7.0))


def test_arena_cross_lane_read_needs_barrier():
    arena = _arena()
    arena.store("a", [0], [1], np.ones((2, 1)))
    with pytest.raises(ScratchRaceError):
        arena.load("a", [0], [2])
    arena.barrier()
    np.testing.assert_array_equal(arena.load("a", [0], [2]), np.ones((2, 1)))
    assert arena.barriers == 1


def test_arena_same_lane_read_modify_write_is_fine():
    arena = _arena()
    arena.store("a", [2], [5], np.full((2, 1), 1.0))
    acc = arena.load("a", [2], [5])
    arena.store("a", [2], [5], acc + 1.0)
    np.testing.assert_array_equal(arena.load("a", [2], [5]), np.full((2, 1), 2.0))


def test_arena_write_after_foreign_read_races():
    arena = _arena()
    arena.load("a", [1], [3])
    with pytest.raises(ScratchRaceError):
        arena.store("a", [1], [0], np.zeros((2, 1)))


def test_arena_write_after_foreign_write_races():
    arena = _arena()
    arena.store("a", [1], [3], np.zeros((2, 1)))
    with pytest.raises(ScratchRaceError):
        arena.store("a", [1], [0], np.zeros((2, 1)))


def test_arena_rejects_duplicate_slots_in_one_store():
    arena = _arena()
    with pytest.raises(ScratchRaceError):
        arena.store("a", [1, 1], [0, 1], np.zeros((2, 2)))


def test_arena_slot_bounds_are_per_region():
    arena = _arena()
    with pytest.raises(IndexError):
        arena.store("b", [2], [0], np.zeros((2, 1)))


def test_arena_partial_wave_only_touches_active_units():
    arena = _arena(units=3)
    arena.store("b", [0], [0], np.full((1, 1), 9.0), units=1)
    arena.barrier()
    out = arena.load("b", [0], [1])
    np.testing.assert_array_equal(out[:, 0], [9.0, 0.0, 0.0])
