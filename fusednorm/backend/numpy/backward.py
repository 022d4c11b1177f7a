import logging

import numpy as np

from .forward import column_tiles, row_waves
from .lanes import LaneGroup, ScratchArena
from .row_reduce import gather_lanes, lane_index

logger = logging.getLogger(__name__)


def clamp_by_magnitude(values, eps):
    """Push |values| up to at least eps, keeping the sign (0 maps to +eps)."""
    clamped = np.where(values >= 0, np.maximum(values, eps), np.minimum(values, -eps))
    return clamped.astype(values.dtype, copy=False)


def _add_pairs(a, b):
    return a[0] + b[0], a[1] + b[1]


class _LossTerms:
    """Per-element contributions to the two row sums of the input gradient."""

    def __init__(self, gamma, beta, memory_efficient, rms_only):
        self.gamma = gamma
        self.beta = beta
        self.memory_efficient = memory_efficient
        self.rms_only = rms_only

    def __call__(self, c_loss, c_h, cols, c_mean, c_invvar):
        g = self.gamma[cols] if self.gamma is not None else 1
        loss1 = c_loss * g
        if self.memory_efficient:
            # gamma * xhat is the stored output minus the shift.
            if self.gamma is not None and not self.rms_only:
                loss2 = c_loss * (c_h - self.beta[cols])
            else:
                loss2 = c_loss * c_h
        else:
            centered = c_h if self.rms_only else c_h - c_mean
            loss2 = c_loss * g * centered * c_invvar
        return loss1, loss2


def compute_grad_input(
    dout,
    input_or_output,
    mean,
    invvar,
    gamma,
    beta,
    epsilon,
    precision,
    launch,
    memory_efficient=False,
    rms_only=False,
):
    """Gradient w.r.t. the input, one row per cooperating unit.

    input_or_output holds the forward input in standard mode and the forward
    output in memory-efficient mode; mean is not read in the latter.
    """
    n1, n2 = dout.shape
    accum = np.dtype(precision.accum)
    grad_input = np.empty((n1, n2), dtype=np.dtype(precision.storage))
    if n1 == 0:
        return grad_input

    width = launch.group_size
    groups = launch.groups_per_unit
    num_units = launch.units_for(n1)
    half = max(groups // 2, 1)
    arena = ScratchArena(num_units, {"sums": 2 * half * width}, accum)
    group = LaneGroup(width)
    thrx = lane_index(launch)
    numx = thrx.size

    eps = accum.type(epsilon)
    fH = accum.type(n2)
    gamma_u = None if gamma is None else gamma.astype(accum)
    beta_u = None if beta is None else beta.astype(accum)
    k_gamma = gamma_u
    if memory_efficient and gamma_u is not None:
        k_gamma = clamp_by_magnitude(gamma_u, eps)
    terms = _LossTerms(gamma_u, beta_u, memory_efficient, rms_only)
    needs_mean = not (rms_only or memory_efficient)
    logger.debug(
        "grad input: n1=%d n2=%d memory_efficient=%s rms_only=%s",
        n1,
        n2,
        memory_efficient,
        rms_only,
    )

    for rows in row_waves(n1, num_units):
        n_rows = rows.shape[0]
        c_invvar = invvar[rows].astype(accum)
        c_mean = mean[rows].astype(accum) if needs_mean else None
        d_rows = dout[rows]
        h_rows = input_or_output[rows]
        lane_invvar = c_invvar[:, None, None]
        lane_mean = c_mean[:, None, None] if needs_mean else None

        shape = (n_rows,) + thrx.shape
        sum1 = np.zeros(shape, dtype=accum)
        sum2 = np.zeros(shape, dtype=accum)
        l = np.broadcast_to(4 * thrx, shape)
        while True:
            active = l + 3 < n2
            if not active.any():
                break
            for k in range(4):
                sum1, sum2 = _fold(terms, d_rows, h_rows, l + k, active, accum, lane_mean, lane_invvar, sum1, sum2)
            l = np.where(active, l + 4 * numx, l)
        while True:
            active = l < n2
            if not active.any():
                break
            sum1, sum2 = _fold(terms, d_rows, h_rows, l, active, accum, lane_mean, lane_invvar, sum1, sum2)
            l = np.where(active, l + 1, l)

        sum1, sum2 = group.butterfly_allreduce((sum1, sum2), _add_pairs)
        if groups > 1:
            sum1, sum2 = _reduce_sums_across_groups(arena, sum1, sum2, thrx, n_rows)
        row_sum1 = sum1[:, 0, 0][:, None]
        row_sum2 = sum2[:, 0, 0][:, None]

        term1 = (1 / fH) * c_invvar[:, None]
        for cols in column_tiles(n2, numx):
            c_h = h_rows[:, cols].astype(accum)
            c_loss = d_rows[:, cols].astype(accum)
            if k_gamma is not None:
                g = k_gamma[cols]
                f_grad = fH * c_loss * g
            else:
                g = None
                f_grad = fH * c_loss
            if not rms_only:
                f_grad = f_grad - row_sum1
            if memory_efficient:
                if g is None:
                    xhat = c_h
                elif rms_only:
                    xhat = c_h / g
                else:
                    xhat = (c_h - beta_u[cols]) / g
            elif rms_only:
                xhat = c_h * c_invvar[:, None]
            else:
                xhat = (c_h - c_mean[:, None]) * c_invvar[:, None]
            f_grad = (f_grad - xhat * row_sum2) * term1
            grad_input[rows[:, None], cols[None, :]] = f_grad
        arena.barrier()
    return grad_input


def _fold(terms, d_rows, h_rows, idx, active, accum, lane_mean, lane_invvar, sum1, sum2):
    c_loss = gather_lanes(d_rows, idx, active, accum)
    c_h = gather_lanes(h_rows, idx, active, accum)
    cols = np.where(active, idx, 0)
    loss1, loss2 = terms(c_loss, c_h, cols, lane_mean, lane_invvar)
    return np.where(active, sum1 + loss1, sum1), np.where(active, sum2 + loss2, sum2)


def _reduce_sums_across_groups(arena, sum1, sum2, thrx, n_rows):
    groups, width = thrx.shape
    x = np.arange(width)
    offset = groups // 2
    while offset > 0:
        upper = np.arange(offset, 2 * offset)
        slot = (upper - offset)[:, None] * width + x
        arena.store("sums", 2 * slot, thrx[upper], sum1[:, upper], units=n_rows)
        arena.store("sums", 2 * slot + 1, thrx[upper], sum2[:, upper], units=n_rows)
        arena.barrier()
        lower = np.arange(offset)
        slot = lower[:, None] * width + x
        add1 = arena.load("sums", 2 * slot, thrx[lower], units=n_rows)
        add2 = arena.load("sums", 2 * slot + 1, thrx[lower], units=n_rows)
        sum1 = np.concatenate([sum1[:, :offset] + add1, sum1[:, offset:]], axis=1)
        sum2 = np.concatenate([sum2[:, :offset] + add2, sum2[:, offset:]], axis=1)
        arena.barrier()
        offset //= 2

    # Group 0 shares the unit totals with the other groups.
    arena.store("sums", 2 * x, thrx[0], sum1[:, 0], units=n_rows)
    arena.store("sums", 2 * x + 1, thrx[0], sum2[:, 0], units=n_rows)
    arena.barrier()
    rest = thrx[1:]
    slot = np.broadcast_to(x, rest.shape)
    sum1 = np.concatenate([sum1[:, :1], arena.load("sums", 2 * slot, rest, units=n_rows)], axis=1)
    sum2 = np.concatenate([sum2[:, :1], arena.load("sums", 2 * slot + 1, rest, units=n_rows)], axis=1)
    return sum1, sum2


def _partial_lane_layout(launch):
    width = launch.group_size
    groups = launch.part_groups
    x = np.arange(width)[None, :]
    y = np.arange(groups)[:, None]
    col_off = np.broadcast_to((x * groups) & (width - 1), (groups, width))
    row_off = (x * groups) // width + y * groups
    lanes = x + y * width
    return col_off, row_off, lanes


def compute_part_grad_gamma_beta(
    dout,
    input_or_output,
    mean,
    invvar,
    gamma,
    beta,
    epsilon,
    precision,
    launch,
    part_grad_gamma,
    part_grad_beta=None,
    memory_efficient=False,
    rms_only=False,
):
    """Stage A: per-partition column sums of dout * xhat (and of dout).

    Partition p covers a contiguous slice of rows, walked in blocks of
    part_groups**2 rows. Units of part_groups groups cover group_size columns
    each; every lane loads part_groups adjacent columns of one tile row. The
    first block is written into the tile, later blocks are added to it.
    """
    n1, n2 = dout.shape
    if n1 == 0:
        part_grad_gamma[...] = 0
        if part_grad_beta is not None:
            part_grad_beta[...] = 0
        return part_grad_gamma, part_grad_beta

    accum = np.dtype(precision.accum)
    width = launch.group_size
    groups = launch.part_groups
    parts = launch.partitions
    tile_rows = groups * groups
    row_stride = width + 1
    n_col_blocks = -(-n2 // width)
    numsegs = -(-n1 // tile_rows)
    segs_per_part = -(-numsegs // parts)

    eps = accum.type(epsilon)
    beta_u = None if (rms_only or beta is None) else beta.astype(accum)
    k_gamma = None
    if memory_efficient:
        k_gamma = clamp_by_magnitude(gamma.astype(accum), eps)
    col_off, row_off, lanes = _partial_lane_layout(launch)
    i2_off = np.arange(n_col_blocks)[:, None, None] * width + col_off
    layout = {"buf1": tile_rows * row_stride, "buf2": tile_rows * row_stride}
    arena = ScratchArena(n_col_blocks, layout, accum)

    def load_terms(i1_block, i1_end, k):
        i1 = i1_block + row_off
        i2 = i2_off + k
        ok = (i1 < i1_end) & (i2 < n2)
        r = np.broadcast_to(np.where(ok, i1, 0), ok.shape)
        c = np.where(ok, i2, 0)
        c_h = input_or_output[r, c].astype(accum)
        c_dout = dout[r, c].astype(accum)
        if memory_efficient:
            norm = c_h if rms_only else c_h - beta_u[c]
            xhat = norm / k_gamma[c]
        else:
            c_invvar = invvar[r].astype(accum)
            centered = c_h if rms_only else c_h - mean[r].astype(accum)
            xhat = centered * c_invvar
        return ok, c_dout, c_dout * xhat

    for p in range(parts):
        i1_beg = p * segs_per_part * tile_rows
        i1_end = min((p + 1) * segs_per_part * tile_rows, n1)

        # Write phase: every tile slot gets a value, zero where out of range.
        for k in range(groups):
            ok, v1, v2 = load_terms(i1_beg, i1_end, k)
            slot = row_off * row_stride + col_off + k
            if not rms_only:
                arena.store("buf1", slot, lanes, np.where(ok, v1, 0))
            arena.store("buf2", slot, lanes, np.where(ok, v2, 0))
        # Accumulate phase: each lane adds into the slots it wrote itself.
        for i1_block in range(i1_beg + tile_rows, i1_end, tile_rows):
            for k in range(groups):
                ok, v1, v2 = load_terms(i1_block, i1_end, k)
                slot = row_off * row_stride + col_off + k
                if not rms_only:
                    acc = arena.load("buf1", slot, lanes)
                    arena.store("buf1", slot, lanes, np.where(ok, acc + v1, acc))
                acc = arena.load("buf2", slot, lanes)
                arena.store("buf2", slot, lanes, np.where(ok, acc + v2, acc))
        arena.barrier()

        names = ("buf2",) if rms_only else ("buf1", "buf2")
        x = np.arange(width)
        y = np.arange(groups)[:, None]
        for name in names:
            acc = 0
            for k in range(groups):
                acc = acc + arena.load(name, (y + k * groups) * row_stride + x, lanes)
            arena.store(name, y * row_stride + x, lanes, acc)
        arena.barrier()
        offset = groups // 2
        while offset > 1:
            lower = np.arange(offset)[:, None]
            for name in names:
                mine = arena.load(name, lower * row_stride + x, lanes[:offset])
                other = arena.load(name, (lower + offset) * row_stride + x, lanes[:offset])
                arena.store(name, lower * row_stride + x, lanes[:offset], mine + other)
            arena.barrier()
            offset //= 2

        # Group 0 folds the last two tile rows and writes the partition result.
        totals = {}
        for name in names:
            first = arena.load(name, x, lanes[0])
            second = arena.load(name, row_stride + x, lanes[0])
            totals[name] = (first + second).reshape(-1)[:n2]
        part_grad_gamma[p] = totals["buf2"]
        if not rms_only:
            part_grad_beta[p] = totals["buf1"]
        # The unit retires; the next partition starts from a fresh tile.
        arena.barrier()
    return part_grad_gamma, part_grad_beta


def compute_grad_gamma_beta(part_grad_gamma, part_grad_beta, precision, launch, rms_only=False):
    """Stage B: merge the partition partials into one value per column."""
    parts, n2 = part_grad_gamma.shape
    accum = np.dtype(precision.accum)
    output = np.dtype(precision.output)
    width = launch.group_size
    groups = launch.merge_groups
    per_group = parts // groups
    n_col_blocks = -(-n2 // width)
    half = max(groups // 2, 1)

    x = np.arange(width)[None, :]
    y = np.arange(groups)[:, None]
    lanes = x + y * width
    i2 = np.arange(n_col_blocks)[:, None, None] * width + x
    ok = np.broadcast_to(i2 < n2, (n_col_blocks, groups, width))
    cols = np.where(ok, i2, 0)

    sources = {"gamma": part_grad_gamma}
    if not rms_only:
        sources["beta"] = part_grad_beta
    arena = ScratchArena(n_col_blocks, {name: half * width for name in sources}, accum)

    sums = {}
    for name, part in sources.items():
        acc = np.zeros(ok.shape, dtype=accum)
        for w in range(per_group):
            acc = acc + np.where(ok, part[y * per_group + w, cols], 0)
        sums[name] = acc

    offset = groups // 2
    while offset >= 1:
        upper = np.arange(offset, 2 * offset)
        lower = np.arange(offset)
        for name in sources:
            slot = (upper - offset)[:, None] * width + x
            arena.store(name, slot, lanes[upper], sums[name][:, upper])
        arena.barrier()
        for name in sources:
            slot = lower[:, None] * width + x
            added = sums[name][:, :offset] + arena.load(name, slot, lanes[lower])
            sums[name] = np.concatenate([added, sums[name][:, offset:]], axis=1)
        arena.barrier()
        offset //= 2

    grad_gamma = sums["gamma"][:, 0].reshape(-1)[:n2].astype(output)
    grad_beta = None
    if not rms_only:
        grad_beta = sums["beta"][:, 0].reshape(-1)[:n2].astype(output)
    return grad_gamma, grad_beta


__all__ = [
    "clamp_by_magnitude",
    "compute_grad_gamma_beta",
    "compute_grad_input",
    "compute_part_grad_gamma_beta",
]
