import logging

import numpy as np

from .lanes import ScratchArena
from .row_reduce import RowReducer

logger = logging.getLogger(__name__)


def row_waves(n1, num_units):
    """Grid-stride schedule: wave k runs row `unit + k * num_units` on each unit.

    Units whose row would fall at or beyond n1 sit the wave out, so the last
    wave may be short.
    """
    for start in range(0, n1, num_units):
        yield np.arange(start, min(start + num_units, n1))


def column_tiles(n2, lanes_per_unit):
    # Lane thrx handles columns thrx, thrx + numx, ... of the row.
    for start in range(0, n2, lanes_per_unit):
        yield np.arange(start, min(start + lanes_per_unit, n2))


def apply_layer_norm(x2d, gamma, beta, epsilon, precision, launch, rms_only=False):
    """Normalize every row of x2d; returns (output, mean or None, inv_stddev).

    A zero-variance row with epsilon == 0 follows IEEE arithmetic quietly:
    inv_stddev is inf and the row's output is nan, as on the GPU.
    """
    n1, n2 = x2d.shape
    accum = np.dtype(precision.accum)
    out = np.empty((n1, n2), dtype=np.dtype(precision.output))
    mean = None if rms_only else np.empty((n1,), dtype=accum)
    invvar = np.empty((n1,), dtype=accum)
    if n1 == 0:
        return out, mean, invvar

    num_units = launch.units_for(n1)
    reducer = RowReducer(launch, precision, rms_only=rms_only)
    arena = ScratchArena(num_units, RowReducer.scratch_layout(launch), accum)
    eps = accum.type(epsilon)
    # gamma is only applied together with beta, except in RMS mode.
    affine = gamma is not None and (beta is not None or rms_only)
    if affine:
        gamma_u = gamma.astype(accum)
        beta_u = None if rms_only else beta.astype(accum)
    logger.debug("layer norm forward: n1=%d n2=%d rms_only=%s affine=%s", n1, n2, rms_only, affine)

    for rows in row_waves(n1, num_units):
        moments = reducer.reduce(x2d[rows], rows * n2, arena)
        c_mean = moments.mean
        with np.errstate(divide="ignore", invalid="ignore"):
            c_invvar = (1 / np.sqrt(moments.var + eps)).astype(accum)
            for cols in column_tiles(n2, launch.lanes_per_unit):
                curr = x2d[rows[:, None], cols[None, :]].astype(accum)
                if not rms_only:
                    curr = curr - c_mean[:, None]
                vals = c_invvar[:, None] * curr
                if affine:
                    vals = gamma_u[cols] * vals
                    if not rms_only:
                        vals = vals + beta_u[cols]
                out[rows[:, None], cols[None, :]] = vals
        # Lane 0 of each unit publishes the row's statistics.
        if mean is not None:
            mean[rows] = c_mean
        invvar[rows] = c_invvar
        # Nobody starts the next row while its scratch is still being read.
        arena.barrier()
    return out, mean, invvar


__all__ = ["apply_layer_norm", "column_tiles", "row_waves"]
