import torch
import triton

_NORM_BLOCK_N = 1024
_PART_BLOCK_M = 32
_PART_BLOCK_N = 64
_MERGE_BLOCK_N = 128
_MAX_GRID_ROWS = 65535


def _require_contiguous(x):
    # Triton kernels assume contiguous layouts for simple pointer arithmetic.
    if not x.is_contiguous():
        raise ValueError("Triton backend expects contiguous tensors.")


def _require_2d(x, name):
    # Guard for kernels that operate on 2D matrices.
    if x.dim() != 2:
        raise ValueError(f"{name} must be 2D, got shape {tuple(x.shape)}")


def _require_1d(x, n, name):
    if x is None:
        return
    _require_contiguous(x)
    if x.dim() != 1 or x.shape[0] != n:
        raise ValueError(f"{name} must be 1D of length {n}, got shape {tuple(x.shape)}")


def _row_block(n_cols):
    # Power-of-two column tile, no wider than the row needs.
    return min(_NORM_BLOCK_N, triton.next_power_of_2(max(int(n_cols), 1)))


def _row_grid(n_rows):
    # Rows beyond the grid limit are picked up by grid-striding in the kernel.
    return (max(1, min(int(n_rows), _MAX_GRID_ROWS)),)


def _torch_dtype(name):
    return getattr(torch, name)
