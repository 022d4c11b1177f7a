import torch
import triton
import triton.language as tl

from ._common import (
    _MERGE_BLOCK_N,
    _PART_BLOCK_M,
    _PART_BLOCK_N,
    _require_1d,
    _require_2d,
    _require_contiguous,
    _row_block,
    _row_grid,
)


@triton.jit
def _welford_combine(mean_a, m2_a, n_a, mean_b, m2_b, n_b):
    # Chan's merge of two partial statistics; two empty operands stay empty.
    n = n_a + n_b
    w_b = tl.where(n == 0, 0.0, n_b / tl.where(n == 0, 1.0, n))
    delta = mean_b - mean_a
    mean = mean_a + delta * w_b
    m2 = m2_a + m2_b + delta * delta * n_a * w_b
    return mean, m2, n


@triton.jit
def _clamp_by_magnitude(g, eps):
    return tl.where(g >= 0, tl.maximum(g, eps), tl.minimum(g, -eps))


@triton.jit
def _layer_norm_fwd_kernel(
    x_ptr,
    out_ptr,
    gamma_ptr,
    beta_ptr,
    mean_ptr,
    invvar_ptr,
    n1,
    n2,
    eps,
    HAS_GAMMA: tl.constexpr,
    HAS_BETA: tl.constexpr,
    RMS_ONLY: tl.constexpr,
    BLOCK_N: tl.constexpr,
):
    # One program per row, grid-striding when there are more rows than programs.
    pid = tl.program_id(0)
    n_programs = tl.num_programs(0)
    offs = tl.arange(0, BLOCK_N)
    for row in range(pid, n1, n_programs):
        x_row = x_ptr + row * n2
        # Each vector slot runs its own Welford update over a strided share of
        # the row; tl.reduce then merges the slots pairwise.
        acc_mean = tl.zeros((BLOCK_N,), dtype=tl.float32)
        acc_m2 = tl.zeros((BLOCK_N,), dtype=tl.float32)
        acc_n = tl.zeros((BLOCK_N,), dtype=tl.float32)
        for start in range(0, n2, BLOCK_N):
            cols = start + offs
            mask = cols < n2
            x = tl.load(x_row + cols, mask=mask, other=0.0).to(tl.float32)
            if RMS_ONLY:
                acc_m2 += x * x
            else:
                n_new = acc_n + mask.to(tl.float32)
                delta = x - acc_mean
                mean_new = acc_mean + tl.where(mask, delta / tl.maximum(n_new, 1.0), 0.0)
                acc_m2 += tl.where(mask, delta * (x - mean_new), 0.0)
                acc_mean = mean_new
                acc_n = n_new
        if RMS_ONLY:
            m2 = tl.sum(acc_m2, axis=0)
            invvar = 1.0 / tl.sqrt(m2 / n2 + eps)
        else:
            mean, m2, count = tl.reduce((acc_mean, acc_m2, acc_n), 0, _welford_combine)
            invvar = 1.0 / tl.sqrt(m2 / n2 + eps)
            tl.store(mean_ptr + row, mean)
        tl.store(invvar_ptr + row, invvar)

        out_row = out_ptr + row * n2
        for start in range(0, n2, BLOCK_N):
            cols = start + offs
            mask = cols < n2
            x = tl.load(x_row + cols, mask=mask, other=0.0).to(tl.float32)
            if RMS_ONLY:
                y = x * invvar
            else:
                y = (x - mean) * invvar
            if HAS_GAMMA:
                g = tl.load(gamma_ptr + cols, mask=mask, other=0.0).to(tl.float32)
                y = y * g
            if HAS_BETA:
                b = tl.load(beta_ptr + cols, mask=mask, other=0.0).to(tl.float32)
                y = y + b
            tl.store(out_row + cols, y.to(out_ptr.dtype.element_ty), mask=mask)


@triton.jit
def _layer_norm_bwd_dx_kernel(
    dout_ptr,
    h_ptr,
    gamma_ptr,
    beta_ptr,
    mean_ptr,
    invvar_ptr,
    dx_ptr,
    n1,
    n2,
    eps,
    HAS_GAMMA: tl.constexpr,
    HAS_BETA: tl.constexpr,
    NEEDS_MEAN: tl.constexpr,
    RMS_ONLY: tl.constexpr,
    MEMORY_EFFICIENT: tl.constexpr,
    BLOCK_N: tl.constexpr,
):
    # h is the forward input, or the forward output in memory-efficient mode.
    pid = tl.program_id(0)
    n_programs = tl.num_programs(0)
    offs = tl.arange(0, BLOCK_N)
    for row in range(pid, n1, n_programs):
        invvar = tl.load(invvar_ptr + row)
        if NEEDS_MEAN:
            mean = tl.load(mean_ptr + row)
        dout_row = dout_ptr + row * n2
        h_row = h_ptr + row * n2

        acc1 = tl.zeros((BLOCK_N,), dtype=tl.float32)
        acc2 = tl.zeros((BLOCK_N,), dtype=tl.float32)
        for start in range(0, n2, BLOCK_N):
            cols = start + offs
            mask = cols < n2
            dy = tl.load(dout_row + cols, mask=mask, other=0.0).to(tl.float32)
            h = tl.load(h_row + cols, mask=mask, other=0.0).to(tl.float32)
            if HAS_GAMMA:
                dy_g = dy * tl.load(gamma_ptr + cols, mask=mask, other=0.0).to(tl.float32)
            else:
                dy_g = dy
            acc1 += dy_g
            if MEMORY_EFFICIENT:
                # gamma * xhat is the stored output minus the shift.
                if HAS_BETA:
                    h = h - tl.load(beta_ptr + cols, mask=mask, other=0.0).to(tl.float32)
                acc2 += dy * h
            elif NEEDS_MEAN:
                acc2 += dy_g * (h - mean) * invvar
            else:
                acc2 += dy_g * h * invvar
        sum1 = tl.sum(acc1, axis=0)
        sum2 = tl.sum(acc2, axis=0)

        dx_row = dx_ptr + row * n2
        for start in range(0, n2, BLOCK_N):
            cols = start + offs
            mask = cols < n2
            dy = tl.load(dout_row + cols, mask=mask, other=0.0).to(tl.float32)
            h = tl.load(h_row + cols, mask=mask, other=0.0).to(tl.float32)
            if HAS_GAMMA:
                g = tl.load(gamma_ptr + cols, mask=mask, other=1.0).to(tl.float32)
                if MEMORY_EFFICIENT:
                    g = _clamp_by_magnitude(g, eps)
                f = n2 * dy * g
            else:
                f = n2 * dy
            if not RMS_ONLY:
                f = f - sum1
            if MEMORY_EFFICIENT:
                if HAS_BETA:
                    h = h - tl.load(beta_ptr + cols, mask=mask, other=0.0).to(tl.float32)
                if HAS_GAMMA:
                    xhat = h / g
                else:
                    xhat = h
            elif NEEDS_MEAN:
                xhat = (h - mean) * invvar
            else:
                xhat = h * invvar
            f = (f - xhat * sum2) * (invvar / n2)
            tl.store(dx_row + cols, f.to(dx_ptr.dtype.element_ty), mask=mask)


@triton.jit
def _layer_norm_bwd_part_kernel(
    dout_ptr,
    h_ptr,
    gamma_ptr,
    beta_ptr,
    mean_ptr,
    invvar_ptr,
    part_gamma_ptr,
    part_beta_ptr,
    n1,
    n2,
    rows_per_part,
    eps,
    HAS_BETA: tl.constexpr,
    NEEDS_MEAN: tl.constexpr,
    RMS_ONLY: tl.constexpr,
    MEMORY_EFFICIENT: tl.constexpr,
    BLOCK_M: tl.constexpr,
    BLOCK_N: tl.constexpr,
):
    # Program (column tile, partition): column sums over the partition's rows.
    pid_n = tl.program_id(0)
    part = tl.program_id(1)
    cols = pid_n * BLOCK_N + tl.arange(0, BLOCK_N)
    mask_n = cols < n2
    row_beg = part * rows_per_part
    row_end = tl.minimum(row_beg + rows_per_part, n1)

    if MEMORY_EFFICIENT:
        g = tl.load(gamma_ptr + cols, mask=mask_n, other=1.0).to(tl.float32)
        g = _clamp_by_magnitude(g, eps)
        if HAS_BETA:
            b = tl.load(beta_ptr + cols, mask=mask_n, other=0.0).to(tl.float32)

    acc_gamma = tl.zeros((BLOCK_M, BLOCK_N), dtype=tl.float32)
    acc_beta = tl.zeros((BLOCK_M, BLOCK_N), dtype=tl.float32)
    for m in range(row_beg, row_end, BLOCK_M):
        rows = m + tl.arange(0, BLOCK_M)
        mask_m = rows < row_end
        mask = mask_m[:, None] & mask_n[None, :]
        offs = rows[:, None] * n2 + cols[None, :]
        dy = tl.load(dout_ptr + offs, mask=mask, other=0.0).to(tl.float32)
        h = tl.load(h_ptr + offs, mask=mask, other=0.0).to(tl.float32)
        if MEMORY_EFFICIENT:
            if HAS_BETA:
                h = h - b[None, :]
            xhat = h / g[None, :]
        else:
            invvar = tl.load(invvar_ptr + rows, mask=mask_m, other=0.0)
            if NEEDS_MEAN:
                mean = tl.load(mean_ptr + rows, mask=mask_m, other=0.0)
                h = h - mean[:, None]
            xhat = h * invvar[:, None]
        acc_gamma += dy * xhat
        if not RMS_ONLY:
            acc_beta += dy

    tl.store(part_gamma_ptr + part * n2 + cols, tl.sum(acc_gamma, axis=0), mask=mask_n)
    if not RMS_ONLY:
        tl.store(part_beta_ptr + part * n2 + cols, tl.sum(acc_beta, axis=0), mask=mask_n)


@triton.jit
def _layer_norm_bwd_merge_kernel(
    part_gamma_ptr,
    part_beta_ptr,
    grad_gamma_ptr,
    grad_beta_ptr,
    n_parts,
    n2,
    RMS_ONLY: tl.constexpr,
    BLOCK_P: tl.constexpr,
    BLOCK_N: tl.constexpr,
):
    # Fold the partition partials of one column tile into final gradients.
    pid = tl.program_id(0)
    cols = pid * BLOCK_N + tl.arange(0, BLOCK_N)
    parts = tl.arange(0, BLOCK_P)
    mask_n = cols < n2
    mask = (parts[:, None] < n_parts) & mask_n[None, :]
    offs = parts[:, None] * n2 + cols[None, :]

    g = tl.load(part_gamma_ptr + offs, mask=mask, other=0.0)
    g_sum = tl.sum(g, axis=0)
    tl.store(grad_gamma_ptr + cols, g_sum.to(grad_gamma_ptr.dtype.element_ty), mask=mask_n)
    if not RMS_ONLY:
        b = tl.load(part_beta_ptr + offs, mask=mask, other=0.0)
        b_sum = tl.sum(b, axis=0)
        tl.store(grad_beta_ptr + cols, b_sum.to(grad_beta_ptr.dtype.element_ty), mask=mask_n)


def _layer_norm_fwd(x, gamma, beta, eps, rms_only, out_dtype):
    _require_contiguous(x)
    _require_2d(x, "layer_norm_fwd")
    n1, n2 = x.shape
    _require_1d(gamma, n2, "gamma")
    _require_1d(beta, n2, "beta")
    out = torch.empty((n1, n2), device=x.device, dtype=out_dtype)
    mean = None if rms_only else torch.empty((n1,), device=x.device, dtype=torch.float32)
    invvar = torch.empty((n1,), device=x.device, dtype=torch.float32)
    if n1 == 0:
        return out, mean, invvar
    # gamma is only applied together with beta, except in RMS mode.
    affine = gamma is not None and (beta is not None or rms_only)
    _layer_norm_fwd_kernel[_row_grid(n1)](
        x,
        out,
        gamma,
        beta,
        mean,
        invvar,
        n1,
        n2,
        eps,
        HAS_GAMMA=affine,
        HAS_BETA=affine and not rms_only,
        RMS_ONLY=rms_only,
        BLOCK_N=_row_block(n2),
    )
    return out, mean, invvar


def _layer_norm_bwd(
    dout,
    h,
    mean,
    invvar,
    gamma,
    beta,
    eps,
    memory_efficient,
    rms_only,
    n_parts,
    grad_dtype,
    param_dtype,
):
    for t, name in ((dout, "dout"), (h, "input_or_output")):
        _require_contiguous(t)
        _require_2d(t, name)
    if dout.shape != h.shape:
        raise ValueError("layer norm backward expects matching dout/input shapes")
    n1, n2 = dout.shape
    _require_1d(gamma, n2, "gamma")
    _require_1d(beta, n2, "beta")
    _require_1d(invvar, n1, "invvar")
    needs_mean = not (rms_only or memory_efficient)
    if needs_mean:
        _require_1d(mean, n1, "mean")
    has_beta = beta is not None and not rms_only

    dx = torch.empty((n1, n2), device=dout.device, dtype=grad_dtype)
    if n1 > 0:
        _layer_norm_bwd_dx_kernel[_row_grid(n1)](
            dout,
            h,
            gamma,
            beta,
            mean if needs_mean else None,
            invvar,
            dx,
            n1,
            n2,
            eps,
            HAS_GAMMA=gamma is not None,
            HAS_BETA=has_beta,
            NEEDS_MEAN=needs_mean,
            RMS_ONLY=rms_only,
            MEMORY_EFFICIENT=memory_efficient,
            BLOCK_N=_row_block(n2),
        )
    if gamma is None and beta is None:
        return dx, None, None

    # Transient [n_parts, n2] partials, merged below and then dropped.
    part_gamma = torch.empty((n_parts, n2), device=dout.device, dtype=torch.float32)
    part_beta = None if rms_only else torch.empty_like(part_gamma)
    rows_per_part = triton.cdiv(max(n1, 1), n_parts)
    grid = (triton.cdiv(n2, _PART_BLOCK_N), n_parts)
    _layer_norm_bwd_part_kernel[grid](
        dout,
        h,
        gamma,
        beta,
        mean if needs_mean else None,
        invvar,
        part_gamma,
        part_beta,
        n1,
        n2,
        rows_per_part,
        eps,
        HAS_BETA=has_beta,
        NEEDS_MEAN=needs_mean,
        RMS_ONLY=rms_only,
        MEMORY_EFFICIENT=memory_efficient,
        BLOCK_M=_PART_BLOCK_M,
        BLOCK_N=_PART_BLOCK_N,
    )
    grad_gamma = torch.empty((n2,), device=dout.device, dtype=param_dtype)
    grad_beta = None if rms_only else torch.empty((n2,), device=dout.device, dtype=param_dtype)
    _layer_norm_bwd_merge_kernel[(triton.cdiv(n2, _MERGE_BLOCK_N),)](
        part_gamma,
        part_beta,
        grad_gamma,
        grad_beta,
        n_parts,
        n2,
        RMS_ONLY=rms_only,
        BLOCK_P=triton.next_power_of_2(n_parts),
        BLOCK_N=_MERGE_BLOCK_N,
    )
    return dx, grad_gamma, grad_beta


__all__ = [
    "_layer_norm_bwd",
    "_layer_norm_bwd_dx_kernel",
    "_layer_norm_bwd_merge_kernel",
    "_layer_norm_bwd_part_kernel",
    "_layer_norm_fwd",
    "_layer_norm_fwd_kernel",
]
