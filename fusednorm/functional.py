"""Host entry points: validate, flatten to (n1, n2), resolve precision, dispatch.

Everything that can fail is checked here, before a backend kernel runs.
"""

import logging
import numbers

from fusednorm.backend import get_backend
from fusednorm.dtypes import resolve_precision
from fusednorm.errors import PrecisionError, ShapeError
from fusednorm.launch import DEFAULT_LAUNCH

logger = logging.getLogger(__name__)


def _as_shape(normalized_shape, input_shape):
    if normalized_shape is None:
        return tuple(int(d) for d in input_shape[-1:])
    if isinstance(normalized_shape, numbers.Integral):
        return (int(normalized_shape),)
    return tuple(int(d) for d in normalized_shape)


def compute_n1_n2(input_shape, normalized_shape=None):
    """Split an input shape into (normalized_shape, n1, n2)."""
    input_shape = tuple(int(d) for d in input_shape)
    normalized_shape = _as_shape(normalized_shape, input_shape)
    k = len(normalized_shape)
    if k == 0 or len(input_shape) < k or input_shape[len(input_shape) - k:] != normalized_shape:
        raise ShapeError(
            f"normalized_shape {normalized_shape} is not a suffix of input shape {input_shape}"
        )
    if any(d < 0 for d in input_shape):
        raise ShapeError(f"negative dimension in shape {input_shape}")
    n2 = 1
    for d in normalized_shape:
        n2 *= d
    n1 = 1
    for d in input_shape[: len(input_shape) - k]:
        n1 *= d
    if n2 == 0:
        raise ShapeError("cannot normalize over zero elements (n2 == 0)")
    return normalized_shape, n1, n2


def _require_array(backend, x, name):
    if not backend.is_array(x):
        raise TypeError(f"{name} must be a {backend.name} array, got {type(x)}")
    if not backend.is_contiguous(x):
        raise ShapeError(f"{name} must be contiguous in row-major layout")


def _check_param(backend, p, normalized_shape, name):
    if p is None:
        return None
    _require_array(backend, p, name)
    if tuple(p.shape) != normalized_shape:
        raise ShapeError(f"{name} has shape {tuple(p.shape)}, expected {normalized_shape}")
    return backend.reshape(p, (-1,))


def _check_row_stat(backend, stat, n1, name):
    _require_array(backend, stat, name)
    if backend.numel(stat.shape) != n1:
        raise ShapeError(f"{name} must hold one value per row ({n1}), got shape {tuple(stat.shape)}")
    return backend.reshape(stat, (n1,))


def _check_affine(gamma, beta, rms_only):
    if rms_only:
        if beta is not None:
            raise ValueError("RMS normalization takes no beta")
    elif (gamma is None) != (beta is None):
        raise ValueError("gamma and beta must be given together")


def _precision(backend, x, gamma, beta):
    if gamma is not None and beta is not None and backend.dtype_name(gamma) != backend.dtype_name(beta):
        raise PrecisionError("gamma and beta must share a dtype")
    precision = resolve_precision(
        backend.dtype_name(x), backend.dtype_name(gamma) if gamma is not None else None
    )
    if not backend.supports(precision):
        raise PrecisionError(f"{backend.name} backend cannot run {precision}")
    return precision


def layer_norm_forward(
    input,
    gamma=None,
    beta=None,
    epsilon=1e-5,
    rms_only=False,
    normalized_shape=None,
    backend=None,
    launch=None,
):
    """Normalize over the trailing `normalized_shape` dims of `input`.

    Returns (output, mean, inv_stddev); mean is None when rms_only is set.
    mean and inv_stddev hold one accumulation-typed value per row.
    """
    backend = backend or get_backend()
    launch = launch or DEFAULT_LAUNCH
    _require_array(backend, input, "input")
    normalized_shape, n1, n2 = compute_n1_n2(input.shape, normalized_shape)
    _check_affine(gamma, beta, rms_only)
    gamma1d = _check_param(backend, gamma, normalized_shape, "gamma")
    beta1d = _check_param(backend, beta, normalized_shape, "beta")
    precision = _precision(backend, input, gamma, beta)
    logger.debug("forward %s: n1=%d n2=%d %s", backend.name, n1, n2, precision)

    x2d = backend.reshape(input, (n1, n2))
    out, mean, invvar = backend.layer_norm_forward(
        x2d, gamma1d, beta1d, float(epsilon), rms_only, precision, launch
    )
    return backend.reshape(out, tuple(input.shape)), mean, invvar


def layer_norm_backward(
    grad_output,
    input_or_output,
    mean,
    inv_stddev,
    gamma=None,
    beta=None,
    epsilon=1e-5,
    memory_efficient=False,
    rms_only=False,
    normalized_shape=None,
    backend=None,
    launch=None,
):
    """Gradients of layer_norm_forward.

    input_or_output is the forward input, or the forward output when
    memory_efficient is set (mean is then not needed). grad_input takes the
    dtype of input_or_output. Returns (grad_input, grad_gamma, grad_beta).
    """
    backend = backend or get_backend()
    launch = launch or DEFAULT_LAUNCH
    _require_array(backend, grad_output, "grad_output")
    _require_array(backend, input_or_output, "input_or_output")
    if tuple(grad_output.shape) != tuple(input_or_output.shape):
        raise ShapeError(
            f"grad_output shape {tuple(grad_output.shape)} does not match "
            f"{tuple(input_or_output.shape)}"
        )
    normalized_shape, n1, n2 = compute_n1_n2(input_or_output.shape, normalized_shape)
    _check_affine(gamma, beta, rms_only)
    gamma1d = _check_param(backend, gamma, normalized_shape, "gamma")
    beta1d = _check_param(backend, beta, normalized_shape, "beta")
    invvar = _check_row_stat(backend, inv_stddev, n1, "inv_stddev")
    mean1d = None
    if not (rms_only or memory_efficient):
        if mean is None:
            raise ValueError("mean is required for the standard layer norm backward")
        mean1d = _check_row_stat(backend, mean, n1, "mean")
    precision = _precision(backend, input_or_output, gamma, beta)
    logger.debug(
        "backward %s: n1=%d n2=%d %s memory_efficient=%s",
        backend.name,
        n1,
        n2,
        precision,
        memory_efficient,
    )

    grad_input, grad_gamma, grad_beta = backend.layer_norm_backward(
        backend.reshape(grad_output, (n1, n2)),
        backend.reshape(input_or_output, (n1, n2)),
        mean1d,
        invvar,
        gamma1d,
        beta1d,
        float(epsilon),
        memory_efficient,
        rms_only,
        precision,
        launch,
    )
    grad_input = backend.reshape(grad_input, tuple(input_or_output.shape))
    if grad_gamma is not None:
        grad_gamma = backend.reshape(grad_gamma, normalized_shape)
    if grad_beta is not None:
        grad_beta = backend.reshape(grad_beta, normalized_shape)
    return grad_input, grad_gamma, grad_beta


def fused_layer_norm(input, normalized_shape=None, eps=1e-6, **kwargs):
    return layer_norm_forward(input, epsilon=eps, normalized_shape=normalized_shape, **kwargs)[0]


def fused_layer_norm_affine(input, weight, bias, normalized_shape=None, eps=1e-6, **kwargs):
    return layer_norm_forward(
        input, weight, bias, epsilon=eps, normalized_shape=normalized_shape, **kwargs
    )[0]


def fused_rms_norm(input, normalized_shape=None, eps=1e-6, **kwargs):
    return layer_norm_forward(
        input, epsilon=eps, rms_only=True, normalized_shape=normalized_shape, **kwargs
    )[0]


def fused_rms_norm_affine(input, weight, normalized_shape=None, eps=1e-6, **kwargs):
    return layer_norm_forward(
        input, weight, epsilon=eps, rms_only=True, normalized_shape=normalized_shape, **kwargs
    )[0]


__all__ = [
    "compute_n1_n2",
    "fused_layer_norm",
    "fused_layer_norm_affine",
    "fused_rms_norm",
    "fused_rms_norm_affine",
    "layer_norm_backward",
    "layer_norm_forward",
]
