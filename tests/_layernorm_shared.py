import numpy as np
import pytest

torch = pytest.importorskip("torch")

from fusednorm.dtypes import dtype_name
from fusednorm.functional import layer_norm_backward, layer_norm_forward


class BackendHelper:
    def __init__(self, name):
        self.name = name
        self.rng = np.random.default_rng(1234)

    def asarray(self, data, dtype):
        if self.name == "triton":
            return torch.tensor(data, dtype=getattr(torch, dtype), device="cuda").contiguous()
        return np.ascontiguousarray(np.asarray(data).astype(dtype))

    def randn(self, shape, dtype="float32", loc=0.0, scale=1.0):
        data = loc + scale * self.rng.standard_normal(shape)
        return self.asarray(data, dtype)

    def tolerances(self, dtype):
        if dtype in ("float16", "bfloat16"):
            return 2e-2, 2e-2
        if dtype == "float64":
            return 1e-9, 1e-9
        if self.name == "triton":
            return 1e-3, 1e-3
        return 1e-4, 1e-4


def to_numpy(x):
    if x is None:
        return None
    if isinstance(x, torch.Tensor):
        return x.detach().to(torch.float64).cpu().numpy()
    return np.asarray(x, dtype=np.float64)


def reference_forward(x, normalized_shape, gamma=None, beta=None, eps=1e-5, rms_only=False):
    """float64 torch reference; returns (out, mean or None, invvar) as tensors."""
    n2 = int(np.prod(normalized_shape))
    rows = x.reshape(-1, n2)
    if rms_only:
        mean = None
        invvar = torch.rsqrt(rows.pow(2).mean(dim=1) + eps)
        dims = tuple(range(-len(normalized_shape), 0))
        out = x * torch.rsqrt(x.pow(2).mean(dim=dims, keepdim=True) + eps)
        if gamma is not None:
            out = out * gamma
    else:
        mean = rows.mean(dim=1)
        invvar = torch.rsqrt(rows.var(dim=1, unbiased=False) + eps)
        out = torch.nn.functional.layer_norm(x, normalized_shape, gamma, beta, eps)
    return out, mean, invvar


def _reference_inputs(*arrays):
    return [
        None if a is None else torch.tensor(to_numpy(a), dtype=torch.float64, requires_grad=True)
        for a in arrays
    ]


def _assert_close(actual, expected, rtol, atol):
    if expected is None:
        assert actual is None
        return
    np.testing.assert_allclose(to_numpy(actual), to_numpy(expected), rtol=rtol, atol=atol)


FORWARD_CASES = [
    ((4, 16), (16,)),
    ((3, 5, 7), (5, 7)),
    ((2, 33), (33,)),
    ((9, 300), (300,)),
    ((6, 1), (1,)),
]


def _make_params(helper, normalized_shape, param_dtype, affine, rms_only):
    if not affine:
        return None, None
    # gamma is kept away from zero so memory-efficient recovery stays accurate.
    gamma = helper.randn(normalized_shape, param_dtype, loc=1.0, scale=0.25)
    beta = None if rms_only else helper.randn(normalized_shape, param_dtype, scale=0.5)
    return gamma, beta


def run_forward_cases(helper, dtype="float32", param_dtype=None, **kwargs):
    eps = 1e-5
    param_dtype = param_dtype or dtype
    out_dtype = param_dtype
    rtol, atol = helper.tolerances(dtype if dtype != "float32" else out_dtype)
    for shape, normalized_shape in FORWARD_CASES:
        for rms_only in (False, True):
            for affine in (False, True):
                x = helper.randn(shape, dtype)
                gamma, beta = _make_params(helper, normalized_shape, param_dtype, affine, rms_only)
                out, mean, invvar = layer_norm_forward(
                    x,
                    gamma,
                    beta,
                    epsilon=eps,
                    rms_only=rms_only,
                    normalized_shape=normalized_shape,
                    **kwargs,
                )
                x_ref, g_ref, b_ref = _reference_inputs(x, gamma, beta)
                ref_out, ref_mean, ref_invvar = reference_forward(
                    x_ref, normalized_shape, g_ref, b_ref, eps, rms_only
                )

                expected_dtype = out_dtype if affine else dtype
                assert dtype_name(out.dtype) == expected_dtype
                assert tuple(out.shape) == shape
                _assert_close(out, ref_out, rtol, atol)
                _assert_close(mean, ref_mean, rtol, atol)
                _assert_close(invvar, ref_invvar, rtol, atol)


def run_backward_cases(helper, dtype="float32", param_dtype=None, **kwargs):
    eps = 1e-5
    param_dtype = param_dtype or dtype
    rtol, atol = helper.tolerances(dtype if dtype != "float32" else param_dtype)
    for shape, normalized_shape in FORWARD_CASES:
        for rms_only in (False, True):
            for affine in (False, True):
                for memory_efficient in (False, True):
                    x = helper.randn(shape, dtype)
                    gamma, beta = _make_params(helper, normalized_shape, param_dtype, affine, rms_only)
                    out, mean, invvar = layer_norm_forward(
                        x,
                        gamma,
                        beta,
                        epsilon=eps,
                        rms_only=rms_only,
                        normalized_shape=normalized_shape,
                        **kwargs,
                    )
                    dout = helper.randn(shape, dtype_name(out.dtype))
                    saved = out if memory_efficient else x
                    grad_input, grad_gamma, grad_beta = layer_norm_backward(
                        dout,
                        saved,
                        None if memory_efficient else mean,
                        invvar,
                        gamma,
                        beta,
                        epsilon=eps,
                        memory_efficient=memory_efficient,
                        rms_only=rms_only,
                        normalized_shape=normalized_shape,
                        **kwargs,
                    )

                    x_ref, g_ref, b_ref = _reference_inputs(x, gamma, beta)
                    ref_out, _, _ = reference_forward(
                        x_ref, normalized_shape, g_ref, b_ref, eps, rms_only
                    )
                    ref_out.backward(torch.tensor(to_numpy(dout), dtype=torch.float64))

                    assert dtype_name(grad_input.dtype) == dtype_name(saved.dtype)
                    _assert_close(grad_input, x_ref.grad, rtol, atol)
                    _assert_close(grad_gamma, None if g_ref is None else g_ref.grad, rtol, atol)
                    _assert_close(grad_beta, None if b_ref is None else b_ref.grad, rtol, atol)
                    if grad_gamma is not None:
                        assert dtype_name(grad_gamma.dtype) == dtype_name(gamma.dtype)
                        assert tuple(grad_gamma.shape) == normalized_shape


def run_scenario_case(helper):
    x = helper.asarray([[1.0, 2.0, 3.0, 4.0]], "float32")
    gamma = helper.asarray([1.0, 1.0, 1.0, 1.0], "float32")
    beta = helper.asarray([0.0, 0.0, 0.0, 0.0], "float32")
    out, mean, invvar = layer_norm_forward(x, gamma, beta, epsilon=0.0)
    np.testing.assert_allclose(to_numpy(mean), [2.5], rtol=1e-6)
    np.testing.assert_allclose(to_numpy(invvar), [1 / np.sqrt(1.25)], rtol=1e-5)
    np.testing.assert_allclose(
        to_numpy(out), [[-1.3416, -0.4472, 0.4472, 1.3416]], rtol=1e-4, atol=1e-4
    )


def run_single_feature_case(helper):
    eps = 1e-3
    x = helper.asarray([[5.0], [-2.0], [0.25]], "float32")
    beta = helper.asarray([0.75], "float32")
    gamma = helper.asarray([3.0], "float32")
    out, mean, invvar = layer_norm_forward(x, gamma, beta, epsilon=eps)
    np.testing.assert_allclose(to_numpy(out), [[0.75]] * 3, atol=1e-6)
    np.testing.assert_allclose(to_numpy(mean), [5.0, -2.0, 0.25], rtol=1e-6)
    np.testing.assert_allclose(to_numpy(invvar), [1 / np.sqrt(eps)] * 3, rtol=1e-5)


def run_memory_efficient_agreement_case(helper):
    eps = 1e-5
    x = helper.randn((4, 16), "float32")
    gamma = helper.randn((16,), "float32", loc=1.0, scale=0.25)
    beta = helper.randn((16,), "float32", scale=0.5)
    dout = helper.randn((4, 16), "float32")
    out, mean, invvar = layer_norm_forward(x, gamma, beta, epsilon=eps)
    standard = layer_norm_backward(dout, x, mean, invvar, gamma, beta, epsilon=eps)
    efficient = layer_norm_backward(
        dout, out, None, invvar, gamma, beta, epsilon=eps, memory_efficient=True
    )
    rtol, atol = helper.tolerances("float32")
    for a, b in zip(standard, efficient):
        np.testing.assert_allclose(to_numpy(a), to_numpy(b), rtol=rtol, atol=atol)


def run_rms_matches_centered_case(helper):
    # Rows with an exact zero mean: RMS norm and layer norm coincide.
    x = helper.asarray(
        [[-1.0, 1.0, -2.0, 2.0], [3.0, -1.0, -1.0, -1.0], [0.5, -0.5, 0.0, 0.0]], "float32"
    )
    gamma = helper.randn((4,), "float32", loc=1.0, scale=0.25)
    zero = helper.asarray([0.0] * 4, "float32")
    ln_out, mean, ln_invvar = layer_norm_forward(x, gamma, zero)
    rms_out, rms_mean, rms_invvar = layer_norm_forward(x, gamma, rms_only=True)
    assert rms_mean is None
    np.testing.assert_allclose(to_numpy(mean), 0.0, atol=1e-6)
    np.testing.assert_allclose(to_numpy(rms_out), to_numpy(ln_out), rtol=1e-5, atol=1e-5)
    np.testing.assert_allclose(to_numpy(rms_invvar), to_numpy(ln_invvar), rtol=1e-5)


def run_empty_batch_case(helper):
    x = helper.randn((0, 8), "float32")
    gamma = helper.randn((8,), "float32", loc=1.0, scale=0.25)
    beta = helper.randn((8,), "float32")
    out, mean, invvar = layer_norm_forward(x, gamma, beta)
    assert tuple(out.shape) == (0, 8)
    assert tuple(mean.shape) == (0,)
    grad_input, grad_gamma, grad_beta = layer_norm_backward(out, x, mean, invvar, gamma, beta)
    assert tuple(grad_input.shape) == (0, 8)
    np.testing.assert_allclose(to_numpy(grad_gamma), 0.0)
    np.testing.assert_allclose(to_numpy(grad_beta), 0.0)
    _, _, rms_invvar = layer_norm_forward(x, gamma, rms_only=True)
    grad_input, grad_gamma, grad_beta = layer_norm_backward(
        out, x, None, rms_invvar, gamma, rms_only=True
    )
    assert tuple(grad_input.shape) == (0, 8)
    assert grad_beta is None
    np.testing.assert_allclose(to_numpy(grad_gamma), 0.0)
