import numpy as np
import pytest

torch = pytest.importorskip("torch")

from fusednorm import FusedLayerNorm, FusedRMSNorm, NumpyBackend, get_backend, set_backend
from fusednorm.backend import available_backends
from fusednorm.ops import LayerNorm, RMSNorm


def _torch_pair(data):
    return data.copy(), torch.tensor(data.astype(np.float64), requires_grad=True)


def test_fused_layer_norm_module_matches_torch():
    rng = np.random.default_rng(0)
    data, x_th = _torch_pair(rng.standard_normal((4, 3, 10)).astype(np.float32))
    module = FusedLayerNorm((3, 10))
    module.weight = (1.0 + 0.2 * rng.standard_normal((3, 10))).astype(np.float32)
    module.bias = (0.2 * rng.standard_normal((3, 10))).astype(np.float32)
    w_th = torch.tensor(module.weight.astype(np.float64), requires_grad=True)
    b_th = torch.tensor(module.bias.astype(np.float64), requires_grad=True)

    out = module(data)
    ref = torch.nn.functional.layer_norm(x_th, (3, 10), w_th, b_th, module.eps)
    np.testing.assert_allclose(out, ref.detach().numpy(), rtol=1e-4, atol=1e-4)

    dout = rng.standard_normal(out.shape).astype(np.float32)
    grad_input = module.backward(dout)
    ref.backward(torch.tensor(dout.astype(np.float64)))
    np.testing.assert_allclose(grad_input, x_th.grad.numpy(), rtol=1e-4, atol=1e-4)
    np.testing.assert_allclose(module.weight_grad, w_th.grad.numpy(), rtol=1e-4, atol=1e-4)
    np.testing.assert_allclose(module.bias_grad, b_th.grad.numpy(), rtol=1e-4, atol=1e-4)
    assert module.weight_grad.shape == (3, 10)


def test_memory_efficient_module_agrees_with_standard():
    rng = np.random.default_rng(1)
    x = rng.standard_normal((4, 16)).astype(np.float32)
    dout = rng.standard_normal((4, 16)).astype(np.float32)
    weight = (1.0 + 0.2 * rng.standard_normal(16)).astype(np.float32)
    grads = []
    for memory_efficient in (False, True):
        module = FusedLayerNorm(16, memory_efficient=memory_efficient)
        module.weight = weight.copy()
        module(x)
        grads.append((module.backward(dout), module.weight_grad, module.bias_grad))
    for a, b in zip(*grads):
        np.testing.assert_allclose(a, b, rtol=1e-4, atol=1e-4)


def test_rms_module_has_no_bias():
    rng = np.random.default_rng(2)
    data, x_th = _torch_pair(rng.standard_normal((5, 12)).astype(np.float32))
    module = FusedRMSNorm(12, eps=1e-6)
    assert module.bias is None
    module.weight = (1.0 + 0.2 * rng.standard_normal(12)).astype(np.float32)
    w_th = torch.tensor(module.weight.astype(np.float64), requires_grad=True)

    out = module(data)
    ref = x_th * torch.rsqrt(x_th.pow(2).mean(-1, keepdim=True) + 1e-6) * w_th
    np.testing.assert_allclose(out, ref.detach().numpy(), rtol=1e-4, atol=1e-4)

    dout = np.ones_like(out)
    grad_input = module.backward(dout)
    ref.backward(torch.ones_like(ref))
    np.testing.assert_allclose(grad_input, x_th.grad.numpy(), rtol=1e-4, atol=1e-4)
    np.testing.assert_allclose(module.weight_grad, w_th.grad.numpy(), rtol=1e-4, atol=1e-4)
    assert module.bias_grad is None


def test_module_without_affine_params():
    module = FusedLayerNorm(8, elementwise_affine=False)
    assert module.weight is None and module.bias is None
    x = np.random.default_rng(3).standard_normal((2, 8)).astype(np.float32)
    module(x)
    module.backward(np.ones_like(x))
    assert module.weight_grad is None


def test_backward_before_forward_raises():
    module = FusedLayerNorm(4)
    with pytest.raises(RuntimeError):
        module.backward(np.ones((1, 4), np.float32))


def test_module_repr():
    assert repr(FusedRMSNorm(7)) == "FusedRMSNorm((7,), eps=1e-05, elementwise_affine=True)"


def test_ops_save_what_backward_needs():
    x = np.random.default_rng(4).standard_normal((3, 6)).astype(np.float32)
    gamma = np.ones(6, np.float32)
    beta = np.zeros(6, np.float32)
    op, out = LayerNorm.apply(x, gamma, beta, normalized_shape=(6,))
    assert op._intermediate[0] is x
    grads = op.backward(np.ones_like(out))
    assert len(grads) == 3
    # d(sum(out))/dx of a normalization is zero
    np.testing.assert_allclose(grads[0], 0, atol=1e-5)

    op, out = LayerNorm.apply(x, gamma, beta, normalized_shape=(6,), memory_efficient=True)
    assert op._intermediate[0] is out
    assert op._intermediate[1] is None

    op, out = RMSNorm.apply(x, gamma, normalized_shape=(6,))
    assert len(op.backward(np.ones_like(out))) == 2


def test_set_backend_by_name_and_instance():
    prev = get_backend()
    try:
        assert "numpy" in available_backends()
        backend = set_backend("numpy")
        assert isinstance(backend, NumpyBackend)
        mine = NumpyBackend()
        assert set_backend(mine) is mine
        with pytest.raises(ValueError):
            set_backend("cupy")
        with pytest.raises(TypeError):
            set_backend(42)
    finally:
        set_backend(prev)
