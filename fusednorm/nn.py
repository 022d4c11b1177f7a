import numbers

from fusednorm.backend import get_backend
from fusednorm.ops import LayerNorm, RMSNorm


class FusedLayerNorm:
    """Layer norm with its own scale/shift and the state of the last forward.

    backward(dout) returns the input gradient and leaves the parameter
    gradients in weight_grad / bias_grad. Nothing here updates parameters.
    """

    _op_cls = LayerNorm
    has_bias = True

    def __init__(
        self,
        normalized_shape,
        eps=1e-5,
        elementwise_affine=True,
        memory_efficient=False,
        backend=None,
        dtype=None,
        launch=None,
    ):
        if isinstance(normalized_shape, numbers.Integral):
            normalized_shape = (normalized_shape,)
        self.normalized_shape = tuple(int(d) for d in normalized_shape)
        self.eps = eps
        self.elementwise_affine = elementwise_affine
        self.memory_efficient = memory_efficient
        self.backend = backend or get_backend()
        self.dtype = dtype
        self.launch = launch
        self.weight = None
        self.bias = None
        self.weight_grad = None
        self.bias_grad = None
        self._op = None
        self.reset_parameters()

    def reset_parameters(self):
        if not self.elementwise_affine:
            return
        self.weight = self.backend.ones(self.normalized_shape, self.dtype)
        if self.has_bias:
            self.bias = self.backend.zeros(self.normalized_shape, self.dtype)

    def _params(self):
        return (self.weight, self.bias)

    def forward(self, x):
        self._op, out = self._op_cls.apply(
            x,
            *self._params(),
            normalized_shape=self.normalized_shape,
            eps=self.eps,
            memory_efficient=self.memory_efficient,
            launch=self.launch,
            backend=self.backend,
        )
        return out

    __call__ = forward

    def backward(self, grad):
        if self._op is None:
            raise RuntimeError("backward called before forward")
        grads = self._op.backward(grad)
        self._op = None
        self.weight_grad = grads[1]
        if self.has_bias:
            self.bias_grad = grads[2]
        return grads[0]

    def extra_repr(self):
        return (
            f"{self.normalized_shape}, eps={self.eps}, "
            f"elementwise_affine={self.elementwise_affine}"
        )

    def __repr__(self):
        return f"{type(self).__name__}({self.extra_repr()})"


class FusedRMSNorm(FusedLayerNorm):
    _op_cls = RMSNorm
    has_bias = False

    def _params(self):
        return (self.weight,)


__all__ = ["FusedLayerNorm", "FusedRMSNorm"]
