from typing import Any, Iterable, Union

from fusednorm.dtypes import dtype_name


class Backend:
    """Backend interface: the host side of the fused normalization kernels.

    The host layer (fusednorm.functional) validates shapes and resolves the
    precision, then hands every backend contiguous (n1, n2) views, 1D params
    and a launch configuration.
    """

    name = "base"

    def __init__(self):
        self.xp = None  # array module, e.g., numpy

    @property
    def float32(self):
        return self.xp.float32

    def is_array(self, x: Any) -> bool:
        # Used by the host layer to reject foreign array types early.
        raise NotImplementedError

    def is_contiguous(self, x) -> bool:
        # The kernels index rows as flat n1 * n2 buffers.
        raise NotImplementedError

    def reshape(self, x, shape):
        # Views only: inputs are validated as contiguous first.
        raise NotImplementedError

    def zeros(self, shape: Union[int, Iterable[int]], dtype=None):
        # Used by FusedLayerNorm.reset_parameters for the shift.
        raise NotImplementedError

    def ones(self, shape: Union[int, Iterable[int]], dtype=None):
        # Used by FusedLayerNorm.reset_parameters for the scale.
        raise NotImplementedError

    def dtype_name(self, x) -> str:
        return dtype_name(x.dtype)

    def supports(self, precision) -> bool:
        # Whether this backend can run a resolved precision triple.
        raise NotImplementedError

    def layer_norm_forward(self, x2d, gamma, beta, epsilon, rms_only, precision, launch):
        # Returns (output, mean or None, inv_stddev).
        raise NotImplementedError

    def layer_norm_backward(
        self,
        dout,
        input_or_output,
        mean,
        invvar,
        gamma,
        beta,
        epsilon,
        memory_efficient,
        rms_only,
        precision,
        launch,
    ):
        # Returns (grad_input, grad_gamma or None, grad_beta or None).
        raise NotImplementedError

    def numel(self, shape: Iterable[int]) -> int:
        n = 1
        for d in shape:
            n *= int(d)
        return n
