import numpy as np

from .base import Backend
from .numpy.backward import (
    compute_grad_gamma_beta,
    compute_grad_input,
    compute_part_grad_gamma_beta,
)
from .numpy.forward import apply_layer_norm


class NumpyBackend(Backend):
    """Lane-accurate emulation of the GPU kernels on the CPU."""

    name = "numpy"

    def __init__(self):
        super().__init__()
        self.xp = np

    def is_array(self, x):
        return isinstance(x, np.ndarray)

    def is_contiguous(self, x):
        return bool(x.flags.c_contiguous)

    def reshape(self, x, shape):
        return x.reshape(shape)

    def zeros(self, shape, dtype=None):
        dtype = dtype or self.float32
        return np.zeros(shape, dtype=dtype)

    def ones(self, shape, dtype=None):
        dtype = dtype or self.float32
        return np.ones(shape, dtype=dtype)

    def supports(self, precision):
        # numpy has no bfloat16.
        return "bfloat16" not in precision

    def layer_norm_forward(self, x2d, gamma, beta, epsilon, rms_only, precision, launch):
        return apply_layer_norm(x2d, gamma, beta, epsilon, precision, launch, rms_only=rms_only)

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
        grad_input = compute_grad_input(
            dout,
            input_or_output,
            mean,
            invvar,
            gamma,
            beta,
            epsilon,
            precision,
            launch,
            memory_efficient=memory_efficient,
            rms_only=rms_only,
        )
        if gamma is None and beta is None:
            return grad_input, None, None

        # Transient [partitions, n2] buffers, dropped once merged.
        n2 = dout.shape[1]
        accum = np.dtype(precision.accum)
        part_grad_gamma = np.empty((launch.partitions, n2), dtype=accum)
        part_grad_beta = None if rms_only else np.empty((launch.partitions, n2), dtype=accum)
        compute_part_grad_gamma_beta(
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
            part_grad_beta,
            memory_efficient=memory_efficient,
            rms_only=rms_only,
        )
        grad_gamma, grad_beta = compute_grad_gamma_beta(
            part_grad_gamma, part_grad_beta, precision, launch, rms_only=rms_only
        )
        return grad_input, grad_gamma, grad_beta
