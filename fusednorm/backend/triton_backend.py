import numpy as np
import torch

from .base import Backend
from .triton.kernels._common import _torch_dtype
from .triton.kernels.layernorm import _layer_norm_bwd, _layer_norm_fwd


class TritonBackend(Backend):
    name = "triton"

    def __init__(self):
        try:
            import triton  # noqa: F401
            import triton.language as tl  # noqa: F401
        except Exception as exc:
            raise RuntimeError(
                "Triton backend requires Triton to be installed"
            ) from exc
        if not torch.cuda.is_available():
            raise RuntimeError("Triton backend requires CUDA to be available")
        super().__init__()
        self.xp = np
        self.device = torch.device("cuda")

    def _normalize_dtype(self, dtype):
        if dtype is None:
            return torch.float32
        if isinstance(dtype, torch.dtype):
            return dtype
        if isinstance(dtype, str) and dtype == "bfloat16":
            return torch.bfloat16
        np_dtype = np.dtype(dtype)
        mapping = {
            np.dtype(np.float16): torch.float16,
            np.dtype(np.float32): torch.float32,
            np.dtype(np.float64): torch.float64,
        }
        return mapping.get(np_dtype, torch.float32)

    def is_array(self, x):
        return isinstance(x, torch.Tensor)

    def is_contiguous(self, x):
        return x.is_contiguous()

    def reshape(self, x, shape):
        return x.view(shape)

    def zeros(self, shape, dtype=None):
        dtype = self._normalize_dtype(dtype)
        return torch.zeros(shape, dtype=dtype, device=self.device)

    def ones(self, shape, dtype=None):
        dtype = self._normalize_dtype(dtype)
        return torch.ones(shape, dtype=dtype, device=self.device)

    def supports(self, precision):
        # Kernels accumulate in float32.
        return "float64" not in precision

    def layer_norm_forward(self, x2d, gamma, beta, epsilon, rms_only, precision, launch):
        if x2d.device.type != "cuda":
            raise ValueError("Triton backend expects CUDA tensors.")
        return _layer_norm_fwd(
            x2d, gamma, beta, float(epsilon), rms_only, _torch_dtype(precision.output)
        )

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
        # The input gradient follows whichever tensor backward was handed.
        return _layer_norm_bwd(
            dout,
            input_or_output,
            mean,
            invvar,
            gamma,
            beta,
            float(epsilon),
            memory_efficient,
            rms_only,
            launch.partitions,
            input_or_output.dtype,
            _torch_dtype(precision.output),
        )
