from fusednorm.backend import (
    NumpyBackend,
    TritonBackend,
    available_backends,
    get_backend,
    set_backend,
)
from fusednorm.dtypes import Precision, resolve_precision
from fusednorm.errors import PrecisionError, ScratchRaceError, ShapeError
from fusednorm.functional import (
    fused_layer_norm,
    fused_layer_norm_affine,
    fused_rms_norm,
    fused_rms_norm_affine,
    layer_norm_backward,
    layer_norm_forward,
)
from fusednorm.launch import DEFAULT_LAUNCH, LaunchConfig
from fusednorm.nn import FusedLayerNorm, FusedRMSNorm

__all__ = [
    "DEFAULT_LAUNCH",
    "FusedLayerNorm",
    "FusedRMSNorm",
    "LaunchConfig",
    "NumpyBackend",
    "Precision",
    "PrecisionError",
    "ScratchRaceError",
    "ShapeError",
    "TritonBackend",
    "available_backends",
    "fused_layer_norm",
    "fused_layer_norm_affine",
    "fused_rms_norm",
    "fused_rms_norm_affine",
    "get_backend",
    "layer_norm_backward",
    "layer_norm_forward",
    "resolve_precision",
    "set_backend",
]
