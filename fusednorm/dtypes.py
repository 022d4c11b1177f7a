from typing import NamedTuple, Optional

import numpy as np

from .errors import PrecisionError


class Precision(NamedTuple):
    """(storage, accumulation, output) dtype names for one kernel call.

    storage is the input element type T, accum the type U every reduction runs
    in, output the type V shared by the affine params and the normalized output.
    """

    storage: str
    accum: str
    output: str

    @property
    def half_storage(self):
        # Two-byte storage is read as packed pairs by the vector-load path.
        return self.storage in ("float16", "bfloat16")


# (input dtype, param dtype) -> precision. A missing param dtype means the
# output follows the input.
_PRECISIONS = {
    ("float32", "float32"): Precision("float32", "float32", "float32"),
    ("float64", "float64"): Precision("float64", "float64", "float64"),
    ("float16", "float16"): Precision("float16", "float32", "float16"),
    ("bfloat16", "bfloat16"): Precision("bfloat16", "float32", "bfloat16"),
    ("float16", "float32"): Precision("float16", "float32", "float32"),
    ("bfloat16", "float32"): Precision("bfloat16", "float32", "float32"),
    ("float32", "float16"): Precision("float32", "float32", "float16"),
    ("float32", "bfloat16"): Precision("float32", "float32", "bfloat16"),
}


def dtype_name(dtype) -> str:
    # Accepts numpy dtypes/scalar types and torch dtypes.
    text = str(dtype)
    if text.startswith("torch."):
        return text[len("torch."):]
    if text == "bfloat16":
        # numpy has no bfloat16 type
        return text
    return np.dtype(dtype).name


def resolve_precision(input_dtype, param_dtype: Optional[object] = None) -> Precision:
    """Pick the precision triple for an input dtype and optional param dtype."""
    storage = dtype_name(input_dtype)
    params = dtype_name(param_dtype) if param_dtype is not None else storage
    try:
        return _PRECISIONS[(storage, params)]
    except KeyError:
        raise PrecisionError(
            f"unsupported dtype combination: input {storage}, params {params}"
        ) from None


def supported_precisions():
    return sorted(set(_PRECISIONS.values()))


__all__ = ["Precision", "dtype_name", "resolve_precision", "supported_precisions"]
