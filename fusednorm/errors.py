class ShapeError(ValueError):
    """Tensor shapes or layouts the row-wise kernels cannot work on."""


class PrecisionError(TypeError):
    """A dtype combination outside the supported precision triples."""


class ScratchRaceError(RuntimeError):
    """Shared scratch memory was accessed across lanes without a barrier."""


__all__ = ["PrecisionError", "ScratchRaceError", "ShapeError"]
