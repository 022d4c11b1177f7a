import logging
from typing import Union

from .base import Backend
from .numpy_backend import NumpyBackend

try:  # pragma: no cover - triton is optional
    from .triton_backend import TritonBackend
except ImportError:  # pragma: no cover - keep numpy-only environments working
    TritonBackend = None

logger = logging.getLogger(__name__)

_BACKENDS = {"numpy": NumpyBackend}
if TritonBackend is not None:
    _BACKENDS["triton"] = TritonBackend

_CURRENT_BACKEND = NumpyBackend()


def get_backend():
    return _CURRENT_BACKEND


def set_backend(backend: Union[str, Backend]):
    """Switch the process-wide backend by name or instance; returns it."""
    global _CURRENT_BACKEND
    if isinstance(backend, str):
        name = backend.lower()
        if name == "triton" and TritonBackend is None:
            raise ImportError("Triton backend is unavailable; install torch and triton.")
        if name not in _BACKENDS:
            raise ValueError(f"unknown backend '{backend}'")
        # TritonBackend() raises RuntimeError here when CUDA is missing.
        _CURRENT_BACKEND = _BACKENDS[name]()
    elif isinstance(backend, Backend):
        _CURRENT_BACKEND = backend
    else:
        raise TypeError(f"backend must be a name or a Backend, got {type(backend)}")
    logger.info("fusednorm backend set to %s", _CURRENT_BACKEND.name)
    return _CURRENT_BACKEND


def available_backends():
    return list(_BACKENDS)


__all__ = [
    "Backend",
    "NumpyBackend",
    "TritonBackend",
    "available_backends",
    "get_backend",
    "set_backend",
]
