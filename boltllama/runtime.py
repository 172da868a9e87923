"""Runtime environment checks for boltllama."""

from __future__ import annotations

import functools


@functools.lru_cache(maxsize=1)
def is_gguf_available() -> bool:
    """Check if the `gguf` package (needed to read .gguf files) is importable."""
    try:
        import gguf  # noqa: F401
        return True
    except ImportError:
        return False


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    try:
        import torch
    except ImportError:
        return False
    return torch.cuda.is_available()


def cuda_device_count() -> int:
    if not is_cuda_available():
        return 0
    import torch

    return torch.cuda.device_count()


def check_gguf_required() -> None:
    """Raise ImportError if GGUF support is not installed."""
    if not is_gguf_available():
        raise ImportError(
            "Loading .gguf model files requires the 'gguf' package. "
            "Install it with: pip install gguf"
        )
