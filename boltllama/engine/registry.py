"""Adapter and model-file registries.

- The adapter registry maps backend names to their adapter classes.
- `ModelRegistry` lists the model files available on disk.
"""

from __future__ import annotations

import os
import re
from dataclasses import asdict, dataclass
from typing import Any, Type

from .adapters.base import BaseAdapter
from .adapters.transformers import TransformersAdapter
from .errors import ModelNotFoundError

# Registry mapping backend names to adapter classes
_ADAPTER_REGISTRY: dict[str, Type[BaseAdapter]] = {
    "transformers": TransformersAdapter,
}


def get_adapter(backend: str) -> BaseAdapter:
    """
    Get an adapter instance for the given backend.

    Args:
        backend: Name of the backend (e.g., "transformers").

    Returns:
        An adapter instance for the backend.

    Raises:
        ValueError: If the backend is not registered.
    """
    if backend not in _ADAPTER_REGISTRY:
        available = ", ".join(_ADAPTER_REGISTRY.keys())
        raise ValueError(f"Unknown backend: {backend!r}. Available: {available}")
    return _ADAPTER_REGISTRY[backend]()


def register_adapter(backend: str, adapter_cls: Type[BaseAdapter]) -> None:
    """
    Register a new adapter for a backend.

    Args:
        backend: Name of the backend.
        adapter_cls: Adapter class (must inherit from BaseAdapter).
    """
    _ADAPTER_REGISTRY[backend] = adapter_cls


def list_backends() -> list[str]:
    """Return list of registered backend names."""
    return list(_ADAPTER_REGISTRY.keys())


# =============================================================================
# Model files
# =============================================================================

MODEL_FILE_SUFFIX = ".gguf"
DEFAULT_MODELS_DIR = os.path.join(os.path.expanduser("~"), ".bolt-llama", "models")

_PARAMS_RE = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)[bB](?![a-zA-Z])")
_QUANT_RE = re.compile(r"(?<![a-zA-Z0-9])(I?Q\d+(?:_[A-Z0-9]+)*|F16|BF16|F32)(?![a-zA-Z0-9])", re.IGNORECASE)


def default_models_dir() -> str:
    return os.path.expanduser(os.environ.get("BOLTLLAMA_MODELS_DIR") or DEFAULT_MODELS_DIR)


@dataclass(frozen=True)
class ModelFile:
    name: str
    path: str
    size: int
    format: str = "gguf"
    parameters: str | None = None
    quantization: str | None = None

    def to_dict(self, *, loaded: bool = False) -> dict[str, Any]:
        out = asdict(self)
        out["loaded"] = loaded
        return out


def describe_model_file(path: str) -> ModelFile:
    """Build a ModelFile from a path, parsing size hints from the file name."""
    name = os.path.basename(path)
    stem = name[: -len(MODEL_FILE_SUFFIX)] if name.lower().endswith(MODEL_FILE_SUFFIX) else name

    params_match = _PARAMS_RE.search(stem)
    quant_match = _QUANT_RE.search(stem)
    return ModelFile(
        name=name,
        path=path,
        size=os.path.getsize(path),
        parameters=f"{params_match.group(1)}B" if params_match else None,
        quantization=quant_match.group(1).upper() if quant_match else None,
    )


class ModelRegistry:
    """File-backed registry of model files under a single directory."""

    def __init__(self, models_dir: str | None = None) -> None:
        self._models_dir = os.path.abspath(os.path.expanduser(models_dir or default_models_dir()))

    @property
    def models_dir(self) -> str:
        return self._models_dir

    def list_models(self) -> list[ModelFile]:
        """Return the model files in the directory, sorted by name. A missing directory is empty."""
        if not os.path.isdir(self._models_dir):
            return []
        out: list[ModelFile] = []
        for entry in sorted(os.listdir(self._models_dir)):
            path = os.path.join(self._models_dir, entry)
            if entry.lower().endswith(MODEL_FILE_SUFFIX) and os.path.isfile(path):
                out.append(describe_model_file(path))
        return out

    def resolve(self, name_or_path: str) -> str:
        """Map a registry name (or an explicit path) to an absolute model path."""
        candidate = os.path.expanduser(name_or_path)
        if os.path.isabs(candidate) or os.sep in name_or_path:
            if os.path.exists(candidate):
                return os.path.abspath(candidate)
            raise ModelNotFoundError(f"Model not found at {name_or_path!r}.")

        for model in self.list_models():
            if model.name == name_or_path or model.name == f"{name_or_path}{MODEL_FILE_SUFFIX}":
                return model.path

        raise ModelNotFoundError(f"Model {name_or_path!r} not found in {self._models_dir}.")
