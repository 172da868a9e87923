"""Engine configuration and result types.

These types are used internally by the engine and adapters.
They are independent of any HTTP/API layer.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any

from .errors import InvalidRequestError, ModelLoadError, ModelNotFoundError

# Rough characters-per-token ratio used when the runtime gives no exact count.
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def check_sampling_ranges(
    *,
    temperature: float | None,
    top_p: float | None,
    top_k: int | None,
    max_tokens: int | None,
    prefix: str = "",
) -> None:
    """Reject out-of-range sampling values (no clamping)."""
    if temperature is not None and (math.isnan(temperature) or temperature < 0):
        raise InvalidRequestError(f"'{prefix}temperature' must be >= 0, got {temperature}.")
    if top_p is not None and not (0.0 <= top_p <= 1.0):
        raise InvalidRequestError(f"'{prefix}top_p' must be within [0, 1], got {top_p}.")
    if top_k is not None and top_k < 0:
        raise InvalidRequestError(f"'{prefix}top_k' must be >= 0, got {top_k}.")
    if max_tokens is not None and max_tokens < 1:
        raise InvalidRequestError(f"'{prefix}max_tokens' must be >= 1, got {max_tokens}.")


@dataclass(frozen=True)
class SamplingParams:
    """Resolved token-selection controls for one generation."""

    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 2048


@dataclass(frozen=True)
class ModelConfig:
    """Configuration for loading a model.

    Notes:
    - `gpu_layers=-1` offloads every layer; `0` keeps the model on the CPU.
    - `batch_size` is the prefill chunk length in tokens.
    - The sampling fields are defaults; requests may override them per call.
    """

    model_path: str = os.path.join(os.path.expanduser("~"), ".bolt-llama", "models", "model.gguf")
    gpu_layers: int = 33
    context_size: int = 4096
    batch_size: int = 512
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 2048
    backend: str = "transformers"
    dtype: str = "auto"

    def validate(self) -> None:
        path = os.path.expanduser(self.model_path or "")
        if not path or not os.path.exists(path):
            raise ModelNotFoundError(
                f"Model not found at {self.model_path!r}. "
                "Please ensure the model file exists at the specified path."
            )
        if not os.access(path, os.R_OK):
            raise ModelNotFoundError(f"Model path is not readable: {self.model_path!r}.")

        if self.gpu_layers < -1:
            raise ModelLoadError(f"'gpu_layers' must be >= -1, got {self.gpu_layers}.")
        if self.context_size <= 0:
            raise ModelLoadError(f"'context_size' must be > 0, got {self.context_size}.")
        if self.batch_size <= 0:
            raise ModelLoadError(f"'batch_size' must be > 0, got {self.batch_size}.")
        try:
            check_sampling_ranges(
                temperature=self.temperature,
                top_p=self.top_p,
                top_k=self.top_k,
                max_tokens=self.max_tokens,
            )
        except InvalidRequestError as exc:
            raise ModelLoadError(str(exc)) from exc

    def merged(self, **overrides: Any) -> "ModelConfig":
        """Copy-on-write merge of partial overrides; `None` values are ignored."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown model config field(s): {', '.join(unknown)}.")
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        return replace(self, **changes)

    def sampling(self) -> SamplingParams:
        return SamplingParams(
            temperature=float(self.temperature),
            top_p=float(self.top_p),
            top_k=int(self.top_k),
            max_tokens=int(self.max_tokens),
        )


@dataclass(frozen=True)
class GenerationResult:
    """Response from a one-shot generation."""

    text: str
    code: str
    tokens: int
    generation_time_ms: int
    language: str | None = None

    @property
    def explanation(self) -> str:
        lines = len(self.code.split("\n"))
        return f"Generated {lines} lines of code in {self.generation_time_ms}ms"


@dataclass
class ModelInfo:
    """Information about a loaded model."""

    model_path: str
    model_family: str
    dtype: str
    device: str
    max_context_length: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)
