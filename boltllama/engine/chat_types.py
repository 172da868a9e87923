"""Core generation request and streaming event types.

These types are internal to the library and are intentionally decoupled from:
- HTTP transport (FastAPI / SSE)
- The JSON envelopes used by the UI bridge

The goal is to keep the core engine reusable for future API surfaces.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from .types import check_sampling_ranges


@dataclass(frozen=True)
class ChatTurn:
    """One message in the accumulated conversational context."""

    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class GenerationRequest:
    """Normalized internal generation request.

    Notes:
    - `system_prompt=None` selects the engine default instruction; an empty
      string disables the instruction entirely.
    - Numeric overrides are validated on construction and rejected when out of
      range; `None` falls back to the loaded model's defaults.
    """

    prompt: str
    context: str | None = None
    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None

    def __post_init__(self) -> None:
        check_sampling_ranges(
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            max_tokens=self.max_tokens,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"prompt": self.prompt}
        for key in ("context", "model", "temperature", "top_p", "top_k", "max_tokens", "system_prompt"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


@dataclass(frozen=True)
class StreamOptions:
    """Chunked streaming policy."""

    flush_every_n_tokens: int = 8
    flush_every_ms: int = 50
    max_chunk_chars: int = 50


@dataclass(frozen=True)
class StartEvent:
    """First event of every accepted stream; echoes the request."""

    request: GenerationRequest


@dataclass(frozen=True)
class ChunkEvent:
    """An ordered fragment of output text (not token- or word-aligned)."""

    text: str


@dataclass(frozen=True)
class EndEvent:
    """Terminal event for a successful generation."""

    tokens: int
    generation_time_ms: int
    total_length: int


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal event for a failed or cancelled generation."""

    message: str
    code: str = "generation_error"
    cancelled: bool = False


StreamEvent = StartEvent | ChunkEvent | EndEvent | ErrorEvent
