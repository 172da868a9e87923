"""Engine error taxonomy.

Every error carries a human-readable message and a stable `code` so that
transport layers can map failures without string matching.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine failures."""

    code: str = "engine_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ModelLoadError(EngineError):
    """The runtime failed to load the model or allocate its execution context."""

    code = "model_load_error"


class ModelNotFoundError(ModelLoadError):
    """The configured model path does not exist or is not readable."""

    code = "model_not_found"


class NotLoadedError(EngineError):
    """Generation was requested while no model is ready."""

    code = "not_loaded"


class ConcurrentGenerationError(EngineError):
    """A generation is already in flight on this engine."""

    code = "concurrent_generation"


class GenerationCancelledError(EngineError):
    """The generation was stopped by an explicit cancel() call."""

    code = "cancelled"


class GenerationError(EngineError):
    """Any other runtime failure during inference."""

    code = "generation_error"


class InvalidRequestError(EngineError, ValueError):
    """A request or config field is outside its documented range."""

    code = "invalid_request"
