"""
Bolt Llama - A local, single-model LLM inference engine.

This package loads one causal language model (GGUF file or Hugging Face
directory) and serves one-shot and streamed generation with cooperative
cancellation.

Quick Start:
    import asyncio
    from boltllama import GenerationEngine, GenerationRequest, ModelConfig

    engine = GenerationEngine(ModelConfig(model_path="~/models/coder-7b.Q4_K_M.gguf"))
    asyncio.run(engine.initialize())
    result = asyncio.run(engine.generate(GenerationRequest(prompt="hello")))
    print(result.code)

Submodules:
    - boltllama.engine: Engine, session, adapters and types
    - boltllama.runtime: Environment checks (CUDA, GGUF support)

Environment Variables:
    BOLTLLAMA_MODELS_DIR: Directory scanned for *.gguf model files
        (default: ~/.bolt-llama/models)
"""

from boltllama._version import __version__

from boltllama.engine.cancellation import CancellationToken
from boltllama.engine.chat_engine import EngineConfig, EngineState, GenerationEngine
from boltllama.engine.chat_types import (
    ChunkEvent,
    EndEvent,
    ErrorEvent,
    GenerationRequest,
    StartEvent,
    StreamEvent,
    StreamOptions,
)
from boltllama.engine.errors import (
    ConcurrentGenerationError,
    EngineError,
    GenerationCancelledError,
    GenerationError,
    InvalidRequestError,
    ModelLoadError,
    ModelNotFoundError,
    NotLoadedError,
)
from boltllama.engine.registry import ModelRegistry
from boltllama.engine.types import GenerationResult, ModelConfig, SamplingParams

# Runtime utilities
from boltllama.runtime import (
    is_cuda_available,
    is_gguf_available,
)

__all__ = [
    # Version
    "__version__",
    # Engine
    "GenerationEngine",
    "EngineConfig",
    "EngineState",
    "CancellationToken",
    "ModelRegistry",
    # Types
    "ModelConfig",
    "SamplingParams",
    "GenerationRequest",
    "GenerationResult",
    "StreamOptions",
    "StreamEvent",
    "StartEvent",
    "ChunkEvent",
    "EndEvent",
    "ErrorEvent",
    # Errors
    "EngineError",
    "ModelLoadError",
    "ModelNotFoundError",
    "NotLoadedError",
    "ConcurrentGenerationError",
    "GenerationCancelledError",
    "GenerationError",
    "InvalidRequestError",
    # Runtime
    "is_cuda_available",
    "is_gguf_available",
]
