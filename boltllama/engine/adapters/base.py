"""Base adapter interface for model runtimes."""

from abc import ABC, abstractmethod
from typing import Any, Iterator

from ..types import ModelConfig, ModelInfo, SamplingParams


class BaseAdapter(ABC):
    """
    Abstract base class for model runtime adapters (the "model handle").

    An adapter owns the loaded weights, the tokenizer and the execution
    context (one KV-cache per session). The engine drives it through the
    token-level session API below and never touches the weights directly.
    """

    @abstractmethod
    def load(self, config: ModelConfig) -> None:
        """
        Load weights and tokenizer described by `config`.

        Args:
            config: Validated model configuration (path, offload, dtype, ...).

        Raises:
            Any exception; the engine converts it into a ModelLoadError and
            calls unload() to roll back partial state.
        """
        pass

    @property
    @abstractmethod
    def tokenizer(self) -> Any:
        """Tokenizer used for chat templating, encoding and decoding."""
        pass

    @abstractmethod
    def create_session(self, *, cache_id: str, max_seq_len: int, chunk_size: int) -> None:
        """
        Allocate an empty execution context (KV cache) for a session.

        Args:
            cache_id: Unique identifier for this session.
            max_seq_len: Context window in tokens.
            chunk_size: Prefill chunk length in tokens.
        """
        pass

    @abstractmethod
    def append_to_session(self, *, cache_id: str, input_ids: list[int]) -> None:
        """Prefill `input_ids` into the session after its current position."""
        pass

    @abstractmethod
    def stream_generate_session(
        self,
        *,
        cache_id: str,
        sampling: SamplingParams,
        max_new_tokens: int,
    ) -> Iterator[int]:
        """
        Decode from a session, yielding token ids one at a time.

        End-of-sequence tokens are not yielded. Closing the generator early
        must leave the session state consistent.
        """
        pass

    @abstractmethod
    def close_session(self, cache_id: str) -> None:
        """Free a session's execution context. Unknown ids are ignored."""
        pass

    @abstractmethod
    def get_session_info(self, cache_id: str) -> dict[str, Any]:
        """
        Return session metadata.

        Returns:
            Dict with at least 'current_pos' and 'max_seq_len'.
        """
        pass

    @property
    @abstractmethod
    def model_info(self) -> ModelInfo:
        """Return metadata about the loaded model."""
        pass

    def unload(self) -> None:
        """
        Release the execution context, then the model.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass
