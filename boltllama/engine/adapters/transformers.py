"""Adapter backed by Hugging Face Transformers (GGUF files or model directories)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator

from ..types import ModelConfig, ModelInfo, SamplingParams
from .base import BaseAdapter

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)


# =============================================================================
# Session State
# =============================================================================


@dataclass
class _SessionState:
    """Internal state for a stateful KV-cache session."""

    past_key_values: Any
    current_pos: int
    max_seq_len: int
    chunk_size: int
    next_token_logits: torch.Tensor | None


# =============================================================================
# Helpers
# =============================================================================


def _split_model_path(model_path: str) -> tuple[str, str | None]:
    """Map a user path to (from_pretrained directory, gguf_file or None)."""
    path = os.path.abspath(os.path.expanduser(model_path))
    if os.path.isdir(path):
        return path, None
    return os.path.dirname(path), os.path.basename(path)


def _dtype_from_string(dtype: str) -> Any:
    import torch

    dt = (dtype or "auto").strip().lower()
    if dt == "auto":
        return "auto"
    if dt in {"fp16", "float16", "half"}:
        return torch.float16
    if dt in {"bf16", "bfloat16"}:
        return torch.bfloat16
    if dt in {"fp32", "float32"}:
        return torch.float32
    raise ValueError(f"Unknown dtype: {dtype!r}")


def offload_device_map(num_layers: int | None, gpu_layers: int, *, cuda_available: bool) -> str | dict[str, Any]:
    """Build a device_map that places the first `gpu_layers` decoder layers on GPU 0.

    `gpu_layers=-1` (or a count covering every layer) places the whole model on
    the GPU; `0` or no CUDA keeps it on the CPU.
    """
    if not cuda_available or gpu_layers == 0:
        return "cpu"
    if gpu_layers < 0 or num_layers is None or gpu_layers >= num_layers:
        return "cuda:0"

    device_map: dict[str, Any] = {"model.embed_tokens": 0}
    for i in range(num_layers):
        device_map[f"model.layers.{i}"] = 0 if i < gpu_layers else "cpu"
    device_map["model.norm"] = "cpu"
    device_map["model.rotary_emb"] = "cpu"
    device_map["lm_head"] = "cpu"
    return device_map


def sample_token(logits: torch.Tensor, sampling: SamplingParams) -> torch.Tensor:
    """Sample a single token from logits of shape (1, vocab). Returns shape (1, 1).

    temperature == 0 is greedy; top_k == 0 and top_p == 1 disable those filters.
    """
    import torch

    temperature = sampling.temperature
    if temperature is None or temperature < 0:
        raise ValueError(f"Temperature must be >= 0, got {temperature}")
    if temperature == 0:
        return torch.argmax(logits, dim=-1, keepdim=True)

    # Numerical stability: compute softmax in fp32 to avoid overflow
    # that can occur with fp16 logits and low temperature.
    logits_f = logits.float() / float(temperature)

    if sampling.top_k and sampling.top_k > 0:
        k = min(int(sampling.top_k), logits_f.shape[-1])
        kth = torch.topk(logits_f, k, dim=-1).values[..., -1, None]
        logits_f = logits_f.masked_fill(logits_f < kth, float("-inf"))

    probs = torch.softmax(logits_f, dim=-1)

    if sampling.top_p is not None and sampling.top_p < 1.0:
        sorted_probs, sorted_idx = torch.sort(probs, dim=-1, descending=True)
        cumulative = torch.cumsum(sorted_probs, dim=-1)
        # Keep the smallest prefix whose mass reaches top_p (always keeps the first).
        sorted_probs = sorted_probs.masked_fill(cumulative - sorted_probs > sampling.top_p, 0.0)
        probs = torch.zeros_like(probs).scatter(-1, sorted_idx, sorted_probs)

    if torch.isnan(probs).any() or torch.isinf(probs).any() or (probs < 0).any():
        probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)
        probs = torch.clamp(probs, min=0.0)

    z = probs.sum(dim=-1, keepdim=True)
    if (z <= 0).any():
        return torch.argmax(logits, dim=-1, keepdim=True)
    return torch.multinomial(probs / z, 1)


# =============================================================================
# Adapter
# =============================================================================


class TransformersAdapter(BaseAdapter):
    """
    Adapter for causal LMs loadable through `transformers`.

    `model_path` may point to a `.gguf` file (dequantized on load via the
    `gguf` package) or to a Hugging Face model directory.

    Thread Safety:
        This adapter is NOT thread-safe. The engine serializes access with its
        generation slot; do not call generation methods concurrently.

    Example:
        >>> adapter = TransformersAdapter()
        >>> adapter.load(ModelConfig(model_path="/models/a.gguf", gpu_layers=0))
        >>> adapter.create_session(cache_id="chat", max_seq_len=4096, chunk_size=512)
        >>> adapter.append_to_session(cache_id="chat", input_ids=adapter.tokenizer.encode("Hi"))
        >>> for token_id in adapter.stream_generate_session(
        ...     cache_id="chat", sampling=SamplingParams(), max_new_tokens=32
        ... ):
        ...     print(adapter.tokenizer.decode([token_id]), end="", flush=True)
    """

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._device_map: Any = "cpu"
        self._dtype: Any = None
        self._max_context_length: int | None = None
        self._stop_token_ids: set[int] = set()
        self._sessions: dict[str, _SessionState] = {}

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def tokenizer(self):
        return self._tokenizer

    @property
    def input_device(self) -> Any:
        """Device of the input embeddings (where input ids must live)."""
        return self._model.get_input_embeddings().weight.device

    @property
    def model_info(self) -> ModelInfo:
        device = self._device_map if isinstance(self._device_map, str) else "cuda:0+cpu"
        return ModelInfo(
            model_path=self._model_path or "",
            model_family="transformers",
            dtype=str(self._dtype),
            device=device,
            max_context_length=self._max_context_length,
            extra={
                "loaded": self._model is not None,
                "active_sessions": len(self._sessions),
            },
        )

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, config: ModelConfig) -> None:
        """Load model weights and tokenizer.

        GPU offload follows `config.gpu_layers`; layers past that count stay on
        the CPU (requires `accelerate`).
        """
        import torch
        from transformers import AutoConfig, AutoModelForCausalLM, AutoTokenizer

        from ...runtime import check_gguf_required, is_cuda_available

        model_dir, gguf_file = _split_model_path(config.model_path)
        load_kwargs: dict[str, Any] = {}
        if gguf_file is not None:
            check_gguf_required()
            load_kwargs["gguf_file"] = gguf_file

        hf_config = AutoConfig.from_pretrained(model_dir, **load_kwargs)
        num_layers = getattr(hf_config, "num_hidden_layers", None)
        self._max_context_length = getattr(hf_config, "max_position_embeddings", None)
        self._device_map = offload_device_map(
            num_layers,
            config.gpu_layers,
            cuda_available=is_cuda_available(),
        )
        self._dtype = _dtype_from_string(config.dtype)
        self._model_path = config.model_path

        self._tokenizer = AutoTokenizer.from_pretrained(model_dir, **load_kwargs)

        try:
            self._model = AutoModelForCausalLM.from_pretrained(
                model_dir,
                torch_dtype=self._dtype,
                device_map=self._device_map,
                **load_kwargs,
            )
        except ValueError as exc:
            if not isinstance(self._device_map, dict):
                raise
            # Architectures with different module names reject the explicit map.
            logger.warning("Partial GPU offload map rejected (%s); falling back to device_map='auto'.", exc)
            self._device_map = "auto"
            self._model = AutoModelForCausalLM.from_pretrained(
                model_dir,
                torch_dtype=self._dtype,
                device_map=self._device_map,
                **load_kwargs,
            )
        self._model.eval()

        stop_ids: set[int] = set()
        if self._tokenizer.eos_token_id is not None:
            stop_ids.add(int(self._tokenizer.eos_token_id))
        gen_eos = getattr(getattr(self._model, "generation_config", None), "eos_token_id", None)
        if isinstance(gen_eos, int):
            stop_ids.add(gen_eos)
        elif isinstance(gen_eos, (list, tuple)):
            stop_ids.update(int(t) for t in gen_eos)
        self._stop_token_ids = stop_ids

        logger.info(
            "Loaded %s (layers=%s gpu_layers=%s device_map=%s dtype=%s cuda=%s)",
            config.model_path,
            num_layers,
            config.gpu_layers,
            self._device_map if isinstance(self._device_map, str) else "partial",
            self._dtype,
            torch.cuda.is_available(),
        )

    def unload(self) -> None:
        """Close all sessions, then free the model and GPU memory."""
        import gc

        import torch

        # Close all sessions first
        for cache_id in list(self._sessions.keys()):
            self.close_session(cache_id)

        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None
        self._sessions.clear()

        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    # -------------------------------------------------------------------------
    # Stateful Sessions (Public API)
    # -------------------------------------------------------------------------

    def create_session(self, *, cache_id: str, max_seq_len: int, chunk_size: int) -> None:
        """Create an empty session; the KV cache grows on first prefill."""
        self._ensure_loaded()
        if cache_id in self._sessions:
            raise ValueError(f"Session already exists: {cache_id}")
        if max_seq_len <= 0 or chunk_size <= 0:
            raise ValueError(f"Invalid session sizes: max_seq_len={max_seq_len} chunk_size={chunk_size}")

        self._sessions[cache_id] = _SessionState(
            past_key_values=None,
            current_pos=0,
            max_seq_len=int(max_seq_len),
            chunk_size=int(chunk_size),
            next_token_logits=None,
        )

    def append_to_session(self, *, cache_id: str, input_ids: list[int]) -> None:
        """Append tokens to an existing session (chunked prefill)."""
        self._ensure_loaded()

        session = self._sessions.get(cache_id)
        if session is None:
            raise KeyError(f"Unknown session: {cache_id}")
        if not input_ids:
            return

        new_len = len(input_ids)
        if session.current_pos + new_len >= session.max_seq_len:
            raise ValueError(
                f"Session {cache_id} would exceed max_seq_len={session.max_seq_len}. "
                f"Need {session.current_pos + new_len + 1}."
            )

        import torch

        ids = torch.tensor([input_ids], dtype=torch.long, device=self.input_device)
        outputs, past_key_values, current_pos = self._prefill_tokens(
            ids,
            past_key_values=session.past_key_values,
            start_pos=session.current_pos,
            chunk_size=session.chunk_size,
        )
        if outputs is None:
            return

        session.past_key_values = past_key_values
        session.current_pos = current_pos
        session.next_token_logits = outputs.logits[:, -1, :].detach()

    def stream_generate_session(
        self,
        *,
        cache_id: str,
        sampling: SamplingParams,
        max_new_tokens: int,
    ) -> Iterator[int]:
        """Decode from a session, streaming token ids.

        The session state (cache, position) is persisted as tokens are generated.
        If you stop early (close the generator), the finalizer still persists
        whatever progress has been made. End-of-sequence tokens are neither
        yielded nor written to the KV cache.
        """
        self._ensure_loaded()

        session = self._sessions.get(cache_id)
        if session is None:
            raise KeyError(f"Unknown session: {cache_id}")
        if session.next_token_logits is None:
            raise RuntimeError(
                f"Session {cache_id} has no prefill state. "
                "Call append_to_session() with some tokens before decoding."
            )

        import torch

        past_key_values = session.past_key_values
        current_pos = session.current_pos
        next_token_logits = session.next_token_logits

        try:
            for _ in range(max_new_tokens):
                next_token = sample_token(next_token_logits, sampling)
                token_id = int(next_token.item())
                if token_id in self._stop_token_ids:
                    break

                if current_pos >= session.max_seq_len:
                    raise ValueError(
                        f"Session {cache_id} exceeded max_seq_len={session.max_seq_len} during decode."
                    )

                yield token_id

                # Forward pass for the yielded token; only advance position
                # after a successful KV write.
                with torch.no_grad():
                    outputs = self._model(
                        next_token.to(self.input_device),
                        past_key_values=past_key_values,
                        use_cache=True,
                    )
                    past_key_values = outputs.past_key_values
                    next_token_logits = outputs.logits[:, -1, :]

                current_pos += 1
        finally:
            # Persist updated state
            session.past_key_values = past_key_values
            session.current_pos = current_pos
            session.next_token_logits = next_token_logits.detach()

    def close_session(self, cache_id: str) -> None:
        """Close a session and free its KV cache."""
        session = self._sessions.pop(cache_id, None)
        if session is not None:
            del session.past_key_values

    def get_session_info(self, cache_id: str) -> dict[str, Any]:
        session = self._sessions.get(cache_id)
        if session is None:
            raise KeyError(f"Unknown session: {cache_id}")
        return {
            "cache_id": cache_id,
            "current_pos": session.current_pos,
            "max_seq_len": session.max_seq_len,
            "has_prefill": session.next_token_logits is not None,
        }

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        """Raise if model/tokenizer not loaded."""
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")

    def _prefill_tokens(
        self,
        input_ids: torch.Tensor,
        *,
        past_key_values,
        start_pos: int,
        chunk_size: int,
    ):
        """Chunked prefill into a cache starting at `start_pos`."""
        import torch

        seq_len = input_ids.shape[1]
        outputs = None
        num_chunks = (seq_len + chunk_size - 1) // chunk_size

        with torch.no_grad():
            for chunk_idx in range(num_chunks):
                chunk_start = chunk_idx * chunk_size
                chunk_end = min((chunk_idx + 1) * chunk_size, seq_len)

                outputs = self._model(
                    input_ids[:, chunk_start:chunk_end],
                    past_key_values=past_key_values,
                    use_cache=True,
                )
                past_key_values = outputs.past_key_values

        return outputs, past_key_values, start_pos + seq_len
