"""Single-model, single-flight async generation engine.

This module provides the core, reusable engine:
- model lifecycle (load / unload / config)
- serialized adapter execution (one generation at a time)
- one-shot and chunk-level async streaming generation
- cooperative cancellation

It deliberately contains no HTTP/FastAPI code.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Callable

from .adapters.base import BaseAdapter
from .cancellation import CANCELLED_MESSAGE, CancellationToken
from .chat_types import (
    ChunkEvent,
    EndEvent,
    ErrorEvent,
    GenerationRequest,
    StartEvent,
    StreamEvent,
    StreamOptions,
)
from .code_fence import primary_payload
from .errors import (
    ConcurrentGenerationError,
    EngineError,
    GenerationCancelledError,
    GenerationError,
    ModelLoadError,
    NotLoadedError,
)
from .prompts import build_prompt
from .registry import get_adapter
from .session import InferenceSession
from .types import GenerationResult, ModelConfig, ModelInfo, SamplingParams, estimate_tokens

logger = logging.getLogger(__name__)


class EngineState(str, enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults and limits."""

    stream: StreamOptions = field(default_factory=StreamOptions)
    # None selects the built-in code-generation instruction.
    default_system_prompt: str | None = None
    # How long unload() waits for an in-flight generation to let go of the model.
    unload_wait_s: float = 30.0


@dataclass
class _Outcome:
    text: str
    completion_tokens: int


class _IncrementalDecoder:
    """Turns a growing list of token ids into append-only text deltas.

    The whole id list is re-decoded on every push so multi-token characters and
    tokenizer whitespace rules come out right; a trailing replacement character
    (an incomplete UTF-8 sequence) is held back until the next push.
    """

    def __init__(self, tokenizer: Any) -> None:
        self._tokenizer = tokenizer
        self._ids: list[int] = []
        self._emitted = ""

    @property
    def text(self) -> str:
        return self._emitted

    def push(self, token_ids: list[int]) -> str:
        self._ids.extend(token_ids)
        return self._advance(self._decode().rstrip("\ufffd"))

    def finish(self) -> str:
        return self._advance(self._decode(), final=True)

    def _decode(self) -> str:
        if not self._ids:
            return ""
        return self._tokenizer.decode(
            self._ids,
            skip_special_tokens=True,
            clean_up_tokenization_spaces=False,
        )

    def _advance(self, text: str, *, final: bool = False) -> str:
        if not text.startswith(self._emitted):
            if final:
                logger.warning("Decoded text no longer extends the streamed prefix; keeping what was streamed.")
            return ""
        delta = text[len(self._emitted) :]
        self._emitted = text
        return delta


class _Flight:
    """One accepted generation: its cancellation token and its share of the slot.

    The slot is released once every party (worker thread, stream consumer)
    has called done().
    """

    def __init__(
        self,
        engine: "GenerationEngine",
        *,
        parties: int,
        session: InferenceSession,
        tokenizer: Any,
        sampling: SamplingParams,
    ) -> None:
        self.token = CancellationToken()
        self.accepted_at = time.monotonic()
        self.session = session
        self.tokenizer = tokenizer
        self.sampling = sampling
        self._engine = engine
        self._parties = parties
        self._mu = threading.Lock()

    def elapsed_ms(self) -> int:
        return max(int((time.monotonic() - self.accepted_at) * 1000), 0)

    def done(self) -> None:
        with self._mu:
            self._parties -= 1
            last = self._parties == 0
        if last:
            self._engine._release(self)


class GenerationEngine:
    """Owns one model handle and its inference session; serves one generation at a time.

    Thread-safety:
        The underlying adapter is not thread-safe. Generation is serialized
        with a non-blocking "slot" lock (a second request is rejected, not
        queued); load/unload are serialized with a lifecycle lock.
    """

    def __init__(
        self,
        model_config: ModelConfig | None = None,
        *,
        config: EngineConfig | None = None,
        adapter_factory: Callable[[str], BaseAdapter] = get_adapter,
    ) -> None:
        self._model_config = model_config or ModelConfig()
        self._config = config or EngineConfig()
        self._adapter_factory = adapter_factory

        self._lifecycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._slot = threading.Lock()

        self._state = EngineState.UNLOADED
        self._adapter: BaseAdapter | None = None
        self._session: InferenceSession | None = None
        self._loaded_config: ModelConfig | None = None
        self._flight: _Flight | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def config(self) -> ModelConfig:
        """Retained config used by the next load."""
        return self._model_config

    @property
    def engine_config(self) -> EngineConfig:
        return self._config

    @property
    def loaded_config(self) -> ModelConfig | None:
        """Config captured when the current model was loaded (None when unloaded)."""
        return self._loaded_config

    @property
    def model_info(self) -> ModelInfo | None:
        adapter = self._adapter
        if adapter is None:
            return None
        return adapter.model_info

    @property
    def session(self) -> InferenceSession | None:
        return self._session

    def is_loaded(self) -> bool:
        return self._state is EngineState.READY

    def update_config(self, **partial: Any) -> ModelConfig:
        """Merge `partial` into the retained config for the next load.

        The loaded model (and any in-flight request) keeps the config it was
        loaded with.
        """
        self._model_config = self._model_config.merged(**partial)
        return self._model_config

    async def initialize(self, config: ModelConfig | None = None) -> None:
        """Load the model and create its session. No-op if a model is already loaded.

        `config` becomes the retained config only when the load succeeds.
        """
        await asyncio.to_thread(self._initialize_blocking, config)

    async def unload(self) -> None:
        """Release the session, then the model. Never raises; no-op when unloaded."""
        await asyncio.to_thread(self._unload_blocking)

    def _initialize_blocking(self, config: ModelConfig | None) -> None:
        with self._lifecycle_lock:
            if self._state is EngineState.READY:
                logger.info("Model already loaded (%s); initialize() is a no-op.", self._loaded_config.model_path)
                return

            previous_config = self._model_config
            if config is not None:
                self._model_config = config
            model_config = self._model_config

            with self._state_lock:
                self._state = EngineState.LOADING

            adapter: BaseAdapter | None = None
            try:
                model_config.validate()
                adapter = self._adapter_factory(model_config.backend)
                adapter.load(model_config)
                session = InferenceSession(
                    adapter,
                    context_size=model_config.context_size,
                    batch_size=model_config.batch_size,
                )
            except Exception as exc:
                if adapter is not None:
                    self._dispose_adapter(adapter)
                with self._state_lock:
                    self._state = EngineState.UNLOADED
                # A rejected config must not leak into the next load.
                self._model_config = previous_config
                logger.error("Model load failed for %s: %s", model_config.model_path, exc)
                if isinstance(exc, ModelLoadError):
                    raise
                raise ModelLoadError(f"Failed to initialize LLM engine: {exc}") from exc

            with self._state_lock:
                self._adapter = adapter
                self._session = session
                self._loaded_config = model_config
                self._state = EngineState.READY

            logger.info(
                "Model ready: %s (context_size=%d batch_size=%d gpu_layers=%d)",
                model_config.model_path,
                model_config.context_size,
                model_config.batch_size,
                model_config.gpu_layers,
            )

    def _unload_blocking(self) -> None:
        with self._lifecycle_lock:
            with self._state_lock:
                if self._state is EngineState.UNLOADED and self._adapter is None:
                    return
                # New requests are rejected from here on.
                self._state = EngineState.UNLOADED
                flight = self._flight
            if flight is not None:
                flight.token.cancel()

            acquired = self._slot.acquire(timeout=self._config.unload_wait_s)
            if not acquired:
                logger.warning(
                    "In-flight generation did not stop within %.1fs; unloading anyway.",
                    self._config.unload_wait_s,
                )

            try:
                session, adapter = self._session, self._adapter
                if session is not None:
                    try:
                        session.close()
                    except Exception:
                        logger.exception("Failed to close inference session")
                if adapter is not None:
                    self._dispose_adapter(adapter)
                with self._state_lock:
                    self._session = None
                    self._adapter = None
                    self._loaded_config = None
                logger.info("Model unloaded.")
            finally:
                if acquired:
                    self._slot.release()

    def _dispose_adapter(self, adapter: BaseAdapter) -> None:
        try:
            adapter.unload()
        except Exception:
            logger.exception("Failed to unload model")

    # -------------------------------------------------------------------------
    # Generation slot
    # -------------------------------------------------------------------------

    def _accept(self, request: GenerationRequest, *, parties: int) -> _Flight:
        with self._state_lock:
            if self._state is EngineState.LOADING:
                raise NotLoadedError("Model is still loading. Please wait.")
            if self._state is not EngineState.READY or self._session is None:
                raise NotLoadedError("LLM engine not initialized. Call initialize() first.")
            if not self._slot.acquire(blocking=False):
                raise ConcurrentGenerationError("A generation is already in progress. Cancel it or wait for it to finish.")

            flight = _Flight(
                self,
                parties=parties,
                session=self._session,
                tokenizer=self._adapter.tokenizer,
                sampling=self._resolve_sampling(request),
            )
            self._flight = flight
            return flight

    def _release(self, flight: _Flight) -> None:
        with self._state_lock:
            if self._flight is flight:
                self._flight = None
        self._slot.release()

    def _resolve_sampling(self, request: GenerationRequest) -> SamplingParams:
        base = self._loaded_config.sampling()
        overrides = {
            "temperature": request.temperature,
            "top_p": request.top_p,
            "top_k": request.top_k,
            "max_tokens": request.max_tokens,
        }
        return replace(base, **{k: v for k, v in overrides.items() if v is not None})

    def _effective_prompt(self, request: GenerationRequest) -> str:
        system_prompt = request.system_prompt
        if system_prompt is None:
            system_prompt = self._config.default_system_prompt
        return build_prompt(request.prompt, system_prompt=system_prompt, context=request.context)

    def cancel(self) -> None:
        """Signal the in-flight generation (if any) to stop at its next checkpoint."""
        flight = self._flight
        if flight is None:
            logger.debug("cancel() with no generation in flight")
            return
        flight.token.cancel()

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _run(
        self,
        flight: _Flight,
        request: GenerationRequest,
        emit: Callable[[str], None] | None = None,
    ) -> _Outcome:
        """Prefill, decode and detokenize one turn on the calling thread.

        Text is pushed to `emit` on the flush cadence. Raises
        GenerationCancelledError if the token was set, GenerationError otherwise.
        """
        session = flight.session
        prompt = self._effective_prompt(request)
        decoder = _IncrementalDecoder(flight.tokenizer)
        generated: list[int] = []
        begun = False

        opts = self._config.stream
        flush_n = max(int(opts.flush_every_n_tokens), 1)
        flush_s = max(int(opts.flush_every_ms), 1) / 1000.0

        def _flush(token_ids: list[int]) -> None:
            delta = decoder.push(token_ids)
            if delta and emit is not None:
                emit(delta)

        try:
            flight.token.raise_if_cancelled()
            budget = session.begin_turn(prompt, flight.sampling.max_tokens)
            begun = True

            token_buffer: list[int] = []
            last_flush = time.monotonic()
            token_iter = session.stream_generate(flight.sampling, budget)
            try:
                for token_id in token_iter:
                    if flight.token.cancelled:
                        break

                    generated.append(int(token_id))
                    token_buffer.append(int(token_id))

                    now = time.monotonic()
                    if len(token_buffer) < flush_n and (now - last_flush) < flush_s:
                        continue

                    last_flush = now
                    _flush(token_buffer)
                    token_buffer = []
            finally:
                # Closing the generator runs the adapter's finalizer, which
                # persists the KV cache position.
                if hasattr(token_iter, "close"):
                    token_iter.close()

            if flight.token.cancelled:
                # Keep the partial text for the session history, but stream nothing more.
                decoder.push(token_buffer)
                flight.token.raise_if_cancelled()
            if token_buffer:
                _flush(token_buffer)

            tail = decoder.finish()
            if tail and emit is not None:
                emit(tail)
            return _Outcome(text=decoder.text, completion_tokens=len(generated))
        except EngineError:
            raise
        except Exception as exc:
            logger.exception("Generation failed")
            raise GenerationError(f"Generation failed: {exc}") from exc
        finally:
            if begun:
                try:
                    session.end_turn(prompt, decoder.text, generated)
                except Exception:
                    logger.exception("Failed to record chat turn")

    def _run_flight(self, flight: _Flight, request: GenerationRequest) -> _Outcome:
        try:
            return self._run(flight, request)
        finally:
            flight.done()

    # -------------------------------------------------------------------------
    # Public generation API
    # -------------------------------------------------------------------------

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """One-shot generation.

        Raises:
            NotLoadedError: No model is ready.
            ConcurrentGenerationError: Another generation is in flight.
            GenerationCancelledError: cancel() was called before completion.
            GenerationError: Any other runtime failure.
        """
        flight = self._accept(request, parties=1)
        try:
            outcome = await asyncio.to_thread(self._run_flight, flight, request)
        except asyncio.CancelledError:
            flight.token.cancel()
            raise

        code, language = primary_payload(outcome.text)
        return GenerationResult(
            text=outcome.text,
            code=code,
            tokens=outcome.completion_tokens or estimate_tokens(outcome.text),
            generation_time_ms=flight.elapsed_ms(),
            language=language,
        )

    async def chat(self, message: str) -> str:
        """Free-form conversational turn without a system instruction."""
        result = await self.generate(GenerationRequest(prompt=message, system_prompt=""))
        return result.text

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        """Async iterator of Start, Chunk*, then exactly one End or Error.

        Never raises for not-loaded / concurrent requests; those surface as a
        single ErrorEvent.
        """
        try:
            flight = self._accept(request, parties=2)
        except EngineError as exc:
            yield ErrorEvent(exc.message, code=exc.code)
            return

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue()
        max_chunk = max(int(self._config.stream.max_chunk_chars), 1)

        def _put(item: Any) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Event loop already closed: the consumer is gone.
                logger.debug("Dropping stream item; event loop closed")

        def worker() -> None:
            item: Any = GenerationError("Generation failed: worker exited unexpectedly")
            try:
                item = self._run(flight, request, emit=_put)
            except EngineError as exc:
                item = exc
            finally:
                flight.done()
                _put(item)

        thread = threading.Thread(target=worker, name=f"boltllama-gen-{uuid.uuid4().hex}", daemon=True)
        thread.start()

        finished = False
        try:
            yield StartEvent(request)

            total_length = 0
            while True:
                item = await queue.get()

                if isinstance(item, str):
                    for start in range(0, len(item), max_chunk):
                        if flight.token.cancelled:
                            finished = True
                            yield ErrorEvent(CANCELLED_MESSAGE, code=GenerationCancelledError.code, cancelled=True)
                            return
                        piece = item[start : start + max_chunk]
                        total_length += len(piece)
                        yield ChunkEvent(piece)
                    continue

                finished = True
                if flight.token.cancelled or isinstance(item, GenerationCancelledError):
                    yield ErrorEvent(CANCELLED_MESSAGE, code=GenerationCancelledError.code, cancelled=True)
                elif isinstance(item, EngineError):
                    yield ErrorEvent(item.message, code=item.code)
                else:
                    yield EndEvent(
                        tokens=item.completion_tokens or estimate_tokens(item.text),
                        generation_time_ms=flight.elapsed_ms(),
                        total_length=total_length,
                    )
                return
        except asyncio.CancelledError:
            flight.token.cancel()
            raise
        finally:
            # If the consumer stops early (disconnect / generator close), cancel generation promptly.
            if not finished:
                flight.token.cancel()
            flight.done()
