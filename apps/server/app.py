"""FastAPI bridge between the UI process and the generation engine.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All model execution is delegated to the core engine (`boltllama/engine`).

Wire format is camelCase JSON. Streams are SSE: one `data: {...}` line per
engine event, terminated by `data: [DONE]`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from boltllama._version import __version__
from boltllama.engine.chat_engine import GenerationEngine
from boltllama.engine.chat_types import ChunkEvent, EndEvent, ErrorEvent, GenerationRequest, StartEvent, StreamEvent
from boltllama.engine.errors import (
    ConcurrentGenerationError,
    EngineError,
    GenerationCancelledError,
    InvalidRequestError,
    ModelNotFoundError,
    NotLoadedError,
)
from boltllama.engine.prompts import system_prompt_for
from boltllama.engine.registry import ModelRegistry

logger = logging.getLogger(__name__)

# Status codes for engine failures; anything not listed is a 500.
_STATUS_BY_ERROR: tuple[tuple[type[EngineError], int], ...] = (
    (InvalidRequestError, 400),
    (ConcurrentGenerationError, 409),
    (GenerationCancelledError, 499),
    (NotLoadedError, 503),
)

# camelCase load fields -> ModelConfig fields
_LOAD_FIELDS: dict[str, tuple[str, type]] = {
    "gpuLayers": ("gpu_layers", int),
    "contextSize": ("context_size", int),
    "batchSize": ("batch_size", int),
    "temperature": ("temperature", float),
    "topP": ("top_p", float),
    "topK": ("top_k", int),
    "maxTokens": ("max_tokens", int),
}


def create_app(
    *,
    engine: GenerationEngine,
    registry: ModelRegistry | None = None,
) -> FastAPI:
    registry = registry or ModelRegistry()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await engine.unload()

    app = FastAPI(title="Bolt Llama Inference Server", version=__version__, lifespan=lifespan)
    load_lock = asyncio.Lock()

    async def _wait_for_disconnect(request: Request, poll_s: float = 0.1) -> None:
        while True:
            if await request.is_disconnected():
                return
            await asyncio.sleep(poll_s)

    async def _run_with_disconnect_cancellation(request: Request, coro: Any) -> Any:
        task = asyncio.create_task(coro)
        disconnect_task = asyncio.create_task(_wait_for_disconnect(request))
        # Yield to let both tasks start (handles coroutines that return synchronously).
        await asyncio.sleep(0)
        done, _pending = await asyncio.wait(
            {task, disconnect_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if disconnect_task in done:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, EngineError):
                pass
            raise HTTPException(status_code=499, detail="Client disconnected")

        disconnect_task.cancel()
        try:
            await disconnect_task
        except asyncio.CancelledError:
            pass
        return task.result()

    async def _json_dict(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc
        if isinstance(payload, dict):
            return payload
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    def _loaded_path() -> str | None:
        cfg = engine.loaded_config
        if cfg is None:
            return None
        return os.path.abspath(os.path.expanduser(cfg.model_path))

    # -------------------------------------------------------------------------
    # Health & Models
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        loaded = _loaded_path()
        return {
            "object": "list",
            "modelsDir": registry.models_dir,
            "data": [m.to_dict(loaded=m.path == loaded) for m in registry.list_models()],
        }

    # -------------------------------------------------------------------------
    # Model lifecycle
    # -------------------------------------------------------------------------

    @app.get("/v1/model/status")
    async def model_status() -> dict[str, Any]:
        return {
            "loaded": engine.is_loaded(),
            "state": engine.state.value,
            "model": _loaded_path(),
        }

    @app.post("/v1/model/load")
    async def load_model(request: Request) -> Any:
        payload = await _json_dict(request)
        raw_path = payload.get("modelPath")
        if not isinstance(raw_path, str) or not raw_path.strip():
            raise HTTPException(status_code=400, detail="'modelPath' is required and must be a string.")

        overrides: dict[str, Any] = {}
        for wire_key, (field_name, kind) in _LOAD_FIELDS.items():
            overrides[field_name] = _optional_number(payload, wire_key, kind)

        # Resolve, compare, unload and initialize as one step per load request.
        async with load_lock:
            try:
                model_path = registry.resolve(raw_path.strip())
            except ModelNotFoundError as exc:
                return {"success": False, "message": exc.message}

            if engine.is_loaded():
                if _loaded_path() == model_path:
                    return {"success": True, "message": f"Model already loaded: {os.path.basename(model_path)}"}
                logger.info("Switching model: %s -> %s", _loaded_path(), model_path)
                await engine.unload()

            try:
                # The engine retains this config only if the load succeeds.
                await engine.initialize(engine.config.merged(model_path=model_path, **overrides))
            except EngineError as exc:
                return {"success": False, "message": exc.message}

            loaded = _loaded_path()
            if loaded != model_path:
                logger.warning("Load of %s finished with %s resident", model_path, loaded)
                return {
                    "success": False,
                    "message": f"Model not loaded: {os.path.basename(model_path)} (current: {loaded or 'none'})",
                }

        return {"success": True, "message": f"Model loaded successfully: {os.path.basename(model_path)}"}

    @app.post("/v1/model/unload")
    async def unload_model() -> dict[str, Any]:
        was_loaded = engine.is_loaded()
        await engine.unload()
        return {"success": True, "message": "Model unloaded" if was_loaded else "No model loaded"}

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    @app.post("/v1/generate")
    async def generate(request: Request) -> Any:
        gen_req = _parse_generate_request(await _json_dict(request))
        try:
            result = await _run_with_disconnect_cancellation(request, engine.generate(gen_req))
        except EngineError as exc:
            return _error_response(exc)

        body: dict[str, Any] = {
            "code": result.code,
            "explanation": result.explanation,
            "tokens": result.tokens,
            "generationTime": result.generation_time_ms,
        }
        if result.language is not None:
            body["language"] = result.language
        return body

    @app.post("/v1/generate/stream")
    async def generate_stream(request: Request) -> Any:
        gen_req = _parse_generate_request(await _json_dict(request))
        return StreamingResponse(
            _stream_generation(engine=engine, gen_req=gen_req, request=request),
            media_type="text/event-stream",
        )

    @app.post("/v1/cancel")
    async def cancel() -> Any:
        engine.cancel()
        return JSONResponse({}, status_code=202)

    return app


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


def _error_response(exc: EngineError) -> JSONResponse:
    status = 500
    for error_cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            status = code
            break
    return JSONResponse({"error": {"message": exc.message, "type": exc.code}}, status_code=status)


def _request_to_wire(req: GenerationRequest) -> dict[str, Any]:
    wire_names = {
        "top_p": "topP",
        "top_k": "topK",
        "max_tokens": "maxTokens",
        "system_prompt": "systemPrompt",
    }
    return {wire_names.get(k, k): v for k, v in req.to_dict().items()}


def _event_to_wire(event: StreamEvent) -> dict[str, Any]:
    if isinstance(event, StartEvent):
        return {"type": "start", "request": _request_to_wire(event.request)}
    if isinstance(event, ChunkEvent):
        return {"type": "chunk", "text": event.text}
    if isinstance(event, EndEvent):
        return {
            "type": "end",
            "tokens": event.tokens,
            "generationTime": event.generation_time_ms,
            "totalLength": event.total_length,
        }
    if isinstance(event, ErrorEvent):
        return {"type": "error", "message": event.message, "code": event.code, "cancelled": event.cancelled}
    raise TypeError(f"Unknown stream event: {event!r}")


async def _stream_generation(
    *,
    engine: GenerationEngine,
    gen_req: GenerationRequest,
    request: Request,
) -> AsyncIterator[str]:
    stream = engine.generate_stream(gen_req)
    disconnected = False
    try:
        async for event in stream:
            # If the client disconnects mid-stream, stop consuming promptly;
            # closing the engine stream cancels the generation.
            if await request.is_disconnected():
                disconnected = True
                break
            yield _sse(json.dumps(_event_to_wire(event), ensure_ascii=False))
    finally:
        await stream.aclose()

    if not disconnected:
        yield "data: [DONE]\n\n"


def _optional_number(payload: dict[str, Any], key: str, kind: type) -> Any:
    value = payload.get(key)
    if value is None:
        return None
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise HTTPException(status_code=400, detail=f"'{key}' must be a number.")
    if kind is int:
        if isinstance(value, float) and not value.is_integer():
            raise HTTPException(status_code=400, detail=f"'{key}' must be an integer.")
        return int(value)
    return float(value)


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"'{key}' must be a string.")
    return value


def _parse_generate_request(payload: dict[str, Any]) -> GenerationRequest:
    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt:
        raise HTTPException(status_code=400, detail="'prompt' is required and must be a non-empty string.")

    system_prompt = _optional_str(payload, "systemPrompt")
    preset = _optional_str(payload, "systemPromptPreset")
    if system_prompt is None and preset is not None:
        try:
            system_prompt = system_prompt_for(preset)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        return GenerationRequest(
            prompt=prompt,
            context=_optional_str(payload, "context"),
            model=_optional_str(payload, "model"),
            temperature=_optional_number(payload, "temperature", float),
            top_p=_optional_number(payload, "topP", float),
            top_k=_optional_number(payload, "topK", int),
            max_tokens=_optional_number(payload, "maxTokens", int),
            system_prompt=system_prompt,
        )
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
