"""Bolt Llama inference server entrypoint (FastAPI bridge for the UI process).

Example:
    python -m apps.server.main --models-dir ~/.bolt-llama/models --model coder-7b.Q4_K_M.gguf --port 8788
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from apps.server.app import create_app
from boltllama.engine.chat_engine import EngineConfig, GenerationEngine
from boltllama.engine.chat_types import StreamOptions
from boltllama.engine.errors import EngineError
from boltllama.engine.registry import ModelRegistry, default_models_dir
from boltllama.engine.types import ModelConfig
from boltllama.runtime import cuda_device_count, is_gguf_available


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Bolt Llama inference server")
    p.add_argument(
        "--models-dir",
        default=None,
        help="Directory scanned for *.gguf files (default: $BOLTLLAMA_MODELS_DIR or ~/.bolt-llama/models)",
    )
    p.add_argument("--model", default=None, help="Model file name or path to load at startup (optional)")
    p.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8788, help="Bind port (default: 8788)")
    p.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level for the engine and uvicorn (default: info)",
    )

    p.add_argument("--gpu-layers", type=int, default=33, help="Decoder layers to place on the GPU; -1 = all (default: 33)")
    p.add_argument("--context-size", type=int, default=4096, help="Context window in tokens (default: 4096)")
    p.add_argument("--batch-size", type=int, default=512, help="Prefill chunk size in tokens (default: 512)")
    p.add_argument("--dtype", default="auto", help="Torch dtype: auto|float16|bfloat16|float32 (default: auto)")

    p.add_argument("--flush-every-n-tokens", type=int, default=8)
    p.add_argument("--flush-every-ms", type=int, default=50)
    p.add_argument("--max-chunk-chars", type=int, default=50, help="Max characters per streamed chunk (default: 50)")
    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    registry = ModelRegistry(args.models_dir or default_models_dir())
    print(
        "[server] "
        f"models_dir={registry.models_dir!r} cuda_devices={cuda_device_count()} gguf={'yes' if is_gguf_available() else 'no'}",
        flush=True,
    )

    engine = GenerationEngine(
        ModelConfig(
            gpu_layers=args.gpu_layers,
            context_size=args.context_size,
            batch_size=args.batch_size,
            dtype=args.dtype,
        ),
        config=EngineConfig(
            stream=StreamOptions(
                flush_every_n_tokens=args.flush_every_n_tokens,
                flush_every_ms=args.flush_every_ms,
                max_chunk_chars=args.max_chunk_chars,
            ),
        ),
    )

    if args.model:
        print(f"[server] loading model... model={args.model!r} gpu_layers={args.gpu_layers}", flush=True)
        try:
            model_path = registry.resolve(args.model)
            asyncio.run(engine.initialize(engine.config.merged(model_path=model_path)))
        except EngineError as exc:
            # The UI can still load a model later through /v1/model/load.
            print(f"[server] model load failed: {exc.message}", flush=True)
        else:
            print("[server] model loaded", flush=True)

    app = create_app(engine=engine, registry=registry)

    import uvicorn

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
