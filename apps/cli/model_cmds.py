from __future__ import annotations

import sys
from typing import Any

from apps.cli.client import BoltClient, HttpError
from apps.cli.output import format_size, format_table, print_json


class CommandError(RuntimeError):
    pass


def _format_http_error(exc: HttpError, *, base_url: str) -> str:
    if exc.status_code is None and exc.message in {"Failed to reach server", "Request timed out"}:
        return f"Server unreachable at {base_url}. Start it with `boltllama-server` or pass `--url`.\n{exc}"
    server_msg = exc.server_message()
    if server_msg:
        return f"{server_msg} (status={exc.status_code})"
    return str(exc)


def _call(client: BoltClient, fn: Any, *args: Any, **kwargs: Any) -> Any:
    try:
        return fn(*args, **kwargs)
    except HttpError as exc:
        raise CommandError(_format_http_error(exc, base_url=client.base_url)) from exc


def status(*, url: str, json_output: bool = False) -> int:
    client = BoltClient(base_url=url)
    health = _call(client, client.health)
    result = _call(client, client.status)
    if json_output:
        print_json({"health": health, **result})
        return 0
    print(f"server: {url} ({health.get('status', '?')})")
    print(f"state:  {result.get('state')}")
    print(f"model:  {result.get('model') or '-'}")
    return 0


def models(*, url: str, json_output: bool = False) -> int:
    client = BoltClient(base_url=url)
    items = _call(client, client.list_models)
    if json_output:
        print_json(items)
        return 0
    if not items:
        print("(no models found)")
        return 0
    rows = [
        [
            ("* " if m.get("loaded") else "  ") + str(m.get("name", "")),
            format_size(m.get("size")),
            str(m.get("parameters") or ""),
            str(m.get("quantization") or ""),
        ]
        for m in items
    ]
    print(format_table(["name", "size", "params", "quant"], rows))
    return 0


def load(
    *,
    url: str,
    model: str,
    gpu_layers: int | None = None,
    context_size: int | None = None,
    batch_size: int | None = None,
) -> int:
    client = BoltClient(base_url=url)
    result = _call(
        client,
        client.load_model,
        model,
        gpuLayers=gpu_layers,
        contextSize=context_size,
        batchSize=batch_size,
    )
    message = str(result.get("message", ""))
    if not result.get("success"):
        raise CommandError(message or "Model load failed.")
    print(message)
    return 0


def unload(*, url: str) -> int:
    client = BoltClient(base_url=url)
    result = _call(client, client.unload_model)
    print(result.get("message", ""))
    return 0


def cancel(*, url: str) -> int:
    client = BoltClient(base_url=url)
    _call(client, client.cancel)
    print("cancel requested")
    return 0


def generate(
    *,
    url: str,
    prompt: str,
    stream: bool = False,
    context: str | None = None,
    system_prompt: str | None = None,
    preset: str | None = None,
    temperature: float | None = None,
    top_p: float | None = None,
    top_k: int | None = None,
    max_tokens: int | None = None,
    json_output: bool = False,
) -> int:
    client = BoltClient(base_url=url)
    payload: dict[str, Any] = {"prompt": prompt}
    optional = {
        "context": context,
        "systemPrompt": system_prompt,
        "systemPromptPreset": preset,
        "temperature": temperature,
        "topP": top_p,
        "topK": top_k,
        "maxTokens": max_tokens,
    }
    payload.update({k: v for k, v in optional.items() if v is not None})

    if not stream:
        result = _call(client, client.generate, payload)
        if json_output:
            print_json(result)
        else:
            print(result.get("code", ""))
            print(f"\n[{result.get('explanation', '')}; tokens={result.get('tokens')}]", file=sys.stderr)
        return 0

    try:
        for event in client.generate_stream(payload):
            kind = event.get("type")
            if json_output:
                print_json(event)
                continue
            if kind == "chunk":
                sys.stdout.write(str(event.get("text", "")))
                sys.stdout.flush()
            elif kind == "end":
                print()
                print(
                    f"[tokens={event.get('tokens')} time={event.get('generationTime')}ms "
                    f"length={event.get('totalLength')}]",
                    file=sys.stderr,
                )
            elif kind == "error":
                print()
                if event.get("cancelled"):
                    print("[stopped]", file=sys.stderr)
                    return 130
                raise CommandError(str(event.get("message", "Generation failed.")))
    except HttpError as exc:
        raise CommandError(_format_http_error(exc, base_url=url)) from exc
    except KeyboardInterrupt:
        # Ctrl-C: ask the server to stop generating, then exit.
        try:
            client.cancel()
        except HttpError:
            pass
        print("\n[stopped]", file=sys.stderr)
        return 130
    return 0
