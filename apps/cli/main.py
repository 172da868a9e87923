"""`bolt`: Bolt Llama CLI (HTTP client).

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

from apps.cli import model_cmds
from apps.cli.client import DEFAULT_URL
from apps.cli.model_cmds import CommandError


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bolt", description="Bolt Llama CLI (HTTP client)")
    p.add_argument(
        "--url",
        default=DEFAULT_URL,
        help="Server base URL (default: %(default)s)",
    )

    sub = p.add_subparsers(dest="command")

    status_p = sub.add_parser("status", help="Show whether a model is loaded")
    status_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    models_p = sub.add_parser("models", help="List model files known to the server")
    models_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    load_p = sub.add_parser("load", help="Load a model (file name in the models dir, or a path)")
    load_p.add_argument("model", help="Model file name or path")
    load_p.add_argument("--gpu-layers", type=int, default=None, help="Decoder layers to offload to the GPU (-1 = all)")
    load_p.add_argument("--context-size", type=int, default=None, help="Context window in tokens")
    load_p.add_argument("--batch-size", type=int, default=None, help="Prefill chunk size in tokens")

    sub.add_parser("unload", help="Unload the current model")
    sub.add_parser("cancel", help="Stop the in-flight generation")

    gen_p = sub.add_parser("generate", help="Generate from a prompt")
    gen_p.add_argument("prompt", help="Prompt text ('-' reads stdin)")
    gen_p.add_argument("--stream", action="store_true", help="Stream output as it is generated")
    gen_p.add_argument("--context", default=None, help="Extra context prepended to the prompt")
    system_group = gen_p.add_mutually_exclusive_group()
    system_group.add_argument("--system-prompt", default=None, help="Custom system instruction")
    system_group.add_argument(
        "--preset",
        default=None,
        choices=["code_generation", "code_explanation", "bug_fix", "code_review"],
        help="Built-in system instruction preset",
    )
    system_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        help="Send no system instruction at all",
    )
    gen_p.add_argument("--temperature", type=float, default=None)
    gen_p.add_argument("--top-p", type=float, default=None)
    gen_p.add_argument("--top-k", type=int, default=None)
    gen_p.add_argument("--max-tokens", type=int, default=None)
    gen_p.add_argument("--json", action="store_true", help="Print raw response / events as JSON")

    return p


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    command = args.command
    if command is None:
        parser.print_help()
        return 2

    try:
        if command == "status":
            return model_cmds.status(url=args.url, json_output=bool(args.json))
        if command == "models":
            return model_cmds.models(url=args.url, json_output=bool(args.json))
        if command == "load":
            return model_cmds.load(
                url=args.url,
                model=args.model,
                gpu_layers=args.gpu_layers,
                context_size=args.context_size,
                batch_size=args.batch_size,
            )
        if command == "unload":
            return model_cmds.unload(url=args.url)
        if command == "cancel":
            return model_cmds.cancel(url=args.url)
        if command == "generate":
            prompt = sys.stdin.read() if args.prompt == "-" else args.prompt
            return model_cmds.generate(
                url=args.url,
                prompt=prompt,
                stream=bool(args.stream),
                context=args.context,
                system_prompt="" if args.no_system_prompt else args.system_prompt,
                preset=args.preset,
                temperature=args.temperature,
                top_p=args.top_p,
                top_k=args.top_k,
                max_tokens=args.max_tokens,
                json_output=bool(args.json),
            )
    except CommandError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    parser.error(f"Unknown command: {command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
