import io

import pytest

from apps.cli import model_cmds
from apps.cli.client import HttpError, iter_sse_json
from apps.cli.main import build_parser, main
from apps.cli.output import format_size, format_table


def test_sse_json_stops_on_done():
    stream = io.BytesIO(
        b"data: {\"x\": 1}\n\n"
        b"data: {\"y\": 2}\n\n"
        b"data: [DONE]\n\n"
        b"data: {\"z\": 3}\n\n"
    )
    events = list(iter_sse_json(stream))
    assert events == [{"x": 1}, {"y": 2}]


def test_sse_ignores_comments_and_joins_multiline_data():
    stream = io.BytesIO(b": keepalive\n\ndata: {\"a\":\ndata: 1}\r\n\r\n")
    assert list(iter_sse_json(stream)) == [{"a": 1}]


def test_http_error_server_message():
    err = HttpError("HTTP error", status_code=409, body='{"error": {"message": "busy", "type": "concurrent"}}')
    assert err.server_message() == "busy"
    assert HttpError("HTTP error", body='{"detail": "nope"}').server_message() == "nope"
    assert HttpError("HTTP error", body="<html>").server_message() is None
    assert HttpError("HTTP error").server_message() is None


def test_parser_global_url():
    parser = build_parser()
    args = parser.parse_args(["--url", "http://example.invalid:8000", "status"])
    assert args.url == "http://example.invalid:8000"
    assert args.command == "status"


def test_parser_load_options():
    parser = build_parser()
    args = parser.parse_args(["load", "coder.gguf", "--gpu-layers", "-1", "--context-size", "8192"])
    assert args.command == "load"
    assert args.model == "coder.gguf"
    assert args.gpu_layers == -1
    assert args.context_size == 8192
    assert args.batch_size is None


def test_parser_generate_flags():
    parser = build_parser()
    args = parser.parse_args(
        ["generate", "write a loop", "--stream", "--preset", "bug_fix", "--top-k", "5", "--temperature", "0"]
    )
    assert args.command == "generate"
    assert args.prompt == "write a loop"
    assert args.stream is True
    assert args.preset == "bug_fix"
    assert args.top_k == 5
    assert args.temperature == 0.0


def test_parser_system_prompt_flags_are_exclusive():
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["generate", "x", "--preset", "bug_fix", "--no-system-prompt"])


def test_main_without_command_prints_help(capsys):
    assert main([]) == 2
    assert "bolt" in capsys.readouterr().out


def test_format_helpers():
    assert format_size(None) == ""
    assert format_size(512) == "512 B"
    assert format_size(3 * 1024 * 1024) == "3.0 MB"
    table = format_table(["a", "bb"], [["x", "y"]])
    assert table.splitlines()[0].split() == ["a", "bb"]


class _RecordingClient:
    instances: list["_RecordingClient"] = []

    def __init__(self, *, base_url):
        self.base_url = base_url
        self.payloads = []
        self.cancelled = False
        self.events = []
        _RecordingClient.instances.append(self)

    def generate(self, payload):
        self.payloads.append(payload)
        return {"code": "print(1)", "explanation": "Generated 1 lines of code in 3ms", "tokens": 4}

    def generate_stream(self, payload):
        self.payloads.append(payload)
        return iter(self.events)

    def cancel(self):
        self.cancelled = True


@pytest.fixture
def recording_client(monkeypatch):
    _RecordingClient.instances = []
    monkeypatch.setattr(model_cmds, "BoltClient", _RecordingClient)
    return _RecordingClient


def test_generate_maps_options_to_camel_case(recording_client, capsys):
    rc = main(["--url", "http://h:1", "generate", "p", "--no-system-prompt", "--top-p", "0.5", "--max-tokens", "9"])
    assert rc == 0
    (client,) = recording_client.instances
    assert client.base_url == "http://h:1"
    assert client.payloads == [{"prompt": "p", "systemPrompt": "", "topP": 0.5, "maxTokens": 9}]
    assert capsys.readouterr().out.startswith("print(1)")


def test_generate_stream_prints_chunks(recording_client, monkeypatch, capsys):
    events = [
        {"type": "start", "request": {"prompt": "p"}},
        {"type": "chunk", "text": "ab"},
        {"type": "chunk", "text": "c"},
        {"type": "end", "tokens": 3, "generationTime": 1, "totalLength": 3},
    ]
    monkeypatch.setattr(_RecordingClient, "generate_stream", lambda self, payload: iter(events))
    assert main(["generate", "p", "--stream"]) == 0
    captured = capsys.readouterr()
    assert captured.out == "abc\n"
    assert "tokens=3" in captured.err


def test_generate_stream_error_and_cancel(recording_client, monkeypatch, capsys):
    monkeypatch.setattr(
        _RecordingClient,
        "generate_stream",
        lambda self, payload: iter([{"type": "error", "message": "boom", "code": "generation_failed"}]),
    )
    assert main(["generate", "p", "--stream"]) == 1
    assert "boom" in capsys.readouterr().err

    monkeypatch.setattr(
        _RecordingClient,
        "generate_stream",
        lambda self, payload: iter([{"type": "error", "message": "stopped", "code": "cancelled", "cancelled": True}]),
    )
    assert main(["generate", "p", "--stream"]) == 130


def test_status_checks_health_then_reports_model(recording_client, monkeypatch, capsys):
    monkeypatch.setattr(_RecordingClient, "health", lambda self: {"status": "ok"}, raising=False)
    monkeypatch.setattr(
        _RecordingClient,
        "status",
        lambda self: {"loaded": True, "state": "ready", "model": "/m/coder.gguf"},
        raising=False,
    )
    assert main(["--url", "http://h:1", "status"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out == ["server: http://h:1 (ok)", "state:  ready", "model:  /m/coder.gguf"]


def test_status_reports_unreachable_server(recording_client, monkeypatch, capsys):
    def unreachable(self):
        raise HttpError("Failed to reach server", url="http://h:1/health")

    monkeypatch.setattr(_RecordingClient, "health", unreachable, raising=False)
    assert main(["--url", "http://h:1", "status"]) == 1
    assert "Server unreachable at http://h:1" in capsys.readouterr().err
