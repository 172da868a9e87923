"""HTTP client wrapper for communicating with the Bolt Llama server.

This module provides small, dependency-free primitives for JSON requests and SSE streaming.
"""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterator


DEFAULT_URL = "http://127.0.0.1:8788"


@dataclass(frozen=True)
class HttpError(RuntimeError):
    message: str
    url: str | None = None
    status_code: int | None = None
    body: str | None = None

    def __str__(self) -> str:  # pragma: no cover
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.url:
            parts.append(f"url={self.url}")
        if self.body:
            parts.append(f"body={self.body}")
        return " ".join(parts)

    def server_message(self) -> str | None:
        """The `{"error": {"message": ...}}` text from the body, if present."""
        if not self.body:
            return None
        try:
            parsed = json.loads(self.body)
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None
        error = parsed.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        detail = parsed.get("detail")
        return detail if isinstance(detail, str) else None


def _join_url(base_url: str, path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    # Ensure base_url ends with "/" so urljoin doesn't drop the path.
    return urllib.parse.urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


def iter_sse_data(stream: BinaryIO) -> Iterator[str]:
    """Yield decoded SSE `data:` payloads, one per event (without the trailing blank line)."""
    data_lines: list[str] = []
    for raw in stream:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())

    if data_lines:
        yield "\n".join(data_lines)


def iter_sse_json(stream: BinaryIO) -> Iterator[dict[str, Any]]:
    """Yield JSON-decoded SSE `data:` payloads; stops on `[DONE]`."""
    for payload in iter_sse_data(stream):
        if payload == "[DONE]":
            return
        yield json.loads(payload)


def _http_error(exc: urllib.error.HTTPError, *, url: str) -> HttpError:
    try:
        body_text: str | None = exc.read().decode("utf-8", errors="replace")
    except OSError:
        body_text = None
    return HttpError("HTTP error", url=url, status_code=getattr(exc, "code", None), body=body_text)


class BoltClient:
    def __init__(self, *, base_url: str = DEFAULT_URL, timeout_s: float = 600.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)

    def _build_request(self, method: str, path: str, payload: Any | None, accept: str) -> urllib.request.Request:
        body: bytes | None = None
        if payload is not None:
            body = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        req = urllib.request.Request(url=_join_url(self.base_url, path), method=method.upper(), data=body)
        req.add_header("Accept", accept)
        if payload is not None:
            req.add_header("Content-Type", "application/json")
        return req

    def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Any | None = None,
        timeout_s: float | None = None,
    ) -> Any:
        req = self._build_request(method, path, payload, "application/json")
        url = req.full_url

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s if timeout_s is None else timeout_s) as resp:
                raw = resp.read()
                try:
                    return json.loads(raw.decode("utf-8"))
                except ValueError as exc:
                    raise HttpError(
                        "Invalid JSON response",
                        url=url,
                        status_code=getattr(resp, "status", None),
                        body=raw.decode("utf-8", errors="replace"),
                    ) from exc
        except urllib.error.HTTPError as exc:
            raise _http_error(exc, url=url) from exc
        except urllib.error.URLError as exc:
            raise HttpError("Failed to reach server", url=url) from exc
        except socket.timeout as exc:
            raise HttpError("Request timed out", url=url) from exc

    def request_sse(
        self,
        method: str,
        path: str,
        *,
        payload: Any | None = None,
        timeout_s: float | None = None,
    ) -> Iterator[dict[str, Any]]:
        req = self._build_request(method, path, payload, "text/event-stream")
        url = req.full_url

        try:
            resp = urllib.request.urlopen(req, timeout=self.timeout_s if timeout_s is None else timeout_s)
        except urllib.error.HTTPError as exc:
            raise _http_error(exc, url=url) from exc
        except urllib.error.URLError as exc:
            raise HttpError("Failed to reach server", url=url) from exc
        except socket.timeout as exc:
            raise HttpError("Request timed out", url=url) from exc

        try:
            yield from iter_sse_json(resp)
        finally:
            resp.close()

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        result = self.request_json("GET", "/health", timeout_s=min(self.timeout_s, 5.0))
        if not isinstance(result, dict):
            raise HttpError("Invalid /health response", url=_join_url(self.base_url, "/health"))
        return result

    def status(self) -> dict[str, Any]:
        result = self.request_json("GET", "/v1/model/status", timeout_s=10.0)
        if not isinstance(result, dict):
            raise HttpError("Invalid /v1/model/status response", url=_join_url(self.base_url, "/v1/model/status"))
        return result

    def list_models(self) -> list[dict[str, Any]]:
        result = self.request_json("GET", "/v1/models", timeout_s=10.0)
        if not isinstance(result, dict) or not isinstance(result.get("data"), list):
            raise HttpError("Invalid /v1/models response", url=_join_url(self.base_url, "/v1/models"))
        return [item for item in result["data"] if isinstance(item, dict)]

    def load_model(self, model_path: str, **options: Any) -> dict[str, Any]:
        payload = {"modelPath": model_path}
        payload.update({k: v for k, v in options.items() if v is not None})
        return self.request_json("POST", "/v1/model/load", payload=payload)

    def unload_model(self) -> dict[str, Any]:
        return self.request_json("POST", "/v1/model/unload", payload={})

    def generate(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.request_json("POST", "/v1/generate", payload=payload)

    def generate_stream(self, payload: dict[str, Any]) -> Iterator[dict[str, Any]]:
        return self.request_sse("POST", "/v1/generate/stream", payload=payload)

    def cancel(self) -> None:
        self.request_json("POST", "/v1/cancel", payload={}, timeout_s=10.0)
