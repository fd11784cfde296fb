from __future__ import annotations

import json
from pathlib import Path
from typing import Any, AsyncIterator

import httpx
from fastapi.testclient import TestClient

from antigravity_gateway.main import app
from antigravity_gateway.settings import get_settings


def write_credentials(path: Path, **fields: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(fields), encoding="utf-8")
    return path


def sse_frames(*envelopes: dict[str, Any]) -> bytes:
    return "".join(f"data: {json.dumps(envelope)}\n\n" for envelope in envelopes).encode("utf-8")


def text_envelope(text: str, *, thought: bool = False, **usage: int) -> dict[str, Any]:
    part: dict[str, Any] = {"text": text}
    if thought:
        part["thought"] = True
    response: dict[str, Any] = {
        "candidates": [{"content": {"role": "model", "parts": [part]}}],
    }
    if usage:
        response["usageMetadata"] = usage
    return {"response": response}


def set_default_test_env(monkeypatch: Any, tmp_path: Path) -> Path:
    credentials_path = write_credentials(
        tmp_path / "oauth_creds.json",
        access_token="test-access-token",
        refresh_token="test-refresh-token",
    )
    monkeypatch.setenv("CREDENTIALS_PATH", str(credentials_path))
    monkeypatch.setenv("CREDENTIALS_DIR", str(tmp_path / "accounts"))
    monkeypatch.setenv("CREDENTIALS_PATHS", "")
    monkeypatch.setenv("REQUEST_LEDGER_PATH", str(tmp_path / "request_counts.json"))
    monkeypatch.setenv("UPSTREAM_PROJECT_ID", "test-project")
    return credentials_path


def build_test_client(monkeypatch: Any, tmp_path: Path, **env: Any) -> TestClient:
    set_default_test_env(monkeypatch, tmp_path)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)


class ScriptedByteStream(httpx.AsyncByteStream):
    """Response body that yields ``chunks`` then optionally raises ``error``."""

    def __init__(self, *chunks: bytes, error: Exception | None = None) -> None:
        self._chunks = chunks
        self._error = error
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def aclose(self) -> None:
        self.closed = True
