from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

import httpx

from antigravity_gateway.gateway.credentials import OAuthCredentialManager
from tests.client_test_utils import write_credentials

TOKEN_URL = "https://oauth2.googleapis.com/token"


def _manager(path: Path, handler: object) -> OAuthCredentialManager:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=30.0)  # type: ignore[arg-type]
    return OAuthCredentialManager(
        path,
        token_url=TOKEN_URL,
        client_getter=lambda: client,
        client_id="settings-client-id",
    )


def test_valid_token_is_used_without_refresh(tmp_path: Path) -> None:
    path = write_credentials(
        tmp_path / "oauth_creds.json",
        access_token="live-token",
        refresh_token="refresh-1",
        expiry_date=(int(time.time()) + 3600) * 1000,
    )

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected request to {request.url}")

    manager = _manager(path, handler)
    assert asyncio.run(manager.resolve_bearer_token()) == "live-token"


def test_expired_token_is_refreshed(tmp_path: Path) -> None:
    path = write_credentials(
        tmp_path / "oauth_creds.json",
        access_token="expired-token",
        refresh_token="refresh-1",
        client_secret="file-secret",
        expiry_date=(int(time.time()) - 60) * 1000,
    )
    seen: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == TOKEN_URL
        seen.append(dict(httpx.QueryParams(request.content.decode("utf-8"))))
        return httpx.Response(200, json={"access_token": "new-token", "expires_in": 1800})

    manager = _manager(path, handler)
    token = asyncio.run(manager.resolve_bearer_token())

    assert token == "new-token"
    assert seen == [
        {
            "grant_type": "refresh_token",
            "refresh_token": "refresh-1",
            "client_id": "settings-client-id",
            "client_secret": "file-secret",
        }
    ]
    assert manager.state is not None
    assert manager.state.refresh_token == "refresh-1"


def test_failed_refresh_keeps_current_token(tmp_path: Path) -> None:
    path = write_credentials(
        tmp_path / "oauth_creds.json",
        access_token="expired-token",
        refresh_token="refresh-1",
        expiry_date=(int(time.time()) - 60) * 1000,
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    manager = _manager(path, handler)
    assert asyncio.run(manager.resolve_bearer_token()) == "expired-token"


def test_missing_credentials_file_yields_no_token(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no refresh expected")

    manager = _manager(tmp_path / "absent.json", handler)
    assert asyncio.run(manager.resolve_bearer_token()) is None


def test_reload_forces_refresh_and_merges_into_source(tmp_path: Path) -> None:
    canonical = tmp_path / "oauth_creds.json"
    source = write_credentials(
        tmp_path / "accounts" / "oauth_creds_b.json",
        access_token="token-b",
        refresh_token="refresh-b",
        email="b@example.com",
    )
    canonical.write_text(source.read_text(encoding="utf-8"), encoding="utf-8")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"access_token": "token-b-refreshed", "expires_in": 3600},
        )

    manager = _manager(canonical, handler)
    token = asyncio.run(manager.reload(source))

    assert token == "token-b-refreshed"
    canonical_payload = json.loads(canonical.read_text(encoding="utf-8"))
    source_payload = json.loads(source.read_text(encoding="utf-8"))
    assert canonical_payload["access_token"] == "token-b-refreshed"
    assert source_payload["access_token"] == "token-b-refreshed"
    assert source_payload["refresh_token"] == "refresh-b"
    assert source_payload["email"] == "b@example.com"
    assert isinstance(source_payload["expiry_date"], int)


def test_reload_without_refresh_token_keeps_file_token(tmp_path: Path) -> None:
    canonical = write_credentials(tmp_path / "oauth_creds.json", access_token="static-token")

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no refresh expected")

    manager = _manager(canonical, handler)
    assert asyncio.run(manager.reload(canonical)) == "static-token"
