from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import httpx

from antigravity_gateway.utils.persistence import OWNER_ONLY_MODE, JsonFileStore

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class OAuthCredentials:
    access_token: str = ""
    refresh_token: str | None = None
    expires_at: int | None = None
    client_id: str | None = None
    client_secret: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> OAuthCredentials:
        return cls(
            access_token=_clean(payload.get("access_token")) or "",
            refresh_token=_clean(payload.get("refresh_token")),
            expires_at=_extract_expires_at(payload, now=None),
            client_id=_clean(payload.get("client_id")),
            client_secret=_clean(payload.get("client_secret")),
            raw=dict(payload),
        )

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.raw)
        payload["access_token"] = self.access_token
        if self.refresh_token:
            payload["refresh_token"] = self.refresh_token
        if self.expires_at is not None:
            payload["expiry_date"] = self.expires_at * 1000
        payload.pop("expires_in", None)
        return payload


class OAuthCredentialManager:
    """Holds the active OAuth token set backed by the canonical credential file."""

    def __init__(
        self,
        credentials_path: str | Path,
        *,
        token_url: str,
        client_getter: Callable[[], httpx.AsyncClient],
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> None:
        self.credentials_path = Path(credentials_path).expanduser()
        self._token_url = token_url
        self._client_getter = client_getter
        self._client_id = client_id
        self._client_secret = client_secret
        self._state: OAuthCredentials | None = None
        self._refresh_lock = asyncio.Lock()
        self._persistence_lock = asyncio.Lock()

    @property
    def state(self) -> OAuthCredentials | None:
        return self._state

    async def load(self) -> OAuthCredentials | None:
        self._state = await asyncio.to_thread(self._read_credentials, self.credentials_path)
        return self._state

    async def resolve_bearer_token(self) -> str | None:
        state = self._state
        if state is None:
            state = await self.load()
        if state is None:
            return None

        if state.access_token and not _is_token_expiring(state.expires_at):
            return state.access_token

        if state.refresh_token:
            refreshed = await self.refresh(force=False)
            if refreshed and refreshed.access_token:
                return refreshed.access_token

        return state.access_token or None

    async def refresh(self, *, force: bool = False) -> OAuthCredentials | None:
        async with self._refresh_lock:
            current = self._state
            if (
                not force
                and current
                and current.access_token
                and not _is_token_expiring(current.expires_at)
            ):
                return current

            refresh_token = current.refresh_token if current else None
            if not refresh_token:
                logger.warning(
                    "oauth_refresh_skipped path=%s reason=missing_refresh_token",
                    self.credentials_path,
                )
                return current

            logger.info("oauth_refresh_start token_url=%s force=%s", self._token_url, force)
            payload: dict[str, str] = {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            }
            client_id = (current.client_id if current else None) or self._client_id
            client_secret = (current.client_secret if current else None) or self._client_secret
            if client_id:
                payload["client_id"] = client_id
            if client_secret:
                payload["client_secret"] = client_secret

            try:
                response = await self._client_getter().post(
                    self._token_url,
                    data=payload,
                    headers={"Accept": "application/json"},
                )
            except httpx.RequestError as exc:
                logger.warning(
                    "oauth_refresh_error reason=request_error error_type=%s",
                    exc.__class__.__name__,
                )
                return current

            if response.status_code >= 400:
                logger.warning("oauth_refresh_error status=%d", response.status_code)
                return current

            try:
                body = response.json()
            except ValueError:
                logger.warning("oauth_refresh_error reason=invalid_json")
                return current

            access_token = _clean(body.get("access_token")) if isinstance(body, dict) else None
            if not access_token:
                logger.warning("oauth_refresh_error reason=missing_access_token")
                return current

            expires_at = _extract_expires_at(body, now=int(time.time()))
            if expires_at is None and current:
                expires_at = current.expires_at

            state = OAuthCredentials(
                access_token=access_token,
                refresh_token=_clean(body.get("refresh_token")) or refresh_token,
                expires_at=expires_at,
                client_id=current.client_id if current else None,
                client_secret=current.client_secret if current else None,
                raw=dict(current.raw) if current else {},
            )
            self._state = state
            logger.info("oauth_refresh_success expires_at=%s", state.expires_at)
            return state

    async def reload(self, source_path: Path | None = None) -> str | None:
        """Re-reads the canonical file after a rotation and forces a token refresh.

        Refreshed tokens are written back to the canonical file and merged into
        the pool file they came from. A failed refresh keeps whatever token the
        file carried.
        """
        loaded = await self.load()
        if loaded is None:
            logger.warning(
                "oauth_reload_failed path=%s reason=credentials_unavailable",
                self.credentials_path,
            )
            return None

        refreshed = await self.refresh(force=True)
        if refreshed is None or refreshed is loaded:
            logger.warning("oauth_reload_refresh_skipped path=%s", self.credentials_path)
            return loaded.access_token or None

        await self.persist(refreshed, source_path)
        return refreshed.access_token

    async def persist(self, state: OAuthCredentials, source_path: Path | None = None) -> None:
        async with self._persistence_lock:
            await asyncio.to_thread(
                self.persist_sync, self.credentials_path, state, source_path
            )

    @staticmethod
    def persist_sync(
        credentials_path: Path,
        state: OAuthCredentials,
        source_path: Path | None,
    ) -> None:
        try:
            JsonFileStore(credentials_path, mode=OWNER_ONLY_MODE).write(state.to_payload())
        except OSError:
            logger.warning(
                "oauth_refresh_persist_skipped reason=canonical_write_error path=%s",
                credentials_path,
            )
            return

        if source_path is None or source_path == credentials_path:
            return

        store = JsonFileStore(source_path, mode=OWNER_ONLY_MODE)
        try:
            existing = store.load(default={})
        except (OSError, ValueError):
            logger.warning(
                "oauth_refresh_persist_skipped reason=source_read_error path=%s",
                source_path,
            )
            return
        if not isinstance(existing, dict):
            existing = {}
        existing.update(state.to_payload())
        try:
            store.write(existing)
        except OSError:
            logger.warning(
                "oauth_refresh_persist_skipped reason=source_write_error path=%s",
                source_path,
            )
            return
        logger.info("oauth_refresh_persist_success path=%s", source_path)

    @staticmethod
    def _read_credentials(path: Path) -> OAuthCredentials | None:
        store = JsonFileStore(path)
        try:
            payload = store.load(default=None)
        except (OSError, ValueError):
            logger.warning("oauth_credentials_unreadable path=%s", path)
            return None
        if not isinstance(payload, dict):
            logger.warning("oauth_credentials_missing path=%s", path)
            return None
        return OAuthCredentials.from_payload(payload)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _is_token_expiring(expires_at: int | None, skew_seconds: int = 60) -> bool:
    if expires_at is None:
        return False
    return expires_at <= int(time.time()) + skew_seconds


def _extract_expires_at(payload: dict[str, Any], *, now: int | None) -> int | None:
    raw_expires_in = payload.get("expires_in")
    if raw_expires_in is not None and now is not None:
        try:
            return now + int(float(raw_expires_in))
        except (TypeError, ValueError):
            pass

    # Google credential files store the expiry in epoch milliseconds.
    raw_expiry_date = payload.get("expiry_date")
    if raw_expiry_date is not None:
        try:
            return int(float(raw_expiry_date)) // 1000
        except (TypeError, ValueError):
            pass

    raw_expires_at = payload.get("expires_at")
    if raw_expires_at is not None:
        try:
            return int(float(raw_expires_at))
        except (TypeError, ValueError):
            pass

    return None
