from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator
from uuid import uuid4

import httpx

from antigravity_gateway.constants import (
    CLIENT_METADATA,
    DEFAULT_PROJECT_ID,
    DISCOVERY_ENDPOINTS,
    GENERATE_CONTENT_PATH,
    LOAD_CODE_ASSIST_PATH,
    PREMIUM_ENDPOINTS,
    PREMIUM_HEADERS,
    STANDARD_ENDPOINTS,
    STANDARD_HEADERS,
    STREAM_GENERATE_CONTENT_PATH,
)
from antigravity_gateway.errors import (
    AuthError,
    RotationError,
    UpstreamError,
    UpstreamTimeoutError,
)
from antigravity_gateway.gateway.credentials import OAuthCredentialManager
from antigravity_gateway.gateway.ledger import RequestLedger
from antigravity_gateway.gateway.rotation import CredentialRotationManager
from antigravity_gateway.gateway.sse import StreamEvent, decode_stream
from antigravity_gateway.models import is_premium_model
from antigravity_gateway.runtime.continuity import ConversationContinuity
from antigravity_gateway.runtime.single_flight import SingleFlight

logger = logging.getLogger("uvicorn.error")

ROTATION_STATUSES = frozenset({429, 403, 504})


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    return {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def _extract_project_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    project = payload.get("cloudaicompanionProject")
    if isinstance(project, str) and project.strip():
        return project.strip()
    if isinstance(project, dict):
        project_id = project.get("id")
        if isinstance(project_id, str) and project_id.strip():
            return project_id.strip()
    return None


@dataclass(slots=True)
class UpstreamTimeouts:
    connect_seconds: float = 10.0
    read_seconds: float = 600.0
    write_seconds: float = 60.0
    pool_seconds: float = 10.0
    discovery_seconds: float = 10.0


@dataclass(slots=True)
class _OpenedResponse:
    response: httpx.Response
    endpoint: str
    tier: str


class UpstreamClient:
    """Dispatches upstream calls across endpoints and credential rotations."""

    def __init__(
        self,
        *,
        rotation: CredentialRotationManager,
        credentials_path: str,
        token_url: str,
        oauth_client_id: str | None = None,
        oauth_client_secret: str | None = None,
        ledger: RequestLedger | None = None,
        project_id: str | None = None,
        timeouts: UpstreamTimeouts | None = None,
    ) -> None:
        self.timeouts = timeouts or UpstreamTimeouts()
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, self.timeouts.connect_seconds),
                read=max(0.1, self.timeouts.read_seconds),
                write=max(0.1, self.timeouts.write_seconds),
                pool=max(0.1, self.timeouts.pool_seconds),
            ),
            limits=httpx.Limits(max_connections=128, max_keepalive_connections=32),
        )
        self.rotation = rotation
        self.credentials = OAuthCredentialManager(
            credentials_path,
            token_url=token_url,
            client_getter=lambda: self.client,
            client_id=oauth_client_id,
            client_secret=oauth_client_secret,
        )
        self.ledger = ledger
        self._configured_project_id = project_id
        self._context_id: str | None = None
        self._discovery = SingleFlight[str]()
        self._endpoint_start: dict[str, int] = {"premium": 0, "standard": 0}

    async def close(self) -> None:
        await self.client.aclose()

    async def discover_context_id(self) -> str:
        if self._configured_project_id:
            return self._configured_project_id
        if self._context_id:
            return self._context_id
        return await self._discovery.run(self._discover_context_id)

    def invalidate_context_id(self) -> None:
        self._context_id = None

    async def _discover_context_id(self) -> str:
        token = await self.credentials.resolve_bearer_token()
        if not token:
            logger.warning(
                "context_discovery_fallback reason=missing_token project=%s",
                DEFAULT_PROJECT_ID,
            )
            return DEFAULT_PROJECT_ID

        headers = self._headers(token, tier="standard")
        for base_url in DISCOVERY_ENDPOINTS:
            url = f"{base_url}{LOAD_CODE_ASSIST_PATH}"
            try:
                response = await self.client.post(
                    url,
                    json={"metadata": dict(CLIENT_METADATA)},
                    headers=headers,
                    timeout=self.timeouts.discovery_seconds,
                )
            except httpx.RequestError as exc:
                details = _request_error_details(exc)
                logger.warning(
                    "context_discovery_error endpoint=%s error_type=%s error=%s",
                    base_url,
                    details["error_type"],
                    details["error"],
                )
                continue

            if response.status_code >= 400:
                logger.warning(
                    "context_discovery_error endpoint=%s status=%d",
                    base_url,
                    response.status_code,
                )
                continue

            try:
                project_id = _extract_project_id(response.json())
            except ValueError:
                project_id = None
            if project_id:
                self._context_id = project_id
                logger.info(
                    "context_discovery_success endpoint=%s project=%s",
                    base_url,
                    project_id,
                )
                return project_id
            logger.warning("context_discovery_empty endpoint=%s", base_url)

        logger.warning(
            "context_discovery_fallback reason=all_endpoints_failed project=%s",
            DEFAULT_PROJECT_ID,
        )
        self._context_id = DEFAULT_PROJECT_ID
        return DEFAULT_PROJECT_ID

    async def send(
        self,
        body: dict[str, Any],
        *,
        premium: bool | None = None,
    ) -> dict[str, Any]:
        opened = await self._dispatch(body, stream=False, premium=premium)
        response = opened.response
        try:
            await response.aread()
            payload = response.json()
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(endpoint=opened.endpoint) from exc
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            raise UpstreamError(
                f"Upstream response interrupted ({details['error_type']}): {details['error']}",
                status_code=502,
                endpoint=opened.endpoint,
            ) from exc
        except ValueError as exc:
            raise UpstreamError(
                "Upstream returned invalid JSON",
                status_code=502,
                body=response.text,
                endpoint=opened.endpoint,
            ) from exc
        finally:
            await response.aclose()
        if isinstance(payload, dict) and isinstance(payload.get("response"), dict):
            return payload["response"]
        return payload if isinstance(payload, dict) else {}

    async def stream_send(
        self,
        body: dict[str, Any],
        *,
        premium: bool | None = None,
        continuity: ConversationContinuity | None = None,
    ) -> AsyncIterator[StreamEvent]:
        opened = await self._dispatch(body, stream=True, premium=premium)
        try:
            async for event in decode_stream(
                self._iter_bytes(opened), continuity=continuity
            ):
                yield event
        finally:
            await opened.response.aclose()

    @staticmethod
    async def _iter_bytes(opened: _OpenedResponse) -> AsyncIterator[bytes]:
        received = 0
        try:
            async for chunk in opened.response.aiter_bytes():
                received += len(chunk)
                yield chunk
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "upstream_stream_error endpoint=%s error_type=%s error=%s received_bytes=%d",
                opened.endpoint,
                details["error_type"],
                details["error"],
                received,
            )
            if details["is_timeout"]:
                raise UpstreamTimeoutError(endpoint=opened.endpoint) from exc
            raise UpstreamError(
                f"Upstream stream interrupted ({details['error_type']}): {details['error']}",
                status_code=502,
                endpoint=opened.endpoint,
            ) from exc

    async def _dispatch(
        self,
        body: dict[str, Any],
        *,
        stream: bool,
        premium: bool | None,
    ) -> _OpenedResponse:
        model = str(body.get("model") or "")
        tier = "premium" if (is_premium_model(model) if premium is None else premium) else "standard"
        request_id = str(body.get("requestId") or uuid4().hex[:12])
        attempt = 0
        while True:
            token = await self.credentials.resolve_bearer_token()
            if not token:
                raise AuthError("No usable OAuth access token is available")

            can_rotate = (
                self.rotation.is_rotation_enabled()
                and attempt < self.rotation.get_account_count()
            )
            candidates = self._candidate_endpoints(tier)
            rotation_trigger: UpstreamError | None = None
            last_error: UpstreamError | None = None

            for position, (index, base_url) in enumerate(candidates):
                has_more = position < len(candidates) - 1
                logger.info(
                    "upstream_attempt request_id=%s attempt=%d endpoint=%s model=%s stream=%s",
                    request_id,
                    attempt,
                    base_url,
                    model,
                    stream,
                )
                started = time.perf_counter()
                try:
                    response = await self._send_once(base_url, body, token, tier=tier, stream=stream)
                except httpx.TimeoutException:
                    last_error = UpstreamTimeoutError(endpoint=base_url)
                    logger.warning(
                        "upstream_timeout request_id=%s endpoint=%s elapsed_ms=%.2f has_more=%s",
                        request_id,
                        base_url,
                        (time.perf_counter() - started) * 1000.0,
                        has_more,
                    )
                    if has_more:
                        continue
                    raise last_error from None
                except httpx.RequestError as exc:
                    details = _request_error_details(exc)
                    last_error = UpstreamError(
                        f"Could not reach upstream ({details['error_type']}): {details['error']}",
                        status_code=502,
                        endpoint=base_url,
                    )
                    logger.warning(
                        "upstream_request_error request_id=%s endpoint=%s error_type=%s error=%s",
                        request_id,
                        base_url,
                        details["error_type"],
                        details["error"],
                    )
                    if has_more:
                        continue
                    raise last_error from exc

                status = response.status_code
                if 200 <= status < 300:
                    self._endpoint_start[tier] = index
                    logger.info(
                        "upstream_connected request_id=%s endpoint=%s status=%d connect_ms=%.2f",
                        request_id,
                        base_url,
                        status,
                        (time.perf_counter() - started) * 1000.0,
                    )
                    await self._record_request()
                    return _OpenedResponse(response=response, endpoint=base_url, tier=tier)

                error = await self._error_from_response(response, base_url)
                logger.warning(
                    "upstream_error request_id=%s endpoint=%s status=%d can_rotate=%s has_more=%s",
                    request_id,
                    base_url,
                    status,
                    can_rotate,
                    has_more,
                )
                if status in ROTATION_STATUSES and can_rotate:
                    rotation_trigger = error
                    break
                if status >= 500 and has_more:
                    last_error = error
                    continue
                raise error

            if rotation_trigger is None:
                raise last_error or UpstreamError("All endpoints failed", status_code=503)

            try:
                await self._rotate_credentials(body, request_id=request_id, attempt=attempt)
            except RotationError as exc:
                logger.warning(
                    "upstream_rotation_failed request_id=%s attempt=%d error=%s",
                    request_id,
                    attempt,
                    exc,
                )
                raise rotation_trigger from exc
            attempt += 1

    async def _rotate_credentials(
        self,
        body: dict[str, Any],
        *,
        request_id: str,
        attempt: int,
    ) -> None:
        path = await self.rotation.rotate()
        if path is None:
            raise RotationError("Credential rotation is disabled")
        await self.credentials.reload(path)
        self.invalidate_context_id()
        project_id = await self.discover_context_id()
        body["project"] = project_id
        logger.info(
            "upstream_rotated request_id=%s attempt=%d account=%s project=%s",
            request_id,
            attempt + 1,
            self.rotation.get_current_account_id(),
            project_id,
        )

    def _candidate_endpoints(self, tier: str) -> list[tuple[int, str]]:
        endpoints = PREMIUM_ENDPOINTS if tier == "premium" else STANDARD_ENDPOINTS
        start = self._endpoint_start.get(tier, 0) % len(endpoints)
        order = list(range(start, len(endpoints))) + list(range(0, start))
        return [(index, endpoints[index]) for index in order]

    async def _send_once(
        self,
        base_url: str,
        body: dict[str, Any],
        token: str,
        *,
        tier: str,
        stream: bool,
    ) -> httpx.Response:
        path = STREAM_GENERATE_CONTENT_PATH if stream else GENERATE_CONTENT_PATH
        headers = self._headers(token, tier=tier)
        if stream:
            headers["Accept"] = "text/event-stream"
        request = self.client.build_request(
            method="POST",
            url=f"{base_url}{path}",
            content=json.dumps(body),
            headers=headers,
        )
        return await self.client.send(request, stream=True)

    @staticmethod
    def _headers(token: str, *, tier: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }
        headers.update(PREMIUM_HEADERS if tier == "premium" else STANDARD_HEADERS)
        return headers

    @staticmethod
    async def _error_from_response(response: httpx.Response, endpoint: str) -> UpstreamError:
        try:
            raw = await response.aread()
            text = raw.decode("utf-8", errors="replace")
        except httpx.RequestError:
            text = ""
        finally:
            await response.aclose()
        return UpstreamError(
            f"Upstream request failed with status {response.status_code}",
            status_code=response.status_code,
            body=text or None,
            endpoint=endpoint,
        )

    async def _record_request(self) -> None:
        if self.ledger is None:
            return
        await self.ledger.increment(self.rotation.get_current_account_id())
