from __future__ import annotations

import json
from typing import Any


class GatewayError(Exception):
    """Base class for errors raised by the gateway core."""


class AuthError(GatewayError):
    status_code = 401


class InvalidRequestError(GatewayError):
    status_code = 400


class RotationError(GatewayError):
    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class DecodeError(GatewayError):
    def __init__(self, message: str, *, frame: str = "") -> None:
        super().__init__(message)
        self.frame = frame


class NoFallbackAvailableError(GatewayError):
    def __init__(self, model: str) -> None:
        super().__init__(f"No fallback available for model {model}")
        self.model = model


class UpstreamError(GatewayError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        body: str | None = None,
        endpoint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.endpoint = endpoint

    def error_payload(self) -> dict[str, Any]:
        if self.body:
            try:
                parsed = json.loads(self.body)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
                return dict(parsed["error"])
        return {"message": str(self), "code": self.status_code}


class UpstreamTimeoutError(UpstreamError):
    def __init__(self, message: str = "Request timed out", *, endpoint: str | None = None) -> None:
        super().__init__(message, status_code=408, endpoint=endpoint)
