from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

from antigravity_gateway.errors import NoFallbackAvailableError
from antigravity_gateway.models import FALLBACK_CHAINS

logger = logging.getLogger("uvicorn.error")

RATE_LIMIT_STATUSES = frozenset({429, 503})
NOTIFICATION_KEY = "_auto_switch_notification"


@dataclass(slots=True)
class ModelFallbackConfig:
    cooldown_seconds: float = 3600.0
    chains: Mapping[str, str | None] = field(default_factory=lambda: dict(FALLBACK_CHAINS))


@dataclass(slots=True)
class _Cooldown:
    status_codes: set[int] = field(default_factory=set)
    expires_at_epoch: float = 0.0


class ModelFallbackEngine:
    def __init__(
        self,
        config: ModelFallbackConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or ModelFallbackConfig()
        self._clock = clock or time.time
        self._cooldowns: dict[str, _Cooldown] = {}

    @staticmethod
    def is_rate_limit_status(status_code: int) -> bool:
        return status_code in RATE_LIMIT_STATUSES

    @staticmethod
    def is_rate_limit_error(status_code: int) -> bool:
        return status_code in RATE_LIMIT_STATUSES

    def get_fallback_model(self, model: str) -> str | None:
        return self._config.chains.get(model)

    def add_rate_limited_model(self, model: str, status_code: int) -> None:
        entry = self._cooldowns.setdefault(model, _Cooldown())
        entry.status_codes.add(status_code)
        entry.expires_at_epoch = self._clock() + self._config.cooldown_seconds
        logger.info(
            "model_cooldown_started model=%s status=%d cooldown_seconds=%.0f",
            model,
            status_code,
            self._config.cooldown_seconds,
        )

    def is_model_in_cooldown(self, model: str) -> bool:
        self._purge_expired()
        return model in self._cooldowns

    def should_attempt_fallback(self, model: str, explicit: bool) -> bool:
        if explicit:
            return False
        if self.get_fallback_model(model) is None:
            return False
        # A model already cooling down is being handled by an earlier downgrade.
        if self.is_model_in_cooldown(model):
            return False
        return True

    def get_best_available_model(self, preferred: str) -> str:
        if preferred not in self._config.chains:
            return preferred
        current = preferred
        visited: set[str] = set()
        while current not in visited:
            visited.add(current)
            if not self.is_model_in_cooldown(current):
                return current
            next_model = self.get_fallback_model(current)
            if next_model is None:
                break
            current = next_model
        return current

    @staticmethod
    def create_downgrade_notification(from_model: str, to_model: str, status_code: int) -> str:
        return (
            f"<{status_code}> You are downgraded from {from_model} to {to_model} "
            "because of rate limits"
        )

    @staticmethod
    def create_upgrade_notification(model: str) -> str:
        return f"Model upgraded: Now using {model} (rate limits cleared)"

    def _begin_fallback(
        self,
        model: str,
        status_code: int,
        request_body: dict[str, Any],
    ) -> tuple[str, dict[str, Any], str]:
        fallback = self.get_fallback_model(model)
        if fallback is None:
            raise NoFallbackAvailableError(model)
        self.add_rate_limited_model(model, status_code)
        notification = self.create_downgrade_notification(model, fallback, status_code)
        logger.warning(
            "model_fallback from=%s to=%s status=%d",
            model,
            fallback,
            status_code,
        )
        return fallback, {**request_body, "model": fallback}, notification

    async def handle_non_streaming_fallback(
        self,
        model: str,
        status_code: int,
        request_body: dict[str, Any],
        retry: Callable[[str, dict[str, Any]], Awaitable[Any]],
    ) -> Any:
        fallback, patched, notification = self._begin_fallback(model, status_code, request_body)
        result = await retry(fallback, patched)
        if isinstance(result, dict):
            result[NOTIFICATION_KEY] = notification
        return result

    async def handle_streaming_fallback(
        self,
        model: str,
        status_code: int,
        request_body: dict[str, Any],
        retry: Callable[[str, dict[str, Any]], AsyncIterator[Any]],
    ) -> AsyncIterator[Any]:
        fallback, patched, _ = self._begin_fallback(model, status_code, request_body)
        async for item in retry(fallback, patched):
            yield item

    def snapshot(self) -> dict[str, dict[str, Any]]:
        self._purge_expired()
        return {
            model: {
                "status_codes": sorted(entry.status_codes),
                "expires_at_epoch": round(entry.expires_at_epoch, 3),
            }
            for model, entry in sorted(self._cooldowns.items())
        }

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [
            model
            for model, entry in self._cooldowns.items()
            if now >= entry.expires_at_epoch
        ]
        for model in expired:
            self._cooldowns.pop(model, None)
            logger.info("model_cooldown_expired model=%s", model)
