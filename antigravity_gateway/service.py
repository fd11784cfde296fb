from __future__ import annotations

import contextlib
import logging
from typing import Any, AsyncIterator, TypeVar

from antigravity_gateway.errors import InvalidRequestError, UpstreamError
from antigravity_gateway.gateway.client import UpstreamClient
from antigravity_gateway.gateway.sse import StreamEvent
from antigravity_gateway.models import is_premium_model
from antigravity_gateway.runtime.continuity import ConversationContinuity
from antigravity_gateway.runtime.fallback import NOTIFICATION_KEY, ModelFallbackEngine
from antigravity_gateway.translation.openai import (
    ChatCompletionChunkBuilder,
    aggregate_completion,
    map_openai_to_upstream,
)

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


async def _chain(first: T, rest: AsyncIterator[T]) -> AsyncIterator[T]:
    try:
        yield first
        async for item in rest:
            yield item
    finally:
        aclose = getattr(rest, "aclose", None)
        if aclose is not None:
            await aclose()


async def _prime(source: AsyncIterator[T]) -> AsyncIterator[T] | None:
    """Advances ``source`` once so failures raise before any output is produced."""
    try:
        first = await anext(source)
    except StopAsyncIteration:
        return None
    return _chain(first, source)


async def _empty() -> AsyncIterator[Any]:
    return
    yield


class ChatCompletionService:
    """Runs chat completions for one client session.

    Requests flow through translation, the upstream client and the decoder.
    Rate-limited non-explicit requests are retried once on the next model in
    the fallback chain.
    """

    def __init__(
        self,
        *,
        client: UpstreamClient,
        fallback: ModelFallbackEngine,
        default_model: str,
        auto_switch_enabled: bool = True,
        continuity: ConversationContinuity | None = None,
    ) -> None:
        self.client = client
        self.fallback = fallback
        self.default_model = default_model
        self.auto_switch_enabled = auto_switch_enabled
        self.continuity = continuity if continuity is not None else ConversationContinuity()
        self._downgraded = False

    def resolve_model(self, payload: dict[str, Any]) -> tuple[str, bool, str | None]:
        requested = payload.get("model")
        if isinstance(requested, str) and requested.strip() and requested.strip() != "auto":
            return requested.strip(), True, None

        if not self.auto_switch_enabled:
            return self.default_model, False, None

        model = self.fallback.get_best_available_model(self.default_model)
        notification: str | None = None
        if model != self.default_model:
            self._downgraded = True
        elif self._downgraded:
            self._downgraded = False
            notification = self.fallback.create_upgrade_notification(model)
            logger.info("model_upgraded model=%s", model)
        return model, False, notification

    async def complete(self, payload: dict[str, Any]) -> dict[str, Any]:
        _validate(payload)
        model, explicit, notice = self.resolve_model(payload)
        body = {**payload, "model": model}
        try:
            result = await self._complete_once(model, body)
        except UpstreamError as exc:
            if not self._should_fallback(model, explicit, exc):
                raise
            self._downgraded = True
            result = await self.fallback.handle_non_streaming_fallback(
                model, exc.status_code, body, self._complete_once
            )
            notice = result.get(NOTIFICATION_KEY)
        if notice:
            _prepend_notice(result, notice)
        return result

    async def open_stream(self, payload: dict[str, Any]) -> AsyncIterator[bytes]:
        """Starts a streaming completion and returns its SSE byte frames.

        The upstream call is made before this returns, so request and upstream
        errors raise here instead of inside the response body.
        """
        _validate(payload)
        model, explicit, notice = self.resolve_model(payload)
        body = {**payload, "model": model}
        try:
            events = await _prime(self._events(model, body))
        except UpstreamError as exc:
            if not self._should_fallback(model, explicit, exc):
                raise
            failure = exc
        else:
            return self._render(model, events or _empty(), notice=notice)

        self._downgraded = True
        status_code = failure.status_code

        async def retry(fallback_model: str, patched: dict[str, Any]) -> AsyncIterator[bytes]:
            notification = self.fallback.create_downgrade_notification(
                model, fallback_model, status_code
            )
            retried = await _prime(self._events(fallback_model, patched))
            async for frame in self._render(fallback_model, retried or _empty(), notice=notification):
                yield frame

        frames = await _prime(
            self.fallback.handle_streaming_fallback(model, status_code, body, retry)
        )
        return frames or _empty()

    async def _complete_once(self, model: str, body: dict[str, Any]) -> dict[str, Any]:
        events = [event async for event in self._events(model, body)]
        return aggregate_completion(events, model=model)

    async def _events(self, model: str, body: dict[str, Any]) -> AsyncIterator[StreamEvent]:
        project_id = await self.client.discover_context_id()
        upstream_request = map_openai_to_upstream(project_id, body, self.continuity)
        events = self.client.stream_send(
            upstream_request,
            premium=is_premium_model(model),
            continuity=self.continuity,
        )
        async with contextlib.aclosing(events):
            async for event in events:
                yield event

    async def _render(
        self,
        model: str,
        events: AsyncIterator[StreamEvent],
        *,
        notice: str | None = None,
    ) -> AsyncIterator[bytes]:
        builder = ChatCompletionChunkBuilder(model)
        try:
            if notice:
                yield builder.encode(builder.notification_chunk(notice))
            async for event in events:
                chunk = builder.from_event(event)
                if chunk is not None:
                    yield builder.encode(chunk)
            yield builder.done()
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    def _should_fallback(self, model: str, explicit: bool, exc: UpstreamError) -> bool:
        if not self.auto_switch_enabled:
            return False
        if not self.fallback.is_rate_limit_status(exc.status_code):
            return False
        return self.fallback.should_attempt_fallback(model, explicit)


def _validate(payload: dict[str, Any]) -> None:
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequestError("messages is required and must be a non-empty array")


def _prepend_notice(result: dict[str, Any], notice: str) -> None:
    choices = result.get("choices")
    if not isinstance(choices, list) or not choices:
        return
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        return
    content = message.get("content")
    message["content"] = f"{notice}\n\n{content}" if content else notice
