from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

from antigravity_gateway.errors import DecodeError
from antigravity_gateway.runtime.continuity import ConversationContinuity

logger = logging.getLogger("uvicorn.error")

DATA_PREFIX = "data:"


@dataclass(slots=True)
class TextDelta:
    text: str
    thought: bool = False
    role_marker: bool = False


@dataclass(slots=True)
class ToolCallEvent:
    index: int
    call_id: str
    name: str
    arguments: str
    role_marker: bool = False


@dataclass(slots=True)
class ToolResultAck:
    name: str | None
    signature: str | None


@dataclass(slots=True)
class UsageEvent:
    prompt_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0

    def as_openai_usage(self) -> dict[str, Any]:
        # Reasoning tokens count as completion tokens for client schemas.
        completion_tokens = self.output_tokens + self.reasoning_tokens
        usage: dict[str, Any] = {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": self.prompt_tokens + completion_tokens,
        }
        if self.reasoning_tokens:
            usage["completion_tokens_details"] = {
                "reasoning_tokens": self.reasoning_tokens
            }
        return usage


@dataclass(slots=True)
class FinishEvent:
    finish_reason: str
    usage: UsageEvent | None = None


StreamEvent = TextDelta | ToolCallEvent | ToolResultAck | UsageEvent | FinishEvent


def _new_call_id() -> str:
    return f"call_{uuid4().hex}"


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


class StreamDecoder:
    """Incremental decoder for upstream ``data:`` event frames.

    Bytes may be fed at arbitrary boundaries. Frames end at a blank line; the
    collected ``data:`` payload is parsed as one JSON envelope. ``finish``
    flushes what is left and emits the terminal event.
    """

    def __init__(
        self,
        *,
        continuity: ConversationContinuity | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.continuity = continuity if continuity is not None else ConversationContinuity()
        self._id_factory = id_factory or _new_call_id
        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._line_buffer = ""
        self._pending: list[str] = []
        self._first_delta = True
        self._tool_calls = 0
        self._pending_tool_signature = False
        self._usage: UsageEvent | None = None
        self._finished = False
        self.dropped_frames = 0

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if self._finished:
            return []
        if isinstance(chunk, bytes):
            text = self._text_decoder.decode(chunk)
        else:
            text = chunk
        self._line_buffer += text
        events: list[StreamEvent] = []
        while True:
            newline = self._line_buffer.find("\n")
            if newline < 0:
                break
            line = self._line_buffer[:newline]
            self._line_buffer = self._line_buffer[newline + 1 :]
            events.extend(self._consume_line(line))
        return events

    def finish(self) -> list[StreamEvent]:
        if self._finished:
            return []
        events: list[StreamEvent] = []
        tail = self._line_buffer + self._text_decoder.decode(b"", final=True)
        self._line_buffer = ""
        if tail:
            events.extend(self._consume_line(tail))
        events.extend(self._flush_frame())
        self._finished = True

        finish_reason = (
            "tool_calls" if self._tool_calls or self._pending_tool_signature else "stop"
        )
        events.append(FinishEvent(finish_reason=finish_reason, usage=self._usage))
        return events

    def _consume_line(self, line: str) -> list[StreamEvent]:
        line = line.rstrip("\r")
        if not line.strip():
            return self._flush_frame()
        if not line.startswith(DATA_PREFIX):
            return []
        payload = line[len(DATA_PREFIX) :]
        if payload.startswith(" "):
            payload = payload[1:]
        self._pending.append(payload)
        return []

    def _flush_frame(self) -> list[StreamEvent]:
        if not self._pending:
            return []
        raw = "\n".join(self._pending)
        self._pending = []
        if raw.strip() == "[DONE]":
            return []
        try:
            envelope = self._parse_frame(raw)
        except DecodeError as exc:
            self.dropped_frames += 1
            logger.warning("upstream_stream_decode_error error=%s frame=%.200s", exc, exc.frame)
            return []
        return self._events_from_envelope(envelope)

    @staticmethod
    def _parse_frame(raw: str) -> dict[str, Any]:
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            raise DecodeError(f"malformed frame: {exc}", frame=raw) from exc
        if not isinstance(parsed, dict):
            raise DecodeError("frame is not a JSON object", frame=raw)
        return parsed

    def _events_from_envelope(self, envelope: dict[str, Any]) -> list[StreamEvent]:
        response = envelope.get("response")
        if not isinstance(response, dict):
            response = envelope
        if isinstance(response.get("error"), dict):
            logger.warning("upstream_stream_error_frame error=%s", response["error"])
            return []

        events: list[StreamEvent] = []
        candidates = response.get("candidates")
        if isinstance(candidates, list) and candidates:
            candidate = candidates[0] if isinstance(candidates[0], dict) else {}
            content = candidate.get("content")
            parts = content.get("parts") if isinstance(content, dict) else None
            if isinstance(parts, list):
                for part in parts:
                    if isinstance(part, dict):
                        events.extend(self._events_from_part(part))

        usage = response.get("usageMetadata")
        if isinstance(usage, dict):
            self._usage = UsageEvent(
                prompt_tokens=_as_int(usage.get("promptTokenCount")),
                output_tokens=_as_int(usage.get("candidatesTokenCount")),
                reasoning_tokens=_as_int(usage.get("thoughtsTokenCount")),
            )
            events.append(self._usage)
        return events

    def _events_from_part(self, part: dict[str, Any]) -> list[StreamEvent]:
        signature = part.get("thoughtSignature")
        if not isinstance(signature, str):
            signature = None

        events: list[StreamEvent] = []
        if "text" in part:
            text = part.get("text")
            events.append(
                TextDelta(
                    text=text if isinstance(text, str) else "",
                    thought=part.get("thought") is True,
                    role_marker=self._take_role_marker(),
                )
            )
        elif isinstance(part.get("functionCall"), dict):
            call = part["functionCall"]
            args = call.get("args")
            events.append(
                ToolCallEvent(
                    index=self._tool_calls,
                    call_id=self._id_factory(),
                    name=str(call.get("name") or ""),
                    arguments=json.dumps(args if args is not None else {}),
                    role_marker=self._take_role_marker(),
                )
            )
            self._tool_calls += 1
            if signature:
                self._pending_tool_signature = True
        elif isinstance(part.get("functionResponse"), dict):
            response = part["functionResponse"]
            name = response.get("name")
            events.append(
                ToolResultAck(name=name if isinstance(name, str) else None, signature=signature)
            )

        self.continuity.update(signature)
        return events

    def _take_role_marker(self) -> bool:
        if not self._first_delta:
            return False
        self._first_delta = False
        return True


async def decode_stream(
    chunks: AsyncIterator[bytes],
    *,
    continuity: ConversationContinuity | None = None,
    id_factory: Callable[[], str] | None = None,
) -> AsyncIterator[StreamEvent]:
    decoder = StreamDecoder(continuity=continuity, id_factory=id_factory)
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.finish():
        yield event
