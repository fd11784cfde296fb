from __future__ import annotations

import json
import re
import time
from typing import Any, Iterable
from uuid import uuid4

from antigravity_gateway.constants import (
    IMAGE_PLACEHOLDER_TEXT,
    PERSONA_PREAMBLE,
    PLACEHOLDER_DESCRIPTION,
    PLACEHOLDER_PARAMETER,
    STRICT_PARAMETERS_TEMPLATE,
    THINKING_SAFETY_MARGIN,
    TOOL_NAME_MAX_LENGTH,
    UPSTREAM_USER_AGENT_TAG,
)
from antigravity_gateway.gateway.sse import (
    FinishEvent,
    StreamEvent,
    TextDelta,
    ToolCallEvent,
)
from antigravity_gateway.models import (
    is_claude_model,
    is_thinking_model,
    upstream_model_id,
)
from antigravity_gateway.runtime.continuity import ConversationContinuity

EFFORT_BUDGETS: dict[str, int] = {
    "low": 8192,
    "medium": 16384,
    "high": 32768,
    "xhigh": 65536,
}
DEFAULT_THINKING_BUDGET = 8192

_DROPPED_SCHEMA_KEYS = frozenset(
    {"$schema", "$id", "$ref", "$defs", "definitions", "default", "examples", "title"}
)
_COMBINATOR_KEYS = {"anyOf": "any_of", "allOf": "all_of", "oneOf": "one_of"}
_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.:-]")
_VALID_NAME_START = re.compile(r"^[a-zA-Z_]")

CHUNK_OBJECT = "chat.completion.chunk"
COMPLETION_OBJECT = "chat.completion"


def reasoning_effort(request: dict[str, Any]) -> str | None:
    effort = request.get("reasoning_effort")
    if not effort and isinstance(request.get("reasoning"), dict):
        effort = request["reasoning"].get("effort")
    if isinstance(effort, str) and effort.strip():
        return effort.strip().lower()
    return None


def get_thinking_budget(model: str, request: dict[str, Any]) -> int:
    effort = reasoning_effort(request)
    if effort in EFFORT_BUDGETS:
        return EFFORT_BUDGETS[effort]
    if "opus" in model:
        return 32768
    if "sonnet" in model:
        return 16384
    if "gemini-3-pro" in model:
        return 16384
    if "gemini-3-flash" in model:
        return 8192
    return DEFAULT_THINKING_BUDGET


def wants_thinking(model: str, request: dict[str, Any]) -> bool:
    if is_thinking_model(model):
        return True
    return model.startswith("gemini-3") and reasoning_effort(request) in EFFORT_BUDGETS


def sanitize_function_name(name: str) -> str:
    sanitized = name.replace("/", ":")
    if not _VALID_NAME_START.match(sanitized):
        sanitized = "_" + sanitized
    sanitized = _INVALID_NAME_CHARS.sub("_", sanitized)
    return sanitized[:TOOL_NAME_MAX_LENGTH]


def transform_schema(schema: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in schema.items():
        if key in _DROPPED_SCHEMA_KEYS:
            continue
        if key == "const":
            result["enum"] = [value]
            continue
        if key in _COMBINATOR_KEYS:
            members = value if isinstance(value, list) else [value]
            result[_COMBINATOR_KEYS[key]] = [_transform_value(member) for member in members]
            continue
        if key == "properties" and isinstance(value, dict):
            # Property names are user data, not schema keywords.
            result[key] = {
                name: _transform_value(prop) for name, prop in value.items()
            }
            continue
        result[key] = _transform_value(value)
    return result


def _transform_value(value: Any) -> Any:
    if isinstance(value, dict):
        return transform_schema(value)
    if isinstance(value, list):
        return [transform_schema(item) if isinstance(item, dict) else item for item in value]
    return value


def build_parameter_hints(parameters: dict[str, Any]) -> str:
    properties = parameters.get("properties")
    if not isinstance(properties, dict) or not properties:
        return ""
    required = parameters.get("required")
    required_names = set(required) if isinstance(required, list) else set()
    hints: list[str] = []
    for name, prop in properties.items():
        prop_type = prop.get("type") if isinstance(prop, dict) else None
        if isinstance(prop_type, list):
            prop_type = "|".join(str(item) for item in prop_type)
        label = str(prop_type or "any")
        if name in required_names:
            label += ", REQUIRED"
        hints.append(f"{name} ({label})")
    return ", ".join(hints)


def map_tool_declaration(tool: dict[str, Any], *, claude: bool) -> dict[str, Any] | None:
    function = tool.get("function") if tool.get("type", "function") == "function" else None
    if not isinstance(function, dict) or not function.get("name"):
        return None

    description = str(function.get("description") or "")
    parameters = function.get("parameters")
    if not isinstance(parameters, dict):
        parameters = None

    if claude and parameters is not None:
        hints = build_parameter_hints(parameters)
        if hints:
            description += STRICT_PARAMETERS_TEMPLATE.format(params=hints)

    declaration: dict[str, Any] = {"name": sanitize_function_name(str(function["name"]))}
    if description:
        declaration["description"] = description

    if parameters is not None:
        schema = transform_schema(parameters)
        if claude and schema.get("type") == "object" and not schema.get("properties"):
            schema["properties"] = {
                PLACEHOLDER_PARAMETER: {
                    "type": "boolean",
                    "description": PLACEHOLDER_DESCRIPTION,
                }
            }
            schema["required"] = [PLACEHOLDER_PARAMETER]
        declaration["parameters"] = schema
    return declaration


def message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            str(part.get("text") or "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def _user_parts(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"text": content}]
    if isinstance(content, list):
        parts: list[dict[str, Any]] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text":
                parts.append({"text": str(part.get("text") or "")})
            elif part.get("type") == "image_url":
                parts.append({"text": IMAGE_PLACEHOLDER_TEXT})
            else:
                parts.append({"text": ""})
        if parts:
            return parts
    return [{"text": ""}]


def _parse_arguments(raw: Any) -> Any:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return {"value": raw}


def _assistant_parts(
    message: dict[str, Any],
    continuity: ConversationContinuity,
) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    reasoning = message.get("reasoning_content")
    if isinstance(reasoning, str) and reasoning:
        parts.append(
            {
                "text": reasoning,
                "thought": True,
                "thoughtSignature": continuity.signature_or_skip(),
            }
        )

    content = message.get("content")
    if isinstance(content, str) and content:
        parts.append({"text": content})
    elif isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text"):
                parts.append({"text": str(part["text"])})

    tool_calls = message.get("tool_calls")
    if isinstance(tool_calls, list):
        for call in tool_calls:
            if not isinstance(call, dict) or call.get("type", "function") != "function":
                continue
            function = call.get("function") if isinstance(call.get("function"), dict) else {}
            function_call: dict[str, Any] = {
                "name": sanitize_function_name(str(function.get("name") or "")),
                "args": _parse_arguments(function.get("arguments")),
            }
            if call.get("id"):
                function_call["id"] = str(call["id"])
            part: dict[str, Any] = {"functionCall": function_call}
            if continuity.thought_signature:
                part["thoughtSignature"] = continuity.thought_signature
            parts.append(part)

    return parts or [{"text": ""}]


def _tool_response(content: Any) -> dict[str, Any]:
    text = content if isinstance(content, str) else message_text(content)
    if not text:
        return {"result": None}
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"result": text}
    # Function responses must be objects.
    return parsed if isinstance(parsed, dict) else {"result": parsed}


def map_openai_to_upstream(
    project_id: str,
    request: dict[str, Any],
    continuity: ConversationContinuity | None = None,
) -> dict[str, Any]:
    continuity = continuity if continuity is not None else ConversationContinuity()
    requested_model = str(request.get("model") or "")
    model_id = upstream_model_id(requested_model)
    claude = is_claude_model(model_id)

    contents: list[dict[str, Any]] = []
    system_text: str | None = None
    tool_names: dict[str, str] = {}
    for message in request.get("messages") or []:
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        if role in {"system", "developer"}:
            system_text = message_text(message.get("content"))
        elif role == "user":
            contents.append({"role": "user", "parts": _user_parts(message.get("content"))})
        elif role == "assistant":
            for call in message.get("tool_calls") or []:
                if isinstance(call, dict) and isinstance(call.get("function"), dict) and call.get("id"):
                    tool_names[str(call["id"])] = sanitize_function_name(
                        str(call["function"].get("name") or "")
                    )
            contents.append({"role": "model", "parts": _assistant_parts(message, continuity)})
        elif role == "tool":
            call_id = message.get("tool_call_id")
            function_response: dict[str, Any] = {
                "name": tool_names.get(str(call_id), str(call_id or "unknown")),
                "response": _tool_response(message.get("content")),
            }
            if call_id:
                function_response["id"] = str(call_id)
            contents.append({"role": "user", "parts": [{"functionResponse": function_response}]})

    inner: dict[str, Any] = {"contents": contents}
    if claude:
        system_text = f"{PERSONA_PREAMBLE}\n{system_text}" if system_text else PERSONA_PREAMBLE
    if system_text is not None:
        inner["systemInstruction"] = {"parts": [{"text": system_text}]}

    inner["generationConfig"] = build_generation_config(model_id, request)

    tools = request.get("tools")
    if isinstance(tools, list) and tools:
        declarations = [
            declaration
            for declaration in (map_tool_declaration(tool, claude=claude) for tool in tools if isinstance(tool, dict))
            if declaration is not None
        ]
        if declarations:
            inner["tools"] = [{"functionDeclarations": declarations}]

    return {
        "project": project_id,
        "model": model_id,
        "request": inner,
        "userAgent": UPSTREAM_USER_AGENT_TAG,
        "requestId": f"agent-{uuid4()}",
    }


def build_generation_config(model_id: str, request: dict[str, Any]) -> dict[str, Any]:
    config: dict[str, Any] = {}
    max_tokens = request.get("max_tokens") or request.get("max_completion_tokens")
    if isinstance(max_tokens, int) and max_tokens > 0:
        config["maxOutputTokens"] = max_tokens
    if isinstance(request.get("temperature"), (int, float)):
        config["temperature"] = request["temperature"]
    if isinstance(request.get("top_p"), (int, float)):
        config["topP"] = request["top_p"]
    stop = request.get("stop")
    if isinstance(stop, str):
        config["stopSequences"] = [stop]
    elif isinstance(stop, list) and stop:
        config["stopSequences"] = [str(item) for item in stop]

    if wants_thinking(model_id, request):
        budget = get_thinking_budget(model_id, request)
        config["thinkingConfig"] = {"thinkingBudget": budget, "includeThoughts": True}
        if config.get("maxOutputTokens", 0) <= budget:
            config["maxOutputTokens"] = budget + THINKING_SAFETY_MARGIN
    return config


class ChatCompletionChunkBuilder:
    """Renders decoded upstream events as ``chat.completion.chunk`` objects."""

    def __init__(
        self,
        model: str,
        *,
        completion_id: str | None = None,
        created: int | None = None,
    ) -> None:
        self.model = model
        self.completion_id = completion_id or f"chat-{uuid4()}"
        self.created = created if created is not None else int(time.time())

    def chunk(
        self,
        delta: dict[str, Any],
        *,
        finish_reason: str | None = None,
        usage: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "id": self.completion_id,
            "object": CHUNK_OBJECT,
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                    "logprobs": None,
                }
            ],
            "usage": usage,
        }

    def from_event(self, event: StreamEvent) -> dict[str, Any] | None:
        if isinstance(event, TextDelta):
            delta: dict[str, Any] = {}
            if event.role_marker:
                delta["role"] = "assistant"
            if event.thought:
                delta["reasoning"] = event.text
                delta["reasoning_content"] = event.text
            else:
                delta["content"] = event.text
            return self.chunk(delta)
        if isinstance(event, ToolCallEvent):
            delta = {}
            if event.role_marker:
                delta["role"] = "assistant"
                delta["content"] = None
            delta["tool_calls"] = [
                {
                    "index": event.index,
                    "id": event.call_id,
                    "type": "function",
                    "function": {"name": event.name, "arguments": event.arguments},
                }
            ]
            return self.chunk(delta)
        if isinstance(event, FinishEvent):
            usage = event.usage.as_openai_usage() if event.usage is not None else None
            return self.chunk({}, finish_reason=event.finish_reason, usage=usage)
        return None

    def notification_chunk(self, text: str) -> dict[str, Any]:
        return self.chunk({"role": "assistant", "content": f"{text}\n\n"})

    @staticmethod
    def encode(chunk: dict[str, Any]) -> bytes:
        return f"data: {json.dumps(chunk, separators=(',', ':'))}\n\n".encode("utf-8")

    @staticmethod
    def done() -> bytes:
        return b"data: [DONE]\n\n"


def aggregate_completion(
    events: Iterable[StreamEvent],
    *,
    model: str,
    completion_id: str | None = None,
    created: int | None = None,
) -> dict[str, Any]:
    content: list[str] = []
    reasoning: list[str] = []
    tool_calls: list[dict[str, Any]] = []
    finish_reason = "stop"
    usage: dict[str, Any] | None = None
    for event in events:
        if isinstance(event, TextDelta):
            (reasoning if event.thought else content).append(event.text)
        elif isinstance(event, ToolCallEvent):
            tool_calls.append(
                {
                    "id": event.call_id,
                    "type": "function",
                    "function": {"name": event.name, "arguments": event.arguments},
                }
            )
        elif isinstance(event, FinishEvent):
            finish_reason = event.finish_reason
            if event.usage is not None:
                usage = event.usage.as_openai_usage()

    text = "".join(content)
    reasoning_text = "".join(reasoning)
    message: dict[str, Any] = {"role": "assistant"}
    if reasoning_text:
        message["content"] = f"<thinking>\n{reasoning_text}\n</thinking>\n\n{text}"
        message["reasoning_content"] = reasoning_text
    else:
        message["content"] = text if text or not tool_calls else None
    if tool_calls:
        message["tool_calls"] = tool_calls

    return {
        "id": completion_id or f"chat-{uuid4()}",
        "object": COMPLETION_OBJECT,
        "created": created if created is not None else int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": finish_reason,
                "logprobs": None,
            }
        ],
        "usage": usage
        or {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }
