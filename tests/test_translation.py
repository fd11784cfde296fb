from __future__ import annotations

import json

import pytest

from antigravity_gateway.constants import PERSONA_PREAMBLE, SKIP_THOUGHT_SIGNATURE
from antigravity_gateway.gateway.sse import FinishEvent, TextDelta, ToolCallEvent, UsageEvent
from antigravity_gateway.models import is_premium_model, upstream_model_id
from antigravity_gateway.runtime.continuity import ConversationContinuity
from antigravity_gateway.translation.openai import (
    ChatCompletionChunkBuilder,
    aggregate_completion,
    build_parameter_hints,
    get_thinking_budget,
    map_openai_to_upstream,
    sanitize_function_name,
    transform_schema,
)


def test_transform_schema_rewrites_const_and_combinators() -> None:
    schema = {"const": "x", "anyOf": [{"type": "string"}], "$schema": "http://json-schema.org/draft-07"}
    assert transform_schema(schema) == {"enum": ["x"], "any_of": [{"type": "string"}]}


def test_transform_schema_recurses_into_nested_objects_and_arrays() -> None:
    schema = {
        "type": "object",
        "title": "Args",
        "$defs": {"thing": {"type": "string"}},
        "properties": {
            "title": {"type": "string", "default": "x", "examples": ["y"]},
            "mode": {"oneOf": [{"const": "a"}, {"const": "b"}]},
            "items": {"type": "array", "items": {"allOf": [{"$ref": "#/x", "type": "integer"}]}},
        },
        "required": ["title"],
    }
    assert transform_schema(schema) == {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "mode": {"one_of": [{"enum": ["a"]}, {"enum": ["b"]}]},
            "items": {"type": "array", "items": {"all_of": [{"type": "integer"}]}},
        },
        "required": ["title"],
    }


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("a/b/c", "a:b:c"),
        ("123abc", "_123abc"),
        ("get weather!", "get_weather_"),
        ("mcp.server-tool", "mcp.server-tool"),
    ],
)
def test_sanitize_function_name(name: str, expected: str) -> None:
    assert sanitize_function_name(name) == expected


def test_sanitize_function_name_truncates_to_64() -> None:
    assert len(sanitize_function_name("a" * 100)) == 64


def test_parameter_hints_mark_required() -> None:
    hints = build_parameter_hints(
        {
            "type": "object",
            "properties": {"path": {"type": "string"}, "limit": {"type": "integer"}, "extra": {}},
            "required": ["path"],
        }
    )
    assert hints == "path (string, REQUIRED), limit (integer), extra (any)"


@pytest.mark.parametrize(
    ("model", "request_fields", "expected"),
    [
        ("claude-opus-4-5-thinking", {}, 32768),
        ("claude-sonnet-4-5-thinking", {}, 16384),
        ("gemini-3-pro-high", {}, 16384),
        ("gemini-3-flash-high", {}, 8192),
        ("other-thinking", {}, 8192),
        ("claude-opus-4-5-thinking", {"reasoning_effort": "low"}, 8192),
        ("claude-sonnet-4-5-thinking", {"reasoning": {"effort": "xhigh"}}, 65536),
        ("claude-sonnet-4-5-thinking", {"reasoning_effort": "high"}, 32768),
        ("claude-sonnet-4-5-thinking", {"reasoning_effort": "medium"}, 16384),
    ],
)
def test_thinking_budget(model: str, request_fields: dict[str, object], expected: int) -> None:
    assert get_thinking_budget(model, request_fields) == expected


def test_thinking_model_output_limit_exceeds_budget() -> None:
    mapped = map_openai_to_upstream(
        "proj",
        {
            "model": "claude-opus-4-5-thinking",
            "max_tokens": 1000,
            "messages": [{"role": "user", "content": "hi"}],
        },
    )
    config = mapped["request"]["generationConfig"]
    assert config["thinkingConfig"] == {"thinkingBudget": 32768, "includeThoughts": True}
    assert config["maxOutputTokens"] == 32768 + 8192


def test_large_output_limit_is_kept_for_thinking_models() -> None:
    mapped = map_openai_to_upstream(
        "proj",
        {
            "model": "claude-sonnet-4-5-thinking",
            "max_tokens": 50000,
            "messages": [{"role": "user", "content": "hi"}],
        },
    )
    assert mapped["request"]["generationConfig"]["maxOutputTokens"] == 50000


def test_claude_request_gets_persona_and_strict_tool_hints() -> None:
    mapped = map_openai_to_upstream(
        "proj-1",
        {
            "model": "claude-sonnet-4-5:antigravity",
            "temperature": 0.2,
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": [{"type": "text", "text": "read it"}, {"type": "image_url"}]},
            ],
            "tools": [
                {
                    "type": "function",
                    "function": {
                        "name": "fs/read",
                        "description": "Read a file",
                        "parameters": {
                            "type": "object",
                            "properties": {"path": {"type": "string"}},
                            "required": ["path"],
                        },
                    },
                },
                {"type": "function", "function": {"name": "ping", "parameters": {"type": "object"}}},
            ],
        },
    )

    assert mapped["project"] == "proj-1"
    assert mapped["model"] == "claude-sonnet-4-5"
    assert mapped["userAgent"] == "antigravity"
    assert mapped["requestId"].startswith("agent-")
    request = mapped["request"]
    assert request["systemInstruction"] == {"parts": [{"text": f"{PERSONA_PREAMBLE}\nBe brief."}]}
    assert request["contents"] == [
        {
            "role": "user",
            "parts": [{"text": "read it"}, {"text": "[Image content not yet supported]"}],
        }
    ]
    assert request["generationConfig"] == {"temperature": 0.2}
    declarations = request["tools"][0]["functionDeclarations"]
    assert declarations[0]["name"] == "fs:read"
    assert declarations[0]["description"] == (
        "Read a file\n\n⚠️ STRICT PARAMETERS: path (string, REQUIRED)."
    )
    assert declarations[1]["parameters"]["properties"]["_placeholder"]["type"] == "boolean"


def test_claude_request_without_system_message_uses_persona_only() -> None:
    mapped = map_openai_to_upstream(
        "p", {"model": "claude-sonnet-4-5", "messages": [{"role": "user", "content": "hi"}]}
    )
    assert mapped["request"]["systemInstruction"] == {"parts": [{"text": PERSONA_PREAMBLE}]}


def test_gemini_request_has_no_persona() -> None:
    mapped = map_openai_to_upstream(
        "p",
        {
            "model": "gemini-2.5-pro",
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "hi"},
            ],
            "top_p": 0.9,
            "stop": "END",
        },
    )
    request = mapped["request"]
    assert request["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert request["generationConfig"] == {"topP": 0.9, "stopSequences": ["END"]}
    assert "tools" not in request


def test_assistant_turns_carry_thought_signature() -> None:
    continuity = ConversationContinuity(thought_signature="sig-9")
    mapped = map_openai_to_upstream(
        "p",
        {
            "model": "gemini-3-pro-high",
            "messages": [
                {"role": "user", "content": "list files"},
                {
                    "role": "assistant",
                    "reasoning_content": "need a tool",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "ls", "arguments": '{"dir": "."}'},
                        }
                    ],
                },
                {"role": "tool", "tool_call_id": "call_1", "content": '{"files": ["a"]}'},
                {"role": "tool", "tool_call_id": "call_2", "content": "plain text"},
                {"role": "tool", "tool_call_id": "call_3", "content": ""},
                {"role": "assistant", "content": ""},
            ],
        },
        continuity,
    )
    contents = mapped["request"]["contents"]
    assert contents[1] == {
        "role": "model",
        "parts": [
            {"text": "need a tool", "thought": True, "thoughtSignature": "sig-9"},
            {
                "functionCall": {"name": "ls", "args": {"dir": "."}, "id": "call_1"},
                "thoughtSignature": "sig-9",
            },
        ],
    }
    assert contents[2] == {
        "role": "user",
        "parts": [{"functionResponse": {"name": "ls", "response": {"files": ["a"]}, "id": "call_1"}}],
    }
    assert contents[3]["parts"][0]["functionResponse"]["response"] == {"result": "plain text"}
    assert contents[3]["parts"][0]["functionResponse"]["name"] == "call_2"
    assert contents[4]["parts"][0]["functionResponse"]["response"] == {"result": None}
    assert contents[5] == {"role": "model", "parts": [{"text": ""}]}


def test_reasoning_without_known_signature_uses_skip_sentinel() -> None:
    mapped = map_openai_to_upstream(
        "p",
        {
            "model": "gemini-2.5-pro",
            "messages": [{"role": "assistant", "reasoning_content": "hmm", "content": "done"}],
        },
    )
    parts = mapped["request"]["contents"][0]["parts"]
    assert parts[0]["thoughtSignature"] == SKIP_THOUGHT_SIGNATURE
    assert parts[1] == {"text": "done"}


def test_model_tier_classification() -> None:
    assert is_premium_model("claude-sonnet-4-5") is True
    assert is_premium_model("gemini-3-pro-high") is True
    assert is_premium_model("gemini-2.5-pro:antigravity") is True
    assert is_premium_model("gemini-3-pro-preview") is False
    assert is_premium_model("gemini-2.5-flash") is False
    assert upstream_model_id("gemini-2.5-pro:antigravity") == "gemini-2.5-pro"


def test_chunk_builder_renders_events() -> None:
    builder = ChatCompletionChunkBuilder("gemini-2.5-pro", completion_id="chat-1", created=7)

    reasoning = builder.from_event(TextDelta(text="hmm", thought=True, role_marker=True))
    assert reasoning is not None
    assert reasoning["choices"][0]["delta"] == {
        "role": "assistant",
        "reasoning": "hmm",
        "reasoning_content": "hmm",
    }

    tool = builder.from_event(
        ToolCallEvent(index=0, call_id="call_x", name="ls", arguments="{}", role_marker=True)
    )
    assert tool is not None
    assert tool["choices"][0]["delta"] == {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {"index": 0, "id": "call_x", "type": "function", "function": {"name": "ls", "arguments": "{}"}}
        ],
    }

    final = builder.from_event(
        FinishEvent(finish_reason="stop", usage=UsageEvent(prompt_tokens=3, output_tokens=4))
    )
    assert final is not None
    assert final["choices"][0]["finish_reason"] == "stop"
    assert final["usage"] == {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}
    assert builder.from_event(UsageEvent()) is None

    encoded = builder.encode(final)
    assert encoded.startswith(b"data: {")
    assert encoded.endswith(b"\n\n")
    assert json.loads(encoded[len(b"data: ") :])["object"] == "chat.completion.chunk"


def test_aggregate_completion_wraps_reasoning() -> None:
    completion = aggregate_completion(
        [
            TextDelta(text="think", thought=True, role_marker=True),
            TextDelta(text="answer"),
            FinishEvent(
                finish_reason="stop",
                usage=UsageEvent(prompt_tokens=1, output_tokens=2, reasoning_tokens=3),
            ),
        ],
        model="gemini-2.5-pro",
    )
    message = completion["choices"][0]["message"]
    assert completion["object"] == "chat.completion"
    assert message["content"] == "<thinking>\nthink\n</thinking>\n\nanswer"
    assert message["reasoning_content"] == "think"
    assert completion["usage"]["completion_tokens"] == 5
    assert completion["usage"]["total_tokens"] == 6


def test_aggregate_completion_collects_tool_calls() -> None:
    completion = aggregate_completion(
        [
            ToolCallEvent(index=0, call_id="call_a", name="ls", arguments="{}", role_marker=True),
            FinishEvent(finish_reason="tool_calls"),
        ],
        model="m",
    )
    choice = completion["choices"][0]
    assert choice["finish_reason"] == "tool_calls"
    assert choice["message"]["content"] is None
    assert choice["message"]["tool_calls"][0]["id"] == "call_a"
