from __future__ import annotations

from typing import Any

ANTIGRAVITY_SUFFIX = ":antigravity"

PREMIUM_MODELS: tuple[str, ...] = (
    "claude-sonnet-4-5",
    "claude-sonnet-4-5-thinking",
    "claude-opus-4-5-thinking",
    "gemini-3-pro-high",
    "gemini-3-pro-low",
    "gemini-3-flash-high",
    "gemini-3-flash-medium",
    "gemini-3-flash-low",
    "gemini-3-flash-minimal",
    "gpt-oss-120b-medium",
)

STANDARD_MODELS: tuple[str, ...] = (
    "gemini-2.5-flash",
    "gemini-2.5-pro",
    "gemini-3-flash-preview",
    "gemini-3-pro-preview",
)

FALLBACK_CHAINS: dict[str, str | None] = {
    "gemini-2.5-pro": "gemini-2.5-flash",
    "gemini-2.5-flash": "gemini-2.5-flash-lite",
    "gemini-2.5-flash-lite": None,
    "gemini-3-pro-preview": "gemini-3-flash-preview",
    "gemini-3-flash-preview": "gemini-2.5-flash",
    "claude-opus-4-5-thinking": "claude-sonnet-4-5-thinking",
    "claude-sonnet-4-5-thinking": "claude-sonnet-4-5",
    "claude-sonnet-4-5": None,
    "gemini-3-pro-high": "gemini-3-pro-low",
    "gemini-3-pro-low": "gemini-3-flash-high",
    "gemini-3-flash-high": "gemini-3-flash-medium",
    "gemini-3-flash-medium": "gemini-3-flash-low",
    "gemini-3-flash-low": "gemini-3-flash-minimal",
    "gemini-3-flash-minimal": None,
}


def is_premium_model(model: str) -> bool:
    if model in PREMIUM_MODELS or model.endswith(ANTIGRAVITY_SUFFIX):
        return True
    if model.startswith("claude-"):
        return True
    return model.startswith("gemini-3-") and "preview" not in model and "cli" not in model


def upstream_model_id(model: str) -> str:
    if model.endswith(ANTIGRAVITY_SUFFIX):
        return model[: -len(ANTIGRAVITY_SUFFIX)]
    return model


def is_claude_model(model: str) -> bool:
    return upstream_model_id(model).startswith("claude-")


def is_thinking_model(model: str) -> bool:
    return "thinking" in model


def build_models_response() -> dict[str, Any]:
    data: list[dict[str, Any]] = []
    seen: set[str] = set()
    for model_ids, owner in (
        (PREMIUM_MODELS, "Google-Antigravity"),
        (STANDARD_MODELS, "Google-GeminiCLI"),
    ):
        for model_id in model_ids:
            if model_id in seen:
                continue
            seen.add(model_id)
            data.append(
                {
                    "id": model_id,
                    "object": "model",
                    "created": 0,
                    "owned_by": owner,
                }
            )
    return {"object": "list", "data": data}
