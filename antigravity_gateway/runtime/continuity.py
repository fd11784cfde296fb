from __future__ import annotations

from dataclasses import dataclass

from antigravity_gateway.constants import SKIP_THOUGHT_SIGNATURE


@dataclass(slots=True)
class ConversationContinuity:
    """Latest thought signature returned by the upstream for one client session."""

    thought_signature: str | None = None

    def update(self, signature: str | None) -> None:
        if signature:
            self.thought_signature = signature

    def signature_or_skip(self) -> str:
        return self.thought_signature or SKIP_THOUGHT_SIGNATURE
