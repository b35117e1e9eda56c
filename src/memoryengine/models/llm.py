"""Provider-neutral request and response types for the LLM layer.

The engine only makes short single-turn calls (fact extraction, contradiction
checks, query expansion), almost all of which expect a JSON reply.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class LLMRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class LLMMessage:
    role: LLMRole
    content: str


@dataclass
class LLMRequest:
    """One completion call.

    ``max_tokens`` and ``temperature`` fall back to the profile defaults when
    unset. ``json_output`` asks the provider for a bare JSON object using
    whatever mechanism it supports (response format, MIME type or prefill).
    """
    messages: list[LLMMessage]
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    json_output: bool = False
    stop: Optional[list[str]] = None

    @property
    def system_text(self) -> Optional[str]:
        """All system messages joined, or None."""
        parts = [m.content for m in self.messages if m.role == LLMRole.SYSTEM]
        return "\n".join(parts) if parts else None

    @property
    def turns(self) -> list[LLMMessage]:
        """Non-system messages in order."""
        return [m for m in self.messages if m.role != LLMRole.SYSTEM]


@dataclass
class LLMResponse:
    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: str = "stop"  # stop | length | content_filter
    latency_ms: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"
