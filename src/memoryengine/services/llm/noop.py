"""Placeholder provider used for the ``default`` profile when nothing is configured."""
from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Variables

from .base import LLMProvider
from ...models.llm import LLMRequest, LLMResponse

_HINT = "set MEMORYENGINE_LLM_PROFILE_DEFAULT_PROVIDER (and _MODEL, _API_KEY) to enable model-assisted features"


class LLMNotConfiguredError(Exception):
    pass


class NoOpLLMProvider(LLMProvider):
    """
    Always raises ``LLMNotConfiguredError``.

    Callers check ``is_configured`` first and fall back to heuristic
    extraction, lexical contradiction detection and vocabulary expansion.
    """
    provider_name = 'noop'

    def __init__(self, v: Variables = None):
        get_logger(v, name=self.__class__.__name__).info("No LLM configured; %s", _HINT)

    async def complete(self, request: LLMRequest) -> LLMResponse:
        raise LLMNotConfiguredError(f"No LLM provider configured: {_HINT}")

    @property
    def default_model(self) -> str:
        return "not-configured"

    @property
    def is_configured(self) -> bool:
        return False
