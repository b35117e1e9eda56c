"""Anthropic Messages API provider."""
import time

from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Variables

from .base import LLMProvider
from ...models.llm import LLMRequest, LLMResponse

DEFAULT_LLM_ANTHROPIC_MODEL = 'claude-sonnet-4-20250514'
DEFAULT_LLM_ANTHROPIC_MAX_TOKENS = 1024  # required by the Messages API

_FINISH_REASONS = {"end_turn": "stop", "stop_sequence": "stop", "max_tokens": "length", "refusal": "content_filter"}

# assistant prefill that forces the reply to start inside a JSON object
JSON_PREFILL = "{"


class AnthropicLLMProvider(LLMProvider):
    """
    Claude via the Messages API.

    There is no JSON response mode, so ``json_output`` prefills the assistant
    turn with ``{`` and stitches it back onto the returned text.
    """
    provider_name = 'anthropic'

    def __init__(
            self,
            api_key: str,
            model: str = DEFAULT_LLM_ANTHROPIC_MODEL,
            default_max_tokens: int | None = None,
            default_temperature: float | None = None,
            v: Variables = None,
    ):
        self.api_key = api_key
        self.model = model
        self.default_max_tokens = default_max_tokens or DEFAULT_LLM_ANTHROPIC_MAX_TOKENS
        self.default_temperature = default_temperature
        self._client = None
        self.logger = get_logger(v, name=self.__class__.__name__)
        self.logger.info("Anthropic provider ready: model=%s", model)

    @property
    def client(self):
        if self._client is None:
            from anthropic import AsyncAnthropic
            self._client = AsyncAnthropic(api_key=self.api_key, max_retries=0)
        return self._client

    def build_kwargs(self, request: LLMRequest) -> dict:
        max_tokens, temperature = self.params(request)
        messages = [{"role": m.role.value, "content": m.content} for m in request.turns]
        if request.json_output:
            messages.append({"role": "assistant", "content": JSON_PREFILL})

        kwargs = {"model": request.model or self.model, "messages": messages, "max_tokens": max_tokens}
        if request.system_text is not None:
            kwargs["system"] = request.system_text
        if temperature is not None:
            kwargs["temperature"] = temperature
        if request.stop:
            kwargs["stop_sequences"] = request.stop
        return kwargs

    async def complete(self, request: LLMRequest) -> LLMResponse:
        from anthropic import APIError

        kwargs = self.build_kwargs(request)
        started = time.perf_counter()
        with self.sdk_errors(APIError):
            response = await self.client.messages.create(**kwargs)

        text = "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
        if request.json_output:
            text = JSON_PREFILL + text

        result = LLMResponse(
            content=text,
            model=response.model,
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
            finish_reason=_FINISH_REASONS.get(response.stop_reason, "stop"),
            latency_ms=self.elapsed_ms(started),
        )
        self.logger.debug("%s: %d tokens in %.0fms (%s)",
                          result.model, result.total_tokens, result.latency_ms, result.finish_reason)
        return result

    @property
    def default_model(self) -> str:
        return self.model
