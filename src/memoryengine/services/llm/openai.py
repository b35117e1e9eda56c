"""OpenAI-compatible chat completion provider."""
import time

from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Variables

from .base import LLMProvider
from ...models.llm import LLMRequest, LLMResponse

DEFAULT_LLM_OPENAI_MODEL = 'gpt-5-nano'


class OpenAILLMProvider(LLMProvider):
    """
    Chat Completions against OpenAI or any compatible server (Azure, Ollama, vLLM)
    selected through ``base_url``.

    ``json_output`` maps to ``response_format={"type": "json_object"}``, which
    some compatible servers reject; set ``json_mode=False`` for those and the
    prompt alone carries the format.
    """
    provider_name = 'openai'

    def __init__(
            self,
            api_key: str,
            base_url: str = None,
            model: str = DEFAULT_LLM_OPENAI_MODEL,
            default_max_tokens: int | None = None,
            default_temperature: float | None = None,
            json_mode: bool = True,
            v: Variables = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature
        self.json_mode = json_mode
        self._client = None
        self.logger = get_logger(v, name=self.__class__.__name__)
        self.logger.info("OpenAI provider ready: model=%s base_url=%s json_mode=%s", model, base_url, json_mode)

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, max_retries=0)
        return self._client

    def build_kwargs(self, request: LLMRequest) -> dict:
        max_tokens, temperature = self.params(request)
        kwargs = {
            "model": request.model or self.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in request.messages],
        }
        if max_tokens is not None:
            kwargs["max_completion_tokens"] = max_tokens
        if temperature is not None:
            kwargs["temperature"] = temperature
        if request.stop:
            kwargs["stop"] = request.stop
        if request.json_output and self.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    async def complete(self, request: LLMRequest) -> LLMResponse:
        from openai import APIError

        kwargs = self.build_kwargs(request)
        started = time.perf_counter()
        with self.sdk_errors(APIError):
            response = await self.client.chat.completions.create(**kwargs)

        choice = response.choices[0]
        usage = response.usage
        result = LLMResponse(
            content=choice.message.content or "",
            model=response.model,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            finish_reason=choice.finish_reason or "stop",
            latency_ms=self.elapsed_ms(started),
        )
        self.logger.debug("%s: %d tokens in %.0fms (%s)",
                          result.model, result.total_tokens, result.latency_ms, result.finish_reason)
        return result

    @property
    def default_model(self) -> str:
        return self.model
