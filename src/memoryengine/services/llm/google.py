"""Gemini provider using the google-genai SDK."""
import time

from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Variables

from .base import LLMProvider
from ...models.llm import LLMRequest, LLMResponse, LLMRole

DEFAULT_LLM_GOOGLE_MODEL = 'gemini-2.5-flash'

_FILTERED = {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}


def finish_reason_of(response) -> str:
    if not response.candidates or response.candidates[0].finish_reason is None:
        return "stop"
    reason = response.candidates[0].finish_reason
    reason = getattr(reason, "name", None) or str(reason)
    if reason == "MAX_TOKENS":
        return "length"
    return "content_filter" if reason in _FILTERED else "stop"


class GoogleLLMProvider(LLMProvider):
    """
    Gemini via ``client.aio.models.generate_content``.

    ``json_output`` sets ``response_mime_type="application/json"``. The
    assistant role is called ``model`` on this API.
    """
    provider_name = 'google'

    def __init__(
            self,
            api_key: str,
            model: str = DEFAULT_LLM_GOOGLE_MODEL,
            default_max_tokens: int | None = None,
            default_temperature: float | None = None,
            v: Variables = None,
    ):
        self.api_key = api_key
        self.model = model
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature
        self._client = None
        self.logger = get_logger(v, name=self.__class__.__name__)
        self.logger.info("Gemini provider ready: model=%s", model)

    @property
    def client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def build_request(self, request: LLMRequest):
        """(contents, GenerateContentConfig) for one request."""
        from google.genai import types

        contents = [
            types.Content(role="model" if m.role == LLMRole.ASSISTANT else "user",
                          parts=[types.Part.from_text(text=m.content)])
            for m in request.turns
        ]
        max_tokens, temperature = self.params(request)
        config = types.GenerateContentConfig(
            system_instruction=request.system_text,
            max_output_tokens=max_tokens,
            temperature=temperature,
            stop_sequences=request.stop or None,
            response_mime_type="application/json" if request.json_output else None,
        )
        return contents, config

    async def complete(self, request: LLMRequest) -> LLMResponse:
        from google.genai import errors

        model = request.model or self.model
        contents, config = self.build_request(request)
        started = time.perf_counter()
        with self.sdk_errors(errors.APIError):
            response = await self.client.aio.models.generate_content(model=model, contents=contents, config=config)

        usage = response.usage_metadata
        result = LLMResponse(
            content=response.text or "",
            model=model,
            prompt_tokens=(usage.prompt_token_count or 0) if usage else 0,
            completion_tokens=(usage.candidates_token_count or 0) if usage else 0,
            finish_reason=finish_reason_of(response),
            latency_ms=self.elapsed_ms(started),
        )
        self.logger.debug("%s: %d tokens in %.0fms (%s)",
                          result.model, result.total_tokens, result.latency_ms, result.finish_reason)
        return result

    @property
    def default_model(self) -> str:
        return self.model
