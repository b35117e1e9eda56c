"""Default LLM service implementation."""
import asyncio
from logging import Logger
from typing import Optional

from scitrera_app_framework import get_logger, Variables

from ...config import (
    MEMORYENGINE_CIRCUIT_BREAKER_FAILURES, DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_FAILURES,
    MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS, DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS,
)
from ...models.llm import LLMRequest, LLMResponse, LLMMessage, LLMRole
from ...utils import CircuitBreaker
from .base import (
    LLMProvider, EXT_LLM_REGISTRY, LLMServicePluginBase,
    MEMORYENGINE_LLM_TIMEOUT_SECONDS, DEFAULT_MEMORYENGINE_LLM_TIMEOUT_SECONDS,
)
from .registry import LLMProviderRegistry


class LLMService:
    """High-level LLM service wrapping the provider registry.

    Every profile gets its own circuit breaker so a failing extraction model
    does not block an independently configured expansion model. Calls are
    bounded by ``timeout_seconds``.
    """

    def __init__(
            self,
            registry: LLMProviderRegistry,
            v: Variables = None,
            timeout_seconds: float = DEFAULT_MEMORYENGINE_LLM_TIMEOUT_SECONDS,
            failure_threshold: int = DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_FAILURES,
            cooldown_seconds: float = DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS,
    ):
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._breakers: dict[str, CircuitBreaker] = {}
        self.logger = get_logger(v, name=self.__class__.__name__)

    @property
    def provider(self) -> LLMProvider:
        return self.registry.get_provider("default")

    def is_available(self, profile: str = "default") -> bool:
        """True when ``profile`` resolves to a configured (non-placeholder) provider."""
        return self.registry.get_provider(profile).is_configured

    def breaker_for(self, profile: str) -> CircuitBreaker:
        name = self.registry.resolve_profile(profile)
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = self._breakers[name] = CircuitBreaker(
                f"llm:{name}",
                failure_threshold=self._failure_threshold,
                cooldown_seconds=self._cooldown_seconds,
                logger=self.logger,
            )
        return breaker

    async def complete(
            self,
            request: LLMRequest,
            profile: str = "default",
            timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Route completion to the provider for the given profile.

        Raises:
            CircuitOpenError: the profile's breaker is open
            asyncio.TimeoutError: the call exceeded the timeout
            LLMNotConfiguredError: no provider configured for the profile
        """
        provider = self.registry.get_provider(profile)
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        return await self.breaker_for(profile).call(provider.complete, request, timeout=timeout)

    async def synthesize(
            self,
            prompt: str,
            system: Optional[str] = None,
            max_tokens: int = None,
            temperature: float = None,
            profile: str = "default",
            timeout_seconds: Optional[float] = None,
            json_output: bool = False,
    ) -> str:
        """Single-turn completion with an optional system prompt; returns the text."""
        messages = []
        if system:
            messages.append(LLMMessage(role=LLMRole.SYSTEM, content=system))
        messages.append(LLMMessage(role=LLMRole.USER, content=prompt))

        request = LLMRequest(messages=messages, max_tokens=max_tokens, temperature=temperature,
                             json_output=json_output)
        response = await self.complete(request, profile=profile, timeout_seconds=timeout_seconds)
        if response.truncated:
            self.logger.warning("LLM reply for profile %s hit the token limit (%d tokens)",
                                profile, response.completion_tokens)
        return response.content

    def stats(self) -> dict:
        return {name: breaker.stats() for name, breaker in self._breakers.items()}

    @property
    def default_model(self) -> str:
        return self.provider.default_model


class DefaultLLMServicePlugin(LLMServicePluginBase):
    """Plugin for default LLM service."""
    PROVIDER_NAME = 'default'

    def initialize(self, v: Variables, logger: Logger) -> LLMService:
        registry: LLMProviderRegistry = self.get_extension(EXT_LLM_REGISTRY, v)
        return LLMService(
            registry=registry,
            v=v,
            timeout_seconds=v.environ(MEMORYENGINE_LLM_TIMEOUT_SECONDS,
                                      default=DEFAULT_MEMORYENGINE_LLM_TIMEOUT_SECONDS, type_fn=float),
            failure_threshold=v.environ(MEMORYENGINE_CIRCUIT_BREAKER_FAILURES,
                                        default=DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_FAILURES, type_fn=int),
            cooldown_seconds=v.environ(MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS,
                                       default=DEFAULT_MEMORYENGINE_CIRCUIT_BREAKER_COOLDOWN_SECONDS, type_fn=float),
        )
