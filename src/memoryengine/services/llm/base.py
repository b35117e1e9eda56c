"""LLM Service - Pluggable LLM provider interface."""
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Optional

from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...models.llm import LLMRequest, LLMResponse

from .._constants import EXT_LLM_SERVICE, EXT_LLM_REGISTRY

# Registry config constants
MEMORYENGINE_LLM_REGISTRY = 'MEMORYENGINE_LLM_REGISTRY'
DEFAULT_MEMORYENGINE_LLM_REGISTRY = 'default'

# Service config constants
MEMORYENGINE_LLM_SERVICE = 'MEMORYENGINE_LLM_SERVICE'
DEFAULT_MEMORYENGINE_LLM_SERVICE = 'default'
MEMORYENGINE_LLM_TIMEOUT_SECONDS = 'MEMORYENGINE_LLM_TIMEOUT_SECONDS'
DEFAULT_MEMORYENGINE_LLM_TIMEOUT_SECONDS = 30.0


class LLMProviderError(Exception):
    """A provider SDK call failed; the SDK exception is chained as ``__cause__``."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class LLMProvider(ABC):
    """
    One configured model endpoint.

    Providers translate an ``LLMRequest`` into their SDK call, honour
    ``json_output`` as best they can and raise ``LLMProviderError`` for SDK
    failures so callers handle a single error type.
    """

    provider_name: str = 'llm'
    default_max_tokens: Optional[int] = None
    default_temperature: Optional[float] = None

    def params(self, request: LLMRequest) -> tuple[Optional[int], Optional[float]]:
        """(max_tokens, temperature) with request values overriding profile defaults."""
        max_tokens = request.max_tokens if request.max_tokens is not None else self.default_max_tokens
        temperature = request.temperature if request.temperature is not None else self.default_temperature
        return max_tokens, temperature

    @contextmanager
    def sdk_errors(self, *error_types: type[BaseException]):
        """Re-raise the given SDK exception types as ``LLMProviderError``."""
        try:
            yield
        except error_types as e:
            raise LLMProviderError(self.provider_name, str(e), getattr(e, 'status_code', None)) from e

    @staticmethod
    def elapsed_ms(started: float) -> float:
        return (time.perf_counter() - started) * 1000.0

    @abstractmethod
    async def complete(self, request: LLMRequest) -> LLMResponse:
        """
        Run one completion.

        Raises:
            LLMProviderError: the SDK call failed
        """
        pass

    @property
    @abstractmethod
    def default_model(self) -> str:
        pass

    @property
    def is_configured(self) -> bool:
        """False for placeholder providers that always raise."""
        return True


# noinspection PyAbstractClass
class LLMProviderRegistryPluginBase(Plugin):
    """Base plugin for LLM provider registry."""
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_LLM_REGISTRY}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_LLM_REGISTRY

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_LLM_REGISTRY, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_LLM_REGISTRY, DEFAULT_MEMORYENGINE_LLM_REGISTRY)


# noinspection PyAbstractClass
class LLMServicePluginBase(Plugin):
    """Base plugin for LLM service."""
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_LLM_SERVICE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_LLM_SERVICE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_LLM_SERVICE, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_LLM_SERVICE, DEFAULT_MEMORYENGINE_LLM_SERVICE)

    def get_dependencies(self, v: Variables):
        return (EXT_LLM_REGISTRY,)
