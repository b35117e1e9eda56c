"""LLM service package: provider profiles, activity routing and per-profile circuit breakers."""
from .base import (
    LLMProvider,
    LLMProviderError,
    LLMProviderRegistryPluginBase,
    LLMServicePluginBase,
    EXT_LLM_REGISTRY,
    EXT_LLM_SERVICE,
)
from .registry import LLM_ACTIVITIES, LLMProviderRegistry
from .service_default import LLMService
from .noop import LLMNotConfiguredError


__all__ = (
    'LLM_ACTIVITIES',
    'LLMProvider',
    'LLMProviderError',
    'LLMProviderRegistry',
    'LLMProviderRegistryPluginBase',
    'LLMService',
    'LLMServicePluginBase',
    'EXT_LLM_REGISTRY',
    'EXT_LLM_SERVICE',
    'LLMNotConfiguredError',
)
