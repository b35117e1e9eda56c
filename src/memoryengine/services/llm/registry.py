"""
LLM Provider Registry - named profiles and activity routing.

The engine asks for a model by activity: ``extraction``, ``contradiction`` or
``expansion``. Each activity can be assigned to any configured profile;
unassigned activities and unknown profiles use ``default``.
"""
from dataclasses import dataclass, fields
from logging import Logger
from typing import Callable, Optional

from scitrera_app_framework import Variables

from .base import LLMProvider, LLMProviderRegistryPluginBase, EXT_LLM_REGISTRY
from .noop import NoOpLLMProvider
from ...models.llm import LLMRequest, LLMResponse

LLM_PROFILE_PREFIX = 'MEMORYENGINE_LLM_PROFILE'
LLM_ASSIGN_PREFIX = 'MEMORYENGINE_LLM_ASSIGN'

LLM_ACTIVITIES = ('extraction', 'contradiction', 'expansion')


class LLMProviderRegistry:
    """Named provider instances plus the activity-to-profile map."""

    def __init__(self, providers: dict[str, LLMProvider], profile_map: dict[str, str] | None = None):
        if 'default' not in providers:
            raise ValueError("LLM registry requires a 'default' profile")
        self._providers = providers
        self._profile_map: dict[str, str] = profile_map or {}

    def resolve_profile(self, profile: str = "default") -> str:
        name = self._profile_map.get(profile, profile)
        return name if name in self._providers else "default"

    def get_provider(self, profile: str = "default") -> LLMProvider:
        return self._providers[self.resolve_profile(profile)]

    async def complete(self, request: LLMRequest, profile: str = "default") -> LLMResponse:
        return await self.get_provider(profile).complete(request)

    @property
    def profile_names(self) -> list[str]:
        return list(self._providers)

    @property
    def profile_map(self) -> dict[str, str]:
        return dict(self._profile_map)

    def describe(self) -> dict[str, str]:
        """Activity -> ``profile (model)`` for every engine activity, for logs and the CLI."""
        out = {}
        for activity in LLM_ACTIVITIES:
            provider = self.get_provider(activity)
            out[activity] = f"{self.resolve_profile(activity)} ({provider.default_model})"
        return out


@dataclass
class LLMProfileConfig:
    """One ``MEMORYENGINE_LLM_PROFILE_<NAME>_*`` group."""
    name: str
    provider: Optional[str] = None
    model: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    json_mode: bool = True

    @classmethod
    def field_names(cls) -> list[str]:
        # longest first so "_max_tokens" is not read as "<name>_max" + "tokens"
        return sorted((f.name for f in fields(cls) if f.name != 'name'), key=len, reverse=True)

    @classmethod
    def parse_env(cls, values: dict[str, str]) -> dict[str, 'LLMProfileConfig']:
        """Group lowercased, prefix-stripped keys (``fast_model``) into profiles."""
        profiles: dict[str, LLMProfileConfig] = {}
        for key, raw in values.items():
            for fld in cls.field_names():
                suffix = f'_{fld}'
                if key.endswith(suffix) and len(key) > len(suffix):
                    name = key[:-len(suffix)]
                    profile = profiles.setdefault(name, cls(name=name))
                    setattr(profile, fld, cls._coerce(fld, raw))
                    break
        return profiles

    @staticmethod
    def _coerce(fld: str, raw):
        if fld == 'max_tokens':
            return int(raw)
        if fld == 'temperature':
            return float(raw)
        if fld == 'json_mode':
            return str(raw).lower() not in ('0', 'false', 'no', 'off')
        return raw


def _openai(cfg: LLMProfileConfig, model_kwarg: dict, v: Variables) -> LLMProvider:
    from .openai import OpenAILLMProvider
    return OpenAILLMProvider(api_key=cfg.api_key, base_url=cfg.base_url, json_mode=cfg.json_mode,
                             default_max_tokens=cfg.max_tokens, default_temperature=cfg.temperature,
                             v=v, **model_kwarg)


def _anthropic(cfg: LLMProfileConfig, model_kwarg: dict, v: Variables) -> LLMProvider:
    from .anthropic import AnthropicLLMProvider
    return AnthropicLLMProvider(api_key=cfg.api_key, default_max_tokens=cfg.max_tokens,
                                default_temperature=cfg.temperature, v=v, **model_kwarg)


def _google(cfg: LLMProfileConfig, model_kwarg: dict, v: Variables) -> LLMProvider:
    from .google import GoogleLLMProvider
    return GoogleLLMProvider(api_key=cfg.api_key, default_max_tokens=cfg.max_tokens,
                             default_temperature=cfg.temperature, v=v, **model_kwarg)


PROVIDER_FACTORIES: dict[str, Callable[[LLMProfileConfig, dict, Variables], LLMProvider]] = {
    'openai': _openai,
    'anthropic': _anthropic,
    'google': _google,
    'noop': lambda cfg, model_kwarg, v: NoOpLLMProvider(v=v),
}


def create_provider_from_config(name: str, provider_type: str, v: Variables = None, **settings) -> LLMProvider:
    """
    Build a provider for one profile.

    Raises:
        ValueError: unknown ``provider_type``
    """
    factory = PROVIDER_FACTORIES.get(provider_type)
    if factory is None:
        raise ValueError(f"Unknown provider type for LLM profile {name!r}: {provider_type!r}")
    cfg = LLMProfileConfig(name=name, provider=provider_type, **settings)
    # providers keep their own default model unless one is configured
    return factory(cfg, {"model": cfg.model} if cfg.model else {}, v)


class DefaultLLMProviderRegistryPlugin(LLMProviderRegistryPluginBase):
    """
    Builds the registry from environment variables::

        MEMORYENGINE_LLM_PROFILE_<NAME>_PROVIDER=openai|anthropic|google
        MEMORYENGINE_LLM_PROFILE_<NAME>_MODEL=...
        MEMORYENGINE_LLM_PROFILE_<NAME>_API_KEY=...
        MEMORYENGINE_LLM_PROFILE_<NAME>_BASE_URL=...      (openai-compatible only)
        MEMORYENGINE_LLM_PROFILE_<NAME>_JSON_MODE=false   (openai-compatible only)
        MEMORYENGINE_LLM_PROFILE_<NAME>_MAX_TOKENS=...
        MEMORYENGINE_LLM_PROFILE_<NAME>_TEMPERATURE=...
        MEMORYENGINE_LLM_ASSIGN_<ACTIVITY>=<name>
    """
    PROVIDER_NAME = 'default'

    def initialize(self, v: Variables, logger: Logger) -> LLMProviderRegistry:
        profiles = LLMProfileConfig.parse_env(v.import_from_env_by_prefix(LLM_PROFILE_PREFIX))

        providers: dict[str, LLMProvider] = {}
        for name, cfg in sorted(profiles.items()):
            if not cfg.provider:
                logger.warning("LLM profile '%s' has no PROVIDER, skipping", name)
                continue
            settings = {f: getattr(cfg, f) for f in LLMProfileConfig.field_names() if f != 'provider'}
            providers[name] = create_provider_from_config(name, cfg.provider, v=v, **settings)

        if 'default' not in providers:
            providers['default'] = NoOpLLMProvider(v=v)

        profile_map = {
            activity: str(profile).lower()
            for activity, profile in v.import_from_env_by_prefix(LLM_ASSIGN_PREFIX).items()
        }
        unknown = sorted(set(profile_map) - set(LLM_ACTIVITIES))
        if unknown:
            logger.warning("LLM assignments for unknown activities ignored at runtime: %s", ', '.join(unknown))

        registry = LLMProviderRegistry(providers=providers, profile_map=profile_map)
        for activity, target in registry.describe().items():
            logger.info("LLM %s -> %s", activity, target)
        return registry
