"""Cache Service - keyed, TTL-bounded memoization shared by the engine's services."""
import hashlib
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...config import MEMORYENGINE_CACHE_SERVICE, DEFAULT_MEMORYENGINE_CACHE_SERVICE
from .._constants import EXT_CACHE_SERVICE


class CacheNamespace(str, Enum):
    """Key prefixes; one per kind of cached value so each can be flushed on its own."""
    EMBEDDING = "emb"
    QUERY_EXPANSION = "qexp"


def cache_key(namespace: CacheNamespace, *parts: Optional[str]) -> str:
    """``<namespace>:<md5 of the parts>``; None parts hash as empty strings."""
    digest = hashlib.md5("|".join(p or "" for p in parts).encode("utf-8")).hexdigest()
    return f"{namespace.value}:{digest}"


class CacheService(ABC):
    """
    Key-value cache with per-key TTL.

    ``get`` returns None for missing and expired keys alike, so None is not a
    cacheable value.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        """Store ``value``; ``ttl_seconds=None`` never expires."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def clear_prefix(self, prefix: str) -> int:
        """Drop every key starting with ``prefix``; returns how many were dropped."""
        pass

    async def clear_namespace(self, namespace: CacheNamespace) -> int:
        return await self.clear_prefix(f"{namespace.value}:")

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        """Cached values for the keys that hit; misses are absent from the result."""
        found = {}
        for key in keys:
            value = await self.get(key)
            if value is not None:
                found[key] = value
        return found

    async def set_many(self, items: dict[str, Any], ttl_seconds: Optional[float] = None) -> None:
        for key, value in items.items():
            await self.set(key, value, ttl_seconds)

    async def get_or_set(self, key: str, factory: Callable[[], Awaitable[Any]],
                         ttl_seconds: Optional[float] = None) -> Any:
        value = await self.get(key)
        if value is None:
            value = await factory()
            await self.set(key, value, ttl_seconds)
        return value

    def stats(self) -> dict:
        return {}


# noinspection PyAbstractClass
class CacheServicePluginBase(Plugin):
    """Base plugin for cache service."""
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_CACHE_SERVICE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_CACHE_SERVICE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_CACHE_SERVICE, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_CACHE_SERVICE, DEFAULT_MEMORYENGINE_CACHE_SERVICE)
