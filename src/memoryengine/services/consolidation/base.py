"""Consolidation Service - Base interface and plugin."""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...config import MEMORYENGINE_CONSOLIDATION_SERVICE, DEFAULT_MEMORYENGINE_CONSOLIDATION_SERVICE
from .._constants import EXT_CONSOLIDATION_SERVICE, EXT_STORAGE_BACKEND

MEMORYENGINE_CONSOLIDATION_CONTRADICTION_POLICY = 'MEMORYENGINE_CONSOLIDATION_CONTRADICTION_POLICY'
MEMORYENGINE_CONSOLIDATION_RETENTION_DAYS = 'MEMORYENGINE_CONSOLIDATION_RETENTION_DAYS'
DEFAULT_MEMORYENGINE_CONSOLIDATION_RETENTION_DAYS = 90
MEMORYENGINE_CONSOLIDATION_IMPORTANCE_FLOOR = 'MEMORYENGINE_CONSOLIDATION_IMPORTANCE_FLOOR'
DEFAULT_MEMORYENGINE_CONSOLIDATION_IMPORTANCE_FLOOR = 0.3
MEMORYENGINE_CONSOLIDATION_INTERVAL_SECONDS = 'MEMORYENGINE_CONSOLIDATION_INTERVAL_SECONDS'
DEFAULT_MEMORYENGINE_CONSOLIDATION_INTERVAL_SECONDS = 6 * 3600


class ContradictionPolicy(str, Enum):
    """How unresolved contradictions are settled."""
    NEWER_WINS = "newer_wins"  # newer entry supersedes the older one
    MANUAL = "manual"  # leave flagged for the user to arbitrate


DEFAULT_MEMORYENGINE_CONSOLIDATION_CONTRADICTION_POLICY = ContradictionPolicy.NEWER_WINS


@dataclass
class ConsolidationResult:
    """Result of a consolidation pass."""
    user_id: str = ''
    skipped: bool = False  # another pass for the same user was already running
    contradictions_resolved: int = 0
    contradictions_flagged: int = 0
    merged: int = 0
    expired: int = 0

    def add(self, other: 'ConsolidationResult') -> None:
        self.contradictions_resolved += other.contradictions_resolved
        self.contradictions_flagged += other.contradictions_flagged
        self.merged += other.merged
        self.expired += other.expired


class ConsolidationService(ABC):
    """Interface for memory consolidation: contradiction resolution, near-duplicate merge, expiry.

    Consolidation only deactivates entries; nothing is hard-deleted.
    """

    @abstractmethod
    async def consolidate_user(self, user_id: str) -> ConsolidationResult:
        """Consolidate one user's memories. Returns ``skipped=True`` if a pass is already running."""
        pass

    @abstractmethod
    async def consolidate_all(self) -> ConsolidationResult:
        """Consolidate every user; counters are summed."""
        pass


# noinspection PyAbstractClass
class ConsolidationServicePluginBase(Plugin):
    """Base plugin for consolidation service."""
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_CONSOLIDATION_SERVICE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_CONSOLIDATION_SERVICE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_CONSOLIDATION_SERVICE, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_CONSOLIDATION_SERVICE, DEFAULT_MEMORYENGINE_CONSOLIDATION_SERVICE)
        v.set_default_value(MEMORYENGINE_CONSOLIDATION_CONTRADICTION_POLICY,
                            DEFAULT_MEMORYENGINE_CONSOLIDATION_CONTRADICTION_POLICY.value)

    def get_dependencies(self, v: Variables):
        return (EXT_STORAGE_BACKEND,)
