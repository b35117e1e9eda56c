"""
Extraction Service - Base classes and interfaces.

Turns a raw user message into atomic facts worth remembering.
"""
from abc import ABC, abstractmethod
from typing import Optional

from scitrera_app_framework.api import Plugin, Variables, enabled_option_pattern

from ...config import MEMORYENGINE_EXTRACTION_SERVICE, DEFAULT_MEMORYENGINE_EXTRACTION_SERVICE
from ...models.memory import AtomicFact, ConversationMessage
from .._constants import EXT_EXTRACTION_SERVICE, EXT_LLM_SERVICE

MEMORYENGINE_EXTRACTION_MIN_CONFIDENCE = 'MEMORYENGINE_EXTRACTION_MIN_CONFIDENCE'
DEFAULT_MEMORYENGINE_EXTRACTION_MIN_CONFIDENCE = 0.5
MEMORYENGINE_EXTRACTION_EXPLICIT_CONFIDENCE = 'MEMORYENGINE_EXTRACTION_EXPLICIT_CONFIDENCE'
DEFAULT_MEMORYENGINE_EXTRACTION_EXPLICIT_CONFIDENCE = 0.95
MEMORYENGINE_EXTRACTION_TIMEOUT_SECONDS = 'MEMORYENGINE_EXTRACTION_TIMEOUT_SECONDS'
DEFAULT_MEMORYENGINE_EXTRACTION_TIMEOUT_SECONDS = 30.0


class ExtractionService(ABC):
    """Interface for extraction service."""

    @abstractmethod
    async def extract(
            self,
            message: str,
            conversation_context: Optional[list[ConversationMessage]] = None,
            coaching_mode: Optional[str] = None,
            message_id: Optional[str] = None,
            conversation_id: Optional[str] = None,
    ) -> list[AtomicFact]:
        """Extract atomic facts from a message.

        Explicit "remember this" requests always yield a fact. Provider and
        parse failures yield no model-derived facts and never raise.
        """
        pass


# noinspection PyAbstractClass
class ExtractionServicePluginBase(Plugin):
    """Base plugin for extraction service."""
    PROVIDER_NAME: str = None

    def name(self) -> str:
        return f"{EXT_EXTRACTION_SERVICE}|{self.PROVIDER_NAME}"

    def extension_point_name(self, v: Variables) -> str:
        return EXT_EXTRACTION_SERVICE

    def is_enabled(self, v: Variables) -> bool:
        return enabled_option_pattern(self, v, MEMORYENGINE_EXTRACTION_SERVICE, self_attr='PROVIDER_NAME')

    def on_registration(self, v: Variables) -> None:
        v.set_default_value(MEMORYENGINE_EXTRACTION_SERVICE, DEFAULT_MEMORYENGINE_EXTRACTION_SERVICE)
        v.set_default_value(MEMORYENGINE_EXTRACTION_MIN_CONFIDENCE, DEFAULT_MEMORYENGINE_EXTRACTION_MIN_CONFIDENCE)
        v.set_default_value(MEMORYENGINE_EXTRACTION_EXPLICIT_CONFIDENCE,
                            DEFAULT_MEMORYENGINE_EXTRACTION_EXPLICIT_CONFIDENCE)
        v.set_default_value(MEMORYENGINE_EXTRACTION_TIMEOUT_SECONDS, DEFAULT_MEMORYENGINE_EXTRACTION_TIMEOUT_SECONDS)

    def get_dependencies(self, v: Variables):
        return (EXT_LLM_SERVICE,)
