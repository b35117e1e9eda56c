"""
Default Extraction Service implementation.

Three sources of facts, in order of precedence:
- explicit triggers ("remember that ...", "don't forget ...") always produce a fact
- the ``extraction`` LLM profile, when one is configured
- first-person heuristics when no extraction profile is configured

A configured model that errors or returns unparseable output yields no model
facts; heuristics do not stand in for it.
"""
import json
import re
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from scitrera_app_framework import get_logger
from scitrera_app_framework.api import Variables

from ...models.llm import LLMMessage, LLMRequest, LLMRole
from ...models.memory import AtomicFact, ConversationMessage, MemoryCategory
from ...utils import extract_keywords
from ..llm import EXT_LLM_SERVICE, LLMService
from .base import (
    ExtractionService,
    ExtractionServicePluginBase,
    MEMORYENGINE_EXTRACTION_MIN_CONFIDENCE, DEFAULT_MEMORYENGINE_EXTRACTION_MIN_CONFIDENCE,
    MEMORYENGINE_EXTRACTION_EXPLICIT_CONFIDENCE, DEFAULT_MEMORYENGINE_EXTRACTION_EXPLICIT_CONFIDENCE,
    MEMORYENGINE_EXTRACTION_TIMEOUT_SECONDS, DEFAULT_MEMORYENGINE_EXTRACTION_TIMEOUT_SECONDS,
)

# System prompt for LLM extraction
EXTRACTION_SYSTEM_PROMPT = """You are the memory component of a wellness coaching assistant. Your task is to read a user's message and extract distinct, self-contained facts about the user that are worth remembering for future coaching sessions.

## Categories

1. **preference** - Likes, dislikes, preferred workouts, foods or coaching styles
   Example: "Prefers morning workouts", "Dislikes running"

2. **personal_info** - Health conditions, allergies, dietary restrictions, goals, identity
   Example: "Allergic to peanuts", "Training for a half marathon"

3. **context** - Situational information, schedule, equipment, progress, life circumstances
   Example: "Works night shifts", "Has a home gym with dumbbells"

4. **instruction** - How the coach should behave
   Example: "Wants short answers", "Do not suggest dairy recipes"

## Rules

- One assertion per fact; split compound statements
- Write each fact in the user's first person ("I am allergic to peanuts")
- Only extract facts stated or clearly implied by the user, never by the assistant
- Corrections ("actually I can eat peanuts now") are facts too
- Skip greetings, questions and small talk
- confidence is how certain you are that the statement is a durable fact about the user (0.0-1.0)
- importance is how useful the fact is for future coaching (0.0-1.0)

## Output Format

Return a JSON object, and nothing else:
{
  "facts": [
    {
      "text": "the fact",
      "category": "preference|personal_info|context|instruction",
      "confidence": 0.0-1.0,
      "importance": 0.0-1.0,
      "keywords": ["keyword1", "keyword2"]
    }
  ]
}

Return {"facts": []} if nothing is worth remembering."""

EXTRACTION_USER_PROMPT = """Coaching mode: {coaching_mode}

Recent conversation:
{context}

Message to analyze:
{message}

Extract the facts as JSON:"""

# trigger phrase -> the text after it is the fact; longest phrases first
EXPLICIT_TRIGGERS = (
    re.compile(r"\bmake\s+sure\s+(?:you\s+)?remember\b(?:\s+that\b)?", re.IGNORECASE),
    re.compile(r"\bdon'?t\s+forget\b(?:\s+that\b)?", re.IGNORECASE),
    re.compile(r"\bkeep\s+in\s+mind\b(?:\s+that\b)?", re.IGNORECASE),
    re.compile(r"\bsave\s+this(?:\s+to\s+memory)?\b", re.IGNORECASE),
    re.compile(r"\bnote\s+that\b", re.IGNORECASE),
    re.compile(r"\bremember\s+(?:this|that)\b", re.IGNORECASE),
)

# remainder that points back at the preceding clause instead of stating a fact
_BACK_REFERENCE = re.compile(r"^(?:this|it|that)?[\s.!?]*$", re.IGNORECASE)
_TRAILING_FILLER = {"please", "and", "so", "also", "but", "oh", "just"}
_LEADING_MARKERS = re.compile(r"^(?:actually|also|oh|and|but|so|well|btw|by\s+the\s+way)\b[\s,]*", re.IGNORECASE)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")

HEURISTIC_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("preference", re.compile(
        r"^i\s+(?:really\s+|absolutely\s+)?(?:like|love|prefer|enjoy|hate|dislike|can'?t\s+stand)\b", re.IGNORECASE)),
    ("goal", re.compile(
        r"^(?:my\s+goal\s+is|my\s+goals\s+are|i\s+want\s+to|i'?m\s+trying\s+to|i\s+am\s+trying\s+to|"
        r"i\s+plan\s+to|i\s+hope\s+to|i'?m\s+training\s+for)\b", re.IGNORECASE)),
    ("constraint", re.compile(
        r"^(?:i'?m|i\s+am)\s+(?:allergic|intolerant|vegan|vegetarian|pescatarian|diabetic|pregnant|"
        r"lactose|gluten|pre-?diabetic|recovering)\b", re.IGNORECASE)),
    ("constraint", re.compile(
        r"^i\s+(?:can|can'?t|cannot|can\s+not|don'?t|do\s+not)\s+(?:eat|drink|have|do|tolerate)\b", re.IGNORECASE)),
    ("constraint", re.compile(
        r"^i\s+have\s+(?:an?\s+)?(?:\w+\s+){0,2}(?:injury|allergy|allergies|condition|diabetes|asthma|"
        r"pain|intolerance|arthritis|knee|back|shoulder)\b", re.IGNORECASE)),
    ("context", re.compile(
        r"^i\s+(?:work|usually|always|never|normally|go|train|run|sleep|live|walk|cycle|swim|"
        r"have\s+been|started|stopped)\b", re.IGNORECASE)),
    ("context", re.compile(r"^my\s+(?:name|job|schedule|doctor|trainer|wife|husband|partner|kids?|weight)\b",
                           re.IGNORECASE)),
    ("context", re.compile(r"^(?:i'?m|i\s+am)\s+(?:a|an)\s+\w+", re.IGNORECASE)),
)
HEURISTIC_CONFIDENCE = 0.7

INSTRUCTION_PREFIXES = re.compile(
    r"^(?:always|never|don'?t|do\s+not|please|call\s+me|remind\s+me|tell\s+me|talk\s+to\s+me|"
    r"use|keep\s+(?:it|answers|responses)|be\s+more|be\s+less|you\s+should|stop)\b", re.IGNORECASE)
PERSONAL_INFO_TERMS = (
    "allerg", "intoleran", "diabet", "asthma", "injur", "condition", "medication", "pregnan",
    "vegan", "vegetarian", "pescatarian", "blood pressure", "cholesterol", "years old", "my name",
    "my goal", "goal", "trying to", "want to", "training for", "can't eat", "cannot eat", "can eat",
    "don't eat", "health", "doctor", "surgery", "arthritis", "weigh",
)
PREFERENCE_TERMS = (
    "like", "love", "prefer", "enjoy", "hate", "dislike", "favorite", "favourite", "rather", "can't stand",
)

CATEGORY_IMPORTANCE = {
    MemoryCategory.PERSONAL_INFO: 0.8,
    MemoryCategory.INSTRUCTION: 0.7,
    MemoryCategory.PREFERENCE: 0.6,
    MemoryCategory.CONTEXT: 0.5,
}
EXPLICIT_IMPORTANCE = 0.9


class ExtractedFactSchema(BaseModel):
    """Strict shape of one item in the model's JSON array."""

    text: str = Field(..., min_length=1)
    category: MemoryCategory
    confidence: float = Field(..., ge=0.0, le=1.0)
    importance: Optional[float] = Field(None, ge=0.0, le=1.0)
    keywords: list[str] = Field(default_factory=list)

    model_config = {"extra": "ignore"}

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("fact text is blank")
        return v


def _normalize_quotes(text: str) -> str:
    return text.replace("’", "'").replace("‘", "'")


def _clean_fact_text(text: str) -> str:
    text = _LEADING_MARKERS.sub("", text.strip())
    text = text.strip().rstrip(".!?;:,").strip()
    if text and text[0].islower():
        text = text[0].upper() + text[1:]
    return text


def classify_category(text: str) -> MemoryCategory:
    """Keyword classification for facts that did not come from the model."""
    lowered = _normalize_quotes(text).lower().strip()
    if INSTRUCTION_PREFIXES.match(lowered):
        return MemoryCategory.INSTRUCTION
    if any(term in lowered for term in PERSONAL_INFO_TERMS):
        return MemoryCategory.PERSONAL_INFO
    if any(re.search(rf"\b{re.escape(term)}", lowered) for term in PREFERENCE_TERMS):
        return MemoryCategory.PREFERENCE
    return MemoryCategory.CONTEXT


class DefaultExtractionService(ExtractionService):
    """Extraction service with an explicit-trigger fast path and an offline heuristic mode."""

    def __init__(
            self,
            llm_service: Optional[LLMService] = None,
            v: Variables = None,
            min_confidence: float = DEFAULT_MEMORYENGINE_EXTRACTION_MIN_CONFIDENCE,
            explicit_confidence: float = DEFAULT_MEMORYENGINE_EXTRACTION_EXPLICIT_CONFIDENCE,
            timeout_seconds: float = DEFAULT_MEMORYENGINE_EXTRACTION_TIMEOUT_SECONDS,
    ):
        self.llm_service = llm_service
        self.min_confidence = min_confidence
        self.explicit_confidence = explicit_confidence
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(v, name=self.__class__.__name__)
        self.logger.info("Initialized DefaultExtractionService (llm=%s)", llm_service is not None)

    async def extract(
            self,
            message: str,
            conversation_context: Optional[list[ConversationMessage]] = None,
            coaching_mode: Optional[str] = None,
            message_id: Optional[str] = None,
            conversation_id: Optional[str] = None,
    ) -> list[AtomicFact]:
        if not message or not message.strip():
            return []
        context = conversation_context or []

        facts: list[AtomicFact] = []
        explicit = self.detect_explicit_trigger(message, context)
        if explicit:
            facts.append(explicit)

        llm_facts = await self._extract_with_llm(message, context, coaching_mode)
        if llm_facts is None:
            llm_facts = self.extract_heuristic(message)
        facts.extend(llm_facts)

        for fact in facts:
            fact.source_message_id = message_id
            fact.source_conversation_id = conversation_id

        result = self._collapse([f for f in facts if f.confidence >= self.min_confidence])
        self.logger.debug("Extracted %d fact(s) from message (explicit=%s)", len(result), explicit is not None)
        return result

    # ========== Explicit triggers ==========

    def detect_explicit_trigger(
            self,
            message: str,
            conversation_context: Optional[list[ConversationMessage]] = None,
    ) -> Optional[AtomicFact]:
        """Fact requested with "remember that ...", "don't forget ...", etc.

        The fact is the text after the trigger. When the trigger only points
        back ("..., please remember this") the enclosing sentence before it is
        used, then the last user turn of the conversation.
        """
        text = _normalize_quotes(message)
        for pattern in EXPLICIT_TRIGGERS:
            match = pattern.search(text)
            if not match:
                continue

            remainder = text[match.end():].lstrip(" :,-")
            remainder = _SENTENCE_SPLIT.split(remainder, maxsplit=1)[0] if remainder else ""
            if remainder and not _BACK_REFERENCE.match(remainder):
                fact_text = _clean_fact_text(remainder)
            else:
                fact_text = self._preceding_clause(text[:match.start()])
                if not fact_text:
                    fact_text = self._last_user_turn(conversation_context or [])

            if not fact_text:
                self.logger.debug("Explicit trigger without content: %r", match.group(0))
                return None

            category = classify_category(fact_text)
            return AtomicFact(
                text=fact_text,
                category=category,
                confidence=self.explicit_confidence,
                importance=max(EXPLICIT_IMPORTANCE, CATEGORY_IMPORTANCE[category]),
                keywords=extract_keywords(fact_text),
                explicit=True,
            )
        return None

    @staticmethod
    def _preceding_clause(prefix: str) -> str:
        # only the sentence containing the trigger
        sentence = re.split(r"[.!?]\s*", prefix.strip())
        fragment = sentence[-1] if sentence else ""
        words = fragment.replace(",", " , ").split()
        while words and (words[-1] in {",", ";", "-"} or words[-1].lower() in _TRAILING_FILLER):
            words.pop()
        return _clean_fact_text(" ".join(words).replace(" , ", ", "))

    @staticmethod
    def _last_user_turn(context: list[ConversationMessage]) -> str:
        for turn in reversed(context):
            if turn.role == "user" and turn.content.strip():
                return _clean_fact_text(_normalize_quotes(turn.content))
        return ""

    # ========== LLM extraction ==========

    async def _extract_with_llm(
            self,
            message: str,
            context: list[ConversationMessage],
            coaching_mode: Optional[str],
    ) -> Optional[list[AtomicFact]]:
        """Model-extracted facts; None when no extraction profile is configured, [] when the call or parse fails."""
        if self.llm_service is None or not self.llm_service.is_available("extraction"):
            return None

        history = "\n".join(f"{turn.role}: {turn.content}" for turn in context[-3:]) or "(none)"
        request = LLMRequest(
            messages=[
                LLMMessage(role=LLMRole.SYSTEM, content=EXTRACTION_SYSTEM_PROMPT),
                LLMMessage(role=LLMRole.USER, content=EXTRACTION_USER_PROMPT.format(
                    coaching_mode=coaching_mode or "general",
                    context=history,
                    message=message,
                )),
            ],
            max_tokens=1500,
            temperature=0.2,
            json_output=True,
        )

        try:
            response = await self.llm_service.complete(
                request, profile="extraction", timeout_seconds=self.timeout_seconds,
            )
        except Exception as e:
            self.logger.warning("LLM extraction failed, no facts extracted: %s", e)
            return []

        try:
            items = self.parse_llm_response(response.content)
        except (json.JSONDecodeError, ValueError) as e:
            self.logger.warning("Could not parse extraction response (%s): %r", e, response.content[:500])
            return []

        facts = []
        for item in items:
            try:
                parsed = ExtractedFactSchema.model_validate(item)
            except ValidationError as e:
                self.logger.warning("Discarding invalid extracted fact %r: %s", item, e.errors()[0].get("msg"))
                continue
            facts.append(AtomicFact(
                text=parsed.text,
                category=parsed.category,
                confidence=parsed.confidence,
                importance=(parsed.importance if parsed.importance is not None
                            else CATEGORY_IMPORTANCE[parsed.category]),
                keywords=parsed.keywords or extract_keywords(parsed.text),
            ))

        self.logger.info("LLM extracted %d fact(s) from %d item(s)", len(facts), len(items))
        return facts

    def parse_llm_response(self, raw: str) -> list:
        """Fact list from model output.

        Accepts ``{"facts": [...]}`` or a bare array, tolerating code fences,
        leading prose, trailing commas and truncation.

        Raises:
            json.JSONDecodeError: nothing recoverable
            ValueError: the payload holds no fact list
        """
        raw = raw.strip()

        # Strip markdown code block wrapper if present
        if raw.startswith("```"):
            lines = raw.split("\n")
            if lines[0].startswith("```"):
                lines = lines[1:]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            raw = "\n".join(lines)

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            array_start = raw.find('[')
            parsed = self._parse_partial_json_array(raw[array_start:] if array_start > 0 else raw)

        if isinstance(parsed, dict) and isinstance(parsed.get("facts"), list):
            parsed = parsed["facts"]
        if not isinstance(parsed, list):
            raise ValueError(f"expected a JSON array, got {type(parsed).__name__}")
        return parsed

    def _parse_partial_json_array(self, raw: str) -> list:
        # Remove trailing commas before } or ]
        cleaned = re.sub(r',\s*([}\]])', r'\1', raw)
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass

        # Truncate at the last complete object and close the array
        last_brace = cleaned.rfind('}')
        first_bracket = cleaned.find('[')
        if last_brace >= 0 and 0 <= first_bracket < last_brace:
            candidate = cleaned[first_bracket:last_brace + 1] + ']'
            try:
                result = json.loads(candidate)
                if isinstance(result, list) and result:
                    self.logger.info("Recovered %d fact(s) from truncated JSON response", len(result))
                    return result
            except json.JSONDecodeError:
                pass

        raise json.JSONDecodeError("Could not recover facts from malformed JSON", raw, 0)

    # ========== Heuristics ==========

    def extract_heuristic(self, message: str) -> list[AtomicFact]:
        """First-person statements matched sentence by sentence."""
        facts = []
        for sentence in _SENTENCE_SPLIT.split(_normalize_quotes(message)):
            sentence = sentence.strip()
            if not sentence or sentence.endswith("?") or any(p.search(sentence) for p in EXPLICIT_TRIGGERS):
                continue
            candidate = _clean_fact_text(sentence)
            if not candidate:
                continue
            for kind, pattern in HEURISTIC_PATTERNS:
                if pattern.match(candidate):
                    category = classify_category(candidate)
                    facts.append(AtomicFact(
                        text=candidate,
                        category=category,
                        confidence=HEURISTIC_CONFIDENCE,
                        importance=CATEGORY_IMPORTANCE[category],
                        keywords=extract_keywords(candidate),
                    ))
                    self.logger.debug("Heuristic %s fact: %s", kind, candidate)
                    break
        return facts

    @staticmethod
    def _collapse(facts: list[AtomicFact]) -> list[AtomicFact]:
        """Drop repeated texts, keeping the explicit (or first) occurrence."""
        by_text: dict[str, AtomicFact] = {}
        for fact in facts:
            key = fact.text.lower().rstrip(".!? ")
            existing = by_text.get(key)
            if existing is None or (fact.explicit and not existing.explicit):
                by_text[key] = fact
        return list(by_text.values())


class DefaultExtractionServicePlugin(ExtractionServicePluginBase):
    """Default extraction service plugin."""
    PROVIDER_NAME = 'default'

    def initialize(self, v: Variables, logger) -> ExtractionService:
        llm_service: LLMService = self.get_extension(EXT_LLM_SERVICE, v)
        return DefaultExtractionService(
            llm_service=llm_service,
            v=v,
            min_confidence=v.environ(MEMORYENGINE_EXTRACTION_MIN_CONFIDENCE,
                                     default=DEFAULT_MEMORYENGINE_EXTRACTION_MIN_CONFIDENCE, type_fn=float),
            explicit_confidence=v.environ(MEMORYENGINE_EXTRACTION_EXPLICIT_CONFIDENCE,
                                          default=DEFAULT_MEMORYENGINE_EXTRACTION_EXPLICIT_CONFIDENCE, type_fn=float),
            timeout_seconds=v.environ(MEMORYENGINE_EXTRACTION_TIMEOUT_SECONDS,
                                      default=DEFAULT_MEMORYENGINE_EXTRACTION_TIMEOUT_SECONDS, type_fn=float),
        )
