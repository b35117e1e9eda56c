"""
Query expansion for contextual retrieval.

Turns the current message into a richer search query using a static coaching
vocabulary, the active coaching mode, recent conversation topics and, when
enabled, a cached LLM expansion.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Optional

from ...models.memory import ConversationMessage
from ...utils import extract_keywords, tokenize
from ..cache import CacheNamespace, cache_key

QUERY_EXPANSION_CACHE_TTL_SECONDS = 600

# token -> related terms; keys are tokenize() output
VOCABULARY: dict[str, tuple[str, ...]] = {
    "eat": ("food", "diet", "meal", "nutrition", "allergic", "allergy", "intolerance"),
    "food": ("eat", "diet", "meal", "nutrition", "allergic", "allergy"),
    "diet": ("food", "eat", "meal", "nutrition", "vegan", "vegetarian", "calorie"),
    "meal": ("food", "eat", "diet", "breakfast", "lunch", "dinner"),
    "nutrition": ("food", "diet", "meal", "protein", "calorie"),
    "allergy": ("allergic", "intolerance", "food", "eat", "avoid"),
    "allergic": ("allergy", "intolerance", "food", "eat", "avoid"),
    "drink": ("water", "coffee", "alcohol", "hydration"),
    "exercise": ("workout", "training", "gym", "fitness", "cardio", "strength"),
    "workout": ("exercise", "training", "gym", "fitness", "routine"),
    "training": ("workout", "exercise", "gym", "fitness"),
    "gym": ("workout", "exercise", "training", "weight"),
    "run": ("running", "cardio", "jog", "marathon"),
    "running": ("run", "cardio", "jog", "marathon"),
    "sleep": ("rest", "bedtime", "insomnia", "tired", "nap"),
    "tired": ("sleep", "rest", "energy", "fatigue"),
    "stress": ("anxiety", "relax", "mental", "meditation", "burnout"),
    "anxiety": ("stress", "mental", "relax", "calm"),
    "goal": ("target", "aim", "objective", "plan", "progress"),
    "progress": ("goal", "improvement", "result", "achievement"),
    "weight": ("lose", "gain", "body", "diet"),
    "pain": ("injury", "hurt", "sore", "knee", "back"),
    "injury": ("pain", "hurt", "recovery", "physio"),
    "health": ("medical", "condition", "doctor", "medication"),
    "prefer": ("like", "love", "favorite", "enjoy"),
    "like": ("prefer", "love", "enjoy", "favorite"),
    "schedule": ("time", "morning", "evening", "routine", "work"),
    "time": ("schedule", "morning", "evening", "routine"),
}

COACHING_MODE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "fitness": ("workout", "exercise", "gym", "training", "fitness"),
    "nutrition": ("food", "diet", "meal", "nutrition", "calories"),
    "wellness": ("sleep", "stress", "mental", "wellness", "health"),
    "general": ("goal", "progress", "motivation", "habit"),
}

INTENT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "question": ("?", "how", "what", "when", "where", "why"),
    "goal_setting": ("goal", "target", "aim", "objective"),
    "progress_check": ("progress", "achievement", "result", "improvement"),
    "advice_seeking": ("advice", "suggestion", "recommendation", "help"),
}

# more specific intents are checked first
_INTENT_ORDER = ("goal_setting", "progress_check", "advice_seeking", "question")

RECENT_TURNS = 3

EXPANSION_SYSTEM_PROMPT = """You are a semantic query expansion expert for a personal coaching assistant. \
Focus on health, wellness and fitness terminology. Respond with JSON only."""

EXPANSION_USER_PROMPT = """Expand the user's message into search terms for finding relevant stored facts \
about the user.

Message: {query}
Coaching mode: {mode}
Recent topics: {topics}

Return a JSON object with these keys, each a list of short lowercase strings:
{{"expandedTerms": [], "synonyms": [], "relatedConcepts": [], "semanticClusters": []}}"""

_WORD_RE = re.compile(r"[a-z]+")


@dataclass
class QueryExpansion:
    """Expanded form of the current message."""
    original_query: str
    terms: list[str] = field(default_factory=list)
    synonyms: list[str] = field(default_factory=list)
    related_concepts: list[str] = field(default_factory=list)
    semantic_clusters: list[str] = field(default_factory=list)
    intent: str = "general"
    coaching_mode: Optional[str] = None
    recent_topics: list[str] = field(default_factory=list)

    @property
    def all_terms(self) -> list[str]:
        """Every expansion term, de-duplicated in order."""
        seen: dict[str, None] = {}
        for term in self.terms + self.synonyms + self.related_concepts + self.semantic_clusters:
            term = term.lower().strip()
            if term:
                seen.setdefault(term, None)
        return list(seen)

    @property
    def query_tokens(self) -> set[str]:
        """Token set used for keyword overlap scoring."""
        tokens = set(tokenize(self.original_query))
        for term in self.all_terms:
            tokens.update(tokenize(term))
        return tokens

    @property
    def expanded_text(self) -> str:
        """Original message followed by the expansion terms it does not already contain."""
        lowered = self.original_query.lower()
        extra = [t for t in self.all_terms if t not in lowered]
        if not extra:
            return self.original_query
        return f"{self.original_query} {' '.join(extra)}"

    def to_dict(self) -> dict:
        return {
            "expandedTerms": self.terms,
            "synonyms": self.synonyms,
            "relatedConcepts": self.related_concepts,
            "semanticClusters": self.semantic_clusters,
        }


def detect_intent(message: str) -> str:
    """Coarse intent of a message: goal_setting, progress_check, advice_seeking, question or general."""
    lowered = message.lower()
    words = set(_WORD_RE.findall(lowered))
    for intent in _INTENT_ORDER:
        for keyword in INTENT_KEYWORDS[intent]:
            if keyword == "?":
                if "?" in lowered:
                    return intent
            elif keyword in words:
                return intent
    return "general"


def recent_topics(conversation_context: Optional[list[ConversationMessage]], max_topics: int = 5) -> list[str]:
    """Keywords of the last few conversation turns, most recent first."""
    if not conversation_context:
        return []
    topics: dict[str, None] = {}
    for turn in reversed(conversation_context[-RECENT_TURNS:]):
        for keyword in extract_keywords(turn.content, max_keywords=max_topics):
            topics.setdefault(keyword, None)
            if len(topics) >= max_topics:
                return list(topics)
    return list(topics)


def expand_with_vocabulary(
        message: str,
        conversation_context: Optional[list[ConversationMessage]] = None,
        coaching_mode: Optional[str] = None,
) -> QueryExpansion:
    """Static expansion: vocabulary neighbours, coaching-mode terms and recent topics."""
    tokens = extract_keywords(message, max_keywords=16)
    synonyms: list[str] = []
    for token in tokens:
        synonyms.extend(VOCABULARY.get(token, ()))

    mode_terms = list(COACHING_MODE_KEYWORDS.get(coaching_mode, ())) if coaching_mode else []
    topics = recent_topics(conversation_context)

    return QueryExpansion(
        original_query=message,
        terms=tokens,
        synonyms=synonyms,
        related_concepts=mode_terms,
        semantic_clusters=topics,
        intent=detect_intent(message),
        coaching_mode=coaching_mode,
        recent_topics=topics,
    )


def expansion_cache_key(message: str, coaching_mode: Optional[str]) -> str:
    return cache_key(CacheNamespace.QUERY_EXPANSION, coaching_mode, message.strip().lower())


def parse_expansion_response(text: str) -> dict[str, list[str]]:
    """Extract the expansion lists from a model response.

    Raises:
        ValueError: no JSON object in the response
    """
    text = text.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise ValueError("no JSON object in expansion response")
    data = json.loads(text[start:end + 1])

    result: dict[str, list[str]] = {}
    for key in ("expandedTerms", "synonyms", "relatedConcepts", "semanticClusters"):
        values = data.get(key) or []
        result[key] = [str(v).lower().strip() for v in values if isinstance(v, (str, int, float)) and str(v).strip()]
    return result


def merge_llm_expansion(expansion: QueryExpansion, data: dict[str, list[str]]) -> QueryExpansion:
    """Fold model-provided lists into a static expansion."""
    expansion.terms = expansion.terms + data.get("expandedTerms", [])
    expansion.synonyms = expansion.synonyms + data.get("synonyms", [])
    expansion.related_concepts = expansion.related_concepts + data.get("relatedConcepts", [])
    expansion.semantic_clusters = expansion.semantic_clusters + data.get("semanticClusters", [])
    return expansion
