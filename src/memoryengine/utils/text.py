"""Token extraction and lexical comparison helpers."""
import re
from typing import Iterable

STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "can", "shall", "it", "its",
    "this", "that", "these", "those", "he", "she", "they", "them", "his",
    "her", "their", "my", "your", "our", "i", "me", "we", "you", "us",
    "not", "no", "very", "just", "also", "about", "up", "so", "if",
    "than", "too", "when", "what", "which", "who", "how", "all", "each",
    "any", "some", "such", "more", "other", "into", "over", "after",
    "before", "out", "again", "really", "much", "many", "now", "actually",
    "please", "remember", "don", "isn", "aren", "won", "didn", "doesn",
    "there", "here", "then", "get", "got", "am", "im", "ive", "let",
})

_WORD_RE = re.compile(r"[a-z0-9]+")


def _stem(word: str) -> str:
    # plural folding only; enough for "peanuts" ~ "peanut"
    if len(word) > 4 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def tokenize(text: str, min_length: int = 3) -> list[str]:
    """Lowercase content tokens with stopwords and short fragments removed.

    Contractions split on the apostrophe, so "can't" yields nothing and
    "I'm allergic" yields ``["allergic"]``. Duplicates are kept.
    """
    words = _WORD_RE.findall(text.lower())
    return [_stem(w) for w in words if len(w) >= min_length and w not in STOPWORDS]


def extract_keywords(text: str, max_keywords: int = 8) -> list[str]:
    """Distinct content tokens in first-seen order."""
    seen: dict[str, None] = {}
    for token in tokenize(text):
        seen.setdefault(token, None)
        if len(seen) >= max_keywords:
            break
    return list(seen)


def significant_words(text: str) -> set[str]:
    """Words longer than three characters (lowercased, unfiltered)."""
    return {w for w in _WORD_RE.findall(text.lower()) if len(w) > 3}


def word_overlap_ratio(a: str, b: str) -> float:
    """Shared significant words divided by the larger word set."""
    wa, wb = significant_words(a), significant_words(b)
    if not wa or not wb:
        return 0.0
    return len(wa & wb) / max(len(wa), len(wb))


def keyword_overlap(query_terms: Iterable[str], keywords: Iterable[str]) -> float:
    """Fraction of ``keywords`` present in ``query_terms``."""
    kw = set(keywords)
    if not kw:
        return 0.0
    return len(kw & set(query_terms)) / len(kw)
