"""Heuristic memory classification.

Proposes a memory type, a default importance and a keyword set for a piece
of text using an ordered table of phrase patterns. Pure and deterministic:
the same text always yields the same classification.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

from engram.memory.models import MemoryType

# Tie-break order when rules of equal priority match, highest first.
CATEGORY_PRIORITY: tuple[MemoryType, ...] = (
    MemoryType.INSTRUCTION,
    MemoryType.PERSONAL,
    MemoryType.GOAL,
    MemoryType.PREFERENCE,
    MemoryType.PROFESSIONAL,
    MemoryType.RELATIONSHIP,
    MemoryType.EVENT,
    MemoryType.KNOWLEDGE,
)

DEFAULT_IMPORTANCE: dict[MemoryType, float] = {
    MemoryType.INSTRUCTION: 0.9,
    MemoryType.PERSONAL: 0.8,
    MemoryType.GOAL: 0.75,
    MemoryType.PREFERENCE: 0.7,
    MemoryType.PROFESSIONAL: 0.7,
    MemoryType.RELATIONSHIP: 0.65,
    MemoryType.EVENT: 0.65,
    MemoryType.KNOWLEDGE: 0.6,
}

# Importance for text that matches no pattern at all.
UNMATCHED_IMPORTANCE = 0.4


@dataclass(frozen=True)
class PatternRule:
    """One row of the classification table."""

    type: MemoryType
    phrases: tuple[str, ...]
    importance: float
    priority: int


PATTERN_TABLE: tuple[PatternRule, ...] = (
    PatternRule(
        type=MemoryType.INSTRUCTION,
        phrases=("remember", "always", "never", "remind me", "i need you to", "please"),
        importance=DEFAULT_IMPORTANCE[MemoryType.INSTRUCTION],
        priority=8,
    ),
    PatternRule(
        type=MemoryType.PERSONAL,
        phrases=("my name is", "i'm", "i am", "i live", "my birthday", "my age", "i study"),
        importance=DEFAULT_IMPORTANCE[MemoryType.PERSONAL],
        priority=7,
    ),
    PatternRule(
        type=MemoryType.GOAL,
        phrases=("goal", "want to", "planning to", "working on", "trying to", "hoping to", "deadline"),
        importance=DEFAULT_IMPORTANCE[MemoryType.GOAL],
        priority=6,
    ),
    PatternRule(
        type=MemoryType.PREFERENCE,
        phrases=("i like", "i love", "i prefer", "i hate", "i don't like", "my favorite", "i enjoy"),
        importance=DEFAULT_IMPORTANCE[MemoryType.PREFERENCE],
        priority=5,
    ),
    PatternRule(
        type=MemoryType.PROFESSIONAL,
        phrases=("i work", "my job", "my boss", "my team", "career", "colleague"),
        importance=DEFAULT_IMPORTANCE[MemoryType.PROFESSIONAL],
        priority=4,
    ),
    PatternRule(
        type=MemoryType.RELATIONSHIP,
        phrases=(
            "my wife", "my husband", "my partner", "my friend", "my mother",
            "my father", "my sister", "my brother", "my son", "my daughter",
        ),
        importance=DEFAULT_IMPORTANCE[MemoryType.RELATIONSHIP],
        priority=3,
    ),
    PatternRule(
        type=MemoryType.EVENT,
        phrases=("meeting", "appointment", "birthday party", "tomorrow", "next week", "scheduled"),
        importance=DEFAULT_IMPORTANCE[MemoryType.EVENT],
        priority=2,
    ),
    PatternRule(
        type=MemoryType.KNOWLEDGE,
        phrases=("fact", "important", "should know", "know that"),
        importance=DEFAULT_IMPORTANCE[MemoryType.KNOWLEDGE],
        priority=1,
    ),
)

STOPWORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "can", "had", "her",
    "was", "one", "our", "out", "day", "get", "has", "him", "his", "how", "its",
    "may", "new", "now", "old", "see", "two", "who", "boy", "did", "man", "men",
    "she", "use", "way", "what", "will", "with", "this", "that", "they", "have",
    "from", "been", "said", "each", "make", "more", "time", "very", "when",
    "come", "here", "just", "like", "long", "many", "over", "such", "take",
    "than", "them", "well", "were", "also", "back", "call", "came", "could",
    "find", "first", "good", "great", "help", "know", "last", "left", "life",
    "look", "made", "most", "move", "much", "name", "need", "next", "only",
    "open", "part", "play", "same", "seem", "show", "small", "some", "tell",
    "turn", "want", "ways", "went", "work", "year", "your", "i'm", "don't",
    "does", "about", "which", "would", "should", "there", "their",
})

_WORD_RE = re.compile(r"[a-z0-9][a-z0-9'@./_-]*[a-z0-9]|[a-z0-9]")
_ENTITY_STRIP = ".,;:!?\"'()[]{}"
_SENTENCE_RE = re.compile(r"[.!?]")


@dataclass(frozen=True)
class Classification:
    """Classifier output."""

    type: MemoryType
    importance: float
    keywords: list[str]
    matched_pattern: str | None = None


@lru_cache(maxsize=None)
def _phrase_pattern(phrase: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![a-z0-9']){re.escape(phrase)}(?![a-z0-9'])")


def _rule_rank(rule: PatternRule) -> tuple[int, int]:
    return rule.priority, -CATEGORY_PRIORITY.index(rule.type)


def match_rules(text: str, table: tuple[PatternRule, ...] = PATTERN_TABLE) -> list[tuple[PatternRule, str]]:
    """Return every (rule, phrase) pair that matches *text*, in table order."""
    lowered = text.lower()
    matches: list[tuple[PatternRule, str]] = []
    for rule in table:
        for phrase in rule.phrases:
            if _phrase_pattern(phrase).search(lowered):
                matches.append((rule, phrase))
                break
    return matches


def classify(
    text: str,
    importance: float | None = None,
    table: tuple[PatternRule, ...] = PATTERN_TABLE,
) -> Classification:
    """
    Propose a type, importance and keywords for *text*.

    When several rules match, the one with the highest priority wins; equal
    priorities fall back to CATEGORY_PRIORITY. Text matching nothing is
    classified as knowledge with a low importance.

    Args:
        text: Memory text.
        importance: Caller-supplied importance overriding the type default.
        table: Pattern table to evaluate (defaults to PATTERN_TABLE).

    Returns:
        Classification for the text.
    """
    keywords = extract_keywords(text)
    matches = match_rules(text or "", table)

    if matches:
        rule, phrase = max(matches, key=lambda m: _rule_rank(m[0]))
        memory_type = rule.type
        default_importance = rule.importance
    else:
        phrase = None
        memory_type = MemoryType.KNOWLEDGE
        default_importance = UNMATCHED_IMPORTANCE

    if importance is not None:
        default_importance = min(1.0, max(0.0, float(importance)))

    return Classification(
        type=memory_type,
        importance=default_importance,
        keywords=keywords,
        matched_pattern=phrase,
    )


def tokenize(text: str) -> list[str]:
    """Lowercased word tokens of *text*."""
    return _WORD_RE.findall(text.lower())


def extract_keywords(text: str, limit: int = 15) -> list[str]:
    """
    Extract normalized keywords from *text*.

    Words longer than two characters that are not stopwords, plus entities
    (capitalized words, e-mail addresses, paths/dates and numbers) regardless
    of length. Order of first appearance, no duplicates.
    """
    if not text:
        return []

    keywords: list[str] = []
    seen: set[str] = set()

    def add(token: str) -> None:
        if token and token not in seen:
            seen.add(token)
            keywords.append(token)

    for raw in text.split():
        stripped = raw.strip(_ENTITY_STRIP)
        if not stripped:
            continue
        lowered = stripped.lower()
        is_entity = (
            stripped[0].isupper() and lowered not in STOPWORDS and len(lowered) > 2
        ) or "@" in stripped or "/" in stripped or stripped.isdigit()
        if is_entity:
            add(lowered)
            continue
        for token in tokenize(lowered):
            if len(token) > 2 and token not in STOPWORDS:
                add(token)

    return keywords[:limit]


def generate_summary(content: str) -> str:
    """Short description of *content*: itself when short, else its first sentence."""
    content = content.strip()
    if len(content) <= 100:
        return content

    first_sentence = _SENTENCE_RE.split(content, maxsplit=1)[0].strip()
    if len(first_sentence) > 80:
        return first_sentence[:77] + "..."
    return first_sentence
