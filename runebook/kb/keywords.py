"""
Keyword extraction and identifier slugs.

Keywords give every chapter and section a small ranked term list that can be
indexed without touching the full corpus.
"""

import re
from collections import Counter

MAX_KEYWORDS = 20

STOP_WORDS: frozenset[str] = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "this", "that", "these",
    "those", "it", "its", "you", "your", "they", "their", "we", "our", "he",
    "she", "him", "her", "his", "if", "when", "where", "which", "who", "what",
})

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_SLUG_DISALLOWED = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_HYPHENS = re.compile(r"-+")


def tokenize(text: str) -> list[str]:
    """Lower-case, strip punctuation and drop short tokens and stop words."""
    words = _NON_ALNUM.sub(" ", text.lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOP_WORDS]


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """
    Return up to ``limit`` keywords, most frequent first.

    Ties keep first-occurrence order (Counter preserves insertion order and
    most_common sorts stably).

    Example:
        >>> extract_keywords("Attack rolls. Make an attack roll when you attack.")
        ['attack', 'rolls', 'make', 'roll']
    """
    return [word for word, _ in Counter(tokenize(text)).most_common(limit)]


def slugify(text: str) -> str:
    """
    Build an identifier from free text.

    Example:
        >>> slugify("basic_rules-ch9-Combat")
        'basicrules-ch9-combat'
    """
    slug = _SLUG_DISALLOWED.sub("", text.lower())
    slug = _WHITESPACE.sub("-", slug.strip())
    slug = _HYPHENS.sub("-", slug)
    return slug.strip("-")
