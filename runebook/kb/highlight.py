"""Snippet extraction with query-term emphasis for search results."""

import re

DEFAULT_MAX_HIGHLIGHTS = 3
MAX_SNIPPET_LENGTH = 200
# Window kept around the first match when a sentence is too long
CONTEXT_BEFORE = 50
CONTEXT_AFTER = 150

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_QUERY_TOKEN = re.compile(r"[A-Za-z0-9]+")


def query_terms(query: str) -> list[str]:
    """Lower-cased alphanumeric query tokens longer than two characters, de-duplicated."""
    tokens = [t.lower() for t in _QUERY_TOKEN.findall(query) if len(t) > 2]
    return list(dict.fromkeys(tokens))


def _window(sentence: str, index: int, max_length: int) -> str:
    """Cut ``sentence`` around the match starting at ``index``."""
    if len(sentence) <= max_length:
        return sentence

    start = max(0, index - CONTEXT_BEFORE)
    end = min(len(sentence), index + CONTEXT_AFTER)
    prefix = "..." if start > 0 else ""
    suffix = "..." if end < len(sentence) else ""
    return f"{prefix}{sentence[start:end]}{suffix}"


def highlight_matches(
    content: str,
    query: str,
    max_highlights: int = DEFAULT_MAX_HIGHLIGHTS,
    max_length: int = MAX_SNIPPET_LENGTH,
) -> list[str]:
    """
    Pick sentences of ``content`` that mention a query term.

    Long sentences are cut to a window around the earliest match, and every
    term occurrence is wrapped in ``**...**``. Matching is a
    case-insensitive substring test, so "attack" also marks "attacks".

    Example:
        >>> highlight_matches("You roll initiative. Then you act.", "initiative order")
        ['You roll **initiative**']
    """
    terms = query_terms(query)
    if not terms or max_highlights <= 0:
        return []

    # Longest first so a term that contains another wins the overlap
    pattern = re.compile(
        "|".join(re.escape(t) for t in sorted(terms, key=len, reverse=True)),
        re.IGNORECASE,
    )

    highlights: list[str] = []
    for raw in _SENTENCE_SPLIT.split(content):
        sentence = raw.strip()
        match = pattern.search(sentence) if sentence else None
        if match is None:
            continue

        # Positions come from the original text; lower-casing can change its length
        snippet = _window(sentence, match.start(), max_length)
        highlights.append(pattern.sub(lambda m: f"**{m.group(0)}**", snippet))

        if len(highlights) >= max_highlights:
            break

    return highlights
