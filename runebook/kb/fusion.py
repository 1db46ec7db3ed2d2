"""
Ranking helpers for the hybrid retrieval engine.

Each sub-search produces its own scale of scores (BM25 for full-text,
cosine similarity for semantic). They are normalised into ``RankedHit``
lists here and, for hybrid mode, merged with Reciprocal Rank Fusion, which
only looks at positions and so never needs the two scales to agree.
"""

from dataclasses import dataclass

from runebook.kb.base import LexicalHit, MatchType, VectorHit

DEFAULT_RRF_K = 60


@dataclass(frozen=True)
class RankedHit:
    """An entry id with a relevance in [0, 1] and the sub-search(es) that found it."""

    entry_id: str
    relevance: float
    match_type: MatchType


def normalize_lexical(hits: list[LexicalHit]) -> list[RankedHit]:
    """
    Scale BM25 scores by the batch maximum.

    If the best score is not positive every relevance is 0; the order is
    kept either way.
    """
    if not hits:
        return []
    best = max(hit.score for hit in hits)
    return [
        RankedHit(
            entry_id=hit.entry_id,
            relevance=max(0.0, min(1.0, hit.score / best)) if best > 0 else 0.0,
            match_type=MatchType.FULLTEXT,
        )
        for hit in hits
    ]


def normalize_semantic(hits: list[VectorHit]) -> list[RankedHit]:
    return [
        RankedHit(
            entry_id=hit.entry_id,
            relevance=max(0.0, min(1.0, hit.similarity)),
            match_type=MatchType.SEMANTIC,
        )
        for hit in hits
    ]


def reciprocal_rank_fusion(
    lexical: list[RankedHit],
    semantic: list[RankedHit],
    k: int = DEFAULT_RRF_K,
    pool: int | None = None,
) -> list[RankedHit]:
    """
    Merge two ranked lists with Reciprocal Rank Fusion.

    Each appearance contributes ``1 / (k + rank + 1)`` (rank is 0-based);
    an entry found by both lists sums both contributions and is labelled
    ``hybrid``. Relevance is the fused score divided by the best fused
    score. Ties keep full-text order first, then semantic-only entries.

    When one list is empty the other is returned as is (cut to ``pool``),
    so its own relevances and labels survive.

    Example:
        >>> a = [RankedHit("e1", 1.0, MatchType.FULLTEXT), RankedHit("e2", 0.5, MatchType.FULLTEXT)]
        >>> b = [RankedHit("e2", 0.9, MatchType.SEMANTIC)]
        >>> [h.entry_id for h in reciprocal_rank_fusion(a, b)]
        ['e2', 'e1']
    """
    if not lexical or not semantic:
        survivors = lexical or semantic
        return survivors[:pool] if pool is not None else list(survivors)

    scores: dict[str, float] = {}
    labels: dict[str, MatchType] = {}

    for hits in (lexical, semantic):
        for rank, hit in enumerate(hits):
            scores[hit.entry_id] = scores.get(hit.entry_id, 0.0) + 1.0 / (k + rank + 1)
            previous = labels.get(hit.entry_id)
            if previous is None:
                labels[hit.entry_id] = hit.match_type
            elif previous != hit.match_type:
                labels[hit.entry_id] = MatchType.HYBRID

    # sorted() is stable, so insertion order (full-text first) breaks ties
    ordered = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    best = ordered[0][1]

    return [
        RankedHit(entry_id=entry_id, relevance=score / best, match_type=labels[entry_id])
        for entry_id, score in ordered
    ]
