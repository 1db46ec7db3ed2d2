"""
Hybrid Retrieval Engine.

High-level interface for querying the rules knowledge base. Orchestrates:
1. Request validation (trimming, length bounds, limit/offset clamping)
2. Full-text search via the corpus store (BM25)
3. Semantic search via the embedding provider and the vector index
4. Reciprocal Rank Fusion of the two rankings (hybrid mode)
5. Enrichment with section, chapter and document context
6. Pagination and highlight extraction
7. Result formatting for LLM consumption
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from runebook.config.logging import get_logger
from runebook.kb.base import (
    CorpusStore,
    EmbeddingProvider,
    InvalidQueryError,
    SearchMode,
    SearchRequest,
    SearchResponse,
    SearchResult,
)
from runebook.kb.fusion import (
    DEFAULT_RRF_K,
    RankedHit,
    normalize_lexical,
    normalize_semantic,
    reciprocal_rank_fusion,
)
from runebook.kb.highlight import DEFAULT_MAX_HIGHLIGHTS, highlight_matches

logger = get_logger(__name__)

DEFAULT_CANDIDATE_POOL = 50
DEFAULT_TIMEOUT = 10.0


class HybridSearchEngine:
    """
    Query engine combining full-text and semantic retrieval.

    A failing or slow sub-search never fails the request: it is logged and
    treated as having found nothing, so hybrid search falls back to
    whichever side still answered.

    Example:
        >>> engine = HybridSearchEngine(corpus_store=store, embedding_provider=model)
        >>> response = await engine.search("how does grappling work?", limit=5)
        >>> context = engine.format_context(response.results)
    """

    def __init__(
        self,
        corpus_store: CorpusStore,
        embedding_provider: EmbeddingProvider | None = None,
        rrf_k: int = DEFAULT_RRF_K,
        candidate_pool: int = DEFAULT_CANDIDATE_POOL,
        lexical_timeout: float = DEFAULT_TIMEOUT,
        semantic_timeout: float = DEFAULT_TIMEOUT,
        max_highlights: int = DEFAULT_MAX_HIGHLIGHTS,
    ):
        """
        Initialize the search engine.

        Args:
            corpus_store: Initialized store with ingested documents
            embedding_provider: Provider for query embeddings. None (or an
                                unavailable provider) disables semantic search.
            rrf_k: Reciprocal Rank Fusion constant
            candidate_pool: Hits requested from each sub-search
            lexical_timeout: Seconds before full-text search is abandoned
            semantic_timeout: Seconds before semantic search is abandoned
            max_highlights: Highlight snippets per result
        """
        self.corpus_store = corpus_store
        self.embedding_provider = embedding_provider
        self.rrf_k = rrf_k
        self.candidate_pool = candidate_pool
        self.lexical_timeout = lexical_timeout
        self.semantic_timeout = semantic_timeout
        self.max_highlights = max_highlights

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        mode: SearchMode | str = SearchMode.HYBRID,
        limit: int | None = None,
        offset: int | None = 0,
        document_id: str | None = None,
    ) -> SearchResponse:
        """
        Search the rules corpus.

        Args:
            query: Natural language or keyword query (2-500 characters)
            mode: "fulltext", "semantic" or "hybrid"
            limit: Page size, clamped to 1-100 (default 20)
            offset: Results to skip, clamped to >= 0
            document_id: Restrict the search to one document

        Returns:
            SearchResponse whose ``total`` counts the whole merged ranking

        Raises:
            InvalidQueryError: If the query or mode is invalid. Raised before
                               any backend is contacted.
        """
        try:
            request = SearchRequest(
                query=query, mode=mode, limit=limit, offset=offset, document_id=document_id
            )
        except (ValidationError, TypeError, ValueError) as e:
            raise InvalidQueryError(f"Invalid search request: {e}") from e

        ranked = await self._rank(request)

        if not ranked:
            logger.debug(f"Query '{request.query}' ({request.mode.value}) found nothing")
            return SearchResponse(results=[], total=0, query=request.query, mode=request.mode)

        try:
            enriched = await self.corpus_store.fetch_entries_with_context(
                [hit.entry_id for hit in ranked]
            )
        except Exception as e:
            logger.error(f"Failed to load search results: {e}")
            return SearchResponse(results=[], total=0, query=request.query, mode=request.mode)

        hits_by_id = {hit.entry_id: hit for hit in ranked}
        page = enriched[request.offset:request.offset + request.limit]

        results = []
        for item in page:
            hit = hits_by_id[item.entry.id]
            results.append(
                SearchResult(
                    entry=item,
                    relevance=hit.relevance,
                    match_type=hit.match_type,
                    highlights=highlight_matches(
                        item.entry.content, request.query, max_highlights=self.max_highlights
                    ),
                )
            )

        logger.debug(
            f"Query '{request.query}' ({request.mode.value}) returned {len(results)} of "
            f"{len(enriched)} results (offset={request.offset}, limit={request.limit})"
        )
        return SearchResponse(
            results=results, total=len(enriched), query=request.query, mode=request.mode
        )

    def format_context(
        self,
        results: list[SearchResult],
        max_tokens: int | None = None,
    ) -> str:
        """
        Format search results as context for LLM prompts.

        Produces a numbered list of entries with their citations, suitable
        for injecting into an LLM system/user prompt.

        Args:
            results: Search results to format
            max_tokens: Approximate token limit. When set, results are
                       included until the budget is exhausted.

        Example output::

            [1] Grappling. When you want to grab a creature...
                Source: [Basic Rules, Ch. 9: Combat, §Grappling, p. 195] (relevance: 1.00, hybrid)
        """
        if not results:
            return "No relevant results found."

        blocks: list[str] = []
        token_estimate = 0

        for i, result in enumerate(results, start=1):
            entry = result.entry.entry
            text = f"{entry.title}. {entry.content}" if entry.title else entry.content
            block = (
                f"[{i}] {text}\n"
                f"    Source: {result.entry.citation} "
                f"(relevance: {result.relevance:.2f}, {result.match_type.value})"
            )

            # Rough token estimate: ~4 chars per token
            block_tokens = len(block) // 4
            if max_tokens is not None and token_estimate + block_tokens > max_tokens:
                break

            blocks.append(block)
            token_estimate += block_tokens

        return "\n\n".join(blocks)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _rank(self, request: SearchRequest) -> list[RankedHit]:
        if request.mode is SearchMode.FULLTEXT:
            return await self._lexical(request)

        if request.mode is SearchMode.SEMANTIC:
            return await self._semantic(request)

        # Cancelling the request cancels both in-flight sub-searches
        lexical, semantic = await asyncio.gather(
            self._lexical(request), self._semantic(request)
        )
        return reciprocal_rank_fusion(lexical, semantic, k=self.rrf_k, pool=self.candidate_pool)

    async def _lexical(self, request: SearchRequest) -> list[RankedHit]:
        async def run() -> list[RankedHit]:
            hits = await self.corpus_store.lexical_search(
                request.query, self.candidate_pool, request.document_id
            )
            return normalize_lexical(hits)

        return await self._guarded("Full-text", run, self.lexical_timeout)

    async def _semantic(self, request: SearchRequest) -> list[RankedHit]:
        provider = self.embedding_provider
        if provider is None:
            return []

        async def run() -> list[RankedHit]:
            # Availability errors degrade like any other provider failure
            if not provider.is_available():
                return []
            embedding = await provider.embed_query(request.query)
            hits = await self.corpus_store.vector_search(
                embedding, self.candidate_pool, request.document_id
            )
            return normalize_semantic(hits)

        return await self._guarded("Semantic", run, self.semantic_timeout)

    async def _guarded(
        self,
        name: str,
        operation: Callable[[], Awaitable[list[RankedHit]]],
        timeout: float,
    ) -> list[RankedHit]:
        """Run a sub-search, degrading timeouts and backend errors to no hits."""
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{name} search timed out after {timeout}s")
            return []
        except Exception as e:
            logger.warning(f"{name} search failed: {e}")
            return []
