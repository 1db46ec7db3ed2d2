"""
Knowledge base component factory.

Centralises the construction of knowledge base components from settings,
so the CLI, tests and any future entry point wire them the same way.
"""

from __future__ import annotations

from runebook.config.logging import get_logger
from runebook.config.settings import Settings
from runebook.kb.base import EmbeddingProvider
from runebook.kb.corpus_store import SQLiteCorpusStore
from runebook.kb.embeddings import EmbeddingModel, LiteLLMEmbeddingProvider
from runebook.kb.engine import HybridSearchEngine
from runebook.kb.pipeline import IngestionPipeline
from runebook.kb.vector_store import ChromaVectorIndex

logger = get_logger(__name__)


class KnowledgeBaseComponents:
    """
    Factory for building knowledge base components from settings.

    Example::

        factory = KnowledgeBaseComponents(settings)
        provider = factory.create_embedding_provider()
        async with factory.create_corpus_store() as store:
            if provider is not None:
                await provider.initialize()
            engine = factory.create_engine(store, provider)
            response = await engine.search("grapple")
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def create_embedding_provider(self) -> EmbeddingProvider | None:
        """
        Create the configured embedding provider.

        Returns:
            None when ``embedding.provider`` is ``"none"``
        """
        config = self.settings.embedding

        if config.provider == "none":
            logger.info("Embedding provider disabled; semantic search is off")
            return None

        if config.provider == "litellm":
            return LiteLLMEmbeddingProvider(
                model=config.model,
                api_key=config.api_key,
                dimension=config.dimension,
            )

        return EmbeddingModel(
            model_name=config.model,
            device=config.device,
            batch_size=config.batch_size,
        )

    def create_vector_index(self) -> ChromaVectorIndex:
        return ChromaVectorIndex(
            persist_directory=self.settings.kb.vector_db_path,
            collection_name=self.settings.kb.collection_name,
        )

    def create_corpus_store(self, vector_index: ChromaVectorIndex | None = None) -> SQLiteCorpusStore:
        """Create a SQLiteCorpusStore (with its own vector index unless one is given)."""
        return SQLiteCorpusStore(
            database_path=self.settings.kb.database_path,
            vector_index=vector_index or self.create_vector_index(),
            embedding_dimension=self.settings.embedding.dimension,
        )

    def create_pipeline(
        self,
        corpus_store: SQLiteCorpusStore,
        embedding_provider: EmbeddingProvider | None = None,
    ) -> IngestionPipeline:
        """Create an IngestionPipeline from settings + initialized dependencies."""
        return IngestionPipeline(
            settings=self.settings.kb,
            corpus_store=corpus_store,
            embedding_provider=embedding_provider,
            embedding_batch_size=self.settings.embedding.batch_size,
        )

    def create_engine(
        self,
        corpus_store: SQLiteCorpusStore,
        embedding_provider: EmbeddingProvider | None = None,
    ) -> HybridSearchEngine:
        """Create a HybridSearchEngine from settings + initialized dependencies."""
        search = self.settings.search
        return HybridSearchEngine(
            corpus_store=corpus_store,
            embedding_provider=embedding_provider,
            rrf_k=search.rrf_k,
            candidate_pool=search.candidate_pool,
            lexical_timeout=search.lexical_timeout,
            semantic_timeout=search.semantic_timeout,
            max_highlights=search.max_highlights,
        )
