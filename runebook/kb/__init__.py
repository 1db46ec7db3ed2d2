"""
Rules Knowledge Base.

Turns rulebook text into a Document -> Chapter -> Section -> Entry corpus
and answers rules questions with hybrid (full-text + semantic) retrieval.
"""

# Public API exports
from runebook.kb.base import (
    DuplicateCategoryError,
    DuplicateDocumentError,
    EntryWithContext,
    IngestionReport,
    InvalidQueryError,
    MatchType,
    SearchMode,
    SearchResponse,
    SearchResult,
)
from runebook.kb.components import KnowledgeBaseComponents
from runebook.kb.corpus_store import SQLiteCorpusStore
from runebook.kb.embeddings import EmbeddingModel, LiteLLMEmbeddingProvider
from runebook.kb.engine import HybridSearchEngine
from runebook.kb.pipeline import IngestionPipeline
from runebook.kb.vector_store import ChromaVectorIndex

__all__ = [
    "ChromaVectorIndex",
    "DuplicateCategoryError",
    "DuplicateDocumentError",
    "EmbeddingModel",
    "EntryWithContext",
    "HybridSearchEngine",
    "IngestionPipeline",
    "IngestionReport",
    "InvalidQueryError",
    "KnowledgeBaseComponents",
    "LiteLLMEmbeddingProvider",
    "MatchType",
    "SQLiteCorpusStore",
    "SearchMode",
    "SearchResponse",
    "SearchResult",
]
