"""
Integration tests for the rules knowledge base (Contract Definition).

These tests run the real stack end to end: the text loader, parser, a
SQLite corpus store with its FTS5 index and a ChromaDB vector index on
disk. Only the embedding model is replaced, by a deterministic
bag-of-words provider, so the tests do not download model weights.

Contracts:
- A rulebook ingests into the Document -> Chapter -> Section -> Entry tree
- Hybrid search finds an entry through both sub-searches and labels it
- Deleting a document removes it from every search path
- Unfinished documents never show up in results
"""

import re
import zlib
from pathlib import Path

import numpy as np
import pytest

from runebook.config.settings import EmbeddingSettings, KnowledgeBaseSettings, Settings
from runebook.kb import KnowledgeBaseComponents, MatchType, SearchMode
from runebook.kb.base import EmbeddingProvider, FileType

_WORD = re.compile(r"[a-z]+")


class BagOfWordsProvider(EmbeddingProvider):
    """Hashes words into a fixed number of buckets; shared words mean similar vectors."""

    def __init__(self, dimension: int = 256):
        self._dimension = dimension

    def is_available(self) -> bool:
        return True

    @property
    def dimension(self) -> int | None:
        return self._dimension

    async def embed(self, texts: list[str]) -> np.ndarray:
        vectors = np.zeros((len(texts), self._dimension), dtype=np.float32)
        for row, text in enumerate(texts):
            for word in _WORD.findall(text.lower()):
                vectors[row, zlib.crc32(word.encode()) % self._dimension] += 1.0
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        return vectors / np.where(norms == 0, 1.0, norms)


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_text_file():
    return Path(__file__).parent.parent.parent / "fixtures" / "sample_documents" / "sample_rules.txt"


@pytest.fixture
def settings(tmp_path):
    """Settings wired to isolated temp directories."""
    return Settings(
        kb=KnowledgeBaseSettings(
            database_path=str(tmp_path / "runebook.db"),
            vector_db_path=str(tmp_path / "vector_db"),
            ocr_enabled=False,
        ),
        embedding=EmbeddingSettings(provider="none"),
    )


@pytest.fixture
def factory(settings):
    return KnowledgeBaseComponents(settings)


@pytest.fixture
def provider():
    return BagOfWordsProvider()


# ---------------------------------------------------------------------------
# Contract Tests
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ingest_rulebook_end_to_end(sample_text_file, factory, provider):
    """
    CONTRACT: A rulebook file becomes a completed, embedded corpus.

    Given: The sample rulebook text file
    When: We ingest it with embeddings enabled
    Then:
      - The hierarchy, spells and monsters are stored
      - Every entry has an embedding in the vector index
    """
    async with factory.create_corpus_store() as store:
        pipeline = factory.create_pipeline(store, provider)

        report = await pipeline.ingest_file(
            sample_text_file, name="Basic Rules", source="basic_rules", embed=True
        )

        assert (report.chapters, report.sections, report.entries) == (4, 9, 11)
        assert report.embeddings == 11

        stats = await store.get_stats()
        assert stats["entries"] == 11
        assert stats["embedded_entries"] == 11
        assert stats["vector_count"] == 11
        assert stats["spells"] == 2
        assert stats["monsters"] == 1

        chapters = await store.list_chapters(report.document_id)
        assert [c.title for c in chapters] == [
            "Step-by-Step Characters", "Combat", "Spells", "Monsters"
        ]
        assert chapters[1].part == "Playing the Game"


@pytest.mark.asyncio
async def test_hybrid_search_labels_entries_found_by_both(sample_text_file, factory, provider):
    """
    CONTRACT: Hybrid search fuses full-text and semantic rankings.

    Given: An ingested and embedded rulebook
    When: We search for words that appear in the grappling rules
    Then:
      - The grappling entry ranks first with relevance 1.0
      - It is labelled hybrid, since both sub-searches found it
      - Results carry citations and highlights
    """
    async with factory.create_corpus_store() as store:
        await factory.create_pipeline(store, provider).ingest_file(
            sample_text_file, name="Basic Rules", source="basic_rules", embed=True
        )
        engine = factory.create_engine(store, provider)

        response = await engine.search("grapple a creature", limit=5)

        top = response.results[0]
        assert top.entry.section.title == "Grappling"
        assert top.match_type is MatchType.HYBRID
        assert top.relevance == pytest.approx(1.0)
        assert top.entry.citation == "[Basic Rules, Ch. 9: Combat, §Grappling, p. 195]"
        assert any("**grapple**" in h for h in top.highlights)

        semantic = await engine.search("grapple a creature", mode=SearchMode.SEMANTIC, limit=1)
        assert semantic.results[0].entry.section.title == "Grappling"
        assert semantic.results[0].match_type is MatchType.SEMANTIC

        context = engine.format_context(response.results[:1])
        assert context.startswith("[1] When you want to grab a creature")


@pytest.mark.asyncio
async def test_delete_removes_document_from_all_searches(sample_text_file, factory, provider):
    """
    CONTRACT: Deleting a document removes its entries, index rows and vectors.
    """
    async with factory.create_corpus_store() as store:
        report = await factory.create_pipeline(store, provider).ingest_file(
            sample_text_file, embed=True
        )
        engine = factory.create_engine(store, provider)
        assert (await engine.search("initiative")).results

        assert await store.delete_document(report.document_id) is True

        assert (await engine.search("initiative")).results == []
        stats = await store.get_stats()
        assert stats["entries"] == 0
        assert stats["vector_count"] == 0


@pytest.mark.asyncio
async def test_unfinished_documents_are_invisible(factory, provider):
    """
    CONTRACT: Only completed documents are searchable.
    """
    async with factory.create_corpus_store() as store:
        pipeline = factory.create_pipeline(store, provider)
        await pipeline.ingest_text(
            "Ch. 1: Resting\nShort Rest\nA short rest is a period of downtime, at least 1 hour long.",
            name="Resting", source="srd", embed=True,
        )
        await store.create_document("Half Written", FileType.TXT, "partial-hash", "draft")

        engine = factory.create_engine(store, provider)
        response = await engine.search("short rest downtime")

        assert [r.entry.document.name for r in response.results] == ["Resting"]
        assert response.results[0].match_type is MatchType.HYBRID


@pytest.mark.asyncio
async def test_store_reopens_with_persisted_data(sample_text_file, factory, provider):
    """
    CONTRACT: The corpus survives closing and reopening the store.
    """
    async with factory.create_corpus_store() as store:
        await factory.create_pipeline(store, provider).ingest_file(sample_text_file, embed=True)

    async with factory.create_corpus_store() as store:
        assert store.embedding_dimension == 256
        hits = await store.lexical_search("fireball", 10)
        assert hits
        assert (await store.get_spell("Fireball")).higher_levels is not None
