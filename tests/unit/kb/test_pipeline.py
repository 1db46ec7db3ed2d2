"""
Unit tests for IngestionPipeline.

These tests pin down how the pipeline behaves:
- Single file and raw text ingestion into the corpus hierarchy
- Duplicate detection (skip) and forced re-ingestion
- Failure handling: the document ends up ``failed`` with its error
- Directory ingestion with error resilience
- Embedding backfill (batching, idempotence, optional provider)
- Progress callback support

The corpus store is a real SQLite database in ``tmp_path``; the vector
index and embedding provider are mocks.
"""

import asyncio
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np
import pytest
import pytest_asyncio

from runebook.config.settings import KnowledgeBaseSettings
from runebook.kb.base import DocumentStatus, FileType
from runebook.kb.corpus_store import SQLiteCorpusStore
from runebook.kb.pipeline import DEFAULT_EMBEDDING_BATCH_SIZE, IngestionPipeline, entry_embedding_text

FIXTURE = Path(__file__).parent.parent.parent / "fixtures" / "sample_documents" / "sample_rules.txt"


@pytest.fixture
def settings():
    return KnowledgeBaseSettings(ocr_enabled=False, embed_on_ingest=False)


@pytest.fixture
def mock_index():
    index = AsyncMock()
    index.get_stats = AsyncMock(return_value={"vector_count": 0, "collection_name": "rule_entries"})
    return index


@pytest_asyncio.fixture
async def store(tmp_path, mock_index):
    async with SQLiteCorpusStore(tmp_path / "kb.db", vector_index=mock_index) as store:
        yield store


@pytest.fixture
def provider():
    """Available provider returning 2-dim vectors."""
    provider = MagicMock()
    provider.is_available.return_value = True
    provider.embed = AsyncMock(side_effect=lambda texts: np.ones((len(texts), 2)))
    return provider


@pytest.fixture
def rules_file(tmp_path):
    path = tmp_path / "sample_rules.txt"
    path.write_text(FIXTURE.read_text(encoding="utf-8"), encoding="utf-8")
    return path


class TestPipelineInitialization:

    def test_registers_loaders(self, settings, store):
        pipeline = IngestionPipeline(settings, store)

        assert set(pipeline._loaders) == {".txt", ".pdf"}
        assert pipeline.embedding_provider is None
        assert pipeline.embedding_batch_size == DEFAULT_EMBEDDING_BATCH_SIZE == 32


class TestSingleFileIngestion:

    @pytest.mark.asyncio
    async def test_ingest_file_builds_hierarchy(self, settings, store, rules_file):
        pipeline = IngestionPipeline(settings, store)

        report = await pipeline.ingest_file(rules_file)

        assert report.status is DocumentStatus.COMPLETED
        assert report.skipped is False
        assert report.name == "sample_rules"
        assert (report.chapters, report.sections, report.entries) == (4, 9, 11)
        assert (report.spells, report.monsters) == (2, 1)
        assert report.embeddings == 0

        document = await store.get_document(report.document_id)
        assert document.status is DocumentStatus.COMPLETED
        assert document.source == "sample_rules"
        assert document.file_type is FileType.TXT

    @pytest.mark.asyncio
    async def test_ingested_content_is_searchable(self, settings, store, rules_file):
        pipeline = IngestionPipeline(settings, store)
        await pipeline.ingest_file(rules_file, name="Basic Rules", source="basic_rules")

        hits = await store.lexical_search("grapple", 10)
        items = await store.fetch_entries_with_context([h.entry_id for h in hits])

        assert items
        assert items[0].document.name == "Basic Rules"
        assert (await store.get_spell("Fireball")).level == 3
        assert (await store.get_monster("Goblin")).armor_class == 15

    @pytest.mark.asyncio
    async def test_same_content_is_skipped(self, settings, store, rules_file, tmp_path):
        pipeline = IngestionPipeline(settings, store)
        first = await pipeline.ingest_file(rules_file)

        copy = tmp_path / "renamed.txt"
        copy.write_bytes(rules_file.read_bytes())
        second = await pipeline.ingest_file(copy)

        assert second.skipped is True
        assert second.document_id == first.document_id
        assert second.status is DocumentStatus.COMPLETED
        assert len(await store.list_documents()) == 1

    @pytest.mark.asyncio
    async def test_force_replaces_document(self, settings, store, rules_file, mock_index):
        pipeline = IngestionPipeline(settings, store)
        first = await pipeline.ingest_file(rules_file)

        second = await pipeline.ingest_file(rules_file, force=True)

        assert second.skipped is False
        assert second.document_id != first.document_id
        assert [d.id for d in await store.list_documents()] == [second.document_id]
        mock_index.delete_document.assert_awaited_once_with(first.document_id)
        assert (await store.get_stats())["entries"] == 11

    @pytest.mark.asyncio
    async def test_missing_file(self, settings, store, tmp_path):
        pipeline = IngestionPipeline(settings, store)

        with pytest.raises(FileNotFoundError):
            await pipeline.ingest_file(tmp_path / "missing.txt")

    @pytest.mark.asyncio
    async def test_directory_is_not_a_file(self, settings, store, tmp_path):
        pipeline = IngestionPipeline(settings, store)

        with pytest.raises(ValueError, match="not a file"):
            await pipeline.ingest_file(tmp_path)

    @pytest.mark.asyncio
    async def test_unsupported_format_registers_nothing(self, settings, store, tmp_path):
        path = tmp_path / "notes.md"
        path.write_text("# Notes\n\nSome homebrew rules.")
        pipeline = IngestionPipeline(settings, store)

        with pytest.raises(ValueError, match="Unsupported file format"):
            await pipeline.ingest_file(path)

        assert await store.list_documents() == []

    @pytest.mark.asyncio
    async def test_empty_file_marks_document_failed(self, settings, store, tmp_path):
        path = tmp_path / "empty.txt"
        path.write_text("   \n")
        pipeline = IngestionPipeline(settings, store)

        with pytest.raises(RuntimeError, match="Ingestion failed for 'empty'"):
            await pipeline.ingest_file(path)

        (document,) = await store.list_documents()
        assert document.status is DocumentStatus.FAILED
        assert "empty" in document.error_log


class TestTextIngestion:

    @pytest.mark.asyncio
    async def test_unstructured_text_uses_fallback_chapter(self, settings, store):
        pipeline = IngestionPipeline(settings, store)
        text = "A house rule about critical hits.\n\nA house rule about resting."

        report = await pipeline.ingest_text(text, name="House Rules", source="house", page_count=2)

        assert (report.chapters, report.sections, report.entries) == (1, 1, 2)
        document = await store.get_document(report.document_id)
        assert document.page_count == 2
        (chapter,) = await store.list_chapters(report.document_id)
        assert chapter.title == "Content"

    @pytest.mark.asyncio
    async def test_blank_text_rejected(self, settings, store):
        pipeline = IngestionPipeline(settings, store)

        with pytest.raises(ValueError, match="empty"):
            await pipeline.ingest_text("  \n ", name="Nothing", source="nothing")

        assert await store.list_documents() == []

    @pytest.mark.asyncio
    async def test_storage_failure_marks_document_failed(self, settings, store):
        pipeline = IngestionPipeline(settings, store)
        text = FIXTURE.read_text(encoding="utf-8")

        with patch.object(store, "upsert_spells", AsyncMock(side_effect=RuntimeError("disk full"))):
            with pytest.raises(RuntimeError, match="disk full"):
                await pipeline.ingest_text(text, name="Basic Rules", source="basic_rules")

        (document,) = await store.list_documents()
        assert document.status is DocumentStatus.FAILED
        assert document.error_log == "disk full"
        # Partially written entries stay invisible to search
        assert await store.lexical_search("grapple", 10) == []

    @pytest.mark.asyncio
    async def test_concurrent_ingestion_of_same_text(self, settings, store):
        pipeline = IngestionPipeline(settings, store)
        text = FIXTURE.read_text(encoding="utf-8")

        reports = await asyncio.gather(
            pipeline.ingest_text(text, name="A", source="basic_rules"),
            pipeline.ingest_text(text, name="B", source="basic_rules"),
        )

        assert sorted(r.skipped for r in reports) == [False, True]
        assert len(await store.list_documents()) == 1

    @pytest.mark.asyncio
    async def test_per_hash_locks_are_released(self, settings, store):
        pipeline = IngestionPipeline(settings, store)
        text = FIXTURE.read_text(encoding="utf-8")

        await asyncio.gather(
            pipeline.ingest_text(text, name="A", source="basic_rules"),
            pipeline.ingest_text(text, name="B", source="basic_rules"),
            pipeline.ingest_text("Ch. 1: Resting\nShort Rest\nTake a breather.", name="C", source="srd"),
        )
        with patch.object(store, "upsert_spells", AsyncMock(side_effect=RuntimeError("disk full"))):
            with pytest.raises(RuntimeError):
                await pipeline.ingest_text(text + "\nMore.", name="D", source="basic_rules")

        assert pipeline._locks == {}
        assert pipeline._lock_users == {}

    @pytest.mark.asyncio
    async def test_progress_callback(self, settings, store):
        pipeline = IngestionPipeline(settings, store)
        messages = []

        await pipeline.ingest_text(
            FIXTURE.read_text(encoding="utf-8"), name="Basic Rules", source="basic_rules",
            progress_callback=messages.append,
        )

        assert "Parsed: 4 chapters" in messages
        assert "Stored: 11 entries" in messages
        assert messages[-1] == "Completed: Basic Rules"


class TestDirectoryIngestion:

    @pytest.mark.asyncio
    async def test_ingests_supported_files_and_survives_failures(self, settings, store, tmp_path, caplog):
        caplog.set_level(logging.ERROR)
        docs = tmp_path / "docs"
        (docs / "nested").mkdir(parents=True)
        (docs / "one.txt").write_text("First rulebook paragraph, long enough to keep.")
        (docs / "broken.txt").write_text("  ")
        (docs / "skip.md").write_text("Markdown is not a supported format here.")
        (docs / "nested" / "two.txt").write_text("Second rulebook paragraph, long enough too.")
        pipeline = IngestionPipeline(settings, store)

        flat = await pipeline.ingest_directory(docs)
        nested = await pipeline.ingest_directory(docs, recursive=True)

        assert sorted(Path(p).name for p in flat) == ["one.txt"]
        assert sorted(Path(p).name for p in nested) == ["one.txt", "two.txt"]
        assert nested[str(docs / "one.txt")].skipped is True
        assert "Failed to ingest" in caplog.text

    @pytest.mark.asyncio
    async def test_empty_directory(self, settings, store, tmp_path):
        pipeline = IngestionPipeline(settings, store)

        assert await pipeline.ingest_directory(tmp_path) == {}

    @pytest.mark.asyncio
    async def test_missing_directory(self, settings, store, tmp_path):
        pipeline = IngestionPipeline(settings, store)

        with pytest.raises(FileNotFoundError):
            await pipeline.ingest_directory(tmp_path / "missing")


class TestEmbeddingBackfill:

    def test_entry_embedding_text(self):
        assert entry_embedding_text("Grappling", "Grab a creature.") == "Grappling\n\nGrab a creature."
        assert entry_embedding_text(None, "Grab a creature.") == "Grab a creature."

    @pytest.mark.asyncio
    async def test_embed_on_ingest(self, store, provider, mock_index, rules_file):
        settings = KnowledgeBaseSettings(ocr_enabled=False, embed_on_ingest=True)
        pipeline = IngestionPipeline(settings, store, provider)

        report = await pipeline.ingest_file(rules_file)

        assert report.embeddings == 11
        mock_index.upsert.assert_awaited_once()
        entry_ids, vectors, document_ids = mock_index.upsert.await_args.args
        assert len(entry_ids) == 11
        assert vectors[0] == [1.0, 1.0]
        assert set(document_ids) == {report.document_id}

    @pytest.mark.asyncio
    async def test_embed_flag_overrides_settings(self, settings, store, provider, rules_file):
        pipeline = IngestionPipeline(settings, store, provider)

        report = await pipeline.ingest_file(rules_file, embed=True)

        assert report.embeddings == 11

    @pytest.mark.asyncio
    async def test_embedding_failure_keeps_document(self, settings, store, provider, rules_file, caplog):
        caplog.set_level(logging.WARNING)
        provider.embed.side_effect = RuntimeError("model exploded")
        pipeline = IngestionPipeline(settings, store, provider)

        report = await pipeline.ingest_file(rules_file, embed=True)

        assert report.status is DocumentStatus.COMPLETED
        assert report.embeddings == 0
        assert "Embedding backfill failed" in caplog.text

    @pytest.mark.asyncio
    async def test_backfill_batches_and_is_idempotent(self, settings, store, provider, rules_file):
        pipeline = IngestionPipeline(settings, store, provider, embedding_batch_size=4)
        await pipeline.ingest_file(rules_file)

        assert await pipeline.backfill_embeddings() == 11
        assert provider.embed.await_count == 3
        assert await pipeline.backfill_embeddings() == 0
        assert await pipeline.backfill_embeddings(force=True) == 11

    @pytest.mark.asyncio
    async def test_backfill_uses_title_and_content(self, settings, store, provider):
        pipeline = IngestionPipeline(settings, store, provider)
        await pipeline.ingest_text(
            "Ch. 1: Combat\nGrappling\nCover:\nHalf cover gives a +2 bonus to AC.",
            name="Mini", source="mini",
        )

        await pipeline.backfill_embeddings()

        (texts,) = provider.embed.await_args.args
        assert texts == ["Cover\n\nHalf cover gives a +2 bonus to AC."]

    @pytest.mark.asyncio
    async def test_backfill_without_provider(self, settings, store, caplog):
        caplog.set_level(logging.WARNING)
        pipeline = IngestionPipeline(settings, store)

        assert await pipeline.backfill_embeddings() == 0
        assert "No embedding provider available" in caplog.text

    @pytest.mark.asyncio
    async def test_backfill_with_unavailable_provider(self, settings, store, provider):
        provider.is_available.return_value = False
        pipeline = IngestionPipeline(settings, store, provider)

        assert await pipeline.backfill_embeddings() == 0
        provider.embed.assert_not_awaited()
