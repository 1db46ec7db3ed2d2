"""
Document ingestion pipeline for the rules knowledge base.

This module orchestrates the end-to-end process of ingesting a rulebook:
1. Hash the source and skip it if the same content is already stored
2. Register the document (status ``processing``)
3. Load text (plain text or PDF)
4. Parse Part/Chapter/Section structure and split sections into entries
5. Store the hierarchy chapter by chapter, plus spell and monster stat blocks
6. Mark the document ``completed`` (or ``failed`` with the error text)
7. Optionally backfill entry embeddings for semantic search

Example:
    >>> async with SQLiteCorpusStore(...) as store, EmbeddingModel(...) as model:
    ...     pipeline = IngestionPipeline(settings.kb, store, model)
    ...     report = await pipeline.ingest_file(Path("basic_rules.txt"))
    ...     print(f"Stored {report.entries} entries")
"""

import asyncio
import hashlib
from collections.abc import Awaitable, Callable
from pathlib import Path

from runebook.config.logging import get_logger
from runebook.config.settings import KnowledgeBaseSettings
from runebook.kb.base import (
    DocumentLoader,
    DocumentStatus,
    EmbeddingProvider,
    FileType,
    IngestionReport,
    SourceDocument,
)
from runebook.kb.corpus_store import SQLiteCorpusStore
from runebook.kb.parser import build_corpus_tree, parse_rules_text
from runebook.kb.sources.pdf.loader import PDFLoader
from runebook.kb.sources.text.loader import TextLoader
from runebook.kb.statblocks import parse_monsters, parse_spells

logger = get_logger(__name__)

ProgressCallback = Callable[[str], None]
# Returns (text, page_count)
TextSource = Callable[[], Awaitable[tuple[str, int | None]]]

DEFAULT_EMBEDDING_BATCH_SIZE = 32


def entry_embedding_text(title: str | None, content: str) -> str:
    """Text that represents an entry in vector space."""
    return f"{title}\n\n{content}" if title else content


class IngestionPipeline:
    """
    Orchestrates rulebook ingestion from file to corpus store.

    Ingestion of one document is serialised on its content hash, so two
    concurrent calls for the same file cannot both store it; different
    documents can be ingested concurrently.

    Attributes:
        settings: Knowledge base configuration settings
        corpus_store: Initialized corpus store
        embedding_provider: Provider for entry embeddings (optional)
        embedding_batch_size: Entries embedded per provider call
    """

    def __init__(
        self,
        settings: KnowledgeBaseSettings,
        corpus_store: SQLiteCorpusStore,
        embedding_provider: EmbeddingProvider | None = None,
        embedding_batch_size: int = DEFAULT_EMBEDDING_BATCH_SIZE,
    ):
        self.settings = settings
        self.corpus_store = corpus_store
        self.embedding_provider = embedding_provider
        self.embedding_batch_size = embedding_batch_size

        self._loaders: dict[str, DocumentLoader] = {
            ".txt": TextLoader(),
            ".pdf": PDFLoader(ocr_enabled=settings.ocr_enabled),
        }
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

        logger.debug("Initialized IngestionPipeline")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ingest_file(
        self,
        file_path: Path,
        name: str | None = None,
        source: str | None = None,
        force: bool = False,
        embed: bool | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> IngestionReport:
        """
        Ingest a single rulebook file.

        Args:
            file_path: Path to a .txt or .pdf file
            name: Display name (default: file stem)
            source: Source tag used in parser identifiers (default: file stem)
            force: Replace an already-ingested copy instead of skipping it
            embed: Run the embedding backfill afterwards
                   (default: ``settings.embed_on_ingest``)
            progress_callback: Optional callback for progress updates

        Returns:
            IngestionReport (``skipped=True`` if the content was already stored)

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If path is not a file or format unsupported
            RuntimeError: If ingestion fails after the document was registered
        """
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        if not file_path.is_file():
            raise ValueError(f"Path is not a file: {file_path}")

        loader = self._loader_for(file_path)
        file_hash = await asyncio.to_thread(self._compute_file_hash, file_path)

        async def load() -> tuple[str, int | None]:
            if progress_callback:
                progress_callback(f"Loading: {file_path.name}")
            document = await loader.load(file_path)
            return document.text, document.metadata.page_count

        return await self._ingest(
            name=name or file_path.stem,
            source=source or file_path.stem,
            file_type=FileType(file_path.suffix.lower().lstrip(".")),
            file_hash=file_hash,
            load=load,
            force=force,
            embed=embed,
            progress_callback=progress_callback,
        )

    async def ingest_text(
        self,
        text: str,
        name: str,
        source: str,
        file_type: FileType = FileType.TXT,
        page_count: int | None = None,
        force: bool = False,
        embed: bool | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> IngestionReport:
        """
        Ingest already-extracted rulebook text.

        The content hash is taken over the UTF-8 bytes of ``text``.

        Raises:
            ValueError: If text is blank
            RuntimeError: If ingestion fails after the document was registered
        """
        if not text.strip():
            raise ValueError("Cannot ingest empty text")

        file_hash = hashlib.sha256(text.encode("utf-8")).hexdigest()

        async def load() -> tuple[str, int | None]:
            return text, page_count

        return await self._ingest(
            name=name,
            source=source,
            file_type=FileType(file_type),
            file_hash=file_hash,
            load=load,
            force=force,
            embed=embed,
            progress_callback=progress_callback,
        )

    async def ingest_directory(
        self,
        directory_path: Path,
        recursive: bool = False,
        force: bool = False,
        embed: bool | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> dict[str, IngestionReport]:
        """
        Ingest all supported documents in a directory.

        A failing file is logged and skipped; the rest are still ingested.

        Returns:
            Mapping of file path to report, for files that did not fail

        Raises:
            FileNotFoundError: If directory doesn't exist
            ValueError: If path is not a directory
        """
        if not directory_path.exists():
            raise FileNotFoundError(f"Directory not found: {directory_path}")

        if not directory_path.is_dir():
            raise ValueError(f"Path is not a directory: {directory_path}")

        logger.info(f"Starting directory ingestion: {directory_path} (recursive={recursive})")
        if progress_callback:
            progress_callback(f"Scanning: {directory_path}")

        files = self._discover_files(directory_path, recursive)
        logger.info(f"Found {len(files)} supported files")

        if not files:
            logger.warning(f"No supported files found in: {directory_path}")
            if progress_callback:
                progress_callback("No supported files found")
            return {}

        results: dict[str, IngestionReport] = {}
        for i, file_path in enumerate(files, 1):
            try:
                if progress_callback:
                    progress_callback(f"Processing {i}/{len(files)}: {file_path.name}")

                results[str(file_path)] = await self.ingest_file(
                    file_path,
                    force=force,
                    embed=embed,
                    progress_callback=progress_callback,
                )

            except Exception as e:
                logger.error(f"Failed to ingest {file_path}: {e}")
                if progress_callback:
                    progress_callback(f"Failed: {file_path.name}")

        logger.info(f"Directory ingestion complete: {len(results)}/{len(files)} files succeeded")
        if progress_callback:
            progress_callback(f"Complete: {len(results)}/{len(files)} files")

        return results

    async def backfill_embeddings(
        self,
        document_id: str | None = None,
        force: bool = False,
        batch_size: int | None = None,
    ) -> int:
        """
        Embed entries that have no embedding yet.

        Safe to re-run: entries already embedded are skipped unless
        ``force`` is set, in which case every entry is re-embedded.

        Returns:
            Number of entries embedded (0 if no provider is available)

        Raises:
            RuntimeError: If the provider fails
            ValueError: If the provider's dimension differs from the store's
        """
        provider = self.embedding_provider
        if provider is None or not provider.is_available():
            logger.warning("No embedding provider available; skipping embedding backfill")
            return 0

        size = batch_size or self.embedding_batch_size
        pending = await self.corpus_store.entries_for_embedding(
            document_id=document_id, missing_only=not force
        )
        if not pending:
            logger.debug("No entries need embeddings")
            return 0

        logger.info(f"Embedding {len(pending)} entries (batch_size={size})")

        total = 0
        for start in range(0, len(pending), size):
            batch = pending[start:start + size]
            texts = [entry_embedding_text(entry.title, entry.content) for entry, _ in batch]
            embeddings = await provider.embed(texts)
            total += await self.corpus_store.set_embeddings(
                [entry.id for entry, _ in batch],
                embeddings.tolist(),
                [doc_id for _, doc_id in batch],
            )
            logger.debug(f"Embedded {total}/{len(pending)} entries")

        logger.info(f"Embedding backfill complete: {total} entries")
        return total

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _release_lock(self, file_hash: str) -> None:
        """Forget a hash's lock once no ingest holds or awaits it."""
        self._lock_users[file_hash] -= 1
        if not self._lock_users[file_hash]:
            del self._lock_users[file_hash]
            del self._locks[file_hash]

    async def _ingest(
        self,
        *,
        name: str,
        source: str,
        file_type: FileType,
        file_hash: str,
        load: TextSource,
        force: bool,
        embed: bool | None,
        progress_callback: ProgressCallback | None,
    ) -> IngestionReport:
        lock = self._locks.setdefault(file_hash, asyncio.Lock())
        self._lock_users[file_hash] = self._lock_users.get(file_hash, 0) + 1
        try:
            async with lock:
                existing = await self.corpus_store.find_document_by_hash(file_hash)
                if existing is not None:
                    if existing.status is DocumentStatus.COMPLETED and not force:
                        logger.info(f"Skipping already-ingested document: {existing.name}")
                        if progress_callback:
                            progress_callback(f"Skipped (already ingested): {existing.name}")
                        return IngestionReport(
                            document_id=existing.id,
                            name=existing.name,
                            status=existing.status,
                            skipped=True,
                        )
                    # Failed or interrupted attempts are always retried
                    logger.info(
                        f"Replacing previously ingested document: {existing.name} "
                        f"({existing.status.value})"
                    )
                    await self.corpus_store.delete_document(existing.id)

                logger.info(f"Starting ingestion of: {name}")
                document = await self.corpus_store.create_document(name, file_type, file_hash, source)

                try:
                    report = await self._store(document, source, load, progress_callback)
                except Exception as e:
                    logger.error(f"Failed to ingest {name}: {e}")
                    await self.corpus_store.set_document_status(
                        document.id, DocumentStatus.FAILED, error_log=str(e)
                    )
                    raise RuntimeError(f"Ingestion failed for '{name}': {e}") from e
        finally:
            self._release_lock(file_hash)

        should_embed = self.settings.embed_on_ingest if embed is None else embed
        if should_embed and self.embedding_provider is not None and self.embedding_provider.is_available():
            try:
                report.embeddings = await self.backfill_embeddings(document_id=document.id)
                if progress_callback:
                    progress_callback(f"Embedded: {report.embeddings} entries")
            except Exception as e:
                logger.warning(f"Embedding backfill failed for {name}: {e}")

        logger.info(
            f"Successfully ingested: {name} ({report.chapters} chapters, "
            f"{report.sections} sections, {report.entries} entries)"
        )
        if progress_callback:
            progress_callback(f"Completed: {name}")

        return report

    async def _store(
        self,
        document: SourceDocument,
        source: str,
        load: TextSource,
        progress_callback: ProgressCallback | None,
    ) -> IngestionReport:
        text, page_count = await load()

        sections = parse_rules_text(text, source)
        trees = build_corpus_tree(
            document.id,
            sections,
            text=text,
            source=source,
            min_entry_chars=self.settings.min_entry_chars,
        )
        logger.info(f"Parsed {len(sections)} chapters into {len(trees)} stored chapters")
        if progress_callback:
            progress_callback(f"Parsed: {len(trees)} chapters")

        for tree in trees:
            await self.corpus_store.add_chapter_tree(tree)

        spells = await self.corpus_store.upsert_spells(parse_spells(text, source))
        monsters = await self.corpus_store.upsert_monsters(parse_monsters(text, source))
        if spells or monsters:
            logger.info(f"Stored {spells} spells and {monsters} monsters")

        await self.corpus_store.set_document_status(
            document.id, DocumentStatus.COMPLETED, page_count=page_count
        )
        if progress_callback:
            progress_callback(f"Stored: {sum(t.entry_count for t in trees)} entries")

        return IngestionReport(
            document_id=document.id,
            name=document.name,
            status=DocumentStatus.COMPLETED,
            chapters=len(trees),
            sections=sum(len(t.sections) for t in trees),
            entries=sum(t.entry_count for t in trees),
            spells=spells,
            monsters=monsters,
        )

    def _loader_for(self, file_path: Path) -> DocumentLoader:
        ext = file_path.suffix.lower()
        loader = self._loaders.get(ext)
        if loader is None:
            supported = ", ".join(self._loaders.keys())
            raise ValueError(f"Unsupported file format: {ext}. Supported formats: {supported}")
        return loader

    def _discover_files(self, directory_path: Path, recursive: bool) -> list[Path]:
        files = []
        for ext in self._loaders:
            pattern = f"*{ext}"
            files.extend(directory_path.rglob(pattern) if recursive else directory_path.glob(pattern))
        return sorted(files)

    def _compute_file_hash(self, file_path: Path) -> str:
        """SHA-256 hex digest of the file content."""
        sha256_hash = hashlib.sha256()

        with open(file_path, "rb") as f:
            for byte_block in iter(lambda: f.read(4096), b""):
                sha256_hash.update(byte_block)

        return sha256_hash.hexdigest()
