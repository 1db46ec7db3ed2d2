"""
SQLite-backed corpus store.

Persists the Document -> Chapter -> Section -> Entry hierarchy, categories
and stat blocks in SQLite, keeps an FTS5 inverted index over entry text for
BM25-ranked lexical search, and delegates nearest-neighbour search over
entry embeddings to a ``ChromaVectorIndex``.

Every operation opens its own connection and runs in a worker thread, so
the two sub-searches of a hybrid query really run side by side and never
block the event loop.

Only documents whose status is ``completed`` are visible to
``lexical_search``, ``vector_search`` and ``fetch_entries_with_context``.

Example:
    >>> index = ChromaVectorIndex("data/vector_db")
    >>> async with SQLiteCorpusStore("data/runebook.db", index) as store:
    ...     doc = await store.create_document("Basic Rules", FileType.TXT, digest, "basic_rules")
    ...     hits = await store.lexical_search("grapple", limit=50)
"""

import asyncio
import json
import re
import sqlite3
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from runebook.config.logging import get_logger
from runebook.kb.base import (
    Category,
    Chapter,
    ChapterTree,
    CorpusStore,
    DocumentStatus,
    DuplicateCategoryError,
    DuplicateDocumentError,
    Entry,
    EntryWithContext,
    FileType,
    LexicalHit,
    MonsterStats,
    Section,
    SourceDocument,
    SpellDefinition,
    VectorHit,
)
from runebook.kb.keywords import STOP_WORDS, slugify
from runebook.kb.vector_store import ChromaVectorIndex

logger = get_logger(__name__)

T = TypeVar("T")

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# bm25() takes one weight per FTS column: entry_id, document_id, title, heading, content
BM25_WEIGHTS = (0.0, 0.0, 4.0, 2.0, 1.0)

_DOCUMENT_COLUMNS = (
    "id", "name", "file_type", "file_hash", "source", "page_count",
    "status", "error_log", "created_at", "updated_at",
)
_CHAPTER_COLUMNS = (
    "id", "document_id", "title", "slug", "chapter_number", "part",
    "order_index", "page_start", "page_end", "keywords",
)
_SECTION_COLUMNS = (
    "id", "chapter_id", "title", "slug", "order_index", "page_start", "page_end", "keywords",
)
_ENTRY_COLUMNS = ("id", "section_id", "title", "content", "order_index", "page_reference")

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _select(alias: str, columns: tuple[str, ...]) -> str:
    return ", ".join(f"{alias}.{column} AS {alias}_{column}" for column in columns)


def _columns(row: sqlite3.Row, alias: str) -> dict[str, Any]:
    prefix = f"{alias}_"
    return {key[len(prefix):]: row[key] for key in row.keys() if key.startswith(prefix)}


def _with_keywords(data: dict[str, Any]) -> dict[str, Any]:
    data["keywords"] = json.loads(data.get("keywords") or "[]")
    return data


def _document_from(data: dict[str, Any]) -> SourceDocument:
    return SourceDocument(**data)


def _chapter_from(data: dict[str, Any]) -> Chapter:
    return Chapter(**_with_keywords(data))


def _section_from(data: dict[str, Any]) -> Section:
    return Section(**_with_keywords(data))


def _entry_from(data: dict[str, Any]) -> Entry:
    return Entry(**data)


def build_match_query(query: str) -> str | None:
    """
    Compile free text into an FTS5 MATCH expression.

    Tokens are quoted so FTS5 operators in user input are inert, stop words
    are dropped unless nothing else is left, and the terms are OR-ed so
    BM25 can rank partial matches.

    Example:
        >>> build_match_query("How does the Grapple work?")
        '"how" OR "grapple" OR "work"'
    """
    tokens = _TOKEN_PATTERN.findall(query.lower())
    meaningful = [t for t in tokens if t not in STOP_WORDS]
    terms = list(dict.fromkeys(meaningful or tokens))
    if not terms:
        return None
    return " OR ".join(f'"{term}"' for term in terms)


class SQLiteCorpusStore(CorpusStore):
    """
    Relational corpus store with lexical and vector search primitives.

    Attributes:
        database_path: Path to the SQLite database file
        vector_index: ChromaDB index for entry embeddings (optional; without
                      it vector search returns nothing)
        embedding_dimension: Dimension every stored embedding must have.
                             Fixed by the first stored embedding if not given.
    """

    def __init__(
        self,
        database_path: Path | str,
        vector_index: ChromaVectorIndex | None = None,
        embedding_dimension: int | None = None,
    ):
        self.database_path = Path(database_path)
        self.vector_index = vector_index
        self.embedding_dimension = embedding_dimension
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """One connection per operation; commits on success, rolls back on error."""
        conn = sqlite3.connect(self.database_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        if not self._initialized:
            raise RuntimeError(
                "Corpus store not initialized. "
                "Use 'async with SQLiteCorpusStore(...) as store:' or call await store.initialize()"
            )
        return await asyncio.to_thread(fn, *args)

    def _create_schema(self) -> int | None:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        schema_sql = SCHEMA_PATH.read_text(encoding="utf-8")
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(schema_sql)
            row = conn.execute(
                "SELECT value FROM kb_meta WHERE key = 'embedding_dimension'"
            ).fetchone()
        return int(row["value"]) if row else None

    async def initialize(self) -> None:
        """
        Create the schema (idempotent) and open the vector index.

        Raises:
            RuntimeError: If the database cannot be created
            ValueError: If the stored embedding dimension differs from the
                        configured one
        """
        logger.info(f"Initializing corpus store at {self.database_path}")

        try:
            stored_dimension = await asyncio.to_thread(self._create_schema)
        except Exception as e:
            logger.error(f"Failed to initialize corpus store: {e}")
            raise RuntimeError(f"Could not initialize corpus store: {e}") from e

        if stored_dimension is not None:
            if self.embedding_dimension is not None and self.embedding_dimension != stored_dimension:
                raise ValueError(
                    f"Embedding dimension mismatch: store holds {stored_dimension}-dim vectors, "
                    f"provider produces {self.embedding_dimension}"
                )
            self.embedding_dimension = stored_dimension

        if self.vector_index is not None:
            await self.vector_index.initialize()

        self._initialized = True
        logger.info("Corpus store initialized")

    async def shutdown(self) -> None:
        if self.vector_index is not None:
            await self.vector_index.shutdown()
        self._initialized = False
        logger.debug("Corpus store shutdown complete")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _insert_document(
        self,
        name: str,
        file_type: FileType,
        file_hash: str,
        source: str,
        page_count: int | None,
    ) -> SourceDocument:
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT id FROM source_documents WHERE file_hash = ?", (file_hash,)
            ).fetchone()
            if existing:
                raise DuplicateDocumentError(existing["id"], file_hash)

            now = _now()
            document = SourceDocument(
                id=str(uuid.uuid4()),
                name=name,
                file_type=file_type,
                file_hash=file_hash,
                source=source,
                page_count=page_count,
                status=DocumentStatus.PROCESSING,
                created_at=now,
                updated_at=now,
            )
            try:
                conn.execute(
                    """
                    INSERT INTO source_documents
                        (id, name, file_type, file_hash, source, page_count,
                         status, error_log, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                    """,
                    (document.id, name, FileType(file_type).value, file_hash, source,
                     page_count, DocumentStatus.PROCESSING.value, now, now),
                )
            except sqlite3.IntegrityError as e:
                row = conn.execute(
                    "SELECT id FROM source_documents WHERE file_hash = ?", (file_hash,)
                ).fetchone()
                if row:
                    raise DuplicateDocumentError(row["id"], file_hash) from e
                raise
        return document

    async def create_document(
        self,
        name: str,
        file_type: FileType,
        file_hash: str,
        source: str,
        page_count: int | None = None,
    ) -> SourceDocument:
        """
        Register a new document with status ``processing``.

        Raises:
            DuplicateDocumentError: If a document with ``file_hash`` exists
        """
        document = await self._run(
            self._insert_document, name, file_type, file_hash, source, page_count
        )
        logger.info(f"Created document: {name} (ID: {document.id})")
        return document

    def _fetch_document(self, column: str, value: str) -> SourceDocument | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM source_documents WHERE {column} = ?", (value,)
            ).fetchone()
        return _document_from(dict(row)) if row else None

    async def get_document(self, document_id: str) -> SourceDocument | None:
        return await self._run(self._fetch_document, "id", document_id)

    async def find_document_by_hash(self, file_hash: str) -> SourceDocument | None:
        """Look up a document by the SHA-256 of its source bytes."""
        return await self._run(self._fetch_document, "file_hash", file_hash)

    def _list_documents(self, status: DocumentStatus | None) -> list[SourceDocument]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM source_documents ORDER BY created_at, name"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM source_documents WHERE status = ? ORDER BY created_at, name",
                    (DocumentStatus(status).value,),
                ).fetchall()
        return [_document_from(dict(row)) for row in rows]

    async def list_documents(self, status: DocumentStatus | None = None) -> list[SourceDocument]:
        return await self._run(self._list_documents, status)

    def _update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_log: str | None,
        page_count: int | None,
    ) -> SourceDocument:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE source_documents
                SET status = ?, error_log = ?, page_count = COALESCE(?, page_count), updated_at = ?
                WHERE id = ?
                """,
                (DocumentStatus(status).value, error_log, page_count, _now(), document_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Unknown document: {document_id}")
            row = conn.execute(
                "SELECT * FROM source_documents WHERE id = ?", (document_id,)
            ).fetchone()
        return _document_from(dict(row))

    async def set_document_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_log: str | None = None,
        page_count: int | None = None,
    ) -> SourceDocument:
        """
        Move a document to ``status``.

        Raises:
            ValueError: If the document does not exist
        """
        document = await self._run(self._update_status, document_id, status, error_log, page_count)
        logger.debug(f"Document {document_id} is now {document.status.value}")
        return document

    def _delete_document(self, document_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM source_documents WHERE id = ?", (document_id,)
            ).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM entry_index WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM source_documents WHERE id = ?", (document_id,))
        return True

    async def delete_document(self, document_id: str) -> bool:
        """
        Delete a document and everything beneath it.

        Chapters, sections, entries and category links cascade; lexical
        index rows and vectors are removed explicitly.

        Returns:
            False if no such document exists
        """
        deleted = await self._run(self._delete_document, document_id)
        if not deleted:
            return False

        if self.vector_index is not None:
            await self.vector_index.delete_document(document_id)

        logger.info(f"Deleted document {document_id}")
        return True

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    def _insert_chapter_tree(self, tree: ChapterTree) -> None:
        chapter = tree.chapter
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO rule_chapters ({", ".join(_CHAPTER_COLUMNS)})
                VALUES ({", ".join("?" for _ in _CHAPTER_COLUMNS)})
                """,
                (chapter.id, chapter.document_id, chapter.title, chapter.slug,
                 chapter.chapter_number, chapter.part, chapter.order_index,
                 chapter.page_start, chapter.page_end, json.dumps(chapter.keywords)),
            )
            for section_tree in tree.sections:
                section = section_tree.section
                conn.execute(
                    f"""
                    INSERT INTO rule_sections ({", ".join(_SECTION_COLUMNS)})
                    VALUES ({", ".join("?" for _ in _SECTION_COLUMNS)})
                    """,
                    (section.id, chapter.id, section.title, section.slug,
                     section.order_index, section.page_start, section.page_end,
                     json.dumps(section.keywords)),
                )

                heading = chapter.title
                if section.title != chapter.title:
                    heading = f"{chapter.title} {section.title}"

                conn.executemany(
                    """
                    INSERT INTO rule_entries
                        (id, section_id, document_id, title, content, order_index, page_reference)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (entry.id, section.id, chapter.document_id, entry.title,
                         entry.content, entry.order_index, entry.page_reference)
                        for entry in section_tree.entries
                    ],
                )
                conn.executemany(
                    """
                    INSERT INTO entry_index (entry_id, document_id, title, heading, content)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (entry.id, chapter.document_id, entry.title or "", heading, entry.content)
                        for entry in section_tree.entries
                    ],
                )

    async def add_chapter_tree(self, tree: ChapterTree) -> None:
        """
        Write one chapter with its sections and entries in a single transaction.

        Raises:
            sqlite3.IntegrityError: If an ordering index is already taken
                                    among the chapter's siblings
        """
        await self._run(self._insert_chapter_tree, tree)
        logger.debug(
            f"Stored chapter '{tree.chapter.title}' "
            f"({len(tree.sections)} sections, {tree.entry_count} entries)"
        )

    def _list_chapters(self, document_id: str) -> list[Chapter]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM rule_chapters WHERE document_id = ? ORDER BY order_index",
                (document_id,),
            ).fetchall()
        return [_chapter_from(dict(row)) for row in rows]

    async def list_chapters(self, document_id: str) -> list[Chapter]:
        return await self._run(self._list_chapters, document_id)

    def _list_sections(self, chapter_id: str) -> list[Section]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM rule_sections WHERE chapter_id = ? ORDER BY order_index",
                (chapter_id,),
            ).fetchall()
        return [_section_from(dict(row)) for row in rows]

    async def list_sections(self, chapter_id: str) -> list[Section]:
        return await self._run(self._list_sections, chapter_id)

    def _list_entries(self, section_id: str) -> list[Entry]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {', '.join(_ENTRY_COLUMNS)} FROM rule_entries "
                "WHERE section_id = ? ORDER BY order_index",
                (section_id,),
            ).fetchall()
        return [_entry_from(dict(row)) for row in rows]

    async def list_entries(self, section_id: str) -> list[Entry]:
        return await self._run(self._list_entries, section_id)

    # ------------------------------------------------------------------
    # Search primitives
    # ------------------------------------------------------------------

    def _lexical_search(self, query: str, limit: int, document_id: str | None) -> list[LexicalHit]:
        match_query = build_match_query(query)
        if match_query is None:
            return []

        weights = ", ".join(str(w) for w in BM25_WEIGHTS)
        sql = f"""
            SELECT hits.entry_id AS entry_id, hits.score AS score
            FROM (
                SELECT entry_id, document_id, -bm25(entry_index, {weights}) AS score
                FROM entry_index
                WHERE entry_index MATCH ?
            ) AS hits
            JOIN source_documents d ON d.id = hits.document_id
            WHERE d.status = 'completed'
              AND (? IS NULL OR hits.document_id = ?)
            ORDER BY hits.score DESC, hits.entry_id
            LIMIT ?
        """
        with self._connect() as conn:
            rows = conn.execute(sql, (match_query, document_id, document_id, limit)).fetchall()
        return [LexicalHit(entry_id=row["entry_id"], score=row["score"]) for row in rows]

    async def lexical_search(
        self, query: str, limit: int, document_id: str | None = None
    ) -> list[LexicalHit]:
        """BM25-ranked full-text search over entry title, headings and body."""
        return await self._run(self._lexical_search, query, limit, document_id)

    def _searchable_document_ids(self, document_id: str | None) -> list[str]:
        with self._connect() as conn:
            if document_id is None:
                rows = conn.execute(
                    "SELECT id FROM source_documents WHERE status = 'completed'"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT id FROM source_documents WHERE status = 'completed' AND id = ?",
                    (document_id,),
                ).fetchall()
        return [row["id"] for row in rows]

    async def vector_search(
        self, embedding: list[float], limit: int, document_id: str | None = None
    ) -> list[VectorHit]:
        """
        Nearest entries to ``embedding`` among completed documents.

        Raises:
            ValueError: If the query vector has the wrong dimension
        """
        if self.vector_index is None:
            return []

        if self.embedding_dimension is not None and len(embedding) != self.embedding_dimension:
            raise ValueError(
                f"Query embedding has dimension {len(embedding)}, "
                f"expected {self.embedding_dimension}"
            )

        document_ids = await self._run(self._searchable_document_ids, document_id)
        if not document_ids:
            return []
        return await self.vector_index.query(embedding, k=limit, document_ids=document_ids)

    def _fetch_entries_with_context(self, entry_ids: list[str]) -> list[EntryWithContext]:
        placeholders = ", ".join("?" for _ in entry_ids)
        sql = f"""
            SELECT {_select("e", _ENTRY_COLUMNS)},
                   {_select("s", _SECTION_COLUMNS)},
                   {_select("c", _CHAPTER_COLUMNS)},
                   {_select("d", _DOCUMENT_COLUMNS)}
            FROM rule_entries e
            JOIN rule_sections s ON s.id = e.section_id
            JOIN rule_chapters c ON c.id = s.chapter_id
            JOIN source_documents d ON d.id = c.document_id
            WHERE e.id IN ({placeholders}) AND d.status = 'completed'
        """
        with self._connect() as conn:
            rows = conn.execute(sql, entry_ids).fetchall()

        by_id = {}
        for row in rows:
            item = EntryWithContext(
                entry=_entry_from(_columns(row, "e")),
                section=_section_from(_columns(row, "s")),
                chapter=_chapter_from(_columns(row, "c")),
                document=_document_from(_columns(row, "d")),
            )
            by_id[item.entry.id] = item
        return [by_id[entry_id] for entry_id in entry_ids if entry_id in by_id]

    async def fetch_entries_with_context(self, entry_ids: list[str]) -> list[EntryWithContext]:
        """
        Load entries with their section, chapter and document, in input order.

        Ids that no longer resolve to a complete, searchable hierarchy are
        dropped with a warning.
        """
        if not entry_ids:
            return []
        unique_ids = list(dict.fromkeys(entry_ids))
        items = await self._run(self._fetch_entries_with_context, unique_ids)
        if len(items) < len(unique_ids):
            logger.warning(
                f"Dropped {len(unique_ids) - len(items)} entries that could not be enriched"
            )
        return items

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def _entries_for_embedding(
        self, document_id: str | None, missing_only: bool, limit: int | None
    ) -> list[tuple[Entry, str]]:
        sql = f"""
            SELECT {_select("e", _ENTRY_COLUMNS)}, e.document_id AS document_id
            FROM rule_entries e
            JOIN source_documents d ON d.id = e.document_id
            WHERE d.status = 'completed'
              AND (? IS NULL OR e.document_id = ?)
              {"AND e.has_embedding = 0" if missing_only else ""}
            ORDER BY e.rowid
        """
        params: list[Any] = [document_id, document_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(_entry_from(_columns(row, "e")), row["document_id"]) for row in rows]

    async def entries_for_embedding(
        self,
        document_id: str | None = None,
        missing_only: bool = True,
        limit: int | None = None,
    ) -> list[tuple[Entry, str]]:
        """
        Entries of completed documents that need (or could get) an embedding.

        Returns:
            (entry, document_id) pairs in insertion order
        """
        return await self._run(self._entries_for_embedding, document_id, missing_only, limit)

    def _set_dimension(self, dimension: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO kb_meta (key, value) VALUES ('embedding_dimension', ?)",
                (str(dimension),),
            )

    def _mark_embedded(self, entry_ids: list[str]) -> None:
        with self._connect() as conn:
            conn.executemany(
                "UPDATE rule_entries SET has_embedding = 1 WHERE id = ?",
                [(entry_id,) for entry_id in entry_ids],
            )

    async def set_embeddings(
        self,
        entry_ids: list[str],
        embeddings: list[list[float]],
        document_ids: list[str],
    ) -> int:
        """
        Store (or overwrite) embeddings for entries.

        Returns:
            Number of entries written

        Raises:
            RuntimeError: If no vector index is configured
            ValueError: If any vector's dimension differs from the store's
        """
        if self.vector_index is None:
            raise RuntimeError("No vector index configured for embeddings")

        if not entry_ids:
            return 0

        dimensions = {len(vector) for vector in embeddings}
        if len(dimensions) != 1:
            raise ValueError(f"Embeddings have mixed dimensions: {sorted(dimensions)}")
        dimension = dimensions.pop()

        if self.embedding_dimension is None:
            await self._run(self._set_dimension, dimension)
            self.embedding_dimension = dimension
        elif dimension != self.embedding_dimension:
            raise ValueError(
                f"Embedding dimension {dimension} does not match store dimension "
                f"{self.embedding_dimension}"
            )

        await self.vector_index.upsert(entry_ids, embeddings, document_ids)
        await self._run(self._mark_embedded, entry_ids)
        return len(entry_ids)

    def _clear_embeddings(self) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE rule_entries SET has_embedding = 0")
            conn.execute("DELETE FROM kb_meta WHERE key = 'embedding_dimension'")

    async def reset_embeddings(self) -> None:
        """
        Drop every stored embedding and forget the embedding dimension.

        Used before re-embedding the corpus with a different model. Entries
        stay; they simply need a backfill again.

        Raises:
            RuntimeError: If no vector index is configured
        """
        if self.vector_index is None:
            raise RuntimeError("No vector index configured for embeddings")

        await self.vector_index.delete_collection()
        await self._run(self._clear_embeddings)
        self.embedding_dimension = None
        logger.info("Cleared all entry embeddings")

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    def _insert_category(
        self, name: str, description: str | None, parent_id: str | None
    ) -> Category:
        category = Category(
            id=str(uuid.uuid4()), name=name, description=description, parent_id=parent_id
        )
        with self._connect() as conn:
            if conn.execute(
                "SELECT 1 FROM rule_categories WHERE name = ?", (name,)
            ).fetchone():
                raise DuplicateCategoryError(f"Category already exists: {name}")
            if parent_id is not None and not conn.execute(
                "SELECT 1 FROM rule_categories WHERE id = ?", (parent_id,)
            ).fetchone():
                raise ValueError(f"Unknown parent category: {parent_id}")
            try:
                conn.execute(
                    """
                    INSERT INTO rule_categories (id, name, description, parent_id, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (category.id, name, description, parent_id, _now()),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateCategoryError(f"Category already exists: {name}") from e
        return category

    async def create_category(
        self,
        name: str,
        description: str | None = None,
        parent_id: str | None = None,
    ) -> Category:
        """
        Create a category. Names are unique and never overwritten.

        Raises:
            DuplicateCategoryError: If ``name`` is taken
            ValueError: If ``parent_id`` does not exist
        """
        category = await self._run(self._insert_category, name, description, parent_id)
        logger.info(f"Created category: {name}")
        return category

    def _category_by_name(self, name: str) -> Category | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, description, parent_id FROM rule_categories WHERE name = ?",
                (name,),
            ).fetchone()
        return Category(**dict(row)) if row else None

    async def get_category_by_name(self, name: str) -> Category | None:
        return await self._run(self._category_by_name, name)

    def _list_categories(self) -> list[Category]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, description, parent_id FROM rule_categories ORDER BY name"
            ).fetchall()
        return [Category(**dict(row)) for row in rows]

    async def list_categories(self) -> list[Category]:
        return await self._run(self._list_categories)

    def _assign_category(self, entry_id: str, category_id: str) -> None:
        with self._connect() as conn:
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO rule_entry_categories (entry_id, category_id) "
                    "VALUES (?, ?)",
                    (entry_id, category_id),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(
                    f"Unknown entry or category: {entry_id}, {category_id}"
                ) from e

    async def assign_category(self, entry_id: str, category_id: str) -> None:
        """Tag an entry. Assigning the same pair twice is a no-op."""
        await self._run(self._assign_category, entry_id, category_id)

    def _unassign_category(self, entry_id: str, category_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM rule_entry_categories WHERE entry_id = ? AND category_id = ?",
                (entry_id, category_id),
            )
        return cursor.rowcount > 0

    async def unassign_category(self, entry_id: str, category_id: str) -> bool:
        """
        Remove a category tag from an entry.

        Returns:
            False if the entry was not tagged with the category
        """
        return await self._run(self._unassign_category, entry_id, category_id)

    def _entries_in_category(self, category_id: str, include_descendants: bool) -> list[Entry]:
        if include_descendants:
            sql = f"""
                WITH RECURSIVE tree(id) AS (
                    SELECT id FROM rule_categories WHERE id = ?
                    UNION
                    SELECT c.id FROM rule_categories c JOIN tree t ON c.parent_id = t.id
                )
                SELECT DISTINCT {_select("e", _ENTRY_COLUMNS)}, e.rowid AS position
                FROM rule_entries e
                JOIN rule_entry_categories ec ON ec.entry_id = e.id
                WHERE ec.category_id IN (SELECT id FROM tree)
                ORDER BY position
            """
        else:
            sql = f"""
                SELECT {_select("e", _ENTRY_COLUMNS)}
                FROM rule_entries e
                JOIN rule_entry_categories ec ON ec.entry_id = e.id
                WHERE ec.category_id = ?
                ORDER BY e.rowid
            """
        with self._connect() as conn:
            rows = conn.execute(sql, (category_id,)).fetchall()
        return [_entry_from(_columns(row, "e")) for row in rows]

    async def entries_in_category(
        self, category_id: str, include_descendants: bool = True
    ) -> list[Entry]:
        """Entries tagged with a category (and, by default, its sub-categories)."""
        return await self._run(self._entries_in_category, category_id, include_descendants)

    # ------------------------------------------------------------------
    # Stat blocks
    # ------------------------------------------------------------------

    def _upsert_spells(self, spells: list[SpellDefinition]) -> None:
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO spell_definitions (slug, source, name, level, school, data)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (slug, source) DO UPDATE SET
                    name = excluded.name, level = excluded.level,
                    school = excluded.school, data = excluded.data
                """,
                [
                    (slugify(s.name), s.source, s.name, s.level, s.school, s.model_dump_json())
                    for s in spells
                ],
            )

    async def upsert_spells(self, spells: list[SpellDefinition]) -> int:
        if not spells:
            return 0
        await self._run(self._upsert_spells, spells)
        return len(spells)

    def _upsert_monsters(self, monsters: list[MonsterStats]) -> None:
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO monster_stats (slug, source, name, challenge_rating, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (slug, source) DO UPDATE SET
                    name = excluded.name, challenge_rating = excluded.challenge_rating,
                    data = excluded.data
                """,
                [
                    (slugify(m.name), m.source, m.name, m.challenge_rating, m.model_dump_json())
                    for m in monsters
                ],
            )

    async def upsert_monsters(self, monsters: list[MonsterStats]) -> int:
        if not monsters:
            return 0
        await self._run(self._upsert_monsters, monsters)
        return len(monsters)

    def _lookup(self, table: str, name: str, source: str | None) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT data FROM {table} WHERE slug = ? AND (? IS NULL OR source = ?) "
                "ORDER BY source LIMIT 1",
                (slugify(name), source, source),
            ).fetchone()
        return row["data"] if row else None

    async def get_spell(self, name: str, source: str | None = None) -> SpellDefinition | None:
        data = await self._run(self._lookup, "spell_definitions", name, source)
        return SpellDefinition.model_validate_json(data) if data else None

    async def get_monster(self, name: str, source: str | None = None) -> MonsterStats | None:
        data = await self._run(self._lookup, "monster_stats", name, source)
        return MonsterStats.model_validate_json(data) if data else None

    def _list_spells(self, level: int | None, school: str | None) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT data FROM spell_definitions
                WHERE (? IS NULL OR level = ?) AND (? IS NULL OR lower(school) = lower(?))
                ORDER BY level, name, source
                """,
                (level, level, school, school),
            ).fetchall()
        return [row["data"] for row in rows]

    async def list_spells(
        self, level: int | None = None, school: str | None = None
    ) -> list[SpellDefinition]:
        rows = await self._run(self._list_spells, level, school)
        return [SpellDefinition.model_validate_json(data) for data in rows]

    def _list_monsters(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT data FROM monster_stats ORDER BY name, source").fetchall()
        return [row["data"] for row in rows]

    async def list_monsters(self) -> list[MonsterStats]:
        rows = await self._run(self._list_monsters)
        return [MonsterStats.model_validate_json(data) for data in rows]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _counts(self) -> dict[str, int]:
        tables = {
            "documents": "source_documents",
            "chapters": "rule_chapters",
            "sections": "rule_sections",
            "entries": "rule_entries",
            "categories": "rule_categories",
            "spells": "spell_definitions",
            "monsters": "monster_stats",
        }
        with self._connect() as conn:
            counts = {
                key: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for key, table in tables.items()
            }
            counts["embedded_entries"] = conn.execute(
                "SELECT COUNT(*) FROM rule_entries WHERE has_embedding = 1"
            ).fetchone()[0]
        return counts

    async def get_stats(self) -> dict[str, Any]:
        """Row counts per table, plus the vector index stats when present."""
        stats: dict[str, Any] = await self._run(self._counts)
        if self.vector_index is not None:
            stats.update(await self.vector_index.get_stats())
        return stats
