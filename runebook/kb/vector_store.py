"""
Entry embedding index backed by ChromaDB.

ChromaDB holds one vector per Entry, keyed by entry id, with the owning
document id as metadata so searches can be scoped to one document and a
document's vectors can be dropped when it is deleted. Entry text and the
hierarchy live in the relational store; this index only answers
"which entries are nearest to this vector".

Example:
    >>> async with ChromaVectorIndex(persist_directory="./data/vector_db") as index:
    ...     await index.upsert(["entry-1"], [[0.1, 0.2, ...]], ["doc-1"])
    ...     hits = await index.query([0.15, 0.25, ...], k=5)
"""

import asyncio
from pathlib import Path
from typing import Any

import chromadb
from chromadb.config import Settings as ChromaSettings

from runebook.config.logging import get_logger
from runebook.kb.base import VectorHit

logger = get_logger(__name__)


class ChromaVectorIndex:
    """
    Wrapper for a ChromaDB collection of entry embeddings.

    Uses cosine distance; distances are converted to similarity in [0, 1]
    as ``1 - distance / 2``.

    Attributes:
        persist_directory: Path to ChromaDB storage directory
        collection_name: Name of the ChromaDB collection
    """

    def __init__(
        self,
        persist_directory: Path | str,
        collection_name: str = "rule_entries"
    ):
        self.persist_directory = Path(persist_directory)
        self.collection_name = collection_name
        self._client: chromadb.ClientAPI | None = None
        self._collection: chromadb.Collection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize ChromaDB client and collection.

        Raises:
            RuntimeError: If ChromaDB initialization fails
        """
        logger.info(f"Initializing ChromaDB at {self.persist_directory}")

        try:
            self.persist_directory.mkdir(parents=True, exist_ok=True)

            self._client = chromadb.PersistentClient(
                path=str(self.persist_directory),
                settings=ChromaSettings(
                    anonymized_telemetry=False,
                    allow_reset=True
                )
            )

            self._collection = self._client.get_or_create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": "cosine"}
            )

            self._initialized = True
            logger.info(
                f"ChromaDB initialized successfully "
                f"(collection: {self.collection_name}, path: {self.persist_directory})"
            )

        except Exception as e:
            logger.error(f"Failed to initialize ChromaDB: {e}")
            raise RuntimeError(f"Could not initialize ChromaDB: {e}") from e

    def _require_collection(self) -> chromadb.Collection:
        if not self._initialized or self._collection is None:
            raise RuntimeError(
                "Vector index not initialized. "
                "Use 'async with ChromaVectorIndex(...) as index:' or call await index.initialize()"
            )
        return self._collection

    async def upsert(
        self,
        entry_ids: list[str],
        embeddings: list[list[float]],
        document_ids: list[str],
    ) -> None:
        """
        Insert or overwrite entry embeddings.

        Re-running with the same ids replaces the stored vectors, so the
        embedding backfill can be repeated safely.

        Raises:
            RuntimeError: If index not initialized or the write fails
            ValueError: If input lists have mismatched lengths or are empty
        """
        collection = self._require_collection()

        if not (len(entry_ids) == len(embeddings) == len(document_ids)):
            raise ValueError(
                f"Input lists must have same length: "
                f"entry_ids={len(entry_ids)}, embeddings={len(embeddings)}, "
                f"document_ids={len(document_ids)}"
            )

        if not entry_ids:
            raise ValueError("Cannot upsert empty lists into vector index")

        logger.debug(f"Upserting {len(entry_ids)} vectors into '{self.collection_name}'")

        try:
            await asyncio.to_thread(
                collection.upsert,
                ids=entry_ids,
                embeddings=embeddings,
                metadatas=[{"document_id": doc_id} for doc_id in document_ids],
            )
        except Exception as e:
            logger.error(f"Failed to upsert vectors into ChromaDB: {e}")
            raise RuntimeError(f"Failed to upsert vectors: {e}") from e

    async def query(
        self,
        embedding: list[float],
        k: int,
        document_ids: list[str] | None = None,
    ) -> list[VectorHit]:
        """
        Find the ``k`` entries nearest to ``embedding``, best first.

        Args:
            embedding: Query vector
            k: Number of hits to return
            document_ids: Only consider entries of these documents. An empty
                          list means nothing is searchable.

        Raises:
            RuntimeError: If index not initialized or the query fails
            ValueError: If k <= 0
        """
        collection = self._require_collection()

        if k <= 0:
            raise ValueError(f"k must be positive, got {k}")

        if document_ids is not None and not document_ids:
            return []

        where: dict[str, Any] | None = None
        if document_ids is not None:
            if len(document_ids) == 1:
                where = {"document_id": document_ids[0]}
            else:
                where = {"document_id": {"$in": document_ids}}

        try:
            count = await asyncio.to_thread(collection.count)
            if count == 0:
                return []

            results = await asyncio.to_thread(
                collection.query,
                query_embeddings=[embedding],
                n_results=min(k, count),
                where=where,
                include=["distances"],
            )
        except Exception as e:
            logger.error(f"Vector query failed: {e}")
            raise RuntimeError(f"Vector query failed: {e}") from e

        ids = results["ids"][0] if results["ids"] else []
        distances = results["distances"][0] if results["distances"] else []

        hits = []
        for entry_id, distance in zip(ids, distances):
            # Cosine distance is 0 (identical) .. 2 (opposite)
            similarity = max(0.0, min(1.0, 1.0 - (distance / 2.0)))
            hits.append(VectorHit(entry_id=entry_id, similarity=similarity))

        logger.debug(f"Vector query returned {len(hits)} hits")
        return hits

    async def delete_document(self, document_id: str) -> None:
        """Drop every vector belonging to ``document_id``."""
        collection = self._require_collection()
        logger.debug(f"Deleting vectors for document {document_id}")
        try:
            await asyncio.to_thread(collection.delete, where={"document_id": document_id})
        except Exception as e:
            logger.error(f"Failed to delete document vectors: {e}")
            raise RuntimeError(f"Failed to delete document vectors: {e}") from e

    async def delete_collection(self) -> None:
        """
        Delete the entire collection and recreate it empty.

        WARNING: This is irreversible.
        """
        self._require_collection()
        assert self._client is not None

        logger.warning(f"Deleting collection '{self.collection_name}'")

        try:
            self._client.delete_collection(name=self.collection_name)
            self._collection = self._client.get_or_create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": "cosine"}
            )
            logger.info(f"Recreated collection '{self.collection_name}'")

        except Exception as e:
            logger.error(f"Failed to delete collection: {e}")
            raise RuntimeError(f"Failed to delete collection: {e}") from e

    async def get_stats(self) -> dict[str, Any]:
        """
        Get statistics about the vector index.

        Returns:
            Dictionary with ``vector_count`` and ``collection_name``
        """
        collection = self._require_collection()

        try:
            count = collection.count()
            return {
                "vector_count": count,
                "collection_name": self.collection_name
            }

        except Exception as e:
            logger.error(f"Failed to get stats: {e}")
            raise RuntimeError(f"Failed to get stats: {e}") from e

    async def shutdown(self) -> None:
        """ChromaDB persists on write; only the references are dropped."""
        if self._client is not None:
            logger.debug("Shutting down ChromaDB")
            self._collection = None
            self._client = None

        self._initialized = False

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False
