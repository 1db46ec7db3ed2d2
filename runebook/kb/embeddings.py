"""
Embedding providers.

Two implementations of ``EmbeddingProvider``:

- ``EmbeddingModel``: Sentence Transformers, runs locally, no API key needed
- ``LiteLLMEmbeddingProvider``: remote embedding APIs routed through LiteLLM
  (OpenAI ``text-embedding-3-small``, Cohere, Ollama, ...)

Both return L2-normalised vectors so cosine similarity in the vector index
behaves the same regardless of provider.

Example:
    >>> async with EmbeddingModel("all-MiniLM-L6-v2", device="cpu") as model:
    ...     embeddings = await model.embed(["Hello world", "Greetings"])
    ...     print(embeddings.shape)  # (2, 384) - 2 texts, 384 dimensions
"""

import asyncio
from typing import Any, Literal

import numpy as np
from litellm import aembedding
from sentence_transformers import SentenceTransformer

from runebook.config.logging import get_logger
from runebook.kb.base import EmbeddingProvider

logger = get_logger(__name__)

# Remote APIs reject very long inputs; entries are far shorter in practice
MAX_REMOTE_INPUT_CHARS = 30_000
REMOTE_BATCH_SIZE = 100


class EmbeddingModel(EmbeddingProvider):
    """
    Wrapper for Sentence Transformers embedding model.

    The model is loaded lazily on initialize() and released on shutdown().
    It is only available while loaded.

    Attributes:
        model_name: Name of the Sentence Transformers model
        device: Device to run on ('cpu' or 'cuda')
        batch_size: Number of texts to process per batch
    """

    def __init__(
        self,
        model_name: str,
        device: Literal["cpu", "cuda"] = "cpu",
        batch_size: int = 32
    ):
        self.model_name = model_name
        self.device = device
        self.batch_size = batch_size
        self._model: SentenceTransformer | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Load the embedding model into memory.

        This downloads the model weights if not cached locally.

        Raises:
            RuntimeError: If model loading fails
        """
        logger.info(f"Loading embedding model: {self.model_name} on {self.device}")

        try:
            self._model = await asyncio.to_thread(
                SentenceTransformer, self.model_name, device=self.device
            )
            self._initialized = True
            logger.info(
                f"Embedding model loaded successfully "
                f"(dimension: {self.dimension}, device: {self.device})"
            )

        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            raise RuntimeError(f"Could not load embedding model '{self.model_name}': {e}") from e

    def is_available(self) -> bool:
        return self._initialized and self._model is not None

    @property
    def dimension(self) -> int | None:
        if self._model is None:
            return None
        return self._model.get_sentence_embedding_dimension()

    async def embed(self, texts: list[str]) -> np.ndarray:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of text strings to embed

        Returns:
            NumPy array of shape (len(texts), embedding_dim)

        Raises:
            RuntimeError: If model not initialized or encoding fails
            ValueError: If texts list is empty
        """
        if not self._initialized or self._model is None:
            raise RuntimeError(
                "Embedding model not initialized. "
                "Use 'async with EmbeddingModel(...) as model:' or call await model.initialize()"
            )

        if not texts:
            raise ValueError("Cannot embed empty list of texts")

        logger.debug(f"Generating embeddings for {len(texts)} texts (batch_size={self.batch_size})")

        try:
            embeddings = await asyncio.to_thread(
                self._model.encode,
                texts,
                batch_size=self.batch_size,
                show_progress_bar=False,
                normalize_embeddings=True,
                convert_to_numpy=True,
            )
            logger.debug(f"Generated embeddings with shape {embeddings.shape}")
            return embeddings

        except Exception as e:
            logger.error(f"Failed to generate embeddings: {e}")
            raise RuntimeError(f"Embedding generation failed: {e}") from e

    async def shutdown(self) -> None:
        """Release the model so its memory (or GPU memory) can be reclaimed."""
        if self._model is not None:
            logger.debug("Shutting down embedding model")
            self._model = None

        self._initialized = False

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False


def _vector(item: Any) -> list[float]:
    if isinstance(item, dict):
        return item["embedding"]
    return item.embedding


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    """
    Remote embeddings via LiteLLM.

    Unavailable (and never called) when no model or API key is configured,
    so semantic search quietly degrades to full-text only.

    Example:
        >>> provider = LiteLLMEmbeddingProvider("text-embedding-3-small", api_key="sk-...")
        >>> vector = await provider.embed_query("grappling rules")
    """

    def __init__(
        self,
        model: str,
        api_key: str = "",
        dimension: int | None = None,
        batch_size: int = REMOTE_BATCH_SIZE,
    ):
        self.model = model
        self.api_key = api_key
        self.batch_size = batch_size
        self._dimension = dimension

    async def initialize(self) -> None:
        if not self.is_available():
            logger.warning(
                "Remote embedding provider not configured (EMBEDDING__API_KEY missing); "
                "semantic search is disabled"
            )

    async def shutdown(self) -> None:
        pass

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    def is_available(self) -> bool:
        return bool(self.model and self.api_key)

    @property
    def dimension(self) -> int | None:
        return self._dimension

    async def embed(self, texts: list[str]) -> np.ndarray:
        """
        Embed texts in batches of ``batch_size``.

        Raises:
            RuntimeError: If the provider is not configured or the API call fails
            ValueError: If texts list is empty
        """
        if not self.is_available():
            raise RuntimeError("Remote embedding provider is not configured")

        if not texts:
            raise ValueError("Cannot embed empty list of texts")

        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = [t[:MAX_REMOTE_INPUT_CHARS] for t in texts[start:start + self.batch_size]]
            kwargs: dict[str, Any] = {
                "model": self.model,
                "input": batch,
                "api_key": self.api_key,
            }
            if self._dimension is not None:
                kwargs["dimensions"] = self._dimension

            try:
                response = await aembedding(**kwargs)
            except Exception as e:
                logger.error(f"Embedding API call failed: {e}")
                raise RuntimeError(f"Embedding generation failed: {e}") from e

            vectors.extend(_vector(item) for item in response.data)

        embeddings = np.asarray(vectors, dtype=np.float32)
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        embeddings = embeddings / np.where(norms == 0, 1.0, norms)

        if self._dimension is None:
            self._dimension = int(embeddings.shape[1])

        logger.debug(f"Generated remote embeddings with shape {embeddings.shape}")
        return embeddings
