"""
Application settings and configuration management.

Uses Pydantic Settings for validation and environment variable support.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KnowledgeBaseSettings(BaseSettings):
    """Corpus storage configuration."""

    database_path: str = Field(
        default="data/runebook.db",
        description="Path to the SQLite database holding the rules hierarchy"
    )
    vector_db_path: str = Field(
        default="data/vector_db",
        description="Path to ChromaDB storage for entry embeddings"
    )
    collection_name: str = Field(
        default="rule_entries", description="ChromaDB collection name"
    )
    min_entry_chars: int = Field(
        default=20,
        ge=1,
        description="Paragraphs shorter than this are not stored as entries",
    )
    embed_on_ingest: bool = Field(
        default=True,
        description="Run the embedding backfill right after a document completes",
    )
    ocr_enabled: bool = Field(
        default=True,
        description="Enable OCR fallback for scanned PDF pages (requires tesseract-ocr)"
    )

    model_config = SettingsConfigDict(env_prefix="KB_")


class EmbeddingSettings(BaseSettings):
    """Embedding provider configuration."""

    provider: Literal["local", "litellm", "none"] = Field(
        default="local",
        description="'local' runs Sentence Transformers in-process, 'litellm' calls a "
                    "remote embedding API, 'none' disables semantic search.",
    )
    model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="Sentence Transformers model name, or a LiteLLM model string such as "
                    "'text-embedding-3-small' when provider is 'litellm'.",
    )
    device: Literal["cpu", "cuda"] = Field(
        default="cpu",
        description="Device for local embedding generation (cpu or cuda)"
    )
    batch_size: int = Field(
        default=32, ge=1, description="Batch size for embedding generation"
    )
    api_key: str = Field(default="", description="API key for the remote embedding provider")
    dimension: int | None = Field(
        default=None,
        description="Expected embedding dimension. None means whatever the model produces.",
    )

    model_config = SettingsConfigDict(env_prefix="EMBEDDING_")


class SearchSettings(BaseSettings):
    """Hybrid retrieval configuration."""

    rrf_k: int = Field(default=60, ge=0, description="Reciprocal Rank Fusion damping constant")
    candidate_pool: int = Field(
        default=50, ge=1, description="Candidates requested from each sub-search"
    )
    default_limit: int = Field(default=20, ge=1, le=100, description="Default page size")
    lexical_timeout: float = Field(
        default=10.0, gt=0, description="Seconds before the full-text sub-search is abandoned"
    )
    semantic_timeout: float = Field(
        default=10.0, gt=0, description="Seconds before the semantic sub-search is abandoned"
    )
    max_highlights: int = Field(default=3, ge=0, description="Highlight snippets per result")

    model_config = SettingsConfigDict(env_prefix="SEARCH_")


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    environment: Literal["development", "production"] = Field(
        default="development", description="Deployment environment"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_file: Path | None = Field(default=None, description="Log file path")

    # Sub-configurations
    kb: KnowledgeBaseSettings = Field(default_factory=KnowledgeBaseSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(env_file: str | Path | None = None) -> Settings:
    """
    Load settings from file and environment.

    Args:
        env_file: Path to .env file (optional)

    Returns:
        Loaded settings instance
    """
    global _settings
    if env_file:
        _settings = Settings(_env_file=env_file)
    else:
        _settings = Settings()
    return _settings
