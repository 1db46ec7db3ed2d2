"""
Base classes and data structures for the rules knowledge base.

This module defines the typed records shared by every layer:
- Corpus hierarchy: SourceDocument -> Chapter -> Section -> Entry, plus Category
- Stat blocks: SpellDefinition, MonsterStats
- Parser output: RuleSection / RuleSubsection
- Write units: ChapterTree / SectionTree
- Search contract: SearchRequest, SearchResult, SearchResponse, LexicalHit, VectorHit
- Collaborator interfaces: CorpusStore, EmbeddingProvider, DocumentLoader

The Corpus Store maps its rows into these models at its boundary, so the
parser and the retrieval engine never handle untyped key/value rows.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_SEARCH_LIMIT = 20
MAX_SEARCH_LIMIT = 100
MIN_QUERY_LENGTH = 2
MAX_QUERY_LENGTH = 500


class InvalidQueryError(ValueError):
    """Raised when a search request violates the request contract."""


class DuplicateDocumentError(ValueError):
    """Raised when a document with the same content hash already exists."""

    def __init__(self, document_id: str, file_hash: str):
        self.document_id = document_id
        self.file_hash = file_hash
        super().__init__(f"Document already ingested: {document_id} (hash {file_hash[:12]})")


class DuplicateCategoryError(ValueError):
    """Raised when a category name is already taken."""


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class DocumentStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FileType(str, Enum):
    PDF = "pdf"
    TXT = "txt"


class SearchMode(str, Enum):
    FULLTEXT = "fulltext"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class MatchType(str, Enum):
    """Which sub-search produced a result. HYBRID means both did."""

    FULLTEXT = "fulltext"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Corpus hierarchy
# ---------------------------------------------------------------------------


class SourceDocument(BaseModel):
    """A named rulebook source. The file hash is unique across the corpus."""

    id: str
    name: str = Field(min_length=1)
    file_type: FileType
    file_hash: str = Field(min_length=1, description="SHA-256 hex digest of the source bytes")
    source: str = Field(description="Source tag used for identifiers, e.g. 'basic_rules'")
    page_count: int | None = Field(None, ge=0)
    status: DocumentStatus = DocumentStatus.PROCESSING
    error_log: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Chapter(BaseModel):
    id: str
    document_id: str
    title: str = Field(min_length=1)
    slug: str = Field(description="Parser identifier, e.g. 'basic_rules-ch9-combat'")
    chapter_number: int | None = None
    part: str | None = Field(None, description="Title of the enclosing Part marker, if any")
    order_index: int = Field(ge=0)
    page_start: int | None = Field(None, ge=1)
    page_end: int | None = Field(None, ge=1)
    keywords: list[str] = Field(default_factory=list)


class Section(BaseModel):
    id: str
    chapter_id: str
    title: str = Field(min_length=1)
    slug: str
    order_index: int = Field(ge=0)
    page_start: int | None = Field(None, ge=1)
    page_end: int | None = Field(None, ge=1)
    keywords: list[str] = Field(default_factory=list)


class Entry(BaseModel):
    """The smallest retrievable unit of rule text."""

    id: str
    section_id: str
    title: str | None = None
    content: str = Field(min_length=1)
    order_index: int = Field(ge=0)
    page_reference: str | None = Field(None, description='Normalised reference, e.g. "p. 192"')
    embedding: list[float] | None = Field(None, description="Absent until the backfill runs")


class EntryWithContext(BaseModel):
    """An Entry enriched with its owning Section, Chapter and Document."""

    entry: Entry
    section: Section
    chapter: Chapter
    document: SourceDocument

    @property
    def citation(self) -> str:
        """
        Human-readable citation for result listings and LLM prompts.

        Example:
            >>> result.entry.citation
            "[Basic Rules, Ch. 9: Combat, §Surprise, p. 189]"
        """
        parts = [self.document.name]
        if self.chapter.chapter_number is not None:
            parts.append(f"Ch. {self.chapter.chapter_number}: {self.chapter.title}")
        else:
            parts.append(self.chapter.title)
        if self.section.title != self.chapter.title:
            parts.append(f"§{self.section.title}")
        if self.entry.page_reference:
            parts.append(self.entry.page_reference)
        return f"[{', '.join(parts)}]"


class Category(BaseModel):
    """Cross-cutting tag over entries, optionally nested under a parent."""

    id: str
    name: str = Field(min_length=1)
    description: str | None = None
    parent_id: str | None = None


class SectionTree(BaseModel):
    """A Section with its Entries, in order. Unit of persistence."""

    section: Section
    entries: list[Entry] = Field(default_factory=list)


class ChapterTree(BaseModel):
    """A Chapter with its Sections, in order. Unit of persistence."""

    chapter: Chapter
    sections: list[SectionTree] = Field(default_factory=list)

    @property
    def entry_count(self) -> int:
        return sum(len(s.entries) for s in self.sections)


# ---------------------------------------------------------------------------
# Stat blocks
# ---------------------------------------------------------------------------


class SpellDefinition(BaseModel):
    name: str = Field(min_length=1)
    level: int = Field(ge=0, le=9, description="0 for cantrips")
    school: str
    ritual: bool = False
    casting_time: str = ""
    range: str = ""
    components: str = ""
    duration: str = ""
    description: str = ""
    higher_levels: str | None = None
    classes: list[str] = Field(default_factory=list)
    source: str


class AbilityScores(BaseModel):
    strength: int = 10
    dexterity: int = 10
    constitution: int = 10
    intelligence: int = 10
    wisdom: int = 10
    charisma: int = 10


class MonsterStats(BaseModel):
    name: str = Field(min_length=1)
    size: str
    creature_type: str
    alignment: str = "unaligned"
    armor_class: int = Field(ge=0)
    hit_points: str = "1"
    speed: str = "30 ft."
    ability_scores: AbilityScores = Field(default_factory=AbilityScores)
    senses: str = ""
    languages: str = ""
    challenge_rating: str = "0"
    source: str


# ---------------------------------------------------------------------------
# Parser output
# ---------------------------------------------------------------------------


class RuleSubsection(BaseModel):
    id: str
    title: str
    content: str = ""
    keywords: list[str] = Field(default_factory=list)


class RuleSection(BaseModel):
    """One parsed chapter: its own body plus the subsections found inside it."""

    id: str
    title: str
    source: str
    chapter_number: int
    part: str | None = None
    content: str = ""
    subsections: list[RuleSubsection] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Loaded source text
# ---------------------------------------------------------------------------


class DocumentMetadata(BaseModel):
    """Metadata extracted by DocumentLoaders when reading files."""

    source_file: str = Field(description="Path to the original source file")
    source_type: FileType
    title: str = Field(description="Document title (from metadata or filename)")
    page_count: int | None = Field(None, ge=1, description="Number of pages (PDFs only)")

    model_config = ConfigDict(extra="allow")


class LoadedDocument(BaseModel):
    """Full text of a source file, as returned by a DocumentLoader."""

    text: str = Field(min_length=1, description="Full extracted text content")
    metadata: DocumentMetadata
    pages: list[dict[str, Any]] | None = Field(
        None,
        description="Page-level data for PDFs: [{'page_num': 1, 'text': '...'}, ...]"
    )


# ---------------------------------------------------------------------------
# Search contract
# ---------------------------------------------------------------------------


class LexicalHit(BaseModel):
    entry_id: str
    score: float = Field(description="Store relevance score, higher is better")


class VectorHit(BaseModel):
    entry_id: str
    similarity: float = Field(ge=0.0, le=1.0)


class SearchRequest(BaseModel):
    """
    Validated search input.

    ``query`` is trimmed and must be 2-500 characters. ``limit`` and
    ``offset`` are clamped rather than rejected.
    """

    query: str = Field(min_length=MIN_QUERY_LENGTH, max_length=MAX_QUERY_LENGTH)
    mode: SearchMode = SearchMode.HYBRID
    limit: int = DEFAULT_SEARCH_LIMIT
    offset: int = 0
    document_id: str | None = None

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp_limit(cls, value: Any) -> int:
        if value is None:
            return DEFAULT_SEARCH_LIMIT
        return max(1, min(MAX_SEARCH_LIMIT, int(value)))

    @field_validator("offset", mode="before")
    @classmethod
    def _clamp_offset(cls, value: Any) -> int:
        if value is None:
            return 0
        return max(0, int(value))


class SearchResult(BaseModel):
    """A ranked, labelled, highlighted entry."""

    entry: EntryWithContext
    relevance: float = Field(ge=0.0, le=1.0)
    match_type: MatchType
    highlights: list[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    results: list[SearchResult] = Field(default_factory=list)
    total: int = Field(ge=0, description="Length of the full merged ranking, before pagination")
    query: str
    mode: SearchMode


class IngestionReport(BaseModel):
    """Outcome of ingesting one source."""

    document_id: str
    name: str
    status: DocumentStatus
    skipped: bool = False
    chapters: int = 0
    sections: int = 0
    entries: int = 0
    spells: int = 0
    monsters: int = 0
    embeddings: int = 0


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------


class CorpusStore(ABC):
    """
    Search-facing contract of the corpus store.

    All three primitives only see documents whose status is ``completed``.
    """

    @abstractmethod
    async def lexical_search(
        self, query: str, limit: int, document_id: str | None = None
    ) -> list[LexicalHit]:
        """Full-text search, best first."""

    @abstractmethod
    async def vector_search(
        self, embedding: list[float], limit: int, document_id: str | None = None
    ) -> list[VectorHit]:
        """Nearest-neighbour search over entry embeddings, best first."""

    @abstractmethod
    async def fetch_entries_with_context(self, entry_ids: list[str]) -> list[EntryWithContext]:
        """
        Load entries with their section, chapter and document.

        Order follows ``entry_ids``; ids that cannot be resolved are dropped.
        """


class EmbeddingProvider(ABC):
    """Maps text to fixed-dimension vectors. May be unavailable."""

    async def initialize(self) -> None:
        """Acquire resources (load a model, open a client)."""

    async def shutdown(self) -> None:
        """Release resources acquired by initialize()."""

    @abstractmethod
    def is_available(self) -> bool:
        """True when embed() can be called right now."""

    @property
    @abstractmethod
    def dimension(self) -> int | None:
        """Vector dimension, or None if unknown until the first call."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> np.ndarray:
        """Embed a batch; returns an array of shape (len(texts), dimension)."""

    async def embed_query(self, text: str) -> list[float]:
        embeddings = await self.embed([text])
        return embeddings[0].tolist()


class DocumentLoader(ABC):
    """
    Abstract base class for document loaders.

    Each file format has its own loader implementation:
    - TextLoader: Reads UTF-8 plain text files
    - PDFLoader: Uses PyMuPDF to extract text and page numbers

    The IngestionPipeline selects the appropriate loader based on file extension.
    """

    @abstractmethod
    async def load(self, file_path: Path) -> LoadedDocument:
        """
        Load a document from a file path.

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If file is empty or not a file
        """

    @abstractmethod
    def supports_format(self, file_path: Path) -> bool:
        """Check if this loader supports the given file format."""
