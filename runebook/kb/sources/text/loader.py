"""
Plain text document loader.

Loads .txt rulebook exports. Exports made with ``pdftotext`` separate
pages with form feeds; those become blank-line page breaks (so a page
break always ends a paragraph) and are reported as pages.
"""

from pathlib import Path
from typing import Any

import aiofiles

from runebook.config.logging import get_logger
from runebook.kb.base import DocumentLoader, DocumentMetadata, FileType, LoadedDocument

logger = get_logger(__name__)

PAGE_BREAK = "\f"


def split_pages(text: str) -> list[dict[str, Any]]:
    """Split form-feed separated text into numbered, non-blank pages."""
    return [
        {"page_num": number, "text": page_text}
        for number, page_text in enumerate(text.split(PAGE_BREAK), start=1)
        if page_text.strip()
    ]


class TextLoader(DocumentLoader):
    """
    Loader for plain text files (.txt).

    A UTF-8 byte order mark is dropped. Files without form feeds are
    returned unchanged, with no page data.

    Example:
        >>> loader = TextLoader()
        >>> doc = await loader.load(Path("basic_rules.txt"))
        >>> print(doc.metadata.title)
        "basic_rules"
    """

    def supports_format(self, file_path: Path) -> bool:
        return file_path.suffix.lower() == ".txt"

    async def load(self, file_path: Path) -> LoadedDocument:
        """
        Load a plain text file.

        Raises:
            FileNotFoundError: If file doesn't exist
            UnicodeDecodeError: If the file is not UTF-8
            IOError: If file cannot be read
            ValueError: If file is empty or not a file
        """
        if not file_path.exists():
            raise FileNotFoundError(f"Text file not found: {file_path}")

        if not file_path.is_file():
            raise ValueError(f"Path is not a file: {file_path}")

        logger.info(f"Loading text file: {file_path}")

        try:
            async with aiofiles.open(file_path, "r", encoding="utf-8-sig") as f:
                text = await f.read()

        except UnicodeDecodeError:
            logger.error(f"Failed to decode text file (not UTF-8): {file_path}")
            raise

        except OSError as e:
            logger.error(f"Failed to read text file {file_path}: {e}")
            raise IOError(f"Could not load text file '{file_path}': {e}") from e

        if not text.strip():
            raise ValueError(f"Text file is empty: {file_path}")

        pages = None
        if PAGE_BREAK in text:
            pages = split_pages(text)
            text = "\n\n".join(page["text"].strip("\n") for page in pages)
            logger.debug(f"Split {file_path.name} into {len(pages)} pages at form feeds")

        metadata = DocumentMetadata(
            source_file=str(file_path),
            source_type=FileType.TXT,
            title=file_path.stem,
            page_count=len(pages) if pages else None,
        )

        logger.info(f"Loaded text file: {file_path.name} ({len(text)} characters)")

        return LoadedDocument(text=text, metadata=metadata, pages=pages)
