"""
PDF rulebook loader with optional OCR fallback for scanned pages.

Text is extracted page by page with PyMuPDF. A page is treated as scanned
when it yields fewer than 50 characters and contains at least one image;
such pages go through Tesseract via PyMuPDF's OCR integration when it is
installed. Individual page failures are logged and skipped.

Rulebook layouts repeat a running header or footer on every page and print
bare page numbers. Left in, they would end up inside entries and break
paragraphs, so they are removed before pages are joined. Pages are joined
with blank lines, so a page break always ends a paragraph.
"""

import asyncio
import re
import subprocess
from collections import Counter
from pathlib import Path
from typing import Any

import fitz  # PyMuPDF

from runebook.config.logging import get_logger
from runebook.kb.base import DocumentLoader, DocumentMetadata, FileType, LoadedDocument

logger = get_logger(__name__)

OCR_TEXT_THRESHOLD = 50
OCR_DPI = 300

# A first or last line repeated on this many pages is a running header/footer
RUNNING_LINE_MIN_PAGES = 3
PAGE_NUMBER_LINE = re.compile(r"^\s*\d{1,4}\s*$")


class PDFLoadError(Exception):
    """Raised when a PDF cannot be opened or read."""


def _edge_lines(text: str) -> tuple[str | None, str | None]:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines:
        return None, None
    return lines[0], lines[-1]


def strip_page_furniture(pages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Remove running headers/footers and bare page numbers from page texts.

    A line counts as a running header (footer) when it is the first (last)
    non-blank line of at least ``RUNNING_LINE_MIN_PAGES`` pages. Pages left
    without text are dropped.
    """
    firsts: Counter[str] = Counter()
    lasts: Counter[str] = Counter()
    for page in pages:
        first, last = _edge_lines(page["text"])
        if first is not None:
            firsts[first] += 1
            lasts[last] += 1

    running = {
        line
        for counts in (firsts, lasts)
        for line, n in counts.items()
        if n >= RUNNING_LINE_MIN_PAGES
    }

    cleaned = []
    for page in pages:
        lines = page["text"].splitlines()
        content = [i for i, line in enumerate(lines) if line.strip()]
        drop = set()
        if content:
            if lines[content[0]].strip() in running:
                drop.add(content[0])
            if lines[content[-1]].strip() in running:
                drop.add(content[-1])
        kept = [
            line for i, line in enumerate(lines)
            if i not in drop and not PAGE_NUMBER_LINE.match(line)
        ]
        text = "\n".join(kept).strip("\n")
        if text.strip():
            cleaned.append({**page, "text": text})

    if running:
        logger.debug(f"Removed running page lines: {sorted(running)}")
    return cleaned


class PDFLoader(DocumentLoader):
    """
    Loader for PDF rulebooks (.pdf).

    Each page in the returned document records its ``extraction_method``
    (``"text"`` or ``"ocr"``).

    Args:
        ocr_enabled: Attempt OCR on scanned pages (default: True)

    Example:
        >>> loader = PDFLoader(ocr_enabled=False)
        >>> doc = await loader.load(Path("srd.pdf"))
        >>> print(doc.metadata.page_count)
        403
    """

    def __init__(self, *, ocr_enabled: bool = True):
        self._ocr_enabled = ocr_enabled
        self._ocr_available: bool | None = None

    def supports_format(self, file_path: Path) -> bool:
        return file_path.suffix.lower() == ".pdf"

    def _check_ocr_available(self) -> bool:
        """Run ``tesseract --version`` once per loader and remember the answer."""
        if self._ocr_available is None:
            try:
                result = subprocess.run(["tesseract", "--version"], capture_output=True, timeout=5)
                self._ocr_available = result.returncode == 0
            except (FileNotFoundError, subprocess.TimeoutExpired):
                self._ocr_available = False
                logger.warning(
                    "Tesseract not found, OCR disabled. "
                    "Install tesseract-ocr to process scanned PDFs."
                )
        return self._ocr_available

    def _read_page(self, page: fitz.Page, page_num: int, file_name: str) -> dict[str, Any] | None:
        text = page.get_text()
        method = "text"

        scanned = len(text.strip()) < OCR_TEXT_THRESHOLD and bool(page.get_images(0))
        if self._ocr_enabled and scanned and self._check_ocr_available():
            try:
                textpage = page.get_textpage_ocr(dpi=OCR_DPI, full=True)
                text = page.get_text(textpage=textpage)
                method = "ocr"
            except Exception as e:
                logger.warning(f"OCR failed for page {page_num} of {file_name}: {e}")

        if not text.strip():
            logger.warning(f"Page {page_num} has no text: {file_name}")
            return None
        return {"page_num": page_num, "text": text, "extraction_method": method}

    def _extract_pages(self, file_path: Path) -> tuple[list[dict[str, Any]], list[int]]:
        pdf_doc = fitz.open(str(file_path))
        try:
            if pdf_doc.is_encrypted:
                raise PDFLoadError(f"PDF is encrypted and cannot be read: {file_path}")

            pages: list[dict[str, Any]] = []
            failed_pages: list[int] = []
            for index in range(len(pdf_doc)):
                try:
                    page = self._read_page(pdf_doc[index], index + 1, file_path.name)
                except Exception as e:
                    failed_pages.append(index + 1)
                    logger.warning(
                        f"Failed to extract text from page {index + 1} of {file_path.name}: {e}"
                    )
                    continue
                if page is not None:
                    pages.append(page)
        finally:
            pdf_doc.close()

        return strip_page_furniture(pages), failed_pages

    async def load(self, file_path: Path) -> LoadedDocument:
        """
        Load a PDF file, falling back to OCR on scanned pages.

        Returns:
            LoadedDocument whose ``pages`` hold ``page_num``, ``text`` and
            ``extraction_method`` for every page with text

        Raises:
            FileNotFoundError: If the file doesn't exist
            PDFLoadError: If the PDF cannot be opened or is encrypted
            ValueError: If no text could be extracted from any page
        """
        if not file_path.exists():
            raise FileNotFoundError(f"PDF file not found: {file_path}")

        if not file_path.is_file():
            raise ValueError(f"Path is not a file: {file_path}")

        logger.info(f"Loading PDF file: {file_path}")

        try:
            pages, failed_pages = await asyncio.to_thread(self._extract_pages, file_path)

        except fitz.FileDataError as e:
            logger.error(f"Invalid or corrupted PDF file: {file_path}")
            raise PDFLoadError(f"Invalid or corrupted PDF: {file_path}") from e

        except PDFLoadError:
            raise

        except Exception as e:
            logger.error(f"Failed to load PDF: {e}")
            raise PDFLoadError(f"Could not load PDF '{file_path}': {e}") from e

        if not pages:
            detail = f" (failed pages: {failed_pages})" if failed_pages else ""
            raise ValueError(f"PDF has no extractable text: {file_path}{detail}")

        full_text = "\n\n".join(page["text"] for page in pages)
        ocr_pages = sum(1 for page in pages if page["extraction_method"] == "ocr")

        metadata = DocumentMetadata(
            source_file=str(file_path),
            source_type=FileType.PDF,
            title=file_path.stem,
            page_count=len(pages),
        )

        if failed_pages:
            logger.warning(
                f"Loaded {len(pages)} pages from {file_path.name}, "
                f"but {len(failed_pages)} pages failed: {failed_pages}"
            )
        else:
            logger.info(
                f"Loaded PDF: {file_path.name} ({len(pages)} pages, "
                f"{ocr_pages} via OCR, {len(full_text)} characters)"
            )

        return LoadedDocument(text=full_text, metadata=metadata, pages=pages)
