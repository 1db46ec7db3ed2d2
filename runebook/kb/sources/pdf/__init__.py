"""
PDF source: loader.

Requires PyMuPDF (fitz).
"""

from runebook.kb.sources.pdf.loader import PDFLoadError, PDFLoader

__all__ = ["PDFLoadError", "PDFLoader"]
