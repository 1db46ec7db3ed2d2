"""
Source-specific document loaders.

Each subdirectory owns one data-source type:

    sources/pdf/   PDF loader (PyMuPDF, optional OCR fallback)
    sources/text/  Plain-text loader

Loaders only turn files into text; structure is recovered afterwards by
runebook.kb.parser.
"""
