"""
Runebook - rules knowledge base for tabletop RPG rulebooks.

This package parses unstructured rulebook text into a hierarchical corpus
(documents, chapters, sections, entries), persists it, and answers
natural-language questions with hybrid lexical + semantic retrieval.
"""

__version__ = "0.1.0"
