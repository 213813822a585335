"""
Document Processing Package
════════════════════════════

The building blocks of the ingestion pipeline:

  Text Extraction → Chunking → Embedding

Modules
───────
  extractor.py   File type → extractor registry (txt, md, json, csv, pdf, docx)
  chunking.py    Strategy-selecting chunker (sections / paragraphs / recursive)
  embeddings.py  Provider interface + generator that logs every attempt

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • Heavy work runs in the Celery worker, never in the API process.
  • Every step emits structured log lines.
"""

from app.processing.chunking import TextChunk, chunk_text_smart
from app.processing.embeddings import EmbeddingGenerator, EmbeddingProvider
from app.processing.extractor import ExtractionResult, ExtractorRegistry

__all__ = [
    "ExtractionResult",
    "ExtractorRegistry",
    "TextChunk",
    "chunk_text_smart",
    "EmbeddingGenerator",
    "EmbeddingProvider",
]
