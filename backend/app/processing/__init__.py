"""
Document Processing Package
════════════════════════════

  Text Extraction → Chunking → Embedding

Modules
───────
  analysis.py   Provider adapters (plain text, Textract layout, python-docx)
  extractor.py  Extraction Engine: model dispatch table, assembly, confidence
  chunking.py   Fixed-target chunker with paragraph / word boundary snapping
  embeddings.py Guarded single-text embedding client with retry
  errors.py     Extraction and embedding error taxonomy
"""

from app.processing.chunking import ChunkResult, TextChunker
from app.processing.embeddings import EmbeddingClient
from app.processing.errors import (
    EmbeddingError,
    EmbeddingUpstreamError,
    EmbeddingValidationError,
    ExtractionError,
    NoContentExtractedError,
    PayloadTooLargeError,
    TerminalExtractionError,
    TransientExtractionError,
    UnsupportedFileTypeError,
)
from app.processing.extractor import ExtractedContent, ExtractionEngine

__all__ = [
    "ChunkResult",
    "TextChunker",
    "EmbeddingClient",
    "ExtractedContent",
    "ExtractionEngine",
    "EmbeddingError",
    "EmbeddingUpstreamError",
    "EmbeddingValidationError",
    "ExtractionError",
    "NoContentExtractedError",
    "PayloadTooLargeError",
    "TerminalExtractionError",
    "TransientExtractionError",
    "UnsupportedFileTypeError",
]
