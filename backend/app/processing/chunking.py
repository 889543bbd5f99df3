"""
Text Chunker  —  Recursive Character Windows over Structured Sections
═════════════════════════════════════════════════════════════════════

Target length
─────────────
  CHUNK_SIZE    = 1000 characters (settings.chunk_size)
  CHUNK_OVERLAP =  200 characters (settings.chunk_overlap)

  Retrieval quality depends on this number, so it is fixed and configured
  in one place. 1000 characters is roughly 250 tokens for
  text-embedding-3-small and a few paragraphs of Japanese prose.

Windowing
─────────
  1. Normalize (NFC, strip control characters, collapse blank-line runs).
  2. Split the text into sections at the structural markers emitted by the
     Extraction Engine ([TABLE], [KEY_VALUE], [LIST]). A marker section that
     fits in one chunk is kept whole so a table is never split mid-row.
  3. Anything longer goes through LangChain's RecursiveCharacterTextSplitter
     (paragraph → line → sentence → word → character separators) with
     add_start_index, so every window keeps its offset in the document.
  4. A document no longer than CHUNK_SIZE is a single chunk.

Chunk ids are uuid5(document_id:start_offset). Re-processing the same text
yields the same ids, so an index upsert replaces rather than duplicates.
"""

from __future__ import annotations

import logging
import re
import unicodedata
import uuid
from dataclasses import dataclass

from langchain_text_splitters import RecursiveCharacterTextSplitter

from app.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

SEPARATORS = ["\n\n", "\n", "。", ". ", " ", ""]

CHUNK_ID_NAMESPACE = uuid.UUID("6f1c3c2e-8d4b-4a7e-9b9e-2f4d5c6a7b80")

_CONTROL_RE       = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_BLANK_RUN_RE     = re.compile(r"\n{3,}")
_SECTION_START_RE = re.compile(r"^\[(TABLE|KEY_VALUE|LIST)\]$", re.MULTILINE)

_SECTION_KINDS = {"TABLE": "table", "KEY_VALUE": "key_value", "LIST": "list"}


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ChunkResult:
    """
    A single chunk ready for embedding and indexing.

    start_offset / end_offset index into the normalized document text.
    section is "text" | "table" | "key_value" | "list".
    """
    chunk_id:     str
    document_id:  str
    chunk_index:  int
    text:         str
    start_offset: int
    end_offset:   int
    section:      str = "text"

    @property
    def char_count(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class TextChunker:
    """
    Stateless chunker.

    Usage:
        chunker = TextChunker()
        chunks = chunker.chunk(extracted.text, document_id=str(doc.id))
    """

    def __init__(self, chunk_size: int | None = None, chunk_overlap: int | None = None) -> None:
        self.chunk_size    = chunk_size or settings.chunk_size
        self.chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            separators=SEPARATORS,
            keep_separator="end",
            add_start_index=True,
        )

    def chunk(self, text: str, document_id: str) -> list[ChunkResult]:
        text = normalize_text(text)
        if not text.strip():
            logger.warning("TextChunker: empty text for doc=%s", document_id)
            return []

        pieces: list[tuple[int, str, str]] = []
        if len(text) <= self.chunk_size:
            pieces.append((0, text, "text"))
        else:
            for start, end, kind in _sections(text):
                if kind != "text" and end - start <= self.chunk_size:
                    pieces.append((start, text[start:end], kind))
                else:
                    pieces.extend((offset, window, kind) for offset, window in self._windows(text, start, end))

        results: list[ChunkResult] = []
        for start, piece, kind in pieces:
            stripped = piece.strip()
            if not stripped:
                continue
            offset = start + (len(piece) - len(piece.lstrip()))
            results.append(ChunkResult(
                chunk_id=make_chunk_id(document_id, offset),
                document_id=document_id,
                chunk_index=len(results),
                text=stripped,
                start_offset=offset,
                end_offset=offset + len(stripped),
                section=kind,
            ))

        logger.info(
            "TextChunker | doc=%s chunks=%d avg_chars=%.0f",
            document_id, len(results),
            sum(c.char_count for c in results) / max(1, len(results)),
        )
        return results

    def _windows(self, text: str, start: int, stop: int) -> list[tuple[int, str]]:
        """(absolute offset, window text) for text[start:stop]."""
        section = text[start:stop]
        windows: list[tuple[int, str]] = []
        for doc in self._splitter.create_documents([section]):
            local = doc.metadata.get("start_index", -1)
            if local < 0:
                local = section.find(doc.page_content)
            windows.append((start + local, doc.page_content))
        return windows


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _sections(text: str) -> list[tuple[int, int, str]]:
    """(start, end, kind) spans split at structural marker lines."""
    marks = [(m.start(), _SECTION_KINDS[m.group(1)]) for m in _SECTION_START_RE.finditer(text)]
    if not marks or marks[0][0] != 0:
        marks.insert(0, (0, "text"))
    bounds = [pos for pos, _ in marks[1:]] + [len(text)]
    return [(pos, end, kind) for (pos, kind), end in zip(marks, bounds)]


def normalize_text(text: str) -> str:
    """
    Normalize unicode (NFC), drop control characters other than tab and
    newline, unify line endings and collapse runs of blank lines.
    """
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_RE.sub("", text)
    return _BLANK_RUN_RE.sub("\n\n", text)


def make_chunk_id(document_id: str, start_offset: int) -> str:
    """Deterministic chunk id: uuid5 of document id and start offset."""
    return str(uuid.uuid5(CHUNK_ID_NAMESPACE, f"{document_id}:{start_offset}"))
