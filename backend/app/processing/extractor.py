"""
Extraction Engine
═════════════════

Turns a raw file buffer into normalized text plus a confidence score.

Model selection
───────────────
A dispatch table maps the file extension to a `ModelDescriptor`. Adding a
format means adding a row to EXTRACTION_MODELS (and, for a new provider, an
entry in the analyzer registry), never a new branch in `extract()`.

  read   .txt .md .csv           raw content, no structural confidence
  layout .pdf .png .jpg .tiff    paragraphs + tables + key-values + lists
  docx   .docx                   paragraphs + tables + list items

Assembly (structured models)
────────────────────────────
  1. paragraph contents, trimmed, joined with blank lines
  2. each table as a `[TABLE]` block, one row per line, cells joined " | "
  3. key-value pairs as `key: value` lines
  4. list items as `• item` lines
Word count is the whitespace-split count over every emitted segment.

Confidence
──────────
Flat mean of every paragraph, table, key and value confidence that is > 0,
rounded to 2 decimals. No usable samples gives 0.0, which is a valid result.

This module has no side effects; persisting the outcome is the caller's job.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field

from app.core.config import settings
from app.processing.analysis import (
    AnalyzeResult,
    BaseDocumentAnalyzer,
    BlobLocation,
    DocxAnalyzer,
    PlainTextReader,
    TextractLayoutAnalyzer,
)
from app.processing.errors import (
    ExtractionError,
    NoContentExtractedError,
    PayloadTooLargeError,
    UnsupportedFileTypeError,
)

logger = logging.getLogger(__name__)

TABLE_MARKER     = "[TABLE]"
KEY_VALUE_MARKER = "[KEY_VALUE]"
LIST_MARKER      = "[LIST]"
LIST_BULLET      = "• "

# 1x1 white PNG used by probe()
_PROBE_PNG = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c63f8ffff3f0005fe02fea7d6a5a20000"
    "000049454e44ae426082"
)


# ---------------------------------------------------------------------------
# Model dispatch table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelDescriptor:
    """
    name       : model identifier recorded on ExtractedContent
    analyzer   : key into the engine's analyzer registry
    structured : True → assemble from structural elements,
                 False → use the provider's raw content as-is
    """
    name:       str
    analyzer:   str
    structured: bool


READ_MODEL   = ModelDescriptor(name="read",   analyzer="read",   structured=False)
LAYOUT_MODEL = ModelDescriptor(name="layout", analyzer="layout", structured=True)
DOCX_MODEL   = ModelDescriptor(name="docx",   analyzer="docx",   structured=True)

EXTRACTION_MODELS: dict[str, ModelDescriptor] = {
    ".txt":  READ_MODEL,
    ".md":   READ_MODEL,
    ".csv":  READ_MODEL,
    ".pdf":  LAYOUT_MODEL,
    ".png":  LAYOUT_MODEL,
    ".jpg":  LAYOUT_MODEL,
    ".jpeg": LAYOUT_MODEL,
    ".tif":  LAYOUT_MODEL,
    ".tiff": LAYOUT_MODEL,
    ".docx": DOCX_MODEL,
}


def file_extension(file_name: str) -> str:
    """Lower-cased extension including the dot; '' when absent."""
    return os.path.splitext(file_name or "")[1].lower()


def default_analyzers() -> dict[str, BaseDocumentAnalyzer]:
    return {
        "read":   PlainTextReader(),
        "layout": TextractLayoutAnalyzer(
            region=settings.textract_region or settings.aws_region,
            timeout_seconds=settings.extraction_timeout_seconds,
            poll_interval=settings.extraction_poll_interval_seconds,
        ),
        "docx":   DocxAnalyzer(),
    }


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractedContent:
    """
    Ephemeral extraction output, consumed immediately by the chunker.

    text               : normalized text, never empty on success
    word_count         : whitespace-split count across emitted segments
    pages              : page count reported by the provider
    confidence         : flat mean of usable samples (0–1)
    confidence_samples : the samples the mean was computed from
    model              : model descriptor name ("read" | "layout" | "docx")
    duration_ms        : wall time of the provider call plus assembly
    """
    text:               str
    word_count:         int
    pages:              int
    confidence:         float
    confidence_samples: list[float] = field(default_factory=list)
    model:              str   = "read"
    duration_ms:        float = 0.0
    table_count:        int   = 0
    key_value_count:    int   = 0


# ---------------------------------------------------------------------------
# Assembly + confidence (pure functions)
# ---------------------------------------------------------------------------

def assemble_text(result: AnalyzeResult, structured: bool = True) -> tuple[str, int]:
    """Return (normalized text, word count) for an analysis result."""
    if not structured:
        text = result.content.strip()
        return text, len(text.split())

    segments: list[str] = []

    paragraphs = [p.content.strip() for p in result.paragraphs if p.content.strip()]
    if paragraphs:
        segments.append("\n\n".join(paragraphs))
    elif result.content.strip():
        segments.append(result.content.strip())

    for table in result.tables:
        rows = table.rows()
        if rows:
            segments.append("\n".join([TABLE_MARKER] + [" | ".join(row) for row in rows]))

    kv_lines = [
        f"{kv.key.strip()}: {kv.value.strip()}"
        for kv in result.key_value_pairs
        if kv.key.strip()
    ]
    if kv_lines:
        segments.append("\n".join([KEY_VALUE_MARKER] + kv_lines))

    for items in result.lists:
        bullets = [f"{LIST_BULLET}{item.strip()}" for item in items if item.strip()]
        if bullets:
            segments.append("\n".join([LIST_MARKER] + bullets))

    word_count = sum(len(segment.split()) for segment in segments)
    return "\n\n".join(segments), word_count


def confidence_samples(result: AnalyzeResult) -> list[float]:
    samples = [p.confidence for p in result.paragraphs]
    samples += [t.confidence for t in result.tables]
    for kv in result.key_value_pairs:
        samples += [kv.key_confidence, kv.value_confidence]
    return [s for s in samples if s and s > 0]


def aggregate_confidence(samples: list[float]) -> float:
    if not samples:
        return 0.0
    return round(sum(samples) / len(samples), 2)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ExtractionEngine:
    """
    extract(file_bytes, file_name) → ExtractedContent | raises ExtractionError

    Stateless apart from the analyzer registry; safe for concurrent use.
    """

    def __init__(
        self,
        analyzers: dict[str, BaseDocumentAnalyzer] | None = None,
        models: dict[str, ModelDescriptor] | None = None,
        max_bytes: int | None = None,
    ) -> None:
        self._analyzers = analyzers if analyzers is not None else default_analyzers()
        self._models    = models or EXTRACTION_MODELS
        self._max_bytes = max_bytes or settings.extraction_max_bytes

    @property
    def supported_extensions(self) -> list[str]:
        return sorted(self._models)

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def is_supported(self, file_name: str) -> bool:
        return file_extension(file_name) in self._models

    def select_model(self, file_name: str) -> ModelDescriptor:
        ext = file_extension(file_name)
        model = self._models.get(ext)
        if model is None:
            raise UnsupportedFileTypeError(
                f"File type '{ext or 'unknown'}' is not supported for extraction.",
                status_code=415,
            )
        return model

    async def extract(
        self,
        file_bytes: bytes,
        file_name: str,
        *,
        location: BlobLocation | None = None,
    ) -> ExtractedContent:
        model = self.select_model(file_name)
        if len(file_bytes) > self._max_bytes:
            raise PayloadTooLargeError(
                f"File is {len(file_bytes):,} bytes; the limit is {self._max_bytes:,} bytes.",
                status_code=413,
            )
        if not file_bytes:
            raise NoContentExtractedError("The file is empty; no text could be extracted.")

        t0 = time.monotonic()
        result = await self._analyzers[model.analyzer].analyze(file_bytes, location=location)

        if not result.content.strip() and not result.paragraphs:
            raise NoContentExtractedError(
                "No text content was found in the document (empty or image without text).",
            )

        text, word_count = assemble_text(result, structured=model.structured)
        if not text:
            raise NoContentExtractedError(
                "The document was analyzed but produced no usable text.",
            )

        samples = confidence_samples(result) if model.structured else []
        content = ExtractedContent(
            text=text,
            word_count=word_count,
            pages=max(result.pages, 1),
            confidence=aggregate_confidence(samples),
            confidence_samples=samples,
            model=model.name,
            duration_ms=(time.monotonic() - t0) * 1000,
            table_count=len(result.tables),
            key_value_count=len(result.key_value_pairs),
        )

        logger.info(
            "Extraction complete | file=%s model=%s pages=%d words=%d confidence=%.2f elapsed_ms=%.0f",
            file_name, content.model, content.pages, content.word_count,
            content.confidence, content.duration_ms,
        )
        return content

    async def probe(self, timeout: float | None = None) -> dict:
        """
        Connectivity check against the layout provider using a tiny image.
        The in-flight analysis is cancelled when the timeout elapses.
        """
        timeout = timeout or settings.extraction_probe_timeout_seconds
        t0 = time.monotonic()
        task = asyncio.ensure_future(self._analyzers[LAYOUT_MODEL.analyzer].analyze(_PROBE_PNG))
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Extraction probe timed out | timeout=%.1fs", timeout)
            return {"status": "timeout", "elapsed_ms": round((time.monotonic() - t0) * 1000)}
        except NoContentExtractedError:
            pass   # a blank image proves the provider answered
        except ExtractionError as exc:
            logger.warning("Extraction probe failed | code=%s reason=%s", exc.error_code, exc.reason)
            return {
                "status":     "error",
                "error_code": exc.error_code,
                "reason":     exc.reason,
                "elapsed_ms": round((time.monotonic() - t0) * 1000),
            }
        return {"status": "ok", "elapsed_ms": round((time.monotonic() - t0) * 1000)}
