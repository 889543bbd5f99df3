"""
Document Analysis Providers
═══════════════════════════

Each provider turns raw file bytes into an `AnalyzeResult`: raw content plus
structural elements (paragraphs, tables, key-value pairs, lists) with a
per-element confidence in 0–1. The Extraction Engine picks a provider through
its model table and never sees provider-specific payloads.

  PlainTextReader        "read"   — text-like files decoded in-process
  TextractLayoutAnalyzer "layout" — AWS Textract AnalyzeDocument
                                    (TABLES + FORMS + LAYOUT)
  DocxAnalyzer           "docx"   — python-docx paragraphs and tables

Textract paths
──────────────
  Sync  (analyze_document, raw bytes) for images and single-page PDFs.
  Async (start_document_analysis on the S3 object) for PDFs that already live
  in the blob store; polled until SUCCEEDED with asyncio.sleep between polls.

boto3 is synchronous, so every call runs in the default thread executor.
Provider failures are translated into the extraction error taxonomy here so
the engine and pipeline only reason about retryable vs terminal.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from app.processing.errors import (
    ExtractionError,
    PayloadTooLargeError,
    TerminalExtractionError,
    TransientExtractionError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

TEXTRACT_FEATURE_TYPES = ["TABLES", "FORMS", "LAYOUT"]

# Sync AnalyzeDocument rejects anything larger than this
TEXTRACT_SYNC_MAX_BYTES = 10 * 1024 * 1024

_PARAGRAPH_LAYOUT_TYPES = frozenset({
    "LAYOUT_TITLE",
    "LAYOUT_HEADER",
    "LAYOUT_SECTION_HEADER",
    "LAYOUT_TEXT",
    "LAYOUT_FOOTER",
})

_THROTTLING_CODES = frozenset({
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "LimitExceededException",
    "TooManyRequestsException",
})
_SERVER_CODES = frozenset({
    "InternalServerError",
    "ServiceUnavailable",
    "ServiceUnavailableException",
})
_AUTH_CODES = frozenset({
    "AccessDeniedException",
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "ExpiredTokenException",
})
_UNSUPPORTED_CODES = frozenset({
    "UnsupportedDocumentException",
    "BadDocumentException",
    "InvalidS3ObjectException",
})


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class AnalyzedParagraph:
    content:    str
    confidence: float = 0.0


@dataclass
class AnalyzedCell:
    row:     int      # 0-based
    column:  int      # 0-based
    content: str


@dataclass
class AnalyzedTable:
    cells:      list[AnalyzedCell] = field(default_factory=list)
    confidence: float = 0.0

    def rows(self) -> list[list[str]]:
        """Cell contents ordered by row then column; gaps filled with ''."""
        if not self.cells:
            return []
        width = max(c.column for c in self.cells) + 1
        grid: dict[int, dict[int, str]] = {}
        for cell in self.cells:
            grid.setdefault(cell.row, {})[cell.column] = cell.content.strip()
        return [
            [grid[r].get(c, "") for c in range(width)]
            for r in sorted(grid)
        ]


@dataclass
class AnalyzedKeyValue:
    key:              str
    value:            str
    key_confidence:   float = 0.0
    value_confidence: float = 0.0


@dataclass
class AnalyzeResult:
    """
    Provider-neutral analysis output.

    content : raw reading-order text (may be empty for layout results)
    pages   : page count reported by the provider (at least 1 on success)
    """
    model_id:        str
    content:         str = ""
    pages:           int = 0
    paragraphs:      list[AnalyzedParagraph] = field(default_factory=list)
    tables:          list[AnalyzedTable]     = field(default_factory=list)
    key_value_pairs: list[AnalyzedKeyValue]  = field(default_factory=list)
    lists:           list[list[str]]         = field(default_factory=list)


@dataclass(frozen=True)
class BlobLocation:
    """Where the source file already lives, for providers that read it directly."""
    bucket: str
    key:    str


# ---------------------------------------------------------------------------
# Abstract provider
# ---------------------------------------------------------------------------

class BaseDocumentAnalyzer(ABC):
    """
    All implementations:
      - Accept raw bytes (never a file path — keeps workers stateless)
      - Return AnalyzeResult
      - Raise only ExtractionError subclasses
    """

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Model identifier used in logs and on ExtractedContent."""

    @abstractmethod
    async def analyze(
        self,
        data: bytes,
        *,
        location: BlobLocation | None = None,
    ) -> AnalyzeResult:
        """Analyze a document provided as raw bytes."""


# ---------------------------------------------------------------------------
# "read" — text-like files
# ---------------------------------------------------------------------------

class PlainTextReader(BaseDocumentAnalyzer):
    """UTF-8 with BOM handling, latin-1 as the last resort (never fails)."""

    @property
    def model_id(self) -> str:
        return "read"

    async def analyze(self, data: bytes, *, location: BlobLocation | None = None) -> AnalyzeResult:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = data.decode("latin-1")
        return AnalyzeResult(model_id=self.model_id, content=text, pages=1)


# ---------------------------------------------------------------------------
# "docx" — Word documents
# ---------------------------------------------------------------------------

class DocxAnalyzer(BaseDocumentAnalyzer):
    """
    python-docx exposes no confidence, so docx paragraphs contribute no
    confidence samples. List-styled paragraphs become list items.
    """

    @property
    def model_id(self) -> str:
        return "docx"

    async def analyze(self, data: bytes, *, location: BlobLocation | None = None) -> AnalyzeResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._analyze_sync, data)

    def _analyze_sync(self, data: bytes) -> AnalyzeResult:
        from docx import Document as DocxDocument
        from docx.opc.exceptions import PackageNotFoundError

        try:
            doc = DocxDocument(io.BytesIO(data))
        except (PackageNotFoundError, ValueError, KeyError) as exc:
            raise TerminalExtractionError(
                "The Word document could not be opened; the file may be corrupt.",
                status_code=415,
            ) from exc

        paragraphs: list[AnalyzedParagraph] = []
        items: list[str] = []
        for para in doc.paragraphs:
            text = para.text.strip()
            if not text:
                continue
            style = (para.style.name if para.style is not None else "") or ""
            if style.startswith("List"):
                items.append(text)
            else:
                paragraphs.append(AnalyzedParagraph(content=text))

        tables = [
            AnalyzedTable(cells=[
                AnalyzedCell(row=r, column=c, content=cell.text)
                for r, row in enumerate(table.rows)
                for c, cell in enumerate(row.cells)
            ])
            for table in doc.tables
        ]

        return AnalyzeResult(
            model_id=self.model_id,
            content="\n".join(p.content for p in paragraphs),
            pages=1,
            paragraphs=paragraphs,
            tables=tables,
            lists=[items] if items else [],
        )


# ---------------------------------------------------------------------------
# "layout" — AWS Textract
# ---------------------------------------------------------------------------

class TextractLayoutAnalyzer(BaseDocumentAnalyzer):
    """
    AWS Textract AnalyzeDocument with TABLES, FORMS and LAYOUT features.

    IAM permissions required on the worker role:
      textract:AnalyzeDocument
      textract:StartDocumentAnalysis
      textract:GetDocumentAnalysis
      s3:GetObject   (async path reads the object directly)
    """

    def __init__(
        self,
        region: str = "us-east-1",
        timeout_seconds: float = 120.0,
        poll_interval: float = 2.0,
        client=None,
    ) -> None:
        self._region        = region
        self._timeout       = timeout_seconds
        self._poll_interval = poll_interval
        self._client        = client

    @property
    def model_id(self) -> str:
        return "layout"

    def _textract(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("textract", region_name=self._region)
        return self._client

    async def analyze(self, data: bytes, *, location: BlobLocation | None = None) -> AnalyzeResult:
        loop = asyncio.get_running_loop()
        t0   = time.monotonic()
        use_job = location is not None and data[:5] == b"%PDF-"

        try:
            if use_job:
                blocks = await asyncio.wait_for(self._analyze_job(location), timeout=self._timeout)
            else:
                if len(data) > TEXTRACT_SYNC_MAX_BYTES:
                    raise PayloadTooLargeError(
                        "The file is too large for synchronous analysis.",
                        status_code=413,
                    )
                response = await asyncio.wait_for(
                    loop.run_in_executor(None, self._analyze_sync, data),
                    timeout=self._timeout,
                )
                blocks = response.get("Blocks", [])
        except asyncio.TimeoutError as exc:
            raise TransientExtractionError(
                f"Document analysis timed out after {self._timeout:.0f}s.",
            ) from exc
        except ClientError as exc:
            raise classify_client_error(exc) from exc
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as exc:
            raise TransientExtractionError(
                "Could not reach the document analysis service.",
            ) from exc

        result = parse_textract_blocks(blocks, model_id=self.model_id)
        logger.info(
            "Textract analyze ok | mode=%s pages=%d paragraphs=%d tables=%d kv=%d elapsed_ms=%.0f",
            "job" if use_job else "sync", result.pages, len(result.paragraphs),
            len(result.tables), len(result.key_value_pairs), (time.monotonic() - t0) * 1000,
        )
        return result

    def _analyze_sync(self, data: bytes) -> dict:
        return self._textract().analyze_document(
            Document={"Bytes": data},
            FeatureTypes=TEXTRACT_FEATURE_TYPES,
        )

    async def _analyze_job(self, location: BlobLocation) -> list[dict]:
        """Start an async analysis job on the S3 object and poll to completion."""
        loop   = asyncio.get_running_loop()
        client = self._textract()

        job = await loop.run_in_executor(
            None,
            lambda: client.start_document_analysis(
                DocumentLocation={"S3Object": {"Bucket": location.bucket, "Name": location.key}},
                FeatureTypes=TEXTRACT_FEATURE_TYPES,
            ),
        )
        job_id = job["JobId"]
        logger.info("Textract job started | job_id=%s key=%s", job_id, location.key)

        blocks: list[dict] = []
        next_token: str | None = None
        while True:
            kwargs = {"JobId": job_id}
            if next_token:
                kwargs["NextToken"] = next_token
            page = await loop.run_in_executor(None, lambda: client.get_document_analysis(**kwargs))
            status = page["JobStatus"]

            if status == "IN_PROGRESS":
                await asyncio.sleep(self._poll_interval)
                continue
            if status == "FAILED":
                raise TerminalExtractionError(
                    f"Document analysis failed: {page.get('StatusMessage') or 'unknown reason'}",
                )

            blocks.extend(page.get("Blocks", []))
            next_token = page.get("NextToken")
            if not next_token:
                return blocks


def classify_client_error(exc: ClientError) -> ExtractionError:
    """Map a botocore ClientError onto the extraction error taxonomy."""
    error  = exc.response.get("Error", {})
    code   = error.get("Code", "")
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

    if status == 429 or code in _THROTTLING_CODES:
        return TransientExtractionError(
            "The document analysis service is rate limiting requests.", status_code=429,
        )
    if code in _AUTH_CODES or status in (401, 403):
        return TerminalExtractionError(
            "Authentication with the document analysis service failed.", status_code=401,
        )
    if code == "DocumentTooLargeException" or status == 413:
        return PayloadTooLargeError(
            "The file exceeds the document analysis size limit.", status_code=413,
        )
    if code in _UNSUPPORTED_CODES or status == 415:
        return TerminalExtractionError(
            "The file format was rejected by the document analysis service.", status_code=415,
        )
    if code in _SERVER_CODES or (status is not None and status >= 500):
        return TransientExtractionError(
            "The document analysis service returned a server error.", status_code=status or 500,
        )
    return TerminalExtractionError(
        f"Document analysis failed ({code or 'unknown error'}).", status_code=status,
    )


# ---------------------------------------------------------------------------
# Textract block parsing
# ---------------------------------------------------------------------------

def parse_textract_blocks(blocks: list[dict], model_id: str = "layout") -> AnalyzeResult:
    """
    Rebuild paragraphs, tables, key-value pairs and lists from a flat
    Textract block list. Confidences are normalized from 0–100 to 0–1.
    """
    by_id = {b["Id"]: b for b in blocks if "Id" in b}

    def related(block: dict, rel_type: str = "CHILD") -> list[dict]:
        ids = [
            i
            for rel in block.get("Relationships", [])
            if rel.get("Type") == rel_type
            for i in rel.get("Ids", [])
        ]
        return [by_id[i] for i in ids if i in by_id]

    def text_of(block: dict) -> str:
        children = related(block)
        words = [c.get("Text", "") for c in children if c.get("BlockType") == "WORD"]
        if words:
            return " ".join(words)
        lines = [c.get("Text", "") for c in children if c.get("BlockType") == "LINE"]
        return "\n".join(lines)

    def conf(block: dict) -> float:
        return float(block.get("Confidence", 0.0)) / 100.0

    lines = [b for b in blocks if b.get("BlockType") == "LINE"]
    page_count = sum(1 for b in blocks if b.get("BlockType") == "PAGE")

    # LAYOUT_TEXT blocks that belong to a list are emitted as list items only
    list_blocks = [b for b in blocks if b.get("BlockType") == "LAYOUT_LIST"]
    list_member_ids = {c["Id"] for lb in list_blocks for c in related(lb)}

    paragraphs = [
        AnalyzedParagraph(content=text_of(b), confidence=conf(b))
        for b in blocks
        if b.get("BlockType") in _PARAGRAPH_LAYOUT_TYPES and b.get("Id") not in list_member_ids
    ]
    if not paragraphs and not any(b.get("BlockType", "").startswith("LAYOUT_") for b in blocks):
        paragraphs = [AnalyzedParagraph(content=b.get("Text", ""), confidence=conf(b)) for b in lines]

    tables = []
    for table in (b for b in blocks if b.get("BlockType") == "TABLE"):
        cells = [
            AnalyzedCell(
                row=int(cell.get("RowIndex", 1)) - 1,
                column=int(cell.get("ColumnIndex", 1)) - 1,
                content=text_of(cell),
            )
            for cell in related(table)
            if cell.get("BlockType") == "CELL"
        ]
        tables.append(AnalyzedTable(cells=cells, confidence=conf(table)))

    key_values = []
    for kv in blocks:
        if kv.get("BlockType") != "KEY_VALUE_SET" or "KEY" not in kv.get("EntityTypes", []):
            continue
        values = related(kv, "VALUE")
        key_values.append(AnalyzedKeyValue(
            key=text_of(kv),
            value=" ".join(text_of(v) for v in values),
            key_confidence=conf(kv),
            value_confidence=conf(values[0]) if values else 0.0,
        ))

    lists = [
        [text_of(item) for item in related(lb) if text_of(item).strip()]
        for lb in list_blocks
    ]

    return AnalyzeResult(
        model_id=model_id,
        content="\n".join(line.get("Text", "") for line in lines),
        pages=page_count or (1 if lines else 0),
        paragraphs=paragraphs,
        tables=tables,
        key_value_pairs=key_values,
        lists=[items for items in lists if items],
    )
