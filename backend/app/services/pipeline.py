"""
Document Pipeline — download → extract → chunk → embed → index

One run per document, serialized per document id through a KeyedLock.
Stages are strictly sequential. Every stage failure, and a failure to
write the completed status, is caught and turned into status=error with a
reason. The claim (uploaded → processing) is a compare-and-set, so of two
processes racing on one document only one runs the stages; the other is
skipped.

Retries:
  blob download, extraction and index writes are retried with exponential
  backoff when the raised error is marked retryable. Embedding retries live
  inside EmbeddingClient. Terminal and data errors fail on the first attempt.

Bulk repair resets every blank/error document, and every processing
document whose last write is older than the stale threshold, to uploaded
and re-runs it. Documents are processed independently under a concurrency
cap; one failure never aborts the batch. Candidates that another sweep
already handled are re-checked under the lock and counted as skipped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from app.core.config import settings
from app.db.repositories import DocumentRecord
from app.processing.analysis import BlobLocation
from app.processing.chunking import TextChunker
from app.processing.embeddings import EmbeddingClient
from app.processing.errors import EmbeddingError, ExtractionError
from app.processing.extractor import ExtractionEngine
from app.schemas.documents import ChatType, DocumentStatus, RepairReport
from app.services.lifecycle import DocumentLifecycleTracker, DocumentNotFoundError, InvalidTransitionError
from app.storage.blob import BlobNotFoundError, BlobStoreError, S3BlobStore
from app.vectorstore.base import IndexedChunk, IndexNotFoundError, VectorIndexError
from app.vectorstore.gateway import VectorIndexGateway
from app.workers.supervisor import KeyedLock

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Retry helper
# ---------------------------------------------------------------------------

async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    attempts: int | None = None,
    base_delay: float | None = None,
) -> T:
    """
    Await `operation()` up to `attempts` times. Only exceptions whose
    `retryable` attribute is true are retried; the last one is re-raised.
    """
    attempts   = attempts or settings.pipeline_max_attempts
    base_delay = settings.pipeline_retry_base_delay if base_delay is None else base_delay

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if not getattr(exc, "retryable", False) or attempt == attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Retrying %s | attempt=%d/%d delay=%.1fs error=%s",
                label, attempt, attempts, delay, exc,
            )
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")


def failure_reason(exc: Exception) -> str:
    """User-facing reason stored on the Document row."""
    if isinstance(exc, ExtractionError):
        return exc.reason
    if isinstance(exc, BlobNotFoundError):
        return "The source file could not be found in storage."
    if isinstance(exc, BlobStoreError):
        return f"Could not read the source file from storage: {exc}"
    if isinstance(exc, EmbeddingError):
        return f"Embedding failed: {exc}"
    if isinstance(exc, VectorIndexError):
        return f"Indexing failed: {exc}"
    return f"Processing failed: {type(exc).__name__}: {exc}"


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineOutcome:
    document_id: uuid.UUID
    status:      str            # completed | error | skipped
    reason:      str | None = None
    chunk_count: int        = 0

    @property
    def succeeded(self) -> bool:
        return self.status == DocumentStatus.COMPLETED.value


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class DocumentPipeline:

    def __init__(
        self,
        tracker:    DocumentLifecycleTracker,
        blob_store: S3BlobStore,
        extractor:  ExtractionEngine,
        chunker:    TextChunker,
        embedder:   EmbeddingClient,
        gateway:    VectorIndexGateway,
        locks:      KeyedLock | None = None,
        repair_concurrency: int | None = None,
    ) -> None:
        self._tracker    = tracker
        self._blobs      = blob_store
        self._extractor  = extractor
        self._chunker    = chunker
        self._embedder   = embedder
        self._gateway    = gateway
        self._locks      = locks or KeyedLock()
        self._repair_concurrency = repair_concurrency or settings.repair_concurrency

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    async def run(self, document_id: uuid.UUID, *, reset: bool = False) -> PipelineOutcome:
        """
        Process one document. With reset=True the document is first moved
        from blank/error (or stale processing) back to uploaded, under the
        same lock. A document that no longer needs repair is skipped.
        """
        async with self._locks.hold(str(document_id)):
            try:
                record = await self._tracker.get(document_id)
            except DocumentNotFoundError:
                logger.warning("Pipeline skipped, document missing | doc=%s", document_id)
                return PipelineOutcome(document_id, "skipped", "Document not found")

            if record.is_deleted:
                logger.info("Pipeline skipped, document deleted | doc=%s", document_id)
                return PipelineOutcome(document_id, "skipped", "Document is deleted")

            try:
                if reset:
                    if not self._tracker.is_repairable(record):
                        logger.info(
                            "Repair skipped, no longer needed | doc=%s status=%s",
                            document_id, record.status.value,
                        )
                        return PipelineOutcome(document_id, "skipped", f"Status is {record.status.value}")
                    record = await self._tracker.reset_for_repair(document_id, current=record)

                if record.status != DocumentStatus.UPLOADED:
                    logger.info("Pipeline skipped | doc=%s status=%s", document_id, record.status.value)
                    return PipelineOutcome(document_id, "skipped", f"Status is {record.status.value}")

                # Claims the row; another process holding the same stale read loses here.
                await self._tracker.mark_processing(document_id, current=record)
            except InvalidTransitionError as exc:
                logger.info("Pipeline skipped, claimed elsewhere | doc=%s detail=%s", document_id, exc)
                return PipelineOutcome(document_id, "skipped", str(exc))

            return await self._process(record)

    async def _process(self, record: DocumentRecord) -> PipelineOutcome:
        """Stages after the row is claimed."""
        doc_id = record.id

        try:
            file_bytes = await with_retries(
                lambda: self._blobs.download_file(record.container_name, record.blob_name),
                label=f"blob download doc={doc_id}",
            )

            location = BlobLocation(bucket=record.container_name, key=record.blob_name)
            content = await with_retries(
                lambda: self._extractor.extract(file_bytes, record.file_name, location=location),
                label=f"extraction doc={doc_id}",
            )

            chunks = self._chunker.chunk(content.text, str(doc_id))
            pairs  = await self._embedder.embed_chunks(chunks)
            indexed = [self._to_indexed(record, chunk, vector) for chunk, vector in pairs]

            await self._replace_chunks(str(doc_id), indexed)

        except Exception as exc:
            reason = failure_reason(exc)
            logger.error(
                "Pipeline failed | doc=%s stage_error=%s reason=%s",
                doc_id, type(exc).__name__, reason,
            )
            return await self._fail(doc_id, reason)

        try:
            await self._tracker.mark_completed(
                doc_id,
                pages=content.pages,
                confidence=content.confidence,
                chunk_count=len(indexed),
            )
        except InvalidTransitionError as exc:
            logger.warning("Completion rejected, dropping chunks | doc=%s detail=%s", doc_id, exc)
            await self._discard_chunks(str(doc_id))
            return PipelineOutcome(doc_id, "skipped", str(exc))
        except Exception as exc:
            logger.error(
                "Could not record completion | doc=%s error=%s: %s",
                doc_id, type(exc).__name__, exc,
            )
            await self._discard_chunks(str(doc_id))
            return await self._fail(doc_id, f"Could not record completion: {type(exc).__name__}: {exc}")

        logger.info(
            "Pipeline complete | doc=%s model=%s pages=%d chunks=%d confidence=%.2f",
            doc_id, content.model, content.pages, len(indexed), content.confidence,
        )
        return PipelineOutcome(doc_id, DocumentStatus.COMPLETED.value, chunk_count=len(indexed))

    async def _fail(self, document_id: uuid.UUID, reason: str) -> PipelineOutcome:
        """
        Record status=error. If this write fails too the exception propagates
        and the row stays in processing until a repair sweep finds it stale.
        """
        try:
            await self._tracker.mark_error(document_id, reason)
        except InvalidTransitionError as exc:
            logger.warning("Error status rejected | doc=%s detail=%s", document_id, exc)
            return PipelineOutcome(document_id, "skipped", str(exc))
        return PipelineOutcome(document_id, DocumentStatus.ERROR.value, reason)

    async def _discard_chunks(self, document_id: str) -> None:
        """Best-effort removal of chunks whose document never reached completed."""
        try:
            await self._gateway.delete_by_document_id(document_id)
        except Exception as exc:
            logger.warning("Chunk cleanup failed | doc=%s error=%s", document_id, exc)

    async def _replace_chunks(self, document_id: str, chunks: list[IndexedChunk]) -> None:
        """Drop chunks from any earlier run, then write the new ones."""

        async def _write() -> None:
            await self._gateway.delete_by_document_id(document_id)
            await self._gateway.upsert(chunks)

        try:
            await with_retries(_write, label=f"index write doc={document_id}")
        except IndexNotFoundError:
            logger.warning("Index missing during write, creating | doc=%s", document_id)
            await self._gateway.ensure_index_created()
            await with_retries(_write, label=f"index write doc={document_id}")

    @staticmethod
    def _to_indexed(record: DocumentRecord, chunk, vector: list[float]) -> IndexedChunk:
        is_thread_upload = record.chat_type == ChatType.DATA.value
        return IndexedChunk(
            id=chunk.chunk_id,
            document_id=str(record.id),
            chat_type=record.chat_type,
            page_content=chunk.text,
            embedding=vector,
            file_name=record.file_name,
            metadata=record.file_name,
            dept_name=record.department_name,
            user=record.uploaded_by if is_thread_upload else None,
            chat_thread_id=record.chat_thread_id if is_thread_upload else None,
            sas_url=record.blob_url,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    # ------------------------------------------------------------------
    # Bulk repair
    # ------------------------------------------------------------------

    async def repair_blank_or_error_documents(self) -> RepairReport:
        candidates = await self._tracker.repair_candidates()
        if not candidates:
            logger.info("Repair sweep | nothing to repair")
            return RepairReport()

        logger.info("Repair sweep start | candidates=%d", len(candidates))
        semaphore = asyncio.Semaphore(self._repair_concurrency)

        async def _repair_one(record: DocumentRecord) -> PipelineOutcome:
            async with semaphore:
                return await self.run(record.id, reset=True)

        results = await asyncio.gather(
            *(_repair_one(r) for r in candidates),
            return_exceptions=True,
        )

        succeeded = skipped = 0
        for record, result in zip(candidates, results):
            if isinstance(result, BaseException):
                logger.error("Repair failed | doc=%s error=%s", record.id, result)
            elif result.succeeded:
                succeeded += 1
            elif result.status == "skipped":
                # handled by a concurrent run or sweep, or deleted meanwhile
                skipped += 1
            else:
                logger.warning("Repair not completed | doc=%s status=%s reason=%s", record.id, result.status, result.reason)

        attempted = len(candidates) - skipped
        report = RepairReport(
            attempted=attempted,
            succeeded=succeeded,
            failed=attempted - succeeded,
            skipped=skipped,
        )
        logger.info(
            "Repair sweep done | attempted=%d succeeded=%d failed=%d skipped=%d",
            report.attempted, report.succeeded, report.failed, report.skipped,
        )
        return report
