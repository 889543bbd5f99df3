"""
Document Lifecycle Tracker
══════════════════════════

The persisted per-document state machine.

    uploaded ──► processing ──► completed
        │             │
        │             └──────► error
        └────────────────────► error        (pipeline never started)

    blank | error ──► uploaded              (explicit repair only)
    processing ──► uploaded                 (repair, once the row is stale)

`blank` is written explicitly; rows whose status is NULL/empty are read back
as blank by the repository, so old data converges on the first write.

Every transition is a compare-and-set on the status the row was read with:
the write only lands if the row still holds that status and is not deleted.
Two workers that read the same `uploaded` row therefore cannot both move it
to `processing`; the loser gets a TransitionConflictError.

A row left in `processing` by a worker that died (or that could not write
its final status) stops being touched. Once its last write is older than
`stale_processing_after` it becomes a repair candidate like blank/error.

pages / confidence / chunk_count stay 0 until mark_completed(). A
soft-deleted document keeps its last status but is skipped by the pipeline
and excluded from repair.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from app.core.config import settings
from app.db.repositories import DocumentRecord, DocumentRepository
from app.schemas.documents import DocumentStatus

logger = logging.getLogger(__name__)

S = DocumentStatus

ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    S.UPLOADED:   frozenset({S.PROCESSING, S.ERROR}),
    S.PROCESSING: frozenset({S.COMPLETED, S.ERROR, S.UPLOADED}),
    S.COMPLETED:  frozenset(),
    S.ERROR:      frozenset({S.UPLOADED}),
    S.BLANK:      frozenset({S.UPLOADED}),
}

REPAIRABLE_STATUSES = (S.BLANK, S.ERROR)

MAX_REASON_LENGTH = 2000


class DocumentNotFoundError(LookupError):
    def __init__(self, document_id: uuid.UUID) -> None:
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class InvalidTransitionError(Exception):
    def __init__(
        self,
        document_id: uuid.UUID,
        current: DocumentStatus,
        target: DocumentStatus,
        detail: str | None = None,
    ) -> None:
        super().__init__(
            detail or f"Document {document_id}: transition {current.value} → {target.value} is not allowed"
        )
        self.document_id = document_id
        self.current     = current
        self.target      = target


class TransitionConflictError(InvalidTransitionError):
    """The row changed (status or deletion) between the read and the write."""

    def __init__(
        self,
        document_id: uuid.UUID,
        expected: DocumentStatus,
        actual: DocumentRecord,
        target: DocumentStatus,
    ) -> None:
        current = DocumentStatus.normalize(actual.status)
        found = f"{current.value} (deleted)" if actual.is_deleted else current.value
        super().__init__(
            document_id, current, target,
            detail=f"Document {document_id}: expected {expected.value} before {target.value}, found {found}",
        )
        self.expected   = expected
        self.is_deleted = actual.is_deleted


class DocumentLifecycleTracker:

    def __init__(
        self,
        repository: DocumentRepository,
        *,
        stale_processing_after: timedelta | None = None,
    ) -> None:
        self._repo = repository
        self._stale_after = stale_processing_after or timedelta(
            minutes=settings.repair_stale_processing_minutes
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, document_id: uuid.UUID) -> DocumentRecord:
        record = await self._repo.get(document_id)
        if record is None:
            raise DocumentNotFoundError(document_id)
        return record

    async def repair_candidates(self) -> list[DocumentRecord]:
        """Every non-deleted document in blank or error state, or stuck in processing, oldest first."""
        failed = await self._repo.list_by_status(REPAIRABLE_STATUSES, include_deleted=False)
        stuck = await self._repo.list_by_status(
            (S.PROCESSING,), include_deleted=False, updated_before=self._stale_cutoff()
        )
        if stuck:
            logger.warning("Stale processing documents found | count=%d", len(stuck))
        return sorted(failed + stuck, key=lambda r: r.uploaded_at)

    def is_repairable(self, record: DocumentRecord) -> bool:
        if record.is_deleted:
            return False
        status = DocumentStatus.normalize(record.status)
        if status in REPAIRABLE_STATUSES:
            return True
        return status == S.PROCESSING and self._last_write(record) < self._stale_cutoff()

    async def stats(self) -> dict[str, Any]:
        return await self._repo.stats()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, record: DocumentRecord) -> DocumentRecord:
        """Persist a new upload. Status, pages and confidence are forced to their initial values."""
        record.status      = S.UPLOADED
        record.pages       = 0
        record.confidence  = 0.0
        record.chunk_count = 0
        record.error_message = None
        created = await self._repo.add(record)
        logger.info(
            "Document created | doc=%s file=%s dept=%s chat_type=%s",
            created.id, created.file_name, created.department_name, created.chat_type,
        )
        return created

    async def mark_processing(
        self,
        document_id: uuid.UUID,
        *,
        current: DocumentRecord | None = None,
    ) -> DocumentRecord:
        return await self._transition(document_id, S.PROCESSING, current=current, error_message=None)

    async def mark_completed(
        self,
        document_id: uuid.UUID,
        *,
        pages: int,
        confidence: float,
        chunk_count: int,
    ) -> DocumentRecord:
        return await self._transition(
            document_id,
            S.COMPLETED,
            pages=pages,
            confidence=confidence,
            chunk_count=chunk_count,
            error_message=None,
        )

    async def mark_error(self, document_id: uuid.UUID, reason: str) -> DocumentRecord:
        reason = (reason or "Processing failed").strip()[:MAX_REASON_LENGTH]
        return await self._transition(
            document_id,
            S.ERROR,
            error_message=reason,
            pages=0,
            confidence=0.0,
            chunk_count=0,
        )

    async def reset_for_repair(
        self,
        document_id: uuid.UUID,
        *,
        current: DocumentRecord | None = None,
    ) -> DocumentRecord:
        """Move a blank, error or stale processing document back to uploaded."""
        record = current or await self.get(document_id)
        if not self.is_repairable(record):
            raise InvalidTransitionError(document_id, DocumentStatus.normalize(record.status), S.UPLOADED)
        if DocumentStatus.normalize(record.status) == S.PROCESSING:
            logger.warning(
                "Resetting stale processing document | doc=%s last_write=%s",
                document_id, self._last_write(record).isoformat(),
            )
        return await self._transition(document_id, S.UPLOADED, error_message=None, current=record)

    async def soft_delete(self, document_id: uuid.UUID) -> DocumentRecord:
        await self.get(document_id)
        updated = await self._repo.update(document_id, is_deleted=True)
        if updated is None:
            raise DocumentNotFoundError(document_id)
        logger.info("Document soft-deleted | doc=%s", document_id)
        return updated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _stale_cutoff(self) -> datetime:
        return datetime.now(timezone.utc) - self._stale_after

    @staticmethod
    def _last_write(record: DocumentRecord) -> datetime:
        return record.updated_at or record.uploaded_at

    async def _transition(
        self,
        document_id: uuid.UUID,
        target: DocumentStatus,
        *,
        current: DocumentRecord | None = None,
        **values: Any,
    ) -> DocumentRecord:
        record = current or await self.get(document_id)
        source = DocumentStatus.normalize(record.status)
        if target not in ALLOWED_TRANSITIONS[source]:
            raise InvalidTransitionError(document_id, source, target)

        updated = await self._repo.update(document_id, expected_status=(source,), status=target, **values)
        if updated is None:
            latest = await self._repo.get(document_id)
            if latest is None:
                raise DocumentNotFoundError(document_id)
            logger.warning(
                "Status change lost to a concurrent writer | doc=%s expected=%s found=%s target=%s deleted=%s",
                document_id, source.value, DocumentStatus.normalize(latest.status).value,
                target.value, latest.is_deleted,
            )
            raise TransitionConflictError(document_id, source, latest, target)

        logger.info("Status change | doc=%s %s→%s", document_id, source.value, target.value)
        return updated
