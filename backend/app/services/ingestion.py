"""
Document Ingestion Service

Orchestrates the upload entrypoint:
  1. Validate the input (department, file name, emptiness, type, size,
     chat thread for data uploads, department existence) before any
     remote call
  2. Upload the bytes to the department container as <uuid>_<name>
  3. Create the Document row (status=uploaded)
  4. Hand the document to the dispatcher; the pipeline continues after
     the caller already has its document id

Administrative delete lives here too: index removal, best-effort blob
removal, then soft delete, all under the same per-document lock the
pipeline uses.

Dispatchers
  InlineDispatcher  spawns the pipeline on the in-process TaskSupervisor
  CeleryDispatcher  publishes process_document / repair_documents to the
                    broker (documents.ingest / documents.repair queues)
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from abc import ABC, abstractmethod

from app.db.repositories import DepartmentDirectory, DocumentRecord
from app.processing.extractor import ExtractionEngine, file_extension
from app.schemas.documents import ChatType, ErrorResponse, IngestionErrors
from app.services.lifecycle import DocumentLifecycleTracker
from app.services.pipeline import DocumentPipeline
from app.storage.blob import BlobStoreError, S3BlobStore
from app.vectorstore.base import IndexNotFoundError
from app.vectorstore.gateway import VectorIndexGateway
from app.workers.supervisor import KeyedLock, TaskSupervisor

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File name helpers
# ---------------------------------------------------------------------------

_FILENAME_RE     = re.compile(r'^[^/\\<>:"|?*\x00-\x1f\x7f]{1,255}$')
_BLOB_UNSAFE_RE  = re.compile(r'[\\/#?%*:|"<>\s\x00-\x1f\x7f]+')


def display_file_name(file_name: str | None) -> str:
    """Strip any directory component a client may have sent."""
    return (file_name or "").replace("\\", "/").rsplit("/", 1)[-1].strip()


def is_valid_file_name(file_name: str) -> bool:
    return bool(_FILENAME_RE.match(file_name)) and file_name not in (".", "..")


def make_blob_name(document_id: uuid.UUID, file_name: str) -> str:
    """<uuid>_<name> with characters unsafe in object keys replaced."""
    safe = _BLOB_UNSAFE_RE.sub("_", file_name)[:200]
    return f"{document_id}_{safe}"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class IngestionError(Exception):
    """Carries the ErrorResponse body and HTTP status for the API layer."""

    def __init__(self, error: ErrorResponse, status_code: int = 400) -> None:
        super().__init__(error.message)
        self.error       = error
        self.status_code = status_code

    @property
    def error_code(self) -> str:
        return self.error.error_code

    @property
    def message(self) -> str:
        return self.error.message


class IngestionInputError(IngestionError):
    """Rejected before any remote call."""


# ---------------------------------------------------------------------------
# Dispatchers
# ---------------------------------------------------------------------------

class PipelineDispatcher(ABC):

    @abstractmethod
    async def dispatch_document(self, document_id: uuid.UUID) -> str:
        """Start the pipeline for one document; returns a task id."""

    @abstractmethod
    async def dispatch_repair(self) -> str:
        """Start a bulk repair sweep; returns a task id."""


class InlineDispatcher(PipelineDispatcher):

    def __init__(self, supervisor: TaskSupervisor, pipeline: DocumentPipeline) -> None:
        self._supervisor = supervisor
        self._pipeline   = pipeline

    async def dispatch_document(self, document_id: uuid.UUID) -> str:
        return self._supervisor.spawn(self._pipeline.run(document_id), name=f"pipeline:{document_id}")

    async def dispatch_repair(self) -> str:
        return self._supervisor.spawn(self._pipeline.repair_blank_or_error_documents(), name="repair")


class CeleryDispatcher(PipelineDispatcher):
    """
    Sends work to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def dispatch_document(self, document_id: uuid.UUID) -> str:
        from app.workers.tasks import process_document

        result = await self._publish(
            lambda: process_document.apply_async(
                kwargs={"document_id": str(document_id)},
                countdown=2,
            )
        )
        logger.info("Processing task published | doc=%s task_id=%s", document_id, result.id)
        return result.id

    async def dispatch_repair(self) -> str:
        from app.workers.tasks import repair_documents

        result = await self._publish(lambda: repair_documents.apply_async())
        logger.info("Repair task published | task_id=%s", result.id)
        return result.id

    @staticmethod
    async def _publish(send):
        # apply_async blocks on the broker connection
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, send)


# ---------------------------------------------------------------------------
# Core ingestion orchestrator
# ---------------------------------------------------------------------------

class IngestionService:

    def __init__(
        self,
        tracker:     DocumentLifecycleTracker,
        departments: DepartmentDirectory,
        blob_store:  S3BlobStore,
        extractor:   ExtractionEngine,
        gateway:     VectorIndexGateway,
        dispatcher:  PipelineDispatcher,
        locks:       KeyedLock,
    ) -> None:
        self._tracker     = tracker
        self._departments = departments
        self._blobs       = blob_store
        self._extractor   = extractor
        self._gateway     = gateway
        self._dispatcher  = dispatcher
        self._locks       = locks

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def ingest(
        self,
        file_bytes:    bytes,
        file_name:     str,
        department_id: uuid.UUID | None,
        *,
        uploaded_by:    str,
        chat_type:      ChatType | str = ChatType.DOC,
        chat_thread_id: str | None = None,
    ) -> uuid.UUID:
        record = await self.upload(
            file_bytes,
            file_name,
            department_id,
            uploaded_by=uploaded_by,
            chat_type=chat_type,
            chat_thread_id=chat_thread_id,
        )
        return record.id

    async def upload(
        self,
        file_bytes:    bytes,
        file_name:     str,
        department_id: uuid.UUID | None,
        *,
        uploaded_by:    str,
        chat_type:      ChatType | str = ChatType.DOC,
        chat_thread_id: str | None = None,
    ) -> DocumentRecord:
        """Same as ingest() but returns the created record."""
        chat_type = ChatType(chat_type)
        name = display_file_name(file_name)

        # ---- Step 1: Validate (no remote calls yet) ------------------
        self._validate(file_bytes, name, department_id, chat_type, chat_thread_id)

        department = await self._departments.get_department(department_id)
        if department is None or not department.is_active:
            raise IngestionInputError(IngestionErrors.unknown_department(department_id), 400)

        document_id = uuid.uuid4()
        blob_name   = make_blob_name(document_id, name)

        logger.info(
            "Ingest start | doc=%s dept=%s user=%s file=%s size=%d",
            document_id, department.name, uploaded_by, name, len(file_bytes),
        )

        # ---- Step 2: Store the bytes ---------------------------------
        try:
            stored = await self._blobs.upload_file(
                department.blob_container_name,
                blob_name,
                file_bytes,
                metadata={"document_id": str(document_id)},
            )
        except BlobStoreError as exc:
            logger.error("Blob upload failed | doc=%s error=%s", document_id, exc)
            raise IngestionError(IngestionErrors.storage_error(str(exc)), 502) from exc

        # ---- Step 3: Persist document record (status=uploaded) -------
        record = await self._tracker.create(
            DocumentRecord(
                id=document_id,
                file_name=name,
                file_type=file_extension(name).lstrip("."),
                file_size=len(file_bytes),
                uploaded_by=uploaded_by,
                container_name=department.blob_container_name,
                blob_name=blob_name,
                blob_url=stored.url,
                department_id=department.id,
                department_name=department.name,
                chat_type=chat_type.value,
                chat_thread_id=chat_thread_id,
            )
        )

        # ---- Step 4: Continue asynchronously -------------------------
        try:
            task_id = await self._dispatcher.dispatch_document(document_id)
        except Exception as exc:
            # The document is stored; leave it where the repair sweep finds it.
            logger.error("Failed to dispatch pipeline | doc=%s error=%s", document_id, exc)
            await self._tracker.mark_error(
                document_id, f"Processing could not be scheduled ({type(exc).__name__}); run repair to retry."
            )
        else:
            logger.info("Pipeline dispatched | doc=%s task_id=%s", document_id, task_id)

        return record

    async def delete_document(self, document_id: uuid.UUID) -> DocumentRecord:
        """Remove indexed chunks and the stored blob, then soft-delete the row."""
        async with self._locks.hold(str(document_id)):
            record = await self._tracker.get(document_id)
            if record.is_deleted:
                return record

            try:
                await self._gateway.delete_by_document_id(str(document_id))
            except IndexNotFoundError:
                logger.warning("Index missing on delete; nothing to remove | doc=%s", document_id)

            try:
                await self._blobs.delete_file(record.container_name, record.blob_name)
            except BlobStoreError as exc:
                logger.warning("Blob delete failed, continuing | doc=%s error=%s", document_id, exc)

            return await self._tracker.soft_delete(document_id)

    async def schedule_repair(self) -> str:
        return await self._dispatcher.dispatch_repair()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _validate(
        self,
        file_bytes: bytes,
        file_name: str,
        department_id: uuid.UUID | None,
        chat_type: ChatType,
        chat_thread_id: str | None,
    ) -> None:
        if department_id is None:
            raise IngestionInputError(IngestionErrors.missing_department())

        if not is_valid_file_name(file_name):
            raise IngestionInputError(IngestionErrors.invalid_file_name(file_name))

        if not file_bytes:
            raise IngestionInputError(IngestionErrors.empty_file(file_name))

        if not self._extractor.is_supported(file_name):
            raise IngestionInputError(
                IngestionErrors.unsupported_file_type(
                    file_name, file_extension(file_name), self._extractor.supported_extensions
                )
            )

        if len(file_bytes) > self._extractor.max_bytes:
            raise IngestionInputError(
                IngestionErrors.file_too_large(len(file_bytes), self._extractor.max_bytes),
                413,
            )

        if chat_type == ChatType.DATA and not (chat_thread_id or "").strip():
            raise IngestionInputError(IngestionErrors.missing_chat_thread())
