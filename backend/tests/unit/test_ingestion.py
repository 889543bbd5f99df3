"""
Unit Tests — IngestionService
══════════════════════════════
Upload validation, storage, record creation and dispatch, plus
administrative delete.

All tests:
  • Use the in-memory repository, blob store mock and memory index from conftest.py
  • Never touch real PostgreSQL, real S3, or real Celery
  • Run the pipeline inline; `services.supervisor.join()` waits for it

Coverage targets:
  ✅ notes.txt end to end → uploaded → completed, searchable
  ✅ Input errors (missing department, bad name, empty, type, size,
     data upload without thread, unknown / inactive department)
     → rejected before any blob write
  ✅ Blob failure → 502 STORAGE_ERROR, no row created
  ✅ Dispatch failure → document kept, marked error for repair
  ✅ Delete → index chunks removed, blob removed, soft-deleted
  ✅ Celery dispatcher publishes the document id
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.schemas.documents import ChatType, DocumentStatus
from app.services.ingestion import (
    CeleryDispatcher,
    IngestionError,
    IngestionInputError,
    display_file_name,
    is_valid_file_name,
    make_blob_name,
)
from app.storage.blob import BlobStoreError
from app.vectorstore.filters import ScopeFilter
from tests.conftest import HR_DEPARTMENT, INACTIVE_DEPARTMENT

S = DocumentStatus


async def _upload(services, data: bytes = b"Expense claims are due on the 5th.", name: str = "notes.txt", **kwargs):
    kwargs.setdefault("uploaded_by", "user-1")
    department_id = kwargs.pop("department_id", HR_DEPARTMENT.id)
    return await services.ingestion.upload(data, name, department_id, **kwargs)


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestUpload:

    async def test_text_upload_end_to_end(self, services, document_repo, blob_store):
        record = await _upload(services)

        assert record.status == S.UPLOADED
        assert record.file_name == "notes.txt"
        assert record.file_type == "txt"
        assert record.container_name == HR_DEPARTMENT.blob_container_name
        assert record.blob_name == f"{record.id}_notes.txt"
        assert record.blob_url == f"s3://dept-hr/{record.id}_notes.txt"
        assert (HR_DEPARTMENT.blob_container_name, record.blob_name) in blob_store.objects

        await services.supervisor.join()

        stored = document_repo.rows[record.id]
        assert stored.status == S.COMPLETED
        assert stored.pages == 1
        assert stored.chunk_count == 1
        hits = await services.gateway.search("expense claims", 5, filter=ScopeFilter.for_doc_corpus())
        assert hits[0].document_id == str(record.id)
        assert hits[0].sas_url == record.blob_url

    async def test_ingest_returns_document_id(self, services, document_repo):
        document_id = await services.ingestion.ingest(
            b"hello", "hello.md", HR_DEPARTMENT.id, uploaded_by="user-1",
        )
        await services.supervisor.join()
        assert document_repo.rows[document_id].status == S.COMPLETED

    async def test_data_upload_keeps_thread(self, services, document_repo):
        record = await _upload(services, chat_type=ChatType.DATA, chat_thread_id="thread-1", uploaded_by="user-7")
        await services.supervisor.join()

        assert record.chat_type == "data"
        assert record.chat_thread_id == "thread-1"
        hits = await services.gateway.search("expense", 5, filter=ScopeFilter.for_thread("user-7", "thread-1"))
        assert len(hits) == 1

    async def test_client_path_is_stripped_from_name(self, services):
        record = await _upload(services, name="C:\\Users\\taro\\report.txt")
        assert record.file_name == "report.txt"

    async def test_dispatch_failure_marks_error(self, services, document_repo):
        services.ingestion._dispatcher = MagicMock()
        services.ingestion._dispatcher.dispatch_document = AsyncMock(side_effect=ConnectionError("broker down"))

        record = await _upload(services)

        stored = document_repo.rows[record.id]
        assert stored.status == S.ERROR
        assert "run repair" in stored.error_message

    async def test_blob_failure_is_502_and_creates_nothing(self, services, document_repo, blob_store):
        blob_store.upload_file.side_effect = BlobStoreError("S3 unavailable", retryable=True)

        with pytest.raises(IngestionError) as exc_info:
            await _upload(services)

        assert exc_info.value.status_code == 502
        assert exc_info.value.error_code == "STORAGE_ERROR"
        assert document_repo.rows == {}


# ─────────────────────────────────────────────────────────────────────────────
# Validation — nothing is stored on rejection
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestValidation:

    @pytest.mark.parametrize("kwargs,code,status", [
        ({"department_id": None},                         "MISSING_DEPARTMENT",    400),
        ({"name": "../"},                                 "INVALID_FILE_NAME",     400),
        ({"name": 'bad|name.txt'},                        "INVALID_FILE_NAME",     400),
        ({"data": b""},                                   "EMPTY_FILE",            400),
        ({"name": "setup.exe"},                           "UNSUPPORTED_FILE_TYPE", 400),
        ({"chat_type": "data"},                           "MISSING_CHAT_THREAD",   400),
        ({"chat_type": "data", "chat_thread_id": "  "},   "MISSING_CHAT_THREAD",   400),
        ({"department_id": uuid.uuid4()},                 "UNKNOWN_DEPARTMENT",    400),
        ({"department_id": INACTIVE_DEPARTMENT.id},       "UNKNOWN_DEPARTMENT",    400),
    ])
    async def test_rejected_before_storage(self, services, blob_store, document_repo, kwargs, code, status):
        with pytest.raises(IngestionInputError) as exc_info:
            await _upload(services, **kwargs)

        assert exc_info.value.error_code == code
        assert exc_info.value.status_code == status
        blob_store.upload_file.assert_not_called()
        assert document_repo.rows == {}

    async def test_too_large_is_413(self, services, blob_store):
        limit = services.extractor.max_bytes
        with patch.object(type(services.extractor), "max_bytes", new=10):
            with pytest.raises(IngestionInputError) as exc_info:
                await _upload(services, data=b"x" * 11)

        assert exc_info.value.status_code == 413
        assert exc_info.value.error_code == "FILE_TOO_LARGE"
        assert services.extractor.max_bytes == limit
        blob_store.upload_file.assert_not_called()

    def test_file_name_helpers(self):
        assert display_file_name("a/b/c.pdf") == "c.pdf"
        assert display_file_name(None) == ""
        assert is_valid_file_name("議事録 2024.docx")
        assert not is_valid_file_name("..")
        assert not is_valid_file_name("a" * 256)

    def test_blob_name_replaces_unsafe_characters(self):
        doc_id = uuid.UUID("12345678-1234-5678-1234-567812345678")
        assert make_blob_name(doc_id, "my report #1.pdf") == f"{doc_id}_my_report_1.pdf"


# ─────────────────────────────────────────────────────────────────────────────
# Delete
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestDelete:

    async def test_delete_cascades_to_index_and_blob(self, services, document_repo, blob_store, gateway):
        record = await _upload(services)
        await services.supervisor.join()
        assert await gateway.store.count() == 1

        deleted = await services.ingestion.delete_document(record.id)

        assert deleted.is_deleted is True
        assert await gateway.store.count() == 0
        assert (record.container_name, record.blob_name) not in blob_store.objects
        assert await services.tracker.repair_candidates() == []

    async def test_delete_is_idempotent(self, services, document_repo, blob_store):
        doc = document_repo.seed(is_deleted=True)

        result = await services.ingestion.delete_document(doc.id)

        assert result.is_deleted
        blob_store.delete_file.assert_not_called()

    async def test_blob_delete_failure_still_soft_deletes(self, services, document_repo, blob_store):
        doc = document_repo.seed(status=S.ERROR)
        blob_store.delete_file.side_effect = BlobStoreError("denied")

        result = await services.ingestion.delete_document(doc.id)

        assert result.is_deleted

    async def test_missing_index_on_delete_is_tolerated(self, services, document_repo, gateway):
        doc = document_repo.seed()
        await gateway.store.drop_index()

        assert (await services.ingestion.delete_document(doc.id)).is_deleted


# ─────────────────────────────────────────────────────────────────────────────
# Dispatchers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCeleryDispatcher:

    async def test_publishes_document_id(self):
        with patch("app.workers.tasks.process_document") as task:
            task.apply_async.return_value = MagicMock(id="celery-task-1")

            task_id = await CeleryDispatcher().dispatch_document(uuid.UUID(int=7))

        assert task_id == "celery-task-1"
        assert task.apply_async.call_args.kwargs["kwargs"] == {"document_id": str(uuid.UUID(int=7))}

    async def test_publishes_repair(self):
        with patch("app.workers.tasks.repair_documents") as task:
            task.apply_async.return_value = MagicMock(id="celery-task-2")
            assert await CeleryDispatcher().dispatch_repair() == "celery-task-2"

    async def test_inline_repair_runs_on_supervisor(self, services, document_repo):
        document_repo.seed(status=S.ERROR)
        task_id = await services.ingestion.schedule_repair()
        await services.supervisor.join()

        assert task_id
        assert services.supervisor.stats()["succeeded"] == 1
