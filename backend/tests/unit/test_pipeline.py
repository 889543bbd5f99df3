"""
Unit Tests — DocumentPipeline
══════════════════════════════
download → extract → chunk → embed → index with all collaborators faked:

  ✅ Success       → completed, pages/confidence/chunk_count recorded, chunks searchable
  ✅ Reprocessing  → chunks replaced, never duplicated
  ✅ Stage failure → error with a user-facing reason, counters zeroed
  ✅ Retryable     → blob download retried, terminal errors are not
  ✅ Skips         → deleted, missing, already completed
  ✅ data uploads  → user / chat_thread_id scoping fields on every chunk
  ✅ Repair sweep  → independent per document, report counts
  ✅ Status writes → claim failure leaves uploaded, completion failure falls back to error
  ✅ Races         → two workers on one document run it once, overlapping sweeps skip
  ✅ Stale rows    → processing left behind by a dead worker is repaired
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from app.processing.analysis import AnalyzedParagraph, AnalyzeResult
from app.processing.errors import TerminalExtractionError
from app.schemas.documents import DocumentStatus
from app.processing.chunking import TextChunker
from app.services.pipeline import DocumentPipeline, failure_reason, with_retries
from app.storage.blob import BlobNotFoundError, BlobStoreError
from app.vectorstore.filters import ScopeFilter

S = DocumentStatus


def _seed_with_blob(document_repo, blob_store, content: bytes, **fields):
    record = document_repo.seed(**fields)
    blob_store.objects[(record.container_name, record.blob_name)] = content
    return record


@pytest.mark.unit
class TestRun:

    async def test_text_document_completes(self, services, document_repo, blob_store):
        doc = _seed_with_blob(document_repo, blob_store, b"Expense claims are due on the 5th.", file_name="notes.txt")

        outcome = await services.pipeline.run(doc.id)

        assert outcome.succeeded
        stored = document_repo.rows[doc.id]
        assert stored.status == S.COMPLETED
        assert stored.pages == 1
        assert stored.chunk_count == 1
        assert stored.confidence == 0.0
        hits = await services.gateway.search("expense claims", 5, filter=ScopeFilter.for_doc_corpus())
        assert hits[0].document_id == str(doc.id)
        assert hits[0].file_name == "notes.txt"
        assert hits[0].dept_name == doc.department_name
        assert hits[0].user is None

    async def test_layout_document_records_confidence(self, services, document_repo, blob_store, layout_analyzer):
        layout_analyzer.analyze.return_value = AnalyzeResult(
            model_id="layout",
            pages=4,
            paragraphs=[AnalyzedParagraph("Scanned page", 0.9), AnalyzedParagraph("Second", 0.7)],
        )
        doc = _seed_with_blob(document_repo, blob_store, b"%PDF-1.7", file_name="scan.pdf")

        await services.pipeline.run(doc.id)

        stored = document_repo.rows[doc.id]
        assert stored.status == S.COMPLETED
        assert stored.pages == 4
        assert stored.confidence == 0.8
        location = layout_analyzer.analyze.await_args.kwargs["location"]
        assert (location.bucket, location.key) == (doc.container_name, doc.blob_name)

    async def test_data_upload_chunks_carry_thread_scope(self, services, document_repo, blob_store):
        doc = _seed_with_blob(
            document_repo, blob_store, b"Quarterly numbers by region.",
            chat_type="data", chat_thread_id="thread-1", uploaded_by="user-7",
        )

        await services.pipeline.run(doc.id)

        hits = await services.gateway.search("quarterly numbers", 5, filter=ScopeFilter.for_thread("user-7", "thread-1"))
        assert len(hits) == 1
        assert hits[0].chat_type == "data"
        assert await services.gateway.search("quarterly numbers", 5, filter=ScopeFilter.for_doc_corpus()) == []

    async def test_reprocessing_replaces_chunks(self, services, document_repo, blob_store, gateway):
        doc = _seed_with_blob(document_repo, blob_store, b"Version one of the handbook.")
        await services.pipeline.run(doc.id)
        assert await gateway.store.count() == 1

        # manual reset; repair would do the same through reset_for_repair
        document_repo.rows[doc.id].status = S.UPLOADED
        blob_store.objects[(doc.container_name, doc.blob_name)] = b"Version two of the handbook."
        await services.pipeline.run(doc.id)

        assert await gateway.store.count() == 1
        hit = (await gateway.search("handbook", 1, filter=ScopeFilter.for_doc_corpus()))[0]
        assert hit.page_content == "Version two of the handbook."

    async def test_extraction_failure_marks_error(self, services, document_repo, blob_store, layout_analyzer):
        layout_analyzer.analyze.side_effect = TerminalExtractionError("The file format was rejected.", status_code=415)
        doc = _seed_with_blob(document_repo, blob_store, b"%PDF-", file_name="broken.pdf")

        outcome = await services.pipeline.run(doc.id)

        assert outcome.status == "error"
        stored = document_repo.rows[doc.id]
        assert stored.status == S.ERROR
        assert stored.error_message == "The file format was rejected."
        assert (stored.pages, stored.confidence, stored.chunk_count) == (0, 0.0, 0)
        assert layout_analyzer.analyze.await_count == 1

    async def test_empty_document_marks_error(self, services, document_repo, blob_store):
        doc = _seed_with_blob(document_repo, blob_store, b"   \n  ")

        await services.pipeline.run(doc.id)

        assert document_repo.rows[doc.id].status == S.ERROR
        assert "No text content" in document_repo.rows[doc.id].error_message

    async def test_missing_blob_marks_error(self, services, document_repo):
        doc = document_repo.seed()

        await services.pipeline.run(doc.id)

        assert document_repo.rows[doc.id].error_message == "The source file could not be found in storage."

    async def test_transient_download_error_is_retried(self, services, document_repo, blob_store):
        doc = _seed_with_blob(document_repo, blob_store, b"Recovered after a blip.")
        original = blob_store.download_file.side_effect
        calls = {"n": 0}

        async def _flaky(container, blob_name):
            calls["n"] += 1
            if calls["n"] == 1:
                raise BlobStoreError("timeout", retryable=True)
            return await original(container, blob_name)

        blob_store.download_file = AsyncMock(side_effect=_flaky)

        outcome = await services.pipeline.run(doc.id)

        assert outcome.succeeded
        assert calls["n"] == 2

    async def test_skips_deleted_and_missing(self, services, document_repo):
        deleted = document_repo.seed(is_deleted=True)

        assert (await services.pipeline.run(deleted.id)).status == "skipped"
        assert document_repo.rows[deleted.id].status == S.UPLOADED
        assert (await services.pipeline.run(uuid.uuid4())).status == "skipped"

    async def test_skips_completed_without_reset(self, services, document_repo):
        doc = document_repo.seed(status=S.COMPLETED)
        outcome = await services.pipeline.run(doc.id)
        assert outcome.status == "skipped"
        assert document_repo.rows[doc.id].status == S.COMPLETED

    async def test_lock_released_after_run(self, services, document_repo, blob_store):
        doc = _seed_with_blob(document_repo, blob_store, b"text")
        await services.pipeline.run(doc.id)
        assert len(services.pipeline.locks) == 0


@pytest.mark.unit
class TestRepair:

    async def test_repair_reports_each_document_independently(self, services, document_repo, blob_store):
        ok_blank = _seed_with_blob(document_repo, blob_store, b"Legacy row without status.", status=S.BLANK)
        broken   = document_repo.seed(status=S.ERROR, error_message="blob went missing")
        ok_error = _seed_with_blob(document_repo, blob_store, b"Failed once, fine now.", status=S.ERROR)
        document_repo.seed(status=S.COMPLETED)

        report = await services.pipeline.repair_blank_or_error_documents()

        assert (report.attempted, report.succeeded, report.failed) == (3, 2, 1)
        assert document_repo.rows[ok_blank.id].status == S.COMPLETED
        assert document_repo.rows[ok_error.id].status == S.COMPLETED
        assert document_repo.rows[broken.id].status == S.ERROR
        assert document_repo.rows[broken.id].error_message == "The source file could not be found in storage."

    async def test_repair_with_nothing_to_do(self, services):
        report = await services.pipeline.repair_blank_or_error_documents()
        assert (report.attempted, report.succeeded, report.failed) == (0, 0, 0)

    async def test_repair_skips_deleted(self, services, document_repo, blob_store):
        _seed_with_blob(document_repo, blob_store, b"gone", status=S.ERROR, is_deleted=True)
        report = await services.pipeline.repair_blank_or_error_documents()
        assert report.attempted == 0

    async def test_overlapping_sweeps_count_handled_documents_as_skipped(self, services, document_repo, blob_store):
        doc = _seed_with_blob(document_repo, blob_store, b"Repaired by whichever sweep gets there first.", status=S.ERROR)
        both_listed = asyncio.Barrier(2)
        list_candidates = services.tracker.repair_candidates

        async def _listed_by_both_sweeps():
            candidates = await list_candidates()
            await both_listed.wait()
            return candidates

        with patch.object(services.tracker, "repair_candidates", new=_listed_by_both_sweeps):
            reports = await asyncio.gather(
                services.pipeline.repair_blank_or_error_documents(),
                services.pipeline.repair_blank_or_error_documents(),
            )

        counts = sorted((r.attempted, r.succeeded, r.failed, r.skipped) for r in reports)
        assert counts == [(0, 0, 0, 1), (1, 1, 0, 0)]
        assert document_repo.rows[doc.id].status == S.COMPLETED
        assert blob_store.download_file.await_count == 1


def _second_worker(services, blob_store, extractor, embedder, gateway) -> DocumentPipeline:
    """Another process's pipeline: same database and index, its own in-process locks."""
    return DocumentPipeline(
        tracker=services.tracker,
        blob_store=blob_store,
        extractor=extractor,
        chunker=TextChunker(1000, 200),
        embedder=embedder,
        gateway=gateway,
    )


@pytest.mark.unit
class TestStatusWriteFailures:

    async def test_claim_failure_leaves_document_uploaded(self, services, document_repo, blob_store):
        doc = _seed_with_blob(document_repo, blob_store, b"Claimed on the second try.")

        with patch.object(services.tracker, "mark_processing", AsyncMock(side_effect=ConnectionError("db down"))):
            with pytest.raises(ConnectionError):
                await services.pipeline.run(doc.id)

        assert document_repo.rows[doc.id].status == S.UPLOADED
        assert len(services.pipeline.locks) == 0
        assert (await services.pipeline.run(doc.id)).succeeded

    async def test_completion_write_failure_falls_back_to_error(self, services, document_repo, blob_store, gateway):
        doc = _seed_with_blob(document_repo, blob_store, b"Indexed, but the final write failed.")

        with patch.object(services.tracker, "mark_completed", AsyncMock(side_effect=ConnectionError("connection reset"))):
            outcome = await services.pipeline.run(doc.id)

        assert outcome.status == "error"
        stored = document_repo.rows[doc.id]
        assert stored.status == S.ERROR
        assert stored.error_message == "Could not record completion: ConnectionError: connection reset"
        assert await gateway.store.count() == 0

        report = await services.pipeline.repair_blank_or_error_documents()

        assert (report.attempted, report.succeeded, report.failed) == (1, 1, 0)
        assert document_repo.rows[doc.id].status == S.COMPLETED
        assert await gateway.store.count() == 1

    async def test_stuck_processing_is_repaired_once_stale(self, services, document_repo, blob_store):
        doc = _seed_with_blob(document_repo, blob_store, b"Left behind when the database went away.")
        database_down = AsyncMock(side_effect=ConnectionError("db down"))

        with patch.object(services.tracker, "mark_completed", database_down), \
             patch.object(services.tracker, "mark_error", database_down):
            with pytest.raises(ConnectionError):
                await services.pipeline.run(doc.id)

        assert document_repo.rows[doc.id].status == S.PROCESSING
        fresh = await services.pipeline.repair_blank_or_error_documents()
        assert fresh.attempted == 0

        document_repo.rows[doc.id].updated_at -= timedelta(hours=2)
        report = await services.pipeline.repair_blank_or_error_documents()

        assert (report.attempted, report.succeeded) == (1, 1)
        assert document_repo.rows[doc.id].status == S.COMPLETED

    async def test_document_deleted_mid_run_is_not_completed(self, services, document_repo, blob_store, gateway):
        doc = _seed_with_blob(document_repo, blob_store, b"Deleted while it was being processed.")
        download = blob_store.download_file.side_effect

        async def _deleted_during_download(container, blob_name):
            await services.tracker.soft_delete(doc.id)
            return await download(container, blob_name)

        blob_store.download_file = AsyncMock(side_effect=_deleted_during_download)

        outcome = await services.pipeline.run(doc.id)

        assert outcome.status == "skipped"
        stored = document_repo.rows[doc.id]
        assert stored.is_deleted is True
        assert stored.status == S.PROCESSING
        assert await gateway.store.count() == 0


@pytest.mark.unit
class TestConcurrentWorkers:

    async def test_two_workers_reading_the_same_row_run_it_once(
        self, services, document_repo, blob_store, extractor, embedder, gateway,
    ):
        doc = _seed_with_blob(document_repo, blob_store, b"Only one worker may index this.")
        other = _second_worker(services, blob_store, extractor, embedder, gateway)
        both_read = asyncio.Barrier(2)
        read = services.tracker.get
        readers: list = []

        async def _read_by_both_workers(document_id):
            record = await read(document_id)
            if len(readers) < 2:
                readers.append(record)
                await both_read.wait()
            return record

        with patch.object(services.tracker, "get", new=_read_by_both_workers):
            outcomes = await asyncio.gather(services.pipeline.run(doc.id), other.run(doc.id))

        assert [r.status for r in readers] == [S.UPLOADED, S.UPLOADED]
        assert sorted(o.status for o in outcomes) == ["completed", "skipped"]
        assert document_repo.rows[doc.id].status == S.COMPLETED
        assert blob_store.download_file.await_count == 1
        assert await gateway.store.count() == 1

    async def test_two_workers_repairing_the_same_row_reset_it_once(
        self, services, document_repo, blob_store, extractor, embedder, gateway,
    ):
        doc = _seed_with_blob(document_repo, blob_store, b"Repaired by one worker.", status=S.ERROR)
        other = _second_worker(services, blob_store, extractor, embedder, gateway)
        both_read = asyncio.Barrier(2)
        read = services.tracker.get
        readers: list = []

        async def _read_by_both_workers(document_id):
            record = await read(document_id)
            if len(readers) < 2:
                readers.append(record)
                await both_read.wait()
            return record

        with patch.object(services.tracker, "get", new=_read_by_both_workers):
            outcomes = await asyncio.gather(
                services.pipeline.run(doc.id, reset=True),
                other.run(doc.id, reset=True),
            )

        assert sorted(o.status for o in outcomes) == ["completed", "skipped"]
        assert document_repo.rows[doc.id].status == S.COMPLETED
        assert blob_store.download_file.await_count == 1



@pytest.mark.unit
class TestHelpers:

    async def test_with_retries_stops_on_terminal_error(self):
        operation = AsyncMock(side_effect=BlobStoreError("denied", retryable=False))
        with pytest.raises(BlobStoreError):
            await with_retries(operation, label="test", attempts=3, base_delay=0)
        assert operation.await_count == 1

    async def test_with_retries_gives_up_after_attempts(self):
        operation = AsyncMock(side_effect=BlobStoreError("timeout", retryable=True))
        with pytest.raises(BlobStoreError):
            await with_retries(operation, label="test", attempts=3, base_delay=0)
        assert operation.await_count == 3

    async def test_with_retries_returns_value(self):
        operation = AsyncMock(side_effect=[BlobStoreError("blip", retryable=True), "ok"])
        assert await with_retries(operation, label="test", attempts=2, base_delay=0) == "ok"

    def test_failure_reasons(self):
        assert failure_reason(TerminalExtractionError("bad scan")) == "bad scan"
        assert failure_reason(BlobNotFoundError("k")) == "The source file could not be found in storage."
        assert failure_reason(RuntimeError("boom")) == "Processing failed: RuntimeError: boom"
