"""
Celery Tasks — Document Processing

Task: process_document
  Runs DocumentPipeline.run() for one document id. The pipeline already
  turns every stage failure into status=error, so the task only fails on
  infrastructure errors (database unreachable), which Celery retries.

Task: repair_documents
  Runs one bulk repair sweep and returns the aggregate report.

The worker builds its own service container on first use; it never shares
objects with the API process.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from celery import Task

from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

_services = None


def _get_services():
    global _services
    if _services is None:
        from app.services.container import build_services

        # The worker executes pipelines itself; never re-publish.
        _services = build_services(dispatch="inline")
    return _services


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro):
    """
    Execute an async coroutine from a synchronous Celery task.
    One loop per worker process, so pooled DB connections and locks held by
    the service container stay bound to the loop that created them.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop.run_until_complete(coro)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.process_document",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(self: Task, *, document_id: str) -> dict[str, Any]:
    try:
        outcome = run_async(_get_services().pipeline.run(uuid.UUID(document_id)))
    except Exception as exc:
        logger.exception("Pipeline infrastructure failure | doc=%s", document_id)
        raise self.retry(exc=exc)

    return {
        "document_id": document_id,
        "status":      outcome.status,
        "reason":      outcome.reason,
        "chunk_count": outcome.chunk_count,
    }


@celery_app.task(
    name="app.workers.tasks.repair_documents",
    acks_late=True,
)
def repair_documents() -> dict[str, int]:
    report = run_async(_get_services().pipeline.repair_blank_or_error_documents())
    return report.model_dump()
