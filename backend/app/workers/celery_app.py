"""
Celery worker application (PIPELINE_DISPATCH=celery).

The API only publishes document ids; the worker loads the bytes from blob
storage and runs the same DocumentPipeline the inline mode uses.

Queues:
  documents.ingest   one pipeline run per uploaded document
  documents.repair   bulk repair sweeps, kept apart so a sweep never starves uploads

Start a worker with:
  celery -A app.workers.celery_app worker -Q documents.ingest,documents.repair
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from app.core.config import settings

logger = logging.getLogger(__name__)

INGEST_QUEUE = "documents.ingest"
REPAIR_QUEUE = "documents.repair"

_exchange = Exchange("documents", type="direct", durable=True)


def create_celery_app() -> Celery:
    app = Celery("document_service")

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        task_queues=[
            Queue(name, exchange=_exchange, routing_key=name, durable=True)
            for name in (INGEST_QUEUE, REPAIR_QUEUE)
        ],
        task_routes={
            "app.workers.tasks.process_document": {"queue": INGEST_QUEUE},
            "app.workers.tasks.repair_documents": {"queue": REPAIR_QUEUE},
        },
        task_default_queue=INGEST_QUEUE,
        task_default_exchange=_exchange.name,
        task_default_routing_key=INGEST_QUEUE,
        # A document lost with its worker is redelivered; the pipeline lock
        # and chunk-id upserts make a second run harmless.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_time_limit=settings.celery_task_time_limit,
        task_soft_time_limit=settings.celery_task_time_limit - 60,
        result_expires=3600,
        enable_utc=True,
    )
    app.autodiscover_tasks(["app.workers"])
    return app


celery_app = create_celery_app()


def _doc(kwargs) -> str:
    return (kwargs or {}).get("document_id", "-")


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s doc=%s", task_id, task.name, _doc(kwargs))


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s doc=%s", task_id, task.name, state, _doc(kwargs))


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error("Task failed | task_id=%s doc=%s error=%s", task_id, _doc(kwargs), exception)
