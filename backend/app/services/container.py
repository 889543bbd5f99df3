"""
Service wiring.

build_services() assembles one object graph per process: the FastAPI
lifespan stores it on app.state, the Celery worker builds its own. Tests
construct ServiceContainer directly with fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from app.core.config import Settings, settings as default_settings
from app.db.repositories import (
    ChatHistoryStore,
    SqlChatHistoryStore,
    SqlDepartmentDirectory,
    SqlDocumentRepository,
)
from app.processing.chunking import TextChunker
from app.processing.embeddings import EmbeddingClient
from app.processing.extractor import ExtractionEngine
from app.services.citations import CitationResolver
from app.services.ingestion import (
    CeleryDispatcher,
    InlineDispatcher,
    IngestionService,
    PipelineDispatcher,
)
from app.services.lifecycle import DocumentLifecycleTracker
from app.services.pipeline import DocumentPipeline
from app.storage.blob import S3BlobStore
from app.vectorstore.factory import get_vector_store
from app.vectorstore.gateway import VectorIndexGateway
from app.workers.supervisor import KeyedLock, TaskSupervisor

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    tracker:    DocumentLifecycleTracker
    pipeline:   DocumentPipeline
    ingestion:  IngestionService
    citations:  CitationResolver
    gateway:    VectorIndexGateway
    extractor:  ExtractionEngine
    supervisor: TaskSupervisor

    async def aclose(self) -> None:
        await self.supervisor.shutdown()
        await self.gateway.close()


def build_services(
    cfg: Settings | None = None,
    *,
    dispatch: str | None = None,
    chat_history: ChatHistoryStore | None = None,
) -> ServiceContainer:
    cfg = cfg or default_settings
    mode = (dispatch or cfg.pipeline_dispatch).lower()

    embedder   = EmbeddingClient(max_retries=cfg.pipeline_max_attempts, retry_base_delay=cfg.pipeline_retry_base_delay)
    gateway    = VectorIndexGateway(store=get_vector_store(), embedder=embedder)
    extractor  = ExtractionEngine(max_bytes=cfg.extraction_max_bytes)
    blob_store = S3BlobStore(region=cfg.aws_region)
    tracker    = DocumentLifecycleTracker(
        SqlDocumentRepository(),
        stale_processing_after=timedelta(minutes=cfg.repair_stale_processing_minutes),
    )
    locks      = KeyedLock()
    supervisor = TaskSupervisor()

    pipeline = DocumentPipeline(
        tracker=tracker,
        blob_store=blob_store,
        extractor=extractor,
        chunker=TextChunker(cfg.chunk_size, cfg.chunk_overlap),
        embedder=embedder,
        gateway=gateway,
        locks=locks,
        repair_concurrency=cfg.repair_concurrency,
    )

    dispatcher: PipelineDispatcher
    if mode == "inline":
        dispatcher = InlineDispatcher(supervisor, pipeline)
    elif mode == "celery":
        dispatcher = CeleryDispatcher()
    else:
        raise ValueError(f"Unknown pipeline dispatch mode: '{mode}'. Valid options: 'inline', 'celery'")

    ingestion = IngestionService(
        tracker=tracker,
        departments=SqlDepartmentDirectory(),
        blob_store=blob_store,
        extractor=extractor,
        gateway=gateway,
        dispatcher=dispatcher,
        locks=locks,
    )

    citations = CitationResolver(chat_history or SqlChatHistoryStore(), gateway)

    logger.info(
        "Services built | dispatch=%s backend=%s index=%s",
        mode, gateway.backend_name, gateway.index_name,
    )
    return ServiceContainer(
        tracker=tracker,
        pipeline=pipeline,
        ingestion=ingestion,
        citations=citations,
        gateway=gateway,
        extractor=extractor,
        supervisor=supervisor,
    )
