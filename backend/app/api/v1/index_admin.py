"""
Search Index Administration (admin only)

  POST /admin/search-index/ensure     idempotent create
  POST /admin/search-index/recreate   destructive, body must be {"confirm": true}
  POST /admin/search-index/search     debug search returning per-request diagnostics
  GET  /admin/extraction/probe        extraction provider connectivity check
  GET  /admin/tasks                   background task supervisor counters

A search against a missing index surfaces as 409 INDEX_NOT_FOUND (handled
in main.py) so the operator knows to call /ensure.
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, HTTPException, status

from app.auth.dependencies import AdminUser, Services
from app.schemas.citations import (
    DebugSearchRequest,
    DebugSearchResponse,
    IndexStatusResponse,
    RecreateIndexRequest,
)
from app.schemas.documents import ErrorResponse
from app.vectorstore.filters import ScopeFilter

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Administration"],
)


@router.post("/search-index/ensure", response_model=IndexStatusResponse)
async def ensure_index(services: Services, user: AdminUser) -> IndexStatusResponse:
    created = await services.gateway.ensure_index_created()
    return IndexStatusResponse(
        index_name=services.gateway.index_name,
        backend=services.gateway.backend_name,
        created=created,
        message="Index created." if created else "Index already exists; nothing changed.",
    )


@router.post(
    "/search-index/recreate",
    response_model=IndexStatusResponse,
    responses={400: {"model": ErrorResponse, "description": "confirm was not true"}},
)
async def recreate_index(body: RecreateIndexRequest, services: Services, user: AdminUser) -> IndexStatusResponse:
    if not body.confirm:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ErrorResponse(
                error_code="CONFIRMATION_REQUIRED",
                message="Recreating the index deletes every indexed chunk. Send {\"confirm\": true}.",
            ).model_dump(),
        )

    logger.warning("Index recreate requested | index=%s by=%s", services.gateway.index_name, user.sub)
    await services.gateway.force_recreate_index(confirm=True)
    return IndexStatusResponse(
        index_name=services.gateway.index_name,
        backend=services.gateway.backend_name,
        created=True,
        message="Index dropped and recreated. All documents must be reprocessed.",
    )


@router.post("/search-index/search", response_model=DebugSearchResponse)
async def debug_search(body: DebugSearchRequest, services: Services, user: AdminUser) -> DebugSearchResponse:
    scope = ScopeFilter.of(
        user=body.user,
        chat_thread_id=body.chat_thread_id,
        dept_name=body.dept_name,
        chat_type=body.chat_type.value,
    )
    hits, diagnostics = await services.gateway.search_with_diagnostics(
        body.query,
        body.top_k,
        filter=scope,
        request_id=str(uuid.uuid4()),
    )
    return DebugSearchResponse(
        hits=[services.citations.to_citation(hit) for hit in hits],
        diagnostics=diagnostics.as_dict(),
    )


@router.get("/extraction/probe")
async def probe_extraction(services: Services, user: AdminUser) -> dict:
    return await services.extractor.probe()


@router.get("/tasks")
async def task_stats(services: Services, user: AdminUser) -> dict:
    return services.supervisor.stats()
