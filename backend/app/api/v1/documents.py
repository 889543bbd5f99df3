"""
Document Ingestion API Router

  POST   /documents/upload          multipart upload → 202, pipeline continues async
  GET    /documents/stats           counts by status / type, total size
  GET    /documents/repair          blank/error documents awaiting repair
  POST   /documents/repair          admin: schedule a repair sweep → 202
  GET    /documents/{document_id}   poll processing state
  DELETE /documents/{document_id}   admin: index + blob cleanup, soft delete → 204

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification + RBAC gate (member or above)       │
  │ 2. Input validation — no remote call on rejection       │
  │ 3. Blob upload to the department container              │
  │ 4. DB insert (status=uploaded)                          │
  │ 5. Pipeline dispatched (inline supervisor or Celery)    │
  └─────────────────────────────────────────────────────────┘

Ingestion input errors are raised as IngestionError and rendered by the
application-level handler; handlers here stay thin.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile, status

from app.auth.dependencies import AdminUser, Services
from app.auth.rbac import require_role
from app.auth.token import TokenPayload
from app.db.repositories import DocumentRecord
from app.schemas.documents import (
    ChatType,
    DocumentStatsResponse,
    DocumentStatusResponse,
    DocumentUploadResponse,
    ErrorResponse,
    RepairAcknowledgement,
    RepairCandidate,
    RepairCandidatesResponse,
)
from app.services.lifecycle import DocumentNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Ingestion"],
)


def _status_response(record: DocumentRecord) -> DocumentStatusResponse:
    return DocumentStatusResponse(
        document_id=record.id,
        file_name=record.file_name,
        file_type=record.file_type,
        status=record.status,
        pages=record.pages,
        confidence=record.confidence,
        chunk_count=record.chunk_count,
        department_name=record.department_name,
        error_message=record.error_message,
        updated_at=record.updated_at,
    )


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for ingestion",
    description=(
        "Returns 202 as soon as the file is stored; extraction, embedding and "
        "indexing continue asynchronously. Poll GET /documents/{id}."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Empty file, unsupported type, bad name or department"},
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "Insufficient role (requires member+)"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        502: {"model": ErrorResponse, "description": "Blob storage unavailable"},
    },
)
async def upload_document(
    services:       Services,
    file:           UploadFile         = File(..., description="Document file"),
    department_id:  Optional[UUID]     = Form(None, description="Owning department"),
    chat_type:      ChatType           = Form(ChatType.DOC),
    chat_thread_id: Optional[str]      = Form(None, description="Required for chat_type=data"),
    user:           TokenPayload       = Depends(require_role("member")),
) -> DocumentUploadResponse:
    file_bytes = await file.read()
    record = await services.ingestion.upload(
        file_bytes,
        file.filename or "",
        department_id,
        uploaded_by=user.sub,
        chat_type=chat_type,
        chat_thread_id=chat_thread_id,
    )
    return DocumentUploadResponse(
        document_id=record.id,
        status=record.status,
        file_name=record.file_name,
        file_size=record.file_size,
        department_name=record.department_name,
        created_at=record.uploaded_at,
    )


# ---------------------------------------------------------------------------
# Statistics and repair
# ---------------------------------------------------------------------------

@router.get(
    "/stats",
    response_model=DocumentStatsResponse,
    summary="Document counts by status and type",
)
async def document_stats(
    services: Services,
    user: TokenPayload = Depends(require_role("member")),
) -> DocumentStatsResponse:
    return DocumentStatsResponse(**await services.tracker.stats())


@router.get(
    "/repair",
    response_model=RepairCandidatesResponse,
    summary="List documents that a repair sweep would reprocess",
)
async def list_repair_candidates(services: Services, user: AdminUser) -> RepairCandidatesResponse:
    candidates = await services.tracker.repair_candidates()
    return RepairCandidatesResponse(
        count=len(candidates),
        documents=[
            RepairCandidate(
                document_id=r.id,
                file_name=r.file_name,
                status=r.status,
                error_message=r.error_message,
            )
            for r in candidates
        ],
    )


@router.post(
    "/repair",
    response_model=RepairAcknowledgement,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Reprocess every blank/error document",
    description="Runs detached. The response only confirms the sweep was scheduled.",
)
async def repair_documents(services: Services, user: AdminUser) -> RepairAcknowledgement:
    task_id = await services.ingestion.schedule_repair()
    logger.info("Repair scheduled | task_id=%s by=%s", task_id, user.sub)
    return RepairAcknowledgement(
        task_id=task_id,
        message="Repair of blank and error documents started.",
        timestamp=datetime.now(timezone.utc),
    )


# ---------------------------------------------------------------------------
# Single document
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentStatusResponse,
    summary="Get document processing status",
    responses={404: {"model": ErrorResponse}},
)
async def get_document(
    document_id: UUID,
    services: Services,
    user: TokenPayload = Depends(require_role("viewer")),
) -> DocumentStatusResponse:
    record = await services.tracker.get(document_id)
    if record.is_deleted:
        raise DocumentNotFoundError(document_id)
    return _status_response(record)


@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a document and its indexed chunks",
    responses={404: {"model": ErrorResponse}},
)
async def delete_document(document_id: UUID, services: Services, user: AdminUser) -> Response:
    await services.ingestion.delete_document(document_id)
    logger.info("Document deleted | doc=%s by=%s", document_id, user.sub)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
