"""
Citation API Router
GET /chat/citations?chat_thread_id=...

Never fails because of resolution problems: a missing thread, broken saved
JSON or a search outage all come back as 200 with an empty list.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.auth.dependencies import Services
from app.auth.rbac import require_role
from app.auth.token import TokenPayload
from app.schemas.citations import CitationResponse

router = APIRouter(
    prefix="/chat",
    tags=["Citations"],
)


@router.get(
    "/citations",
    response_model=CitationResponse,
    summary="Citations for the latest answer in a chat thread",
)
async def get_citations(
    services: Services,
    chat_thread_id: str = Query(..., min_length=1),
    user: TokenPayload = Depends(require_role("viewer")),
) -> CitationResponse:
    resolution = await services.citations.resolve(chat_thread_id, requesting_user_id=user.sub)
    return CitationResponse(
        chat_thread_id=chat_thread_id,
        source=resolution.source,
        citations=resolution.citations,
    )
