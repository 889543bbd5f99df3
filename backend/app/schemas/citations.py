"""
Citation & search-index schemas.

CitationRecord uses camelCase aliases because saved citations are replayed
verbatim from the JSON persisted on assistant messages, and that JSON was
written by the chat frontend.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.documents import ChatType


class CitationRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id:           str
    metadata:     str                = Field(..., description="Display label (file name or fallback)")
    page_content: str                = Field("", alias="pageContent")
    sas_url:      str | None         = Field(None, alias="sasUrl")
    score:        float | None       = None
    dept_name:    str | None         = Field(None, alias="deptName")
    document_id:  str | None         = Field(None, alias="documentId")


class CitationResponse(BaseModel):
    chat_thread_id: str
    source:         Literal["saved", "search", "none"]
    citations:      list[dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Index administration
# ---------------------------------------------------------------------------

class RecreateIndexRequest(BaseModel):
    confirm: bool = Field(
        False,
        description="Must be true. Recreating drops every indexed chunk.",
    )


class IndexStatusResponse(BaseModel):
    index_name: str
    backend:    str
    created:    bool
    message:    str


class DebugSearchRequest(BaseModel):
    query:          str      = Field(..., min_length=1)
    chat_type:      ChatType = ChatType.DOC
    dept_name:      str | None = None
    user:           str | None = None
    chat_thread_id: str | None = None
    top_k:          int      = Field(10, ge=1, le=50)


class DebugSearchResponse(BaseModel):
    hits:        list[dict[str, Any]]
    diagnostics: dict[str, Any]
