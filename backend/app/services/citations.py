"""
Retrieval & Citation Resolver

resolve_citations(chat_thread_id) → list of citation dicts

Strategy, first match wins:
  1. saved   the most recent assistant message carries a JSON `context`
             with a `citations` array → returned verbatim
  2. search  the thread's chat_type selects a scoped search for the most
             recent user message:
               doc  → chatType eq 'doc'
               data → user eq <user> and chatThreadId eq <thread> and chatType eq 'data'
  3. none    any other chat_type, no user message, a missing thread,
             or a data thread with no owning user → []

Resolution is best-effort: malformed saved JSON falls through to search,
search failures are logged and yield []. A missing index gets one
ensure_index_created() and a single retry.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from app.core.config import settings
from app.db.repositories import ChatHistoryStore, ChatMessageRecord
from app.schemas.citations import CitationRecord
from app.schemas.documents import ChatType
from app.vectorstore.base import IndexedChunk, IndexNotFoundError
from app.vectorstore.filters import ScopeFilter
from app.vectorstore.gateway import SearchDiagnostics, VectorIndexGateway

logger = logging.getLogger(__name__)


@dataclass
class CitationResolution:
    source:      str                          # saved | search | none
    citations:   list[dict[str, Any]]         = field(default_factory=list)
    diagnostics: SearchDiagnostics | None     = None


class MalformedContextError(ValueError):
    pass


def saved_citations(message: ChatMessageRecord) -> list[dict[str, Any]] | None:
    """
    Citations persisted on an assistant message, or None when the message
    has no usable context. Raises MalformedContextError for broken JSON.
    """
    if not message.context or not message.context.strip():
        return None
    try:
        payload = json.loads(message.context)
    except json.JSONDecodeError as exc:
        raise MalformedContextError(f"context is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise MalformedContextError("context is not a JSON object")
    citations = payload.get("citations")
    if citations is None:
        return None
    if not isinstance(citations, list):
        raise MalformedContextError("context.citations is not an array")
    return citations


def _last(messages: list[ChatMessageRecord], role: str) -> ChatMessageRecord | None:
    for message in reversed(messages):
        if message.role == role:
            return message
    return None


class CitationResolver:

    def __init__(
        self,
        chat_history: ChatHistoryStore,
        gateway: VectorIndexGateway,
        *,
        top_k: int | None = None,
        unknown_file_label: str | None = None,
        content_missing_label: str | None = None,
    ) -> None:
        self._history = chat_history
        self._gateway = gateway
        self._top_k   = top_k or settings.citation_top_k
        self._unknown_file_label    = unknown_file_label or settings.citation_unknown_file_label
        self._content_missing_label = content_missing_label or settings.citation_content_missing_label

    async def resolve_citations(self, chat_thread_id: str, requesting_user_id: str | None = None) -> list[dict[str, Any]]:
        resolution = await self.resolve(chat_thread_id, requesting_user_id)
        return resolution.citations

    async def resolve(self, chat_thread_id: str, requesting_user_id: str | None = None) -> CitationResolution:
        thread = await self._history.get_thread(chat_thread_id)
        if thread is None:
            logger.info("Citations: thread not found | thread=%s", chat_thread_id)
            return CitationResolution(source="none")

        messages = await self._history.list_messages(chat_thread_id)

        # ---- 1. Saved citations --------------------------------------
        assistant = _last(messages, "assistant")
        if assistant is not None:
            try:
                saved = saved_citations(assistant)
            except MalformedContextError as exc:
                logger.warning("Citations: malformed saved context, falling back | thread=%s error=%s", chat_thread_id, exc)
                saved = None
            if saved is not None:
                logger.info("Citations: saved | thread=%s count=%d", chat_thread_id, len(saved))
                return CitationResolution(source="saved", citations=saved)

        # ---- 2. Scoped re-search -------------------------------------
        question = _last(messages, "user")
        if question is None or not question.content.strip():
            return CitationResolution(source="none")

        if thread.chat_type == ChatType.DOC.value:
            scope = ScopeFilter.for_doc_corpus()
        elif thread.chat_type == ChatType.DATA.value:
            owner = (requesting_user_id or thread.user_id or "").strip()
            if not owner:
                # an empty owner would drop the user clause from the filter
                logger.warning("Citations: data thread has no owner, not searching | thread=%s", chat_thread_id)
                return CitationResolution(source="none")
            scope = ScopeFilter.for_thread(owner, chat_thread_id)
        else:
            logger.debug("Citations: no search for chat_type=%s | thread=%s", thread.chat_type, chat_thread_id)
            return CitationResolution(source="none")

        try:
            hits, diagnostics = await self._search(question.content, scope)
        except Exception as exc:
            logger.error(
                "Citations: search failed | thread=%s filter=%s error=%s",
                chat_thread_id, scope, exc,
            )
            return CitationResolution(source="search")

        return CitationResolution(
            source="search",
            citations=[self.to_citation(hit) for hit in hits],
            diagnostics=diagnostics,
        )

    async def _search(self, query: str, scope: ScopeFilter) -> tuple[list[IndexedChunk], SearchDiagnostics]:
        try:
            return await self._gateway.search_with_diagnostics(query, self._top_k, filter=scope)
        except IndexNotFoundError:
            logger.warning("Citations: index missing, ensuring and retrying once | index=%s", self._gateway.index_name)
            await self._gateway.ensure_index_created()
            return await self._gateway.search_with_diagnostics(query, self._top_k, filter=scope)

    def to_citation(self, hit: IndexedChunk) -> dict[str, Any]:
        record = CitationRecord(
            id=hit.id,
            metadata=hit.file_name or hit.metadata or self._unknown_file_label,
            page_content=hit.page_content or self._content_missing_label,
            sas_url=hit.sas_url,
            score=hit.score,
            dept_name=hit.dept_name,
            document_id=hit.chat_thread_id or hit.document_id,
        )
        return record.model_dump(by_alias=True)
