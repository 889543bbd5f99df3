"""
Vector Index Gateway
════════════════════

The only entry point the services use for the shared chunk index.

  ensure_index_created()   idempotent, safe on every cold start
  force_recreate_index()   destructive, requires confirm=True
  upsert(chunks)           write or replace by chunk id
  delete_by_document_id()  remove every chunk of one document
  search(...)              embed query → vector + scope-filter search

The gateway does not interpret chat_type or dept_name; it only refuses
searches whose filter has no chat_type clause, since that would read
across every corpus.

Search diagnostics are returned per call (search_with_diagnostics) rather
than kept in shared state, so concurrent requests never see each other's
debug data.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass

from app.processing.embeddings import EmbeddingClient
from app.vectorstore.base import IndexedChunk, IndexNotFoundError, VectorStoreBase
from app.vectorstore.filters import ScopeFilter

logger = logging.getLogger(__name__)


@dataclass
class SearchDiagnostics:
    """Debug payload for a single search call."""
    request_id:   str
    backend:      str
    index_name:   str
    filter:       str
    top_k:        int
    hit_count:    int        = 0
    embedding_ms: float      = 0.0
    search_ms:    float      = 0.0
    error:        str | None = None

    def as_dict(self) -> dict:
        return asdict(self)


class VectorIndexGateway:

    def __init__(self, store: VectorStoreBase, embedder: EmbeddingClient) -> None:
        self._store       = store
        self._embedder    = embedder
        self._schema_lock = asyncio.Lock()

    @property
    def store(self) -> VectorStoreBase:
        return self._store

    @property
    def index_name(self) -> str:
        return self._store.index_name

    @property
    def backend_name(self) -> str:
        return self._store.backend_name

    # ------------------------------------------------------------------
    # Schema lifecycle
    # ------------------------------------------------------------------

    async def ensure_index_created(self) -> bool:
        """Create the index if absent. Returns True only when it was created now."""
        async with self._schema_lock:
            if await self._store.index_exists():
                logger.debug("Index already exists | index=%s", self.index_name)
                return False
            await self._store.create_index()
            logger.info("Index created | backend=%s index=%s", self.backend_name, self.index_name)
            return True

    async def force_recreate_index(self, *, confirm: bool = False) -> None:
        """Drop and recreate the index. Every indexed chunk is deleted."""
        if not confirm:
            raise ValueError("force_recreate_index deletes all indexed content; pass confirm=True")
        async with self._schema_lock:
            logger.warning("Recreating index | backend=%s index=%s", self.backend_name, self.index_name)
            if await self._store.index_exists():
                await self._store.drop_index()
            await self._store.create_index()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, chunks: list[IndexedChunk]) -> int:
        if not chunks:
            return 0
        written = await self._store.upsert(chunks)
        logger.info(
            "Index upsert | doc=%s chunks=%d",
            chunks[0].document_id, written,
        )
        return written

    async def delete_by_document_id(self, document_id: str) -> int:
        removed = await self._store.delete_by_document(str(document_id))
        logger.info("Index delete | doc=%s removed=%d", document_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, query_text: str, top_k: int = 10, *, filter: ScopeFilter) -> list[IndexedChunk]:
        hits, _ = await self.search_with_diagnostics(query_text, top_k, filter=filter)
        return hits

    async def search_with_diagnostics(
        self,
        query_text: str,
        top_k: int = 10,
        *,
        filter: ScopeFilter,
        request_id: str | None = None,
    ) -> tuple[list[IndexedChunk], SearchDiagnostics]:
        """
        Ranked by descending score; equal scores keep backend order.
        Raises IndexNotFoundError when the index is missing; never returns
        [] for that case.
        """
        if filter.chat_type is None:
            raise ValueError("search filter must include a chat_type clause")

        diagnostics = SearchDiagnostics(
            request_id=request_id or str(uuid.uuid4()),
            backend=self.backend_name,
            index_name=self.index_name,
            filter=filter.to_odata(),
            top_k=top_k,
        )

        t0 = time.monotonic()
        vector = await self._embedder.embed(query_text)
        diagnostics.embedding_ms = round((time.monotonic() - t0) * 1000, 1)

        t1 = time.monotonic()
        try:
            hits = await self._store.query(vector, top_k, filter)
        except IndexNotFoundError as exc:
            diagnostics.error = str(exc)
            logger.warning("Search against missing index | index=%s filter=%s", self.index_name, diagnostics.filter)
            raise
        diagnostics.search_ms = round((time.monotonic() - t1) * 1000, 1)

        hits = sorted(hits, key=lambda h: -(h.score or 0.0))[:top_k]   # sorted() is stable
        diagnostics.hit_count = len(hits)

        logger.info(
            "Index search | filter=%s top_k=%d hits=%d search_ms=%.1f request_id=%s",
            diagnostics.filter, top_k, len(hits), diagnostics.search_ms, diagnostics.request_id,
        )
        return hits, diagnostics

    async def close(self) -> None:
        await self._store.close()
