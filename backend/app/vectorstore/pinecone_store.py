"""
Pinecone Vector Store — Single Shared Serverless Index

Architecture:
  One index, default namespace. Scope fields live in vector metadata and
  every query carries a {"$and": [...]} metadata filter built from the
  caller's ScopeFilter.

Vector ids:
  Stored as "<document_id>#<chunk_id>" so a document's vectors can be found
  by id prefix. Serverless indexes do not support delete-by-metadata, and
  list(prefix=...) is the supported way to enumerate them.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial

from pinecone import Pinecone, ServerlessSpec
from pinecone.exceptions import NotFoundException, PineconeException

from app.core.config import settings
from app.vectorstore.base import (
    IndexedChunk,
    IndexNotFoundError,
    IndexOperationError,
    VectorStoreBase,
)
from app.vectorstore.filters import ScopeFilter

logger = logging.getLogger(__name__)

_ID_SEPARATOR = "#"


class PineconeVectorStore(VectorStoreBase):
    """Pinecone backend. The SDK is synchronous; calls run in the executor."""

    backend_name = "pinecone"

    def __init__(self, index_name: str, dimensions: int, client: Pinecone | None = None) -> None:
        super().__init__(index_name, dimensions)
        self._pc    = client or Pinecone(api_key=settings.pinecone_api_key)
        self._index = None

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    def _handle(self):
        if self._index is None:
            self._index = self._pc.Index(self._index_name)
        return self._index

    async def _call(self, op: str, fn, *args, **kwargs):
        try:
            return await self._run(fn, *args, **kwargs)
        except NotFoundException as exc:
            raise IndexNotFoundError(f"Pinecone index '{self._index_name}' does not exist") from exc
        except PineconeException as exc:
            raise IndexOperationError(f"Pinecone {op} failed: {exc}", retryable=True) from exc

    # ------------------------------------------------------------------
    # Schema lifecycle
    # ------------------------------------------------------------------

    async def index_exists(self) -> bool:
        indexes = await self._run(self._pc.list_indexes)
        return self._index_name in [i.name for i in indexes]

    async def create_index(self) -> None:
        await self._run(
            self._pc.create_index,
            name=self._index_name,
            dimension=self._dimensions,     # 1536 for text-embedding-3-small
            metric="cosine",
            spec=ServerlessSpec(cloud=settings.pinecone_cloud, region=settings.pinecone_region),
        )
        logger.info("Pinecone index '%s' created", self._index_name)

    async def drop_index(self) -> None:
        await self._run(self._pc.delete_index, self._index_name)
        self._index = None
        logger.warning("Pinecone index '%s' deleted", self._index_name)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, chunks: list[IndexedChunk], batch_size: int = 100) -> int:
        """Batches stay within Pinecone's 2MB request limit."""
        total = 0
        for i in range(0, len(chunks), batch_size):
            batch = chunks[i : i + batch_size]
            vectors = [
                {
                    "id":       f"{c.document_id}{_ID_SEPARATOR}{c.id}",
                    "values":   c.embedding,
                    "metadata": c.payload(),
                }
                for c in batch
            ]
            await self._call("upsert", self._handle().upsert, vectors=vectors)
            total += len(batch)
            logger.debug("Pinecone upsert | batch=%d total=%d", len(batch), total)
        return total

    async def query(self, vector: list[float], top_k: int, scope: ScopeFilter) -> list[IndexedChunk]:
        resp = await self._call(
            "query",
            self._handle().query,
            vector=vector,
            top_k=min(top_k, 100),
            filter=build_pinecone_filter(scope),
            include_metadata=True,
            include_values=False,   # values not needed for citations
        )
        hits = []
        for match in resp.matches or []:
            chunk_id = match.id.split(_ID_SEPARATOR, 1)[-1]
            hits.append(IndexedChunk.from_payload(chunk_id, match.metadata or {}, float(match.score)))
        logger.debug("Pinecone query | top_k=%d results=%d filter=%s", top_k, len(hits), scope)
        return hits

    async def delete_by_document(self, document_id: str) -> int:
        """Enumerate ids by document prefix, then delete them in batches."""
        index = self._handle()
        prefix = f"{document_id}{_ID_SEPARATOR}"
        ids: list[str] = []

        def _collect() -> None:
            for id_batch in index.list(prefix=prefix):
                ids.extend(id_batch)

        await self._call("list", _collect)
        for i in range(0, len(ids), 1000):
            await self._call("delete", index.delete, ids=ids[i : i + 1000])

        logger.info("Pinecone delete_by_document | doc=%s removed=%d", document_id, len(ids))
        return len(ids)

    async def count(self) -> int:
        stats = await self._call("stats", self._handle().describe_index_stats)
        return int(stats.total_vector_count or 0)


def build_pinecone_filter(scope: ScopeFilter) -> dict | None:
    clauses = [{name: {"$eq": value}} for name, value in scope.clauses]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}
