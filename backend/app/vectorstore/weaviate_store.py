"""
Weaviate Vector Store — Single Shared Collection

One collection (settings.search_index_name) holds every chunk. Department,
chat type, user and thread are filterable properties; isolation comes only
from the ScopeFilter the caller supplies.

The v4 client is synchronous, so every call runs in the default thread
executor to keep the event loop free.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial

import weaviate
import weaviate.classes as wvc
from weaviate.classes.config import Configure, DataType, Property
from weaviate.classes.query import Filter, MetadataQuery
from weaviate.exceptions import WeaviateBaseError, WeaviateConnectionError

from app.core.config import settings
from app.vectorstore.base import (
    IndexedChunk,
    IndexNotFoundError,
    IndexOperationError,
    VectorStoreBase,
)
from app.vectorstore.filters import ScopeFilter

logger = logging.getLogger(__name__)

_RETURN_PROPERTIES = [
    "document_id", "chat_type", "page_content", "file_name", "metadata",
    "dept_name", "user", "chat_thread_id", "sas_url", "created_at",
]


class WeaviateVectorStore(VectorStoreBase):
    """Weaviate backend; the collection name is fixed at construction."""

    backend_name = "weaviate"

    def __init__(self, client: weaviate.WeaviateClient, index_name: str, dimensions: int) -> None:
        super().__init__(index_name, dimensions)
        self._client = client

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    def _collection(self):
        return self._client.collections.get(self._index_name)

    async def _raise_for(self, exc: WeaviateBaseError, op: str) -> None:
        """Translate a client error; a missing collection is reported distinctly."""
        try:
            exists = await self.index_exists()
        except WeaviateBaseError:
            exists = True
        if not exists:
            raise IndexNotFoundError(f"Weaviate collection '{self._index_name}' does not exist") from exc
        raise IndexOperationError(
            f"Weaviate {op} failed: {exc}",
            retryable=isinstance(exc, WeaviateConnectionError),
        ) from exc

    # ------------------------------------------------------------------
    # Schema lifecycle
    # ------------------------------------------------------------------

    async def index_exists(self) -> bool:
        return await self._run(self._client.collections.exists, self._index_name)

    async def create_index(self) -> None:
        filterable = dict(data_type=DataType.TEXT, index_filterable=True, index_searchable=False)
        await self._run(
            self._client.collections.create,
            name=self._index_name,
            description="Knowledge base chunks (documents and thread uploads)",
            vectorizer_config=Configure.Vectorizer.none(),   # we supply our own vectors
            vector_index_config=Configure.VectorIndex.hnsw(
                distance_metric=wvc.config.VectorDistances.COSINE,
                ef_construction=128,
                max_connections=64,
            ),
            properties=[
                Property(name="document_id",    **filterable),
                Property(name="chat_type",      **filterable),
                Property(name="dept_name",      **filterable),
                Property(name="user",           **filterable),
                Property(name="chat_thread_id", **filterable),
                Property(name="page_content",   data_type=DataType.TEXT, index_searchable=True),
                Property(name="file_name",      data_type=DataType.TEXT),
                Property(name="metadata",       data_type=DataType.TEXT),
                Property(name="sas_url",        data_type=DataType.TEXT, index_searchable=False),
                Property(name="created_at",     data_type=DataType.TEXT, index_searchable=False),
            ],
        )
        logger.info("Weaviate collection created: %s", self._index_name)

    async def drop_index(self) -> None:
        await self._run(self._client.collections.delete, self._index_name)
        logger.warning("Weaviate collection dropped: %s", self._index_name)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, chunks: list[IndexedChunk], batch_size: int = 100) -> int:
        """Batch write; objects with an existing uuid are overwritten."""
        collection = self._collection()
        total = 0

        for i in range(0, len(chunks), batch_size):
            batch = chunks[i : i + batch_size]
            objects = [
                wvc.data.DataObject(uuid=c.id, properties=c.payload(), vector=c.embedding)
                for c in batch
            ]
            try:
                result = await self._run(collection.data.insert_many, objects)
            except WeaviateBaseError as exc:
                await self._raise_for(exc, "upsert")

            if result.has_errors:
                first = next(iter(result.errors.values()))
                raise IndexOperationError(
                    f"Weaviate upsert rejected {len(result.errors)} object(s): {first}",
                )
            total += len(batch)
            logger.debug("Weaviate upsert | batch=%d total=%d", len(batch), total)

        return total

    async def query(self, vector: list[float], top_k: int, scope: ScopeFilter) -> list[IndexedChunk]:
        try:
            response = await self._run(
                self._collection().query.near_vector,
                near_vector=vector,
                limit=top_k,
                return_metadata=MetadataQuery(distance=True),
                return_properties=_RETURN_PROPERTIES,
                filters=build_weaviate_filter(scope),
            )
        except WeaviateBaseError as exc:
            await self._raise_for(exc, "query")

        hits = []
        for obj in response.objects:
            score = 1.0 - (obj.metadata.distance or 0.0)   # convert distance → similarity
            hits.append(IndexedChunk.from_payload(str(obj.uuid), dict(obj.properties), round(score, 4)))

        logger.debug("Weaviate query | top_k=%d results=%d filter=%s", top_k, len(hits), scope)
        return hits

    async def delete_by_document(self, document_id: str) -> int:
        try:
            result = await self._run(
                self._collection().data.delete_many,
                where=Filter.by_property("document_id").equal(document_id),
            )
        except WeaviateBaseError as exc:
            await self._raise_for(exc, "delete")
        removed = getattr(result, "successful", 0) or 0
        logger.info("Weaviate delete_by_document | doc=%s removed=%d", document_id, removed)
        return removed

    async def count(self) -> int:
        agg = await self._run(self._collection().aggregate.over_all, total_count=True)
        return agg.total_count or 0

    async def close(self) -> None:
        await self._run(self._client.close)


def build_weaviate_filter(scope: ScopeFilter):
    """Convert ScopeFilter clauses into a Weaviate Filter (AND of equalities)."""
    clauses = [Filter.by_property(name).equal(value) for name, value in scope.clauses]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return Filter.all_of(clauses)


# ---------------------------------------------------------------------------
# Client factory — call once at startup and share via the service container
# ---------------------------------------------------------------------------

def create_weaviate_client() -> weaviate.WeaviateClient:
    """
    Create and return a connected Weaviate client.
    Supports both local (Docker) and Weaviate Cloud modes.
    """
    if settings.weaviate_api_key:
        return weaviate.connect_to_weaviate_cloud(
            cluster_url=settings.weaviate_url,
            auth_credentials=weaviate.auth.AuthApiKey(settings.weaviate_api_key),
        )
    return weaviate.connect_to_local(
        host=settings.weaviate_host,
        port=settings.weaviate_port,
    )
