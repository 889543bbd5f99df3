"""
In-process Vector Store — numpy cosine similarity

Used for local development (VECTOR_STORE_BACKEND=memory) and tests.
Vectors are L2-normalized on write, so a dot product is cosine similarity.

Records keep their first-insertion position. An upsert that replaces an
existing id keeps that position, so equal scores always come back in
insertion order.
"""

from __future__ import annotations

import asyncio
import logging

import numpy as np

from app.vectorstore.base import IndexedChunk, IndexNotFoundError, VectorStoreBase
from app.vectorstore.filters import ScopeFilter

logger = logging.getLogger(__name__)


def _normalize(vector: list[float]) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    return arr / norm if norm > 0 else arr


class InMemoryVectorStore(VectorStoreBase):

    backend_name = "memory"

    def __init__(self, index_name: str = "memory", dimensions: int = 1536) -> None:
        super().__init__(index_name, dimensions)
        self._exists = False
        self._records: dict[str, tuple[IndexedChunk, np.ndarray]] = {}   # dicts keep insertion order
        self._lock = asyncio.Lock()

    def _require_index(self) -> None:
        if not self._exists:
            raise IndexNotFoundError(f"In-memory index '{self._index_name}' does not exist")

    async def index_exists(self) -> bool:
        return self._exists

    async def create_index(self) -> None:
        self._exists = True
        logger.info("In-memory index created: %s", self._index_name)

    async def drop_index(self) -> None:
        async with self._lock:
            self._exists = False
            self._records.clear()

    async def upsert(self, chunks: list[IndexedChunk], batch_size: int = 100) -> int:
        self._require_index()
        async with self._lock:
            for chunk in chunks:
                if len(chunk.embedding) != self._dimensions:
                    raise ValueError(
                        f"Embedding has {len(chunk.embedding)} dims; index expects {self._dimensions}"
                    )
                stored = IndexedChunk.from_payload(chunk.id, chunk.payload())
                self._records[chunk.id] = (stored, _normalize(chunk.embedding))
        return len(chunks)

    async def query(self, vector: list[float], top_k: int, scope: ScopeFilter) -> list[IndexedChunk]:
        self._require_index()
        candidates = [
            (chunk, vec)
            for chunk, vec in self._records.values()
            if scope.matches(chunk.payload())
        ]
        if not candidates:
            return []

        matrix = np.stack([vec for _, vec in candidates])
        scores = matrix @ _normalize(vector)
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            IndexedChunk.from_payload(candidates[i][0].id, candidates[i][0].payload(), round(float(scores[i]), 4))
            for i in order
        ]

    async def delete_by_document(self, document_id: str) -> int:
        self._require_index()
        async with self._lock:
            doomed = [cid for cid, (chunk, _) in self._records.items() if chunk.document_id == document_id]
            for cid in doomed:
                del self._records[cid]
        return len(doomed)

    async def count(self) -> int:
        self._require_index()
        return len(self._records)
