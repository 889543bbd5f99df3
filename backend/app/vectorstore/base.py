"""
Vector Store — Abstract Base

Every concrete backend (Weaviate, Pinecone, in-process memory) implements
this interface. The rest of the application talks to the VectorIndexGateway,
which owns embedding and ordering and delegates storage to a backend.

Isolation contract:
  - One shared index for every department and chat type.
  - Isolation is enforced only through ScopeFilter predicates supplied by
    the caller; backends never add or drop clauses.
  - A backend must raise IndexNotFoundError (not return []) when the index
    or collection does not exist.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from app.vectorstore.filters import ScopeFilter


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class VectorIndexError(Exception):
    """Base class for index failures."""

    retryable: bool = False


class IndexNotFoundError(VectorIndexError):
    """The index/schema does not exist. Call ensure_index_created() and retry once."""


class IndexOperationError(VectorIndexError):
    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class IndexedChunk:
    """
    A unit stored in the index.

    chat_type is exactly one of doc | data | simple | web | document.
    score is populated on search results only and never stored.
    """
    id:             str
    document_id:    str
    chat_type:      str
    page_content:   str
    embedding:      list[float]   = field(default_factory=list, repr=False)
    file_name:      str           = ""
    metadata:       str           = ""      # display label; file name for uploads
    dept_name:      str | None    = None
    user:           str | None    = None
    chat_thread_id: str | None    = None
    sas_url:        str | None    = None
    created_at:     str | None    = None
    score:          float | None  = None

    def payload(self) -> dict:
        """Stored scalar fields (everything except the vector and score)."""
        return {
            "document_id":    self.document_id,
            "chat_type":      self.chat_type,
            "page_content":   self.page_content,
            "file_name":      self.file_name,
            "metadata":       self.metadata,
            "dept_name":      self.dept_name or "",
            "user":           self.user or "",
            "chat_thread_id": self.chat_thread_id or "",
            "sas_url":        self.sas_url or "",
            "created_at":     self.created_at or "",
        }

    @classmethod
    def from_payload(cls, chunk_id: str, payload: dict, score: float | None = None) -> "IndexedChunk":
        return cls(
            id=chunk_id,
            document_id=str(payload.get("document_id", "")),
            chat_type=str(payload.get("chat_type", "")),
            page_content=payload.get("page_content") or "",
            file_name=payload.get("file_name") or "",
            metadata=payload.get("metadata") or "",
            dept_name=payload.get("dept_name") or None,
            user=payload.get("user") or None,
            chat_thread_id=payload.get("chat_thread_id") or None,
            sas_url=payload.get("sas_url") or None,
            created_at=payload.get("created_at") or None,
            score=score,
        )


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorStoreBase(ABC):
    """Storage backend behind the VectorIndexGateway."""

    backend_name: str = "abstract"

    def __init__(self, index_name: str, dimensions: int) -> None:
        self._index_name = index_name
        self._dimensions = dimensions

    @property
    def index_name(self) -> str:
        return self._index_name

    @abstractmethod
    async def index_exists(self) -> bool:
        """True when the index/collection exists."""

    @abstractmethod
    async def create_index(self) -> None:
        """Create the index/collection. Only called when it does not exist."""

    @abstractmethod
    async def drop_index(self) -> None:
        """Drop the index/collection and everything in it. No-op if absent."""

    @abstractmethod
    async def upsert(self, chunks: list[IndexedChunk], batch_size: int = 100) -> int:
        """Insert or replace chunks by id. Returns the number written."""

    @abstractmethod
    async def query(
        self,
        vector: list[float],
        top_k: int,
        scope: ScopeFilter,
    ) -> list[IndexedChunk]:
        """Nearest-neighbour search restricted by `scope`; each hit carries a score."""

    @abstractmethod
    async def delete_by_document(self, document_id: str) -> int:
        """Delete ALL chunks belonging to a document. Returns the count removed when known."""

    @abstractmethod
    async def count(self) -> int:
        """Return total chunks in the index."""

    async def close(self) -> None:
        """Release client resources."""
