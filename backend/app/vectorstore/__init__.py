from app.vectorstore.base import (
    IndexedChunk,
    IndexNotFoundError,
    IndexOperationError,
    VectorIndexError,
    VectorStoreBase,
)
from app.vectorstore.factory import build_gateway, get_vector_store
from app.vectorstore.filters import ScopeFilter
from app.vectorstore.gateway import SearchDiagnostics, VectorIndexGateway

__all__ = [
    "IndexedChunk",
    "IndexNotFoundError",
    "IndexOperationError",
    "VectorIndexError",
    "VectorStoreBase",
    "ScopeFilter",
    "SearchDiagnostics",
    "VectorIndexGateway",
    "build_gateway",
    "get_vector_store",
]
