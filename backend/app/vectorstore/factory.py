"""
Vector Store Factory

Selects the backend (Weaviate | Pinecone | memory) from config and wraps it
in the VectorIndexGateway. Called once by the service container; the rest
of the app only sees the gateway.
"""

from __future__ import annotations

from app.core.config import settings
from app.processing.embeddings import EmbeddingClient
from app.vectorstore.base import VectorStoreBase
from app.vectorstore.gateway import VectorIndexGateway


def get_vector_store() -> VectorStoreBase:
    backend    = settings.vector_store_backend.lower()
    dimensions = settings.embedding_dimensions

    if backend == "weaviate":
        from app.vectorstore.weaviate_store import WeaviateVectorStore, create_weaviate_client
        return WeaviateVectorStore(
            client=create_weaviate_client(),
            index_name=settings.search_index_name,
            dimensions=dimensions,
        )

    if backend == "pinecone":
        from app.vectorstore.pinecone_store import PineconeVectorStore
        return PineconeVectorStore(index_name=settings.pinecone_index_name, dimensions=dimensions)

    if backend == "memory":
        from app.vectorstore.memory_store import InMemoryVectorStore
        return InMemoryVectorStore(index_name=settings.search_index_name, dimensions=dimensions)

    raise ValueError(
        f"Unknown vector store backend: '{backend}'. "
        f"Valid options: 'weaviate', 'pinecone', 'memory'"
    )


def build_gateway(embedder: EmbeddingClient | None = None) -> VectorIndexGateway:
    return VectorIndexGateway(store=get_vector_store(), embedder=embedder or EmbeddingClient())
