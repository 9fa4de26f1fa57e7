"""
Knowledge Graph Module

Semantic index over the memory graph: embeddings, per-tenant vector
collections and consistency scoring.

Architecture:
- models: value types (SemanticClass, EmbeddingResult, VectorSearchResult)
- embedding_service: embedding providers (OpenAI, mock)
- embedding_cache: content-hash cache of computed vectors
- vector_store: ChromaDB collections per tenant and semantic class
- consistency: triplet consistency, drift and coherence scores
- pipeline: embed / batch / search orchestration
- scheduler: background embedding after graph writes
"""

__all__ = []
