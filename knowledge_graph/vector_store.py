"""
Vector Store

ChromaDB-backed vector index with one collection per (tenant, semantic class).
Every read is filtered by tenant and re-checked against the stored payload,
so a cross-tenant lookup comes back empty rather than failing.
"""

from typing import Any, Callable, Dict, List, Optional, TypeVar
import asyncio
import hashlib
import json
import logging
import re

import chromadb
from chromadb.config import Settings
from chromadb.errors import ChromaError

from config import settings
from errors import DimensionMismatch, InvalidInput
from knowledge_graph.models import SemanticClass, VectorRecord, VectorSearchResult
from knowledge_graph.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

COLLECTION_PREFIX = "mem"
MAX_COLLECTION_NAME = 63

# HNSW tuning per semantic class (cosine everywhere)
HNSW_CONFIG = {
    SemanticClass.ENTITY: {"hnsw:M": 16, "hnsw:construction_ef": 200, "hnsw:search_ef": 128},  # high recall
    SemanticClass.RELATION: {"hnsw:M": 32, "hnsw:construction_ef": 128, "hnsw:search_ef": 64},  # high connectivity
    SemanticClass.CONTEXT: {"hnsw:M": 8, "hnsw:construction_ef": 64, "hnsw:search_ef": 32},  # low density
    SemanticClass.TRIPLET: {"hnsw:M": 24, "hnsw:construction_ef": 160, "hnsw:search_ef": 96},  # balanced
}

_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


def collection_name(tenant_id: str, semantic_class: SemanticClass) -> str:
    """Deterministic collection name for a tenant and class."""
    safe = _UNSAFE.sub("_", tenant_id)
    name = f"{COLLECTION_PREFIX}_{safe}_{SemanticClass(semantic_class).value}"
    # rewritten or overlong ids get a digest so distinct tenants never share a collection
    if safe != tenant_id or len(name) > MAX_COLLECTION_NAME:
        digest = hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()[:12]
        name = f"{COLLECTION_PREFIX}_{safe[:32]}-{digest}_{SemanticClass(semantic_class).value}"
    return name


def _to_metadata(tenant_id: str, semantic_class: SemanticClass, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Filterable primitive fields; the full payload travels as the document."""
    metadata = {
        key: value
        for key, value in payload.items()
        if isinstance(value, (str, int, float, bool))
    }
    metadata["tenant_id"] = tenant_id
    metadata["semantic_class"] = semantic_class.value
    return metadata


def _as_list(vector) -> List[float]:
    return [float(x) for x in vector]


def _column(result: Dict[str, Any], key: str) -> list:
    """Chroma may return None or numpy arrays for included fields."""
    value = result.get(key)
    return [] if value is None else list(value)


class VectorIndex:
    """
    Tenant-partitioned vector storage.

    Blocking ChromaDB calls run in a worker thread under a timeout with
    bounded retries.
    """

    def __init__(self, client=None, policy: Optional[RetryPolicy] = None):
        if client is None:
            client = self._default_client()
        self.client = client
        self.policy = policy or RetryPolicy(timeout=settings.VECTOR_TIMEOUT)

    @staticmethod
    def _default_client():
        chroma_settings = Settings(anonymized_telemetry=False, allow_reset=True)
        if settings.CHROMA_HOST:
            return chromadb.HttpClient(host=settings.CHROMA_HOST, port=settings.CHROMA_PORT, settings=chroma_settings)
        return chromadb.PersistentClient(path=settings.CHROMA_DB_PATH, settings=chroma_settings)

    async def _run(self, operation: str, fn: Callable[[], T]) -> T:
        return await call_with_retry(
            f"vector_store.{operation}",
            lambda: asyncio.to_thread(fn),
            self.policy,
        )

    def _get_collection(self, name: str):
        try:
            return self.client.get_collection(name=name, embedding_function=None)
        except (ValueError, ChromaError):
            # collection does not exist (raised type differs across chromadb versions)
            return None

    # ---------------------------------------------------------------- lifecycle

    async def ensure_collection(self, tenant_id: str, semantic_class: SemanticClass, dimension: int) -> str:
        """Create the collection if needed. Idempotent; refuses a dimension change."""
        semantic_class = SemanticClass(semantic_class)
        name = collection_name(tenant_id, semantic_class)

        def _ensure():
            collection = self._get_collection(name)
            if collection is None:
                metadata = {"hnsw:space": "cosine", "dimension": dimension, **HNSW_CONFIG[semantic_class]}
                collection = self.client.get_or_create_collection(
                    name=name,
                    metadata=metadata,
                    embedding_function=None,
                )
                logger.info(f"Created vector collection {name} ({dimension} dims)")
            existing = (collection.metadata or {}).get("dimension")
            if existing is not None and int(existing) != dimension:
                raise DimensionMismatch(int(existing), dimension)
            return name

        return await self._run("ensure_collection", _ensure)

    # ------------------------------------------------------------------- writes

    async def upsert(
        self,
        tenant_id: str,
        semantic_class: SemanticClass,
        id: str,
        vector: List[float],
        payload: Dict[str, Any],
    ) -> None:
        """Store a vector, replacing (never merging) any existing record with this id."""
        semantic_class = SemanticClass(semantic_class)
        name = collection_name(tenant_id, semantic_class)
        payload = dict(payload, tenant_id=tenant_id, semantic_class=semantic_class.value)

        def _upsert():
            collection = self._get_collection(name)
            if collection is None:
                raise InvalidInput("semantic_class", f"collection {name} does not exist")
            collection.delete(ids=[id])
            collection.add(
                ids=[id],
                embeddings=[_as_list(vector)],
                metadatas=[_to_metadata(tenant_id, semantic_class, payload)],
                documents=[json.dumps(payload, default=str)],
            )

        await self._run("upsert", _upsert)

    async def delete(self, tenant_id: str, semantic_class: SemanticClass, id: str) -> bool:
        return await self.delete_batch(tenant_id, semantic_class, [id]) == 1

    async def delete_batch(self, tenant_id: str, semantic_class: SemanticClass, ids: List[str]) -> int:
        """Delete the given ids that belong to tenant_id. Returns how many were deleted."""
        if not ids:
            return 0
        name = collection_name(tenant_id, semantic_class)

        def _delete():
            collection = self._get_collection(name)
            if collection is None:
                return 0
            found = collection.get(ids=list(dict.fromkeys(ids)), include=["metadatas"])
            owned = [
                record_id
                for record_id, metadata in zip(_column(found, "ids"), _column(found, "metadatas"))
                if (metadata or {}).get("tenant_id") == tenant_id
            ]
            if owned:
                collection.delete(ids=owned)
            return len(owned)

        return await self._run("delete_batch", _delete)

    async def delete_all_for_tenant(self, tenant_id: str) -> int:
        """Drop every collection of the tenant. Returns the number dropped."""

        def _drop():
            dropped = 0
            for semantic_class in SemanticClass:
                name = collection_name(tenant_id, semantic_class)
                if self._get_collection(name) is None:
                    continue
                self.client.delete_collection(name=name)
                dropped += 1
            return dropped

        dropped = await self._run("delete_all_for_tenant", _drop)
        logger.warning(f"Dropped {dropped} vector collections for tenant {tenant_id}")
        return dropped

    # -------------------------------------------------------------------- reads

    async def get(self, tenant_id: str, semantic_class: SemanticClass, id: str) -> Optional[VectorRecord]:
        semantic_class = SemanticClass(semantic_class)
        name = collection_name(tenant_id, semantic_class)

        def _get():
            collection = self._get_collection(name)
            if collection is None:
                return None
            found = collection.get(ids=[id], include=["embeddings", "metadatas", "documents"])
            ids = _column(found, "ids")
            if len(ids) == 0:
                return None
            metadata = _column(found, "metadatas")[0] or {}
            if metadata.get("tenant_id") != tenant_id:
                return None
            payload = json.loads(_column(found, "documents")[0] or "{}")
            return VectorRecord(
                id=ids[0],
                tenant_id=tenant_id,
                semantic_class=semantic_class,
                vector=_as_list(_column(found, "embeddings")[0]),
                payload=payload,
                consistency_score=payload.get("consistency_score"),
            )

        return await self._run("get", _get)

    async def search(
        self,
        tenant_id: str,
        semantic_class: SemanticClass,
        vector: List[float],
        limit: int = 10,
        score_threshold: Optional[float] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[VectorSearchResult]:
        """
        Nearest neighbours within the tenant's collection.

        Score is cosine similarity clamped to [0, 1]. The tenant filter is
        always conjoined with any caller filters.
        """
        semantic_class = SemanticClass(semantic_class)
        name = collection_name(tenant_id, semantic_class)
        if score_threshold is None:
            score_threshold = settings.VECTOR_SEARCH_SCORE_THRESHOLD

        clauses = [{"tenant_id": {"$eq": tenant_id}}]
        for key, value in (filters or {}).items():
            if key == "tenant_id":
                continue
            if not isinstance(value, (str, int, float, bool)):
                raise InvalidInput(f"filters.{key}", "filter values must be strings, numbers or booleans")
            clauses.append({key: {"$eq": value}})
        where = clauses[0] if len(clauses) == 1 else {"$and": clauses}

        def _search():
            collection = self._get_collection(name)
            if collection is None:
                return []
            available = collection.count()
            if available == 0:
                return []
            result = collection.query(
                query_embeddings=[_as_list(vector)],
                n_results=min(limit, available),
                where=where,
                include=["distances", "metadatas", "documents", "embeddings"],
            )

            ids = _column(result, "ids")[0] if _column(result, "ids") else []
            distances = _column(result, "distances")[0] if _column(result, "distances") else []
            metadatas = _column(result, "metadatas")[0] if _column(result, "metadatas") else []
            documents = _column(result, "documents")[0] if _column(result, "documents") else []
            embeddings = _column(result, "embeddings")[0] if _column(result, "embeddings") else []

            hits = []
            for i, record_id in enumerate(ids):
                metadata = metadatas[i] or {}
                if metadata.get("tenant_id") != tenant_id:
                    continue
                score = min(1.0, max(0.0, 1.0 - float(distances[i])))
                if score < score_threshold:
                    continue
                payload = json.loads(documents[i] or "{}")
                hits.append(VectorSearchResult(
                    id=record_id,
                    semantic_class=semantic_class,
                    score=score,
                    payload=payload,
                    vector=_as_list(embeddings[i]) if len(embeddings) > i else None,
                    consistency_score=payload.get("consistency_score"),
                ))
            return hits

        return await self._run("search", _search)

    async def count(self, tenant_id: str, semantic_class: SemanticClass) -> int:
        name = collection_name(tenant_id, semantic_class)

        def _count():
            collection = self._get_collection(name)
            return 0 if collection is None else collection.count()

        return await self._run("count", _count)
