"""
Embedding Pipeline

Turns graph content into tenant-bound vectors:

    content -> content hash -> cache? -> embedding function -> score -> vector index -> cache

Batch embedding never raises; every input ends up either successful or failed
with a reason.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import hashlib
import json
import logging

from config import settings
from errors import DimensionMismatch, InvalidInput, MemoryGraphError
from knowledge_graph.consistency import BoundaryMarkers, ConsistencyScorer
from knowledge_graph.embedding_cache import CacheKey, EmbeddingCache, content_hash
from knowledge_graph.embedding_service import get_embedding_provider
from knowledge_graph.models import (
    BatchEmbeddingResult,
    EmbeddingItem,
    EmbeddingResult,
    FailedEmbedding,
    SemanticClass,
    VectorSearchResult,
)
from knowledge_graph.retry import RetryPolicy, call_with_retry
from knowledge_graph.vector_store import VectorIndex
from models import EntityDTO, ObservationDTO, RelationDTO, utcnow

logger = logging.getLogger(__name__)

TRIPLET_PREFIX = "triplet:"
MEMORY_KINDS = ("entity", "relation", "observation")


def entity_content(entity: EntityDTO) -> str:
    text = f"{entity.name} ({entity.type})"
    if entity.description:
        text += f": {entity.description}"
    return text


def relation_content(relation: RelationDTO) -> str:
    subject = relation.subject.name if relation.subject else relation.subject_id
    object = relation.object.name if relation.object else relation.object_id
    return f"{subject} {relation.predicate} {object}"


def observation_content(observation: ObservationDTO) -> str:
    entity_name = observation.entity.name if observation.entity else observation.entity_id
    return f"[{entity_name}] {observation.content}"


def relationship_fingerprint(subject_id: str, predicate: str, object_id: str) -> str:
    return hashlib.sha256(f"{subject_id}|{predicate}|{object_id}".encode("utf-8")).hexdigest()[:16]


def metadata_hash(metadata: Dict[str, Any]) -> str:
    """Fingerprint of a source's payload fields; a change means the stored payload is stale."""
    return content_hash(json.dumps(metadata, sort_keys=True, default=str))


def _creator_metadata(dto) -> Dict[str, Any]:
    metadata = {}
    if dto.created_by.user:
        metadata["created_by_user"] = dto.created_by.user
    if dto.created_by.assistant:
        metadata["created_by_assistant"] = dto.created_by.assistant.name
        if dto.created_by.assistant.type:
            metadata["created_by_assistant_type"] = dto.created_by.assistant.type
    return metadata


def entity_items(entity: EntityDTO) -> List[EmbeddingItem]:
    metadata = {
        "entity_id": entity.id,
        "entity_type": entity.type,
        "name": entity.name,
        **_creator_metadata(entity),
    }
    return [EmbeddingItem(entity.id, SemanticClass.ENTITY, entity_content(entity), metadata)]


def relation_items(relation: RelationDTO) -> List[EmbeddingItem]:
    """A relation is indexed twice: as a relation vector and as a derived triplet."""
    metadata = {
        "relation_id": relation.id,
        "subject_id": relation.subject_id,
        "object_id": relation.object_id,
        "predicate": relation.predicate,
        "strength": relation.strength,
        "fingerprint": relationship_fingerprint(relation.subject_id, relation.predicate, relation.object_id),
        **_creator_metadata(relation),
    }
    if relation.subject:
        metadata["subject_name"] = relation.subject.name
    if relation.object:
        metadata["object_name"] = relation.object.name
    content = relation_content(relation)
    return [
        EmbeddingItem(relation.id, SemanticClass.RELATION, content, metadata),
        EmbeddingItem(f"{TRIPLET_PREFIX}{relation.id}", SemanticClass.TRIPLET, content, dict(metadata)),
    ]


def observation_items(observation: ObservationDTO, markers: Optional[BoundaryMarkers] = None) -> List[EmbeddingItem]:
    entity_name = observation.entity.name if observation.entity else None
    if markers is None:
        anchors = [entity_name] if entity_name else []
        participants = [p for p in (observation.created_by.user,
                                    observation.created_by.assistant.name if observation.created_by.assistant else None) if p]
        markers = BoundaryMarkers(
            semantic_anchors=anchors,
            previous_anchors=anchors,
            participants=participants,
            expected_participants=participants,
            last_updated=observation.observed_at,
        )
    metadata = {
        "observation_id": observation.id,
        "entity_id": observation.entity_id,
        "observed_at": observation.observed_at.isoformat(),
        "boundary": {
            "semantic_anchors": markers.semantic_anchors,
            "previous_anchors": markers.previous_anchors,
            "participants": markers.participants,
            "expected_participants": markers.expected_participants,
            "last_updated": markers.last_updated.isoformat() if markers.last_updated else None,
        },
        **_creator_metadata(observation),
    }
    if entity_name:
        metadata["entity_name"] = entity_name
    if observation.source:
        metadata["source"] = observation.source
    return [EmbeddingItem(observation.id, SemanticClass.CONTEXT, observation_content(observation), metadata)]


def memory_items(memory_service, source_id: str, kind: str) -> List[EmbeddingItem]:
    """Embedding items for one stored memory. Raises NotFound / InvalidInput."""
    if kind == "entity":
        return entity_items(memory_service.get_entity(source_id))
    if kind == "relation":
        return relation_items(memory_service.get_relation(source_id))
    if kind == "observation":
        return observation_items(memory_service.get_observation(source_id))
    raise InvalidInput("kind", f"must be one of {', '.join(MEMORY_KINDS)}")


def resolve_memory_refs(memory_service, refs: Sequence[Tuple[str, str]]) -> Tuple[List[EmbeddingItem], List[FailedEmbedding]]:
    """
    Look up (id, kind) references through the memory service.

    Blocking (database); call it inside the tenant scope. Unknown or missing
    references become failures, never exceptions.
    """
    items: List[EmbeddingItem] = []
    failed: List[FailedEmbedding] = []
    for source_id, kind in refs:
        try:
            items.extend(memory_items(memory_service, source_id, kind))
        except MemoryGraphError as e:
            failed.append(FailedEmbedding(source_id, None, e.message))
    return items, failed


class EmbeddingPipeline:
    """
    Per-tenant embedding pipeline.

    Args:
        tenant_id: tenant every vector is bound to
        embedder: object with async embed(text), embed_many(texts), model, dimensions, is_mock
        vector_index: VectorIndex
        cache: shared EmbeddingCache (keys are scoped to the tenant)
        scorer: ConsistencyScorer
        batch_size: texts per embed_many call
    """

    def __init__(
        self,
        tenant_id: str,
        embedder,
        vector_index: VectorIndex,
        cache: Optional[EmbeddingCache] = None,
        scorer: Optional[ConsistencyScorer] = None,
        batch_size: Optional[int] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.tenant_id = tenant_id
        self.embedder = embedder
        self.vector_index = vector_index
        self.cache = cache if cache is not None else EmbeddingCache()
        self.scorer = scorer or ConsistencyScorer()
        self.batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        self.policy = policy or RetryPolicy(timeout=settings.EMBEDDING_TIMEOUT)

    def _cache_key(self, semantic_class: SemanticClass, source_id: str, hash_: str) -> CacheKey:
        return CacheKey(semantic_class.value, f"{self.tenant_id}/{source_id}", hash_)

    def _score(self, semantic_class: SemanticClass, metadata: Dict[str, Any]) -> Tuple[Optional[float], Dict[str, Any]]:
        if semantic_class in (SemanticClass.RELATION, SemanticClass.TRIPLET):
            score = self.scorer.triplet(
                metadata.get("subject_id"),
                metadata.get("object_id"),
                metadata.get("predicate"),
                metadata.get("strength"),
            )
            return score, {}
        if semantic_class == SemanticClass.CONTEXT and isinstance(metadata.get("boundary"), dict):
            result = self.scorer.coherence(BoundaryMarkers.from_payload(metadata["boundary"]))
            return result.overall, {"coherence": result.to_dict()}
        return None, {}

    def _check_dimensions(self, vector: List[float]) -> None:
        expected = getattr(self.embedder, "dimensions", None)
        if expected and len(vector) != expected:
            raise DimensionMismatch(len(vector), expected)

    async def _store(self, item: EmbeddingItem, hash_: str, vector: List[float], cached: bool = False) -> EmbeddingResult:
        """Score, write to the index, then cache. Nothing is cached if the write fails."""
        self._check_dimensions(vector)
        score, extra = self._score(item.semantic_class, item.context_metadata)
        payload = {
            **item.context_metadata,
            **extra,
            "source_id": item.source_id,
            "content_hash": hash_,
            "metadata_hash": metadata_hash(item.context_metadata),
            "model": self.embedder.model,
            "embedded_at": utcnow().isoformat(),
        }
        if score is not None:
            payload["consistency_score"] = score
        if getattr(self.embedder, "is_mock", False):
            payload["mock_embedding"] = True

        await self.vector_index.ensure_collection(self.tenant_id, item.semantic_class, len(vector))
        await self.vector_index.upsert(self.tenant_id, item.semantic_class, item.source_id, vector, payload)
        self.cache.put(self._cache_key(item.semantic_class, item.source_id, hash_), vector, self.embedder.model, payload)

        return EmbeddingResult(
            source_id=item.source_id,
            semantic_class=item.semantic_class,
            vector=list(vector),
            model=self.embedder.model,
            content_hash=hash_,
            cached=cached,
            consistency_score=score,
            metadata=payload,
        )

    async def _reuse(self, item: EmbeddingItem, hash_: str) -> Optional[EmbeddingResult]:
        """
        Cached vector for unchanged content, or None on a miss.

        When only the payload fields changed (strength, source, attribution)
        the cached vector is written again with the new payload; the
        embedding function is not called.
        """
        entry = self.cache.get(self._cache_key(item.semantic_class, item.source_id, hash_))
        if entry is None:
            return None
        if entry.metadata.get("metadata_hash") != metadata_hash(item.context_metadata):
            logger.debug(f"Refreshing payload of {item.semantic_class.value} {item.source_id} for tenant {self.tenant_id}")
            return await self._store(item, hash_, entry.vector, cached=True)
        return EmbeddingResult(
            source_id=item.source_id,
            semantic_class=item.semantic_class,
            vector=list(entry.vector),
            model=entry.model,
            content_hash=entry.content_hash,
            cached=True,
            consistency_score=entry.metadata.get("consistency_score"),
            metadata=dict(entry.metadata),
        )

    # ------------------------------------------------------------------ embed

    async def embed(
        self,
        source_id: str,
        semantic_class: SemanticClass,
        content: str,
        context_metadata: Optional[Dict[str, Any]] = None,
        force: bool = False,
    ) -> EmbeddingResult:
        """
        Embed one piece of content for a source.

        Same (class, source, content) within the cache TTL returns the cached
        vector without calling the embedding function, unless force=True.

        Raises:
            InvalidInput: empty content
            UpstreamUnavailable: embedding function or vector store kept failing
        """
        if not content or not content.strip():
            raise InvalidInput("content", "must not be empty")
        item = EmbeddingItem(source_id, SemanticClass(semantic_class), content, dict(context_metadata or {}))
        hash_ = content_hash(content)

        if not force:
            hit = await self._reuse(item, hash_)
            if hit is not None:
                return hit

        vector = await call_with_retry("embedding", lambda: self.embedder.embed(content), self.policy)
        return await self._store(item, hash_, vector)

    async def embed_batch(self, items: Sequence[EmbeddingItem], force: bool = False) -> BatchEmbeddingResult:
        """
        Embed many items with one embedding call per chunk of misses.

        A chunk whose call fails fails every item in it; a failed index write
        fails only its item.
        """
        result = BatchEmbeddingResult()
        misses: List[Tuple[EmbeddingItem, str]] = []

        for item in items:
            if not item.content or not item.content.strip():
                result.failed.append(FailedEmbedding(item.source_id, item.semantic_class, "content must not be empty"))
                continue
            hash_ = content_hash(item.content)
            try:
                hit = None if force else await self._reuse(item, hash_)
            except Exception as e:
                reason = str(e) or type(e).__name__
                logger.warning(f"Refreshing vector {item.source_id} failed: {reason}")
                result.failed.append(FailedEmbedding(item.source_id, item.semantic_class, reason))
                continue
            if hit is not None:
                result.successful.append(hit)
            else:
                misses.append((item, hash_))

        for start in range(0, len(misses), self.batch_size):
            chunk = misses[start:start + self.batch_size]
            texts = [item.content for item, _ in chunk]
            try:
                vectors = await call_with_retry(
                    "embedding",
                    lambda texts=texts: self.embedder.embed_many(texts),
                    self.policy,
                )
                if len(vectors) != len(chunk):
                    raise InvalidInput("embedding", f"expected {len(chunk)} vectors, got {len(vectors)}")
            except Exception as e:
                reason = str(e) or type(e).__name__
                logger.warning(f"Embedding chunk of {len(chunk)} failed for tenant {self.tenant_id}: {reason}")
                result.failed.extend(FailedEmbedding(item.source_id, item.semantic_class, reason) for item, _ in chunk)
                continue

            for (item, hash_), vector in zip(chunk, vectors):
                try:
                    result.successful.append(await self._store(item, hash_, vector))
                except Exception as e:
                    reason = str(e) or type(e).__name__
                    logger.warning(f"Storing vector {item.source_id} failed: {reason}")
                    result.failed.append(FailedEmbedding(item.source_id, item.semantic_class, reason))

        logger.info(
            f"Batch embedding for tenant {self.tenant_id}: "
            f"{len(result.successful)} ok, {len(result.failed)} failed"
        )
        return result

    async def embed_entity(self, entity: EntityDTO, force: bool = False) -> EmbeddingResult:
        item = entity_items(entity)[0]
        return await self.embed(item.source_id, item.semantic_class, item.content, item.context_metadata, force)

    async def embed_relation(self, relation: RelationDTO, force: bool = False) -> List[EmbeddingResult]:
        """Relation vector plus its triplet vector, from a single embedding call."""
        relation_item, triplet_item = relation_items(relation)
        first = await self.embed(
            relation_item.source_id, relation_item.semantic_class, relation_item.content,
            relation_item.context_metadata, force,
        )
        hash_ = first.content_hash
        second = None if force else await self._reuse(triplet_item, hash_)
        if second is None:
            second = await self._store(triplet_item, hash_, first.vector)
        return [first, second]

    async def embed_observation(
        self,
        observation: ObservationDTO,
        markers: Optional[BoundaryMarkers] = None,
        force: bool = False,
    ) -> EmbeddingResult:
        item = observation_items(observation, markers)[0]
        return await self.embed(item.source_id, item.semantic_class, item.content, item.context_metadata, force)

    async def embed_resolved(
        self,
        items: Sequence[EmbeddingItem],
        failed: Iterable[FailedEmbedding] = (),
        force: bool = False,
    ) -> BatchEmbeddingResult:
        """Batch-embed items produced by resolve_memory_refs, carrying over its failures."""
        result = await self.embed_batch(items, force)
        result.failed = list(failed) + result.failed
        return result

    # ----------------------------------------------------------------- search

    async def search(
        self,
        query: str,
        semantic_classes: Optional[Sequence[SemanticClass]] = None,
        limit: int = 10,
        score_threshold: Optional[float] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[VectorSearchResult]:
        """
        Semantic search across the tenant's collections.

        Hits carry the stored consistency score and the query->hit drift
        (0 identical .. 2 opposite).
        """
        if not query or not query.strip():
            raise InvalidInput("query", "must not be empty")
        if not 1 <= limit <= 100:
            raise InvalidInput("limit", "must be between 1 and 100")
        try:
            classes = [SemanticClass(c) for c in (semantic_classes or list(SemanticClass))]
        except ValueError:
            raise InvalidInput("semantic_classes", f"must be among {', '.join(c.value for c in SemanticClass)}")

        query_vector = await call_with_retry("embedding", lambda: self.embedder.embed(query), self.policy)

        hits: List[VectorSearchResult] = []
        for semantic_class in classes:
            hits.extend(await self.vector_index.search(
                self.tenant_id, semantic_class, query_vector, limit, score_threshold, filters,
            ))

        for hit in hits:
            if hit.vector is not None:
                hit.drift = min(2.0, max(0.0, self.scorer.drift(query_vector, hit.vector)))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    # ---------------------------------------------------------------- removal

    async def remove_source(self, semantic_class: SemanticClass, source_id: str) -> bool:
        semantic_class = SemanticClass(semantic_class)
        self.cache.invalidate_source([f"{self.tenant_id}/{source_id}"], semantic_class.value)
        return await self.vector_index.delete(self.tenant_id, semantic_class, source_id)

    async def remove_sources(
        self,
        entity_ids: Iterable[str] = (),
        relation_ids: Iterable[str] = (),
        observation_ids: Iterable[str] = (),
    ) -> Dict[str, int]:
        """Delete vectors (and cache entries) of deleted graph nodes."""
        entity_ids, relation_ids, observation_ids = list(entity_ids), list(relation_ids), list(observation_ids)
        triplet_ids = [f"{TRIPLET_PREFIX}{rid}" for rid in relation_ids]

        groups = (
            (SemanticClass.ENTITY, entity_ids),
            (SemanticClass.RELATION, relation_ids),
            (SemanticClass.TRIPLET, triplet_ids),
            (SemanticClass.CONTEXT, observation_ids),
        )
        removed = {}
        for semantic_class, ids in groups:
            self.cache.invalidate_source([f"{self.tenant_id}/{i}" for i in ids], semantic_class.value)
            removed[semantic_class.value] = await self.vector_index.delete_batch(self.tenant_id, semantic_class, ids)
        return removed

    async def forget_tenant(self) -> int:
        """Drop all of the tenant's collections and cached vectors."""
        self.cache.invalidate_prefix(f"{self.tenant_id}/")
        return await self.vector_index.delete_all_for_tenant(self.tenant_id)

    async def stats(self) -> Dict[str, int]:
        return {c.value: await self.vector_index.count(self.tenant_id, c) for c in SemanticClass}


class PipelineFactory:
    """
    Builds per-tenant pipelines over shared embedder, index and cache.

    The embedder and index are created on first use so the app can start
    without embedding credentials.
    """

    def __init__(self, embedder=None, vector_index: Optional[VectorIndex] = None,
                 cache: Optional[EmbeddingCache] = None, scorer: Optional[ConsistencyScorer] = None,
                 policy: Optional[RetryPolicy] = None):
        self.embedder = embedder
        self.vector_index = vector_index
        self.cache = cache if cache is not None else EmbeddingCache()
        self.scorer = scorer or ConsistencyScorer()
        self.policy = policy

    def __call__(self, tenant_id: str) -> EmbeddingPipeline:
        if self.embedder is None:
            self.embedder = get_embedding_provider()
        if self.vector_index is None:
            self.vector_index = VectorIndex()
        return EmbeddingPipeline(
            tenant_id, self.embedder, self.vector_index, self.cache, self.scorer, policy=self.policy,
        )
