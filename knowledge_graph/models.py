"""
Knowledge Graph Domain Models

Value types shared by the embedding cache, pipeline and vector index.
"""

from typing import List, Dict, Any, Optional
from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum

from models import utcnow


class SemanticClass(str, Enum):
    """Kinds of vectors kept per tenant. Each maps to its own collection."""
    ENTITY = "entity"
    RELATION = "relation"
    CONTEXT = "context"
    TRIPLET = "triplet"


@dataclass
class EmbeddingItem:
    """One unit of work for the embedding pipeline."""
    source_id: str
    semantic_class: SemanticClass
    content: str
    context_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EmbeddingResult:
    source_id: str
    semantic_class: SemanticClass
    vector: List[float]
    model: str
    content_hash: str
    cached: bool = False
    consistency_score: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "semantic_class": self.semantic_class.value,
            "dimensions": len(self.vector),
            "model": self.model,
            "content_hash": self.content_hash,
            "cached": self.cached,
            "consistency_score": self.consistency_score,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class FailedEmbedding:
    source_id: str
    semantic_class: Optional[SemanticClass]
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "semantic_class": self.semantic_class.value if self.semantic_class else None,
            "error": self.error,
        }


@dataclass
class BatchEmbeddingResult:
    """Partial-failure report: every input lands in exactly one list."""
    successful: List[EmbeddingResult] = field(default_factory=list)
    failed: List[FailedEmbedding] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": [r.to_dict() for r in self.successful],
            "failed": [f.to_dict() for f in self.failed],
            "total": self.total,
        }


@dataclass
class VectorRecord:
    """A vector as stored in the index, with its tenant-bound payload."""
    id: str
    tenant_id: str
    semantic_class: SemanticClass
    vector: List[float]
    payload: Dict[str, Any] = field(default_factory=dict)
    consistency_score: Optional[float] = None


@dataclass
class VectorSearchResult:
    id: str
    semantic_class: SemanticClass
    score: float
    payload: Dict[str, Any]
    vector: Optional[List[float]] = None
    consistency_score: Optional[float] = None
    drift: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "semantic_class": self.semantic_class.value,
            "score": self.score,
            "payload": self.payload,
            "consistency_score": self.consistency_score,
            "drift": self.drift,
        }
