"""
Consistency Scorer

Advisory scores attached to vectors and search hits. Pure functions, no I/O;
nothing here ever rejects a write.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
import math

import numpy as np

from errors import DimensionMismatch
from models import utcnow

TOPIC_WEIGHT = 0.4
TEMPORAL_WEIGHT = 0.3
PARTICIPANT_WEIGHT = 0.3
TEMPORAL_HALF_LIFE_HOURS = 24.0


def triplet_consistency(source_id: Optional[str], target_id: Optional[str], predicate: Optional[str], strength: Any) -> float:
    """Start at 1.0 and subtract a penalty per structural defect, floored at 0."""
    score = 1.0
    if not source_id or not target_id:
        score -= 0.3
    if not predicate:
        score -= 0.2
    if (
        isinstance(strength, bool)
        or not isinstance(strength, (int, float))
        or math.isnan(strength)
        or not 0.0 <= strength <= 1.0
    ):
        score -= 0.2
    if source_id and source_id == target_id:
        score -= 0.5
    return max(0.0, round(score, 6))


def _as_arrays(a: Sequence[float], b: Sequence[float]):
    left = np.asarray(a, dtype=np.float64)
    right = np.asarray(b, dtype=np.float64)
    if left.shape != right.shape:
        raise DimensionMismatch(left.size, right.size)
    return left, right


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    left, right = _as_arrays(a, b)
    norm = np.linalg.norm(left) * np.linalg.norm(right)
    if norm == 0:
        return 0.0
    return float(np.dot(left, right) / norm)


def semantic_drift(a: Sequence[float], b: Sequence[float]) -> float:
    """1 - cosine similarity: 0 identical, 1 orthogonal, 2 opposite."""
    return 1.0 - cosine_similarity(a, b)


@dataclass
class BoundaryMarkers:
    """Where a context window sits relative to the previous one."""
    semantic_anchors: List[str] = field(default_factory=list)
    previous_anchors: List[str] = field(default_factory=list)
    participants: List[str] = field(default_factory=list)
    expected_participants: List[str] = field(default_factory=list)
    last_updated: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BoundaryMarkers":
        last_updated = payload.get("last_updated")
        if isinstance(last_updated, str):
            last_updated = datetime.fromisoformat(last_updated)
        return cls(
            semantic_anchors=list(payload.get("semantic_anchors") or []),
            previous_anchors=list(payload.get("previous_anchors") or []),
            participants=list(payload.get("participants") or []),
            expected_participants=list(payload.get("expected_participants") or []),
            last_updated=last_updated,
        )


@dataclass
class CoherenceScore:
    topic: float
    temporal: float
    participant: float
    overall: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "topic": self.topic,
            "temporal": self.temporal,
            "participant": self.participant,
            "overall": self.overall,
        }


def _jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    left, right = {x.lower() for x in a}, {x.lower() for x in b}
    if not left and not right:
        return 1.0
    return len(left & right) / len(left | right)


def coherence(markers: BoundaryMarkers, now: Optional[datetime] = None) -> CoherenceScore:
    now = now or utcnow()

    topic = _jaccard(markers.semantic_anchors, markers.previous_anchors)

    if markers.last_updated is None:
        temporal = 1.0
    else:
        elapsed_hours = max(0.0, (now - markers.last_updated).total_seconds() / 3600.0)
        temporal = 0.5 ** (elapsed_hours / TEMPORAL_HALF_LIFE_HOURS)

    if markers.expected_participants:
        expected = {p.lower() for p in markers.expected_participants}
        present = {p.lower() for p in markers.participants}
        participant = len(expected & present) / len(expected)
    else:
        participant = 1.0

    overall = TOPIC_WEIGHT * topic + TEMPORAL_WEIGHT * temporal + PARTICIPANT_WEIGHT * participant
    return CoherenceScore(topic=topic, temporal=temporal, participant=participant, overall=overall)


class ConsistencyScorer:
    """Narrow interface over the scoring functions so a learned scorer can replace them."""

    def triplet(self, source_id, target_id, predicate, strength) -> float:
        return triplet_consistency(source_id, target_id, predicate, strength)

    def drift(self, a: Sequence[float], b: Sequence[float]) -> float:
        return semantic_drift(a, b)

    def coherence(self, markers: BoundaryMarkers, now: Optional[datetime] = None) -> CoherenceScore:
        return coherence(markers, now)
