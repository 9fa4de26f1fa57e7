"""
Embedding Cache

Process-local cache keyed by (semantic class, source id, content hash).
Entries expire lazily after the TTL; a full cache drops its oldest tenth
in a single pass before accepting a new key.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional
import hashlib
import logging
import threading
import time

from config import settings

logger = logging.getLogger(__name__)


def content_hash(text: str) -> str:
    """SHA-256 of the text, first 16 hex chars."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


class CacheKey(NamedTuple):
    semantic_class: str
    source_id: str
    content_hash: str


@dataclass
class CacheEntry:
    vector: List[float]
    model: str
    timestamp: float
    content_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class EmbeddingCache:
    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        evict_fraction: float = 0.1,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = settings.EMBEDDING_CACHE_TTL if ttl_seconds is None else ttl_seconds
        self.max_entries = settings.EMBEDDING_CACHE_MAX if max_entries is None else max_entries
        self.evict_fraction = evict_fraction
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.timestamp >= self.ttl_seconds:
                del self._entries[key]
                return None
            return entry

    def put(self, key: CacheKey, vector: List[float], model: str, metadata: Optional[Dict[str, Any]] = None) -> CacheEntry:
        entry = CacheEntry(
            vector=list(vector),
            model=model,
            timestamp=self._clock(),
            content_hash=key.content_hash,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_oldest()
            self._entries[key] = entry
        return entry

    def _evict_oldest(self) -> None:
        # caller holds the lock
        count = max(1, int(self.max_entries * self.evict_fraction))
        oldest = sorted(self._entries.items(), key=lambda item: item[1].timestamp)[:count]
        for key, _ in oldest:
            del self._entries[key]
        logger.info(f"Embedding cache full ({self.max_entries}), evicted {len(oldest)} oldest entries")

    def invalidate_source(self, source_ids: Iterable[str], semantic_class: Optional[str] = None) -> int:
        """Drop every entry for the given sources, whatever their content hash."""
        wanted = set(source_ids)
        with self._lock:
            doomed = [
                key for key in self._entries
                if key.source_id in wanted and (semantic_class is None or key.semantic_class == semantic_class)
            ]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.source_id.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
