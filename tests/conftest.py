"""
Shared fixtures: a throwaway SQLite database per test, an in-memory ChromaDB
client and a counting hash-based embedder.
"""

import asyncio
import os
import tempfile

# Keep module-level engines and stores out of the working tree
os.environ.setdefault("MEMORY_DATA_DIR", tempfile.mkdtemp(prefix="memory-graph-tests-"))
os.environ.setdefault("AUTO_EMBED_ENABLED", "false")

import chromadb
import pytest
from chromadb.config import Settings as ChromaSettings
from sqlalchemy.orm import sessionmaker

from database import build_engine, create_tables
from knowledge_graph.embedding_cache import EmbeddingCache
from knowledge_graph.embedding_service import MockEmbeddingProvider
from knowledge_graph.pipeline import EmbeddingPipeline, PipelineFactory
from knowledge_graph.retry import RetryPolicy
from knowledge_graph.vector_store import VectorIndex
from memory.service import MemoryService
from tenancy.context import tenant_scope

FAST_RETRY = RetryPolicy(attempts=2, delay=0.01, max_delay=0.01, timeout=5)


class CountingEmbedder(MockEmbeddingProvider):
    """
    Deterministic embedder that records how often it is called.

    Texts containing any of `fail_on` make the call raise; `delay` slows
    every call down (for timeout tests).
    """

    def __init__(self, dimensions: int = 8):
        super().__init__(dimensions=dimensions)
        self.model = "counting-mock"
        self.calls = 0
        self.batch_calls = 0
        self.fail_on = set()
        self.delay = 0.0

    def _check(self, texts):
        for text in texts:
            for marker in self.fail_on:
                if marker in text:
                    raise RuntimeError(f"embedding backend rejected '{marker}'")

    async def embed(self, text):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        self._check([text])
        return self._vector(text)

    async def embed_many(self, texts):
        self.batch_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        self._check(texts)
        return [self._vector(t) for t in texts]


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'memory.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    # rows handed back from a closed scope stay readable in assertions
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def scope_for(session_factory):
    """tenant_scope bound to the test database."""
    def _scope(tenant_id):
        return tenant_scope(tenant_id, session_factory)
    return _scope


@pytest.fixture
def service_for(scope_for):
    """Run fn(MemoryService) inside a committed tenant scope and return its result."""
    def _run(tenant_id, fn):
        with scope_for(tenant_id) as scope:
            return fn(MemoryService(scope))
    return _run


@pytest.fixture
def chroma_client():
    client = chromadb.EphemeralClient(settings=ChromaSettings(anonymized_telemetry=False, allow_reset=True))
    client.reset()
    yield client
    client.reset()


@pytest.fixture
def embedder():
    return CountingEmbedder()


@pytest.fixture
def vector_index(chroma_client):
    return VectorIndex(client=chroma_client, policy=FAST_RETRY)


@pytest.fixture
def cache():
    return EmbeddingCache(ttl_seconds=3600, max_entries=100)


@pytest.fixture
def pipeline_for(embedder, vector_index, cache):
    def _pipeline(tenant_id, **kwargs):
        kwargs.setdefault("policy", FAST_RETRY)
        return EmbeddingPipeline(tenant_id, embedder, vector_index, cache, **kwargs)
    return _pipeline


@pytest.fixture
def pipeline_factory(embedder, vector_index, cache):
    return PipelineFactory(embedder=embedder, vector_index=vector_index, cache=cache, policy=FAST_RETRY)
