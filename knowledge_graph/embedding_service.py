"""
Embedding Service

Text -> vector providers. The pipeline treats them as opaque: embed(),
embed_many(), plus model / dimensions / is_mock attributes.
"""

from typing import List, Optional
import hashlib
import logging

import numpy as np
from openai import AsyncOpenAI

from config import settings
from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

MOCK_DIMENSIONS = 384


class OpenAIEmbeddingProvider:
    """
    OpenAI embeddings (text-embedding-3-small by default, 1536 dimensions).
    """

    is_mock = False

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, dimensions: Optional[int] = None):
        self.model = model or settings.EMBEDDING_MODEL
        self.dimensions = dimensions or settings.EMBEDDING_DIMENSIONS
        self.client = AsyncOpenAI(api_key=api_key or settings.OPENAI_API_KEY)

    async def embed(self, text: str) -> List[float]:
        """
        Generate embedding vector from text.

        Args:
            text: Text to embed

        Returns:
            List of `dimensions` floats
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        response = await self.client.embeddings.create(
            model=self.model,
            input=text,
            dimensions=self.dimensions,
        )
        return response.data[0].embedding

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        """One request for the whole list; results come back in input order."""
        if any(not t or not t.strip() for t in texts):
            raise ValueError("Text cannot be empty")

        response = await self.client.embeddings.create(
            model=self.model,
            input=texts,
            dimensions=self.dimensions,
        )
        ordered = sorted(response.data, key=lambda d: d.index)
        return [d.embedding for d in ordered]


class MockEmbeddingProvider:
    """
    Deterministic hash-based vectors for development and tests.

    Similar texts do NOT get similar vectors; every payload written with this
    provider is flagged mock_embedding=True.
    """

    is_mock = True

    def __init__(self, dimensions: int = MOCK_DIMENSIONS):
        self.model = "mock-sha256"
        self.dimensions = dimensions
        logger.warning(
            f"⚠️ Using mock embeddings ({dimensions} dims). Similarity scores are not semantically meaningful."
        )

    def _vector(self, text: str) -> List[float]:
        digest = np.frombuffer(hashlib.sha256(text.encode("utf-8")).digest(), dtype=np.uint8)
        values = np.resize(digest, self.dimensions).astype(np.float64) / 255.0 * 2.0 - 1.0
        norm = np.linalg.norm(values)
        if norm > 0:
            values = values / norm
        return values.tolist()

    async def embed(self, text: str) -> List[float]:
        return self._vector(text)

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        return [self._vector(t) for t in texts]


def get_embedding_provider(provider: Optional[str] = None):
    """
    Build the configured provider.

    The mock is refused in production and whenever EMBEDDING_ALLOW_MOCK is off.
    """
    provider = (provider or settings.EMBEDDING_PROVIDER).lower()

    if provider == "mock":
        if settings.ENVIRONMENT == "production" or not settings.EMBEDDING_ALLOW_MOCK:
            raise UpstreamUnavailable("embedding", "mock embeddings are disabled in this environment")
        return MockEmbeddingProvider()

    if provider == "openai":
        if not settings.OPENAI_API_KEY:
            raise UpstreamUnavailable("embedding", "OPENAI_API_KEY is not configured")
        return OpenAIEmbeddingProvider()

    raise UpstreamUnavailable("embedding", f"unknown embedding provider '{provider}'")
