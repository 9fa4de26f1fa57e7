"""
VectorIndex over an in-memory ChromaDB client.
"""

import pytest

from errors import DimensionMismatch, InvalidInput
from knowledge_graph.models import SemanticClass
from knowledge_graph.vector_store import HNSW_CONFIG, collection_name

X = [1.0, 0.0, 0.0]
Y = [0.0, 1.0, 0.0]
XY = [0.7071, 0.7071, 0.0]


class TestCollectionNames:
    def test_plain_tenant(self):
        assert collection_name("u1", SemanticClass.ENTITY) == "mem_u1_entity"

    def test_sanitized_tenants_never_collide(self):
        rewritten = collection_name("user@example.com", SemanticClass.CONTEXT)
        plain = collection_name("user_example_com", SemanticClass.CONTEXT)
        assert rewritten != plain
        assert rewritten.startswith("mem_user_example_com-")
        assert rewritten.endswith("_context")

    def test_long_tenant_is_bounded(self):
        name = collection_name("t" * 200, SemanticClass.TRIPLET)
        assert len(name) <= 63
        assert name != collection_name("t" * 201, SemanticClass.TRIPLET)

    def test_every_class_is_tuned(self):
        assert set(HNSW_CONFIG) == set(SemanticClass)
        assert HNSW_CONFIG[SemanticClass.RELATION]["hnsw:M"] > HNSW_CONFIG[SemanticClass.CONTEXT]["hnsw:M"]


@pytest.mark.asyncio
class TestVectorIndex:
    async def test_ensure_collection_is_idempotent(self, vector_index, chroma_client):
        first = await vector_index.ensure_collection("u1", SemanticClass.ENTITY, 3)
        second = await vector_index.ensure_collection("u1", SemanticClass.ENTITY, 3)
        assert first == second == "mem_u1_entity"
        assert chroma_client.get_collection(first).metadata["dimension"] == 3

    async def test_dimension_change_refused(self, vector_index):
        await vector_index.ensure_collection("u1", SemanticClass.ENTITY, 3)
        with pytest.raises(DimensionMismatch):
            await vector_index.ensure_collection("u1", SemanticClass.ENTITY, 4)

    async def test_upsert_requires_collection(self, vector_index):
        with pytest.raises(InvalidInput):
            await vector_index.upsert("u1", SemanticClass.ENTITY, "e1", X, {})

    async def test_upsert_replaces_payload(self, vector_index):
        await vector_index.ensure_collection("u1", SemanticClass.ENTITY, 3)
        await vector_index.upsert("u1", SemanticClass.ENTITY, "e1", X, {"a": 1, "b": 2})
        await vector_index.upsert("u1", SemanticClass.ENTITY, "e1", Y, {"a": 3})

        record = await vector_index.get("u1", SemanticClass.ENTITY, "e1")
        assert record.payload["a"] == 3
        assert "b" not in record.payload
        assert record.payload["tenant_id"] == "u1"
        assert record.vector == pytest.approx(Y)
        assert await vector_index.count("u1", SemanticClass.ENTITY) == 1

    async def test_other_tenant_sees_nothing(self, vector_index):
        await vector_index.ensure_collection("u1", SemanticClass.ENTITY, 3)
        await vector_index.upsert("u1", SemanticClass.ENTITY, "e1", X, {"name": "Ada"})

        assert await vector_index.get("u2", SemanticClass.ENTITY, "e1") is None
        assert await vector_index.search("u2", SemanticClass.ENTITY, X) == []
        assert await vector_index.delete("u2", SemanticClass.ENTITY, "e1") is False
        assert await vector_index.get("u1", SemanticClass.ENTITY, "e1") is not None

    async def test_search_scores_and_filters(self, vector_index):
        await vector_index.ensure_collection("u1", SemanticClass.ENTITY, 3)
        await vector_index.upsert("u1", SemanticClass.ENTITY, "x", X, {"entity_type": "person"})
        await vector_index.upsert("u1", SemanticClass.ENTITY, "y", Y, {"entity_type": "place"})
        await vector_index.upsert("u1", SemanticClass.ENTITY, "xy", XY, {"entity_type": "person"})

        hits = await vector_index.search("u1", SemanticClass.ENTITY, X, limit=3)
        assert [h.id for h in hits][:2] == ["x", "xy"]
        assert hits[0].score == pytest.approx(1.0, abs=1e-4)
        assert all(0.0 <= h.score <= 1.0 for h in hits)
        assert hits[0].vector == pytest.approx(X)

        filtered = await vector_index.search("u1", SemanticClass.ENTITY, X, filters={"entity_type": "place"})
        assert [h.id for h in filtered] == ["y"]

        above = await vector_index.search("u1", SemanticClass.ENTITY, X, score_threshold=0.5)
        assert {h.id for h in above} == {"x", "xy"}

    async def test_search_rejects_structured_filters(self, vector_index):
        with pytest.raises(InvalidInput):
            await vector_index.search("u1", SemanticClass.ENTITY, X, filters={"entity_type": ["a", "b"]})

    async def test_search_empty_collection(self, vector_index):
        await vector_index.ensure_collection("u1", SemanticClass.ENTITY, 3)
        assert await vector_index.search("u1", SemanticClass.ENTITY, X) == []

    async def test_delete_batch_counts_owned_ids(self, vector_index):
        await vector_index.ensure_collection("u1", SemanticClass.CONTEXT, 3)
        await vector_index.upsert("u1", SemanticClass.CONTEXT, "o1", X, {})
        await vector_index.upsert("u1", SemanticClass.CONTEXT, "o2", Y, {})

        deleted = await vector_index.delete_batch("u1", SemanticClass.CONTEXT, ["o1", "o1", "missing"])
        assert deleted == 1
        assert await vector_index.count("u1", SemanticClass.CONTEXT) == 1
        assert await vector_index.delete_batch("u1", SemanticClass.CONTEXT, []) == 0

    async def test_delete_all_for_tenant(self, vector_index):
        for tenant in ("u1", "u2"):
            await vector_index.ensure_collection(tenant, SemanticClass.ENTITY, 3)
            await vector_index.upsert(tenant, SemanticClass.ENTITY, "e1", X, {})
        await vector_index.ensure_collection("u1", SemanticClass.TRIPLET, 3)

        assert await vector_index.delete_all_for_tenant("u1") == 2
        assert await vector_index.count("u1", SemanticClass.ENTITY) == 0
        assert await vector_index.count("u2", SemanticClass.ENTITY) == 1
        assert await vector_index.delete_all_for_tenant("u1") == 0
