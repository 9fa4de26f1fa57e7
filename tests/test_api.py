"""
HTTP boundary: tenant header, status mapping, routes wired to the services.
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from main import create_app

U1 = {"X-Tenant-ID": "u1"}
U2 = {"X-Tenant-ID": "u2"}


@pytest.fixture
def client(session_factory, pipeline_factory):
    app = create_app(session_factory=session_factory, pipeline_factory=pipeline_factory, auto_embed=False)
    with TestClient(app) as client:
        yield client


def _entity(client, name, type="person", headers=U1, **extra):
    response = client.post("/entities", json={"type": type, "name": name, **extra}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _relation(client, subject, predicate, object, headers=U1, **extra):
    response = client.post(
        "/relations",
        json={"subject_id": subject["id"], "predicate": predicate, "object_id": object["id"], **extra},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def _observation(client, entity, content, headers=U1):
    response = client.post("/observations", json={"entity_id": entity["id"], "content": content}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert client.get("/").json()["service"] == "memory-graph-api"


class TestTenantHeader:
    def test_missing_header(self, client):
        response = client.get("/entities")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthenticated"

    def test_blank_header(self, client):
        response = client.get("/entities", headers={"X-Tenant-ID": "   "})
        assert response.status_code == 401

    def test_other_tenant_gets_404(self, client):
        ada = _entity(client, "Ada")
        response = client.get(f"/entities/{ada['id']}", headers=U2)
        assert response.status_code == 404
        assert response.json() == {
            "error": "not_found",
            "message": f"entity not found: {ada['id']}",
            "kind": "entity",
            "id": ada["id"],
        }


class TestEntities:
    def test_create_with_attribution(self, client):
        ada = _entity(client, "Ada", description="Mathematician", assistant={"name": "helper", "type": "chat"})
        assert ada["description"] == "Mathematician"
        assert ada["created_by"]["user"] == "u1"
        assert ada["created_by"]["assistant"] == {"name": "helper", "type": "chat"}

        fetched = client.get(f"/entities/{ada['id']}", headers=U1).json()
        assert fetched["name"] == "Ada"

    def test_invalid_type(self, client):
        response = client.post("/entities", json={"type": "robot", "name": "R2"}, headers=U1)
        assert response.status_code == 400
        assert response.json()["field"] == "type"

    def test_malformed_id(self, client):
        response = client.get("/entities/not-a-uuid", headers=U1)
        assert response.status_code == 400
        assert response.json()["field"] == "entity_id"

    def test_batch(self, client):
        response = client.post(
            "/entities/batch",
            json={"items": [{"type": "person", "name": "Ada"}, {"type": "place", "name": "London"}]},
            headers=U1,
        )
        assert response.status_code == 201
        assert [e["name"] for e in response.json()] == ["Ada", "London"]

        response = client.post(
            "/entities/batch",
            json={"items": [{"type": "person", "name": "Bob"}, {"type": "alien", "name": "Zork"}]},
            headers=U1,
        )
        assert response.status_code == 400
        assert response.json()["field"] == "items[1].type"
        assert client.get("/entities", headers=U1).json()["total"] == 2

    def test_list_with_counts_and_pagination(self, client):
        ada, bob = _entity(client, "Ada"), _entity(client, "Bob")
        _relation(client, ada, "knows", bob)
        _observation(client, ada, "note")

        body = client.get("/entities", params={"sort_by": "name", "sort_order": "asc"}, headers=U1).json()
        assert body["total"] == 2
        counts = {e["name"]: (e["relations_count"], e["observations_count"]) for e in body["items"]}
        assert counts == {"Ada": (1, 1), "Bob": (1, 0)}

        assert client.get("/entities", params={"sort_by": "secret"}, headers=U1).status_code == 400
        assert client.get("/entities", params={"limit": 0}, headers=U1).status_code == 422

    def test_update(self, client):
        ada = _entity(client, "Ada")
        response = client.put(f"/entities/{ada['id']}", json={"name": "Ada Lovelace"}, headers=U1)
        assert response.status_code == 200
        assert response.json()["name"] == "Ada Lovelace"

    def test_delete_cascades(self, client):
        ada, bob = _entity(client, "Ada"), _entity(client, "Bob")
        relation = _relation(client, ada, "knows", bob)
        observation = _observation(client, ada, "note")

        response = client.delete(f"/entities/{ada['id']}", headers=U1)
        assert response.status_code == 200
        body = response.json()
        assert body["relation_ids"] == [relation["id"]]
        assert body["observation_ids"] == [observation["id"]]
        assert client.get(f"/relations/{relation['id']}", headers=U1).status_code == 404

    def test_graph_and_stats(self, client):
        ada, london = _entity(client, "Ada"), _entity(client, "London", type="place")
        _relation(client, ada, "located_at", london, strength=0.5)
        _observation(client, ada, "Likes testing")

        graph = client.get(f"/entities/{ada['id']}/graph", headers=U1).json()
        assert len(graph["relations"]) == 1
        assert len(graph["observations"]) == 1

        incoming = client.get(f"/entities/{london['id']}/relations", params={"direction": "incoming"}, headers=U1)
        assert [r["predicate"] for r in incoming.json()] == ["located_at"]

        types = client.get("/entities/types", headers=U1).json()["types"]
        assert {"type": "place", "count": 1} in types
        predicates = client.get("/relations/predicates", headers=U1).json()["predicates"]
        assert predicates == [{"predicate": "located_at", "count": 1, "avg_strength": 0.5}]
        stats = client.get("/observations/stats", headers=U1).json()
        assert stats["total"] == 1


class TestRelations:
    def test_missing_object(self, client):
        ada = _entity(client, "Ada")
        missing = str(uuid.uuid4())
        response = client.post(
            "/relations",
            json={"subject_id": ada["id"], "predicate": "knows", "object_id": missing},
            headers=U1,
        )
        assert response.status_code == 404
        assert response.json()["id"] == missing

    def test_strength_out_of_range(self, client):
        ada, bob = _entity(client, "Ada"), _entity(client, "Bob")
        response = client.post(
            "/relations",
            json={"subject_id": ada["id"], "predicate": "knows", "object_id": bob["id"], "strength": 1.5},
            headers=U1,
        )
        assert response.status_code == 400
        assert response.json()["field"] == "strength"

    def test_update_and_delete(self, client):
        ada, bob = _entity(client, "Ada"), _entity(client, "Bob")
        relation = _relation(client, ada, "knows", bob)

        updated = client.put(f"/relations/{relation['id']}", json={"strength": 0.2}, headers=U1).json()
        assert updated["strength"] == 0.2
        listed = client.get("/relations", params={"predicate": "knows"}, headers=U1).json()
        assert listed["total"] == 1

        assert client.delete(f"/relations/{relation['id']}", headers=U1).json()["deleted"] is True
        assert client.get("/relations", headers=U1).json()["total"] == 0


class TestObservations:
    def test_crud(self, client):
        ada = _entity(client, "Ada")
        observation = _observation(client, ada, "first")
        assert observation["entity"]["name"] == "Ada"

        updated = client.put(f"/observations/{observation['id']}", json={"content": "second"}, headers=U1).json()
        assert updated["content"] == "second"
        listed = client.get("/observations", params={"entity_id": ada["id"]}, headers=U1).json()
        assert [o["content"] for o in listed["items"]] == ["second"]

        assert client.delete(f"/observations/{observation['id']}", headers=U1).status_code == 200
        assert client.get(f"/observations/{observation['id']}", headers=U1).status_code == 404


class TestMemories:
    def test_text_search(self, client):
        ada = _entity(client, "Ada")
        _observation(client, ada, "Likes testing")

        body = client.get("/memories/search", params={"query": "test"}, headers=U1).json()
        assert body["total_count"] == 1
        assert body["observations"][0]["entity"]["name"] == "Ada"
        assert client.get("/memories/search", params={"query": "test"}, headers=U2).json()["total_count"] == 0

        wildcard = client.get("/memories/search", params={"query": "*"}, headers=U1).json()
        assert wildcard["wildcard"] is True

    def test_embed_then_vector_search(self, client):
        ada = _entity(client, "Ada")
        _entity(client, "London", type="place")

        response = client.post(
            "/memories/embed/batch",
            json={"items": [{"id": ada["id"], "kind": "entity"}, {"id": str(uuid.uuid4()), "kind": "entity"}]},
            headers=U1,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert len(body["successful"]) == 1
        assert len(body["failed"]) == 1

        hits = client.post(
            "/memories/vector-search",
            json={"query": "Ada (person)", "semantic_classes": ["entity"]},
            headers=U1,
        ).json()["results"]
        assert hits[0]["id"] == ada["id"]
        assert hits[0]["drift"] == pytest.approx(0.0, abs=1e-4)

        other = client.post("/memories/vector-search", json={"query": "Ada (person)"}, headers=U2).json()
        assert other["results"] == []

        stats = client.get("/memories/vector-stats", headers=U1).json()["collections"]
        assert stats["entity"] == 1

    def test_embed_single(self, client):
        ada, bob = _entity(client, "Ada"), _entity(client, "Bob")
        relation = _relation(client, ada, "knows", bob)

        body = client.post(f"/memories/relation/{relation['id']}/embed", headers=U1).json()
        assert {r["semantic_class"] for r in body["successful"]} == {"relation", "triplet"}

        missing = client.post(f"/memories/entity/{uuid.uuid4()}/embed", headers=U1)
        assert missing.status_code == 404
        unknown = client.post(f"/memories/planet/{ada['id']}/embed", headers=U1)
        assert unknown.status_code == 400

    def test_embed_batch_requires_items(self, client):
        response = client.post("/memories/embed/batch", json={"items": []}, headers=U1)
        assert response.status_code == 400

    def test_vector_search_validation(self, client):
        response = client.post("/memories/vector-search", json={"query": "x", "limit": 500}, headers=U1)
        assert response.status_code == 400
        assert response.json()["field"] == "limit"

    def test_erase(self, client):
        a, b, c = _entity(client, "A"), _entity(client, "B"), _entity(client, "C")
        _relation(client, a, "knows", b)
        _relation(client, b, "knows", c)
        _observation(client, a, "note")
        client.post("/memories/embed/batch", json={"items": [{"id": a["id"], "kind": "entity"}]}, headers=U1)
        _entity(client, "Other", headers=U2)

        body = client.delete("/memories", headers=U1).json()
        assert body == {"entities": 3, "relations": 2, "observations": 1, "vector_collections": 1}
        assert client.get("/entities", headers=U1).json()["total"] == 0
        assert client.get("/entities", headers=U2).json()["total"] == 1
