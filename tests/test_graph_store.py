"""
GraphStore: tenant-filtered CRUD, pagination, cascade delete and erase.
"""

from datetime import timedelta

import pytest

from errors import InvalidInput
from memory.store import Actor, GraphStore, Pagination, escape_like
from models import Entity, Observation, Relation, utcnow


@pytest.fixture
def store_for(scope_for):
    def _run(tenant_id, fn):
        with scope_for(tenant_id) as scope:
            return fn(GraphStore(scope))
    return _run


def _entity(store, name, type="person", **extra):
    return store.create_entity({"type": type, "name": name, **extra})


def _relation(store, subject, predicate, object, **extra):
    return store.create_relation({"subject_id": subject.id, "predicate": predicate, "object_id": object.id, **extra})


def _observation(store, entity, content, **extra):
    return store.create_observation({"entity_id": entity.id, "content": content, **extra})


class TestEntities:
    def test_create_stamps_tenant_and_actor(self, store_for):
        actor = Actor(user="u1", assistant_name="helper", assistant_type="chat")
        entity = store_for("u1", lambda s: s.create_entity({"type": "person", "name": "Ada"}, actor))

        assert entity.tenant_id == "u1"
        assert entity.created_by_user == "u1"
        assert entity.created_by_assistant_name == "helper"
        assert entity.updated_by_assistant_type == "chat"
        assert entity.created_at == entity.updated_at

    def test_missing_required_field(self, store_for):
        with pytest.raises(InvalidInput) as exc:
            store_for("u1", lambda s: s.create_entity({"type": "person", "name": ""}))
        assert exc.value.field == "name"

    def test_get_is_tenant_filtered(self, store_for):
        entity = store_for("u1", lambda s: _entity(s, "Ada"))
        assert store_for("u1", lambda s: s.get_entity(entity.id)) is not None
        assert store_for("u2", lambda s: s.get_entity(entity.id)) is None

    def test_list_filters_and_total(self, store_for):
        def seed(s):
            for i in range(5):
                _entity(s, f"Person {i}")
            _entity(s, "Paris", type="place")
        store_for("u1", seed)

        page = store_for("u1", lambda s: s.list_entities({"type": "person"}, Pagination(limit=2)))
        assert page.total == 5
        assert len(page.items) == 2
        assert page.limit == 2

        page = store_for("u1", lambda s: s.list_entities(
            {}, Pagination(limit=10, sort_by="name", sort_order="asc"),
        ))
        assert [e.name for e in page.items][-1] == "Person 4"
        assert page.items[0].name == "Paris"

    @pytest.mark.parametrize("pagination,field", [
        (Pagination(sort_by="metadata_json"), "sort_by"),
        (Pagination(sort_order="sideways"), "sort_order"),
        (Pagination(limit=0), "limit"),
        (Pagination(limit=1001), "limit"),
        (Pagination(offset=-1), "offset"),
    ])
    def test_bad_pagination_rejected(self, store_for, pagination, field):
        with pytest.raises(InvalidInput) as exc:
            store_for("u1", lambda s: s.list_entities(None, pagination))
        assert exc.value.field == field

    def test_search_treats_wildcards_literally(self, store_for):
        def seed(s):
            _entity(s, "100% effort", type="concept")
            _entity(s, "1000 words", type="concept")
        store_for("u1", seed)

        found = store_for("u1", lambda s: [e.name for e in s.search_entities("100%")])
        assert found == ["100% effort"]
        assert escape_like("a_b%c") == "a\\_b\\%c"

    def test_update_refreshes_updater(self, store_for):
        entity = store_for("u1", lambda s: _entity(s, "Ada"))
        updated = store_for("u1", lambda s: s.update_entity(
            entity.id, {"name": "Ada Lovelace"}, Actor(user="u1", assistant_name="editor"),
        ))
        assert updated.name == "Ada Lovelace"
        assert updated.updated_by_assistant_name == "editor"
        assert updated.created_by_assistant_name is None
        assert updated.updated_at >= entity.updated_at

    def test_update_rejects_unknown_fields(self, store_for):
        entity = store_for("u1", lambda s: _entity(s, "Ada"))
        with pytest.raises(InvalidInput):
            store_for("u1", lambda s: s.update_entity(entity.id, {"tenant_id": "u2"}))

    def test_update_missing_returns_none(self, store_for):
        entity = store_for("u1", lambda s: _entity(s, "Ada"))
        assert store_for("u2", lambda s: s.update_entity(entity.id, {"name": "Mallory"})) is None

    def test_counts(self, store_for):
        def seed(s):
            a, b = _entity(s, "A"), _entity(s, "B")
            _relation(s, a, "knows", b)
            _relation(s, b, "knows", a)
            _relation(s, a, "mentions", a)
            _observation(s, a, "one")
            _observation(s, a, "two")
            return a.id, b.id
        a_id, b_id = store_for("u1", seed)

        page = store_for("u1", lambda s: s.get_entities_with_counts())
        counts = {entity.id: (relations, observations) for entity, relations, observations in page.items}
        assert counts[a_id] == (3, 2)
        assert counts[b_id] == (2, 0)

    def test_type_counts(self, store_for):
        def seed(s):
            _entity(s, "Ada")
            _entity(s, "Bob")
            _entity(s, "Paris", type="place")
        store_for("u1", seed)
        store_for("u2", lambda s: _entity(s, "Eve"))

        assert store_for("u1", lambda s: [tuple(row) for row in s.entity_type_counts()]) == [("person", 2), ("place", 1)]


class TestRelations:
    def test_default_strength(self, store_for):
        def seed(s):
            a, b = _entity(s, "A"), _entity(s, "B")
            return _relation(s, a, "knows", b)
        assert store_for("u1", seed).strength == 1.0

    @pytest.mark.parametrize("strength", [-0.1, 1.01, True, "high"])
    def test_strength_out_of_range(self, store_for, strength):
        def seed(s):
            a, b = _entity(s, "A"), _entity(s, "B")
            return _relation(s, a, "knows", b, strength=strength)
        with pytest.raises(InvalidInput):
            store_for("u1", seed)

    def test_update_strength_checked(self, store_for):
        def seed(s):
            a, b = _entity(s, "A"), _entity(s, "B")
            return _relation(s, a, "knows", b, strength=0.5)
        relation = store_for("u1", seed)

        with pytest.raises(InvalidInput):
            store_for("u1", lambda s: s.update_relation(relation.id, {"strength": 2}))
        assert store_for("u1", lambda s: s.update_relation(relation.id, {"strength": 0.25})).strength == 0.25

    def test_relations_for_entity(self, store_for):
        def seed(s):
            a, b, c = _entity(s, "A"), _entity(s, "B"), _entity(s, "C")
            _relation(s, a, "knows", b)
            _relation(s, c, "knows", a)
            return a.id
        a_id = store_for("u1", seed)

        assert len(store_for("u1", lambda s: s.relations_for_entity(a_id, "outgoing"))) == 1
        assert len(store_for("u1", lambda s: s.relations_for_entity(a_id, "incoming"))) == 1
        with pytest.raises(InvalidInput):
            store_for("u1", lambda s: s.relations_for_entity(a_id, "sideways"))

    def test_predicate_stats(self, store_for):
        def seed(s):
            a, b = _entity(s, "A"), _entity(s, "B")
            _relation(s, a, "knows", b, strength=0.5)
            _relation(s, b, "knows", a, strength=1.0)
            _relation(s, a, "likes", b, strength=0.2)
        store_for("u1", seed)

        stats = store_for("u1", lambda s: s.predicate_stats())
        assert stats[0] == ("knows", 2, pytest.approx(0.75))
        assert stats[1] == ("likes", 1, pytest.approx(0.2))


class TestObservations:
    def test_observed_at_defaults_to_created_at(self, store_for):
        def seed(s):
            return _observation(s, _entity(s, "A"), "note")
        observation = store_for("u1", seed)
        assert observation.observed_at == observation.created_at

    def test_search_joins_entity(self, store_for):
        def seed(s):
            _observation(s, _entity(s, "Ada"), "Likes testing")
        store_for("u1", seed)

        rows = store_for("u1", lambda s: [(o.content, e.name) for o, e in s.search_observations("TEST")])
        assert rows == [("Likes testing", "Ada")]

    def test_stats(self, store_for):
        def seed(s):
            a = _entity(s, "A")
            p = _entity(s, "Paris", type="place")
            _observation(s, a, "recent")
            _observation(s, a, "recent too")
            _observation(s, p, "recent place")
        store_for("u1", seed)

        stats = store_for("u1", lambda s: s.observation_stats())
        assert stats["total"] == 3
        assert stats["recent_activity"] == 3
        assert stats["by_entity_type"][0] == {"entity_type": "person", "count": 2}

        later = store_for("u1", lambda s: s.observation_stats(now=utcnow() + timedelta(days=30)))
        assert later["recent_activity"] == 0


class TestDeletion:
    def test_cascade_delete_reports_removed_ids(self, store_for, scope_for):
        def seed(s):
            a, b, c = _entity(s, "A"), _entity(s, "B"), _entity(s, "C")
            r1 = _relation(s, a, "knows", b)
            r2 = _relation(s, b, "knows", c)
            r3 = _relation(s, c, "knows", a)
            o1 = _observation(s, a, "about A")
            o2 = _observation(s, b, "about B")
            return a.id, {r1.id, r3.id}, r2.id, o1.id, o2.id
        a_id, removed_relations, kept_relation, removed_obs, kept_obs = store_for("u1", seed)

        deletion = store_for("u1", lambda s: s.delete_entity(a_id))
        assert deletion.entity_id == a_id
        assert set(deletion.relation_ids) == removed_relations
        assert deletion.observation_ids == [removed_obs]

        with scope_for("u1") as scope:
            session = scope.session
            assert session.query(Entity).count() == 2
            assert [r.id for r in session.query(Relation)] == [kept_relation]
            assert [o.id for o in session.query(Observation)] == [kept_obs]

    def test_delete_missing_returns_none(self, store_for):
        entity = store_for("u1", lambda s: _entity(s, "A"))
        assert store_for("u2", lambda s: s.delete_entity(entity.id)) is None

    def test_erase_counts_and_spares_other_tenants(self, store_for, scope_for):
        def seed(s):
            a, b, c = _entity(s, "A"), _entity(s, "B"), _entity(s, "C")
            _relation(s, a, "knows", b)
            _relation(s, b, "knows", c)
            _observation(s, a, "note")
        store_for("u1", seed)
        store_for("u2", lambda s: _observation(s, _entity(s, "Other"), "kept"))

        counts = store_for("u1", lambda s: s.erase_all_for_tenant())
        assert counts == {"entities": 3, "relations": 2, "observations": 1}

        assert store_for("u1", lambda s: s.list_entities().total) == 0
        assert store_for("u2", lambda s: s.list_entities().total) == 1
        assert store_for("u2", lambda s: s.list_observations().total) == 1
