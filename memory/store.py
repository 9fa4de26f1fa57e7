"""
Graph Store

Tenant-scoped CRUD over entities, relations and observations. Every statement
carries a tenant_id predicate taken from the scope, in addition to the
row-level security policies active on PostgreSQL.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar
import logging

from sqlalchemy import func, or_

from errors import InvalidInput
from models import Entity, Observation, Relation, utcnow
from tenancy.context import TenantScope

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 1000

SORTABLE_FIELDS = {
    Entity: ("created_at", "updated_at", "name", "type"),
    Relation: ("created_at", "updated_at", "predicate", "strength"),
    Observation: ("created_at", "updated_at", "observed_at", "source"),
}

UPDATABLE_FIELDS = {
    Entity: ("type", "name", "metadata_json"),
    Relation: ("predicate", "strength", "metadata_json"),
    Observation: ("content", "source", "metadata_json"),
}


@dataclass
class Actor:
    """Who performs a write. User and assistant may both be set."""
    user: Optional[str] = None
    assistant_name: Optional[str] = None
    assistant_type: Optional[str] = None


@dataclass
class Pagination:
    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = 0
    sort_by: str = "created_at"
    sort_order: str = "desc"


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    limit: int
    offset: int


@dataclass
class CascadeDeletion:
    entity_id: str
    relation_ids: List[str] = field(default_factory=list)
    observation_ids: List[str] = field(default_factory=list)


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _contains(column, needle: str):
    return column.ilike(f"%{escape_like(needle)}%", escape="\\")


class GraphStore:
    """Data access for one tenant scope. Never opens its own transaction."""

    def __init__(self, scope: TenantScope):
        self.scope = scope
        self.session = scope.session
        self.tenant_id = scope.tenant_id

    # ------------------------------------------------------------------ helpers

    def _query(self, model, *columns):
        query = self.session.query(model, *columns) if columns else self.session.query(model)
        return query.filter(model.tenant_id == self.tenant_id)

    def _stamp_creator(self, row, actor: Optional[Actor]) -> None:
        actor = actor or Actor()
        now = utcnow()
        row.created_by_user = actor.user
        row.created_by_assistant_name = actor.assistant_name
        row.created_by_assistant_type = actor.assistant_type
        row.updated_by_user = actor.user
        row.updated_by_assistant_name = actor.assistant_name
        row.updated_by_assistant_type = actor.assistant_type
        row.created_at = now
        row.updated_at = now

    def _stamp_updater(self, row, actor: Optional[Actor]) -> None:
        actor = actor or Actor()
        row.updated_by_user = actor.user
        row.updated_by_assistant_name = actor.assistant_name
        row.updated_by_assistant_type = actor.assistant_type
        row.updated_at = utcnow()

    @staticmethod
    def _creator_filters(model, query, filters: Dict[str, Any]):
        if filters.get("created_by_user"):
            query = query.filter(model.created_by_user == filters["created_by_user"])
        if filters.get("created_by_assistant_name"):
            query = query.filter(model.created_by_assistant_name == filters["created_by_assistant_name"])
        return query

    @staticmethod
    def _check_pagination(model, pagination: Optional[Pagination]) -> Pagination:
        pagination = pagination or Pagination()
        if pagination.sort_by not in SORTABLE_FIELDS[model]:
            raise InvalidInput("sort_by", f"must be one of {', '.join(SORTABLE_FIELDS[model])}")
        if pagination.sort_order not in ("asc", "desc"):
            raise InvalidInput("sort_order", "must be 'asc' or 'desc'")
        if not 1 <= pagination.limit <= MAX_PAGE_LIMIT:
            raise InvalidInput("limit", f"must be between 1 and {MAX_PAGE_LIMIT}")
        if pagination.offset < 0:
            raise InvalidInput("offset", "must not be negative")
        return pagination

    def _paginate(self, model, query, pagination: Optional[Pagination]) -> Tuple[list, int, Pagination]:
        pagination = self._check_pagination(model, pagination)
        total = query.order_by(None).count()

        column = getattr(model, pagination.sort_by)
        ordering = column.asc() if pagination.sort_order == "asc" else column.desc()
        rows = (
            query.order_by(ordering, model.id.asc())
            .offset(pagination.offset)
            .limit(pagination.limit)
            .all()
        )
        return rows, total, pagination

    def _apply_update(self, model, row, changes: Dict[str, Any], actor: Optional[Actor]):
        for key, value in changes.items():
            if key not in UPDATABLE_FIELDS[model]:
                raise InvalidInput(key, "is not updatable")
            setattr(row, key, value)
        self._stamp_updater(row, actor)
        self.session.flush()
        return row

    @staticmethod
    def _require(data: Dict[str, Any], *names: str) -> None:
        for name in names:
            value = data.get(name)
            if value is None or (isinstance(value, str) and not value):
                raise InvalidInput(name, "is required")

    @staticmethod
    def _check_strength(value) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
            raise InvalidInput("strength", "must be a number between 0 and 1")
        return float(value)

    # ----------------------------------------------------------------- entities

    def create_entity(self, data: Dict[str, Any], actor: Optional[Actor] = None) -> Entity:
        self._require(data, "type", "name")
        entity = Entity(
            tenant_id=self.tenant_id,
            type=data["type"],
            name=data["name"],
            metadata_json=data.get("metadata_json"),
        )
        self._stamp_creator(entity, actor)
        self.session.add(entity)
        self.session.flush()
        return entity

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self._query(Entity).filter(Entity.id == entity_id).first()

    def get_entities_by_ids(self, entity_ids) -> Dict[str, Entity]:
        ids = list(set(entity_ids))
        if not ids:
            return {}
        rows = self._query(Entity).filter(Entity.id.in_(ids)).all()
        return {row.id: row for row in rows}

    def _entity_query(self, filters: Optional[Dict[str, Any]]):
        filters = filters or {}
        query = self._query(Entity)
        if filters.get("type"):
            query = query.filter(Entity.type == filters["type"])
        if filters.get("search"):
            query = query.filter(_contains(Entity.name, filters["search"]))
        return self._creator_filters(Entity, query, filters)

    def list_entities(self, filters: Optional[Dict[str, Any]] = None, pagination: Optional[Pagination] = None) -> Page[Entity]:
        rows, total, pagination = self._paginate(Entity, self._entity_query(filters), pagination)
        return Page(items=rows, total=total, limit=pagination.limit, offset=pagination.offset)

    def get_entities_with_counts(
        self,
        filters: Optional[Dict[str, Any]] = None,
        pagination: Optional[Pagination] = None,
    ) -> Page[Tuple[Entity, int, int]]:
        """Page of (entity, relations_count, observations_count)."""
        page = self.list_entities(filters, pagination)
        ids = [entity.id for entity in page.items]
        if not ids:
            return Page(items=[], total=page.total, limit=page.limit, offset=page.offset)

        relation_counts: Dict[str, int] = {entity_id: 0 for entity_id in ids}
        for column in (Relation.subject_id, Relation.object_id):
            rows = (
                self._query(Relation)
                .with_entities(column, func.count(Relation.id))
                .filter(column.in_(ids))
                .group_by(column)
                .all()
            )
            for entity_id, count in rows:
                relation_counts[entity_id] += count
        # self-referencing relations were counted on both sides
        self_refs = (
            self._query(Relation)
            .with_entities(Relation.subject_id, func.count(Relation.id))
            .filter(Relation.subject_id.in_(ids), Relation.subject_id == Relation.object_id)
            .group_by(Relation.subject_id)
            .all()
        )
        for entity_id, count in self_refs:
            relation_counts[entity_id] -= count

        observation_counts = dict(
            self._query(Observation)
            .with_entities(Observation.entity_id, func.count(Observation.id))
            .filter(Observation.entity_id.in_(ids))
            .group_by(Observation.entity_id)
            .all()
        )

        items = [
            (entity, relation_counts.get(entity.id, 0), observation_counts.get(entity.id, 0))
            for entity in page.items
        ]
        return Page(items=items, total=page.total, limit=page.limit, offset=page.offset)

    def update_entity(self, entity_id: str, changes: Dict[str, Any], actor: Optional[Actor] = None) -> Optional[Entity]:
        entity = self.get_entity(entity_id)
        if entity is None:
            return None
        return self._apply_update(Entity, entity, changes, actor)

    def delete_entity(self, entity_id: str) -> Optional[CascadeDeletion]:
        """Delete an entity with its observations and every relation touching it, atomically."""
        entity = self.get_entity(entity_id)
        if entity is None:
            return None

        with self.session.begin_nested():
            observation_ids = [
                row.id for row in
                self._query(Observation).with_entities(Observation.id).filter(Observation.entity_id == entity_id)
            ]
            relation_ids = [
                row.id for row in
                self._query(Relation).with_entities(Relation.id).filter(
                    or_(Relation.subject_id == entity_id, Relation.object_id == entity_id)
                )
            ]
            if observation_ids:
                self._query(Observation).filter(Observation.id.in_(observation_ids)).delete(synchronize_session=False)
            if relation_ids:
                self._query(Relation).filter(Relation.id.in_(relation_ids)).delete(synchronize_session=False)
            self.session.delete(entity)

        logger.info(
            f"Deleted entity {entity_id} for tenant {self.tenant_id} "
            f"(cascade: {len(relation_ids)} relations, {len(observation_ids)} observations)"
        )
        return CascadeDeletion(entity_id=entity_id, relation_ids=relation_ids, observation_ids=observation_ids)

    def search_entities(self, pattern: Optional[str], types: Optional[List[str]] = None, limit: int = 20) -> List[Entity]:
        """Substring match on name; pattern None matches every entity."""
        query = self._query(Entity)
        if pattern:
            query = query.filter(_contains(Entity.name, pattern))
        if types:
            query = query.filter(Entity.type.in_(types))
        return query.order_by(Entity.created_at.desc(), Entity.id.asc()).limit(limit).all()

    def entity_type_counts(self) -> List[Tuple[str, int]]:
        return (
            self._query(Entity)
            .with_entities(Entity.type, func.count(Entity.id))
            .group_by(Entity.type)
            .order_by(Entity.type.asc())
            .all()
        )

    # ---------------------------------------------------------------- relations

    def create_relation(self, data: Dict[str, Any], actor: Optional[Actor] = None) -> Relation:
        self._require(data, "subject_id", "predicate", "object_id")
        strength = data.get("strength")
        relation = Relation(
            tenant_id=self.tenant_id,
            subject_id=data["subject_id"],
            predicate=data["predicate"],
            object_id=data["object_id"],
            strength=1.0 if strength is None else self._check_strength(strength),
            metadata_json=data.get("metadata_json"),
        )
        self._stamp_creator(relation, actor)
        self.session.add(relation)
        self.session.flush()
        return relation

    def get_relation(self, relation_id: str) -> Optional[Relation]:
        return self._query(Relation).filter(Relation.id == relation_id).first()

    def list_relations(self, filters: Optional[Dict[str, Any]] = None, pagination: Optional[Pagination] = None) -> Page[Relation]:
        filters = filters or {}
        query = self._query(Relation)
        if filters.get("subject_id"):
            query = query.filter(Relation.subject_id == filters["subject_id"])
        if filters.get("object_id"):
            query = query.filter(Relation.object_id == filters["object_id"])
        if filters.get("predicate"):
            query = query.filter(Relation.predicate == filters["predicate"])
        if filters.get("search"):
            query = query.filter(_contains(Relation.predicate, filters["search"]))
        query = self._creator_filters(Relation, query, filters)

        rows, total, pagination = self._paginate(Relation, query, pagination)
        return Page(items=rows, total=total, limit=pagination.limit, offset=pagination.offset)

    def relations_for_entity(self, entity_id: str, direction: str) -> List[Relation]:
        query = self._query(Relation)
        if direction == "outgoing":
            query = query.filter(Relation.subject_id == entity_id)
        elif direction == "incoming":
            query = query.filter(Relation.object_id == entity_id)
        else:
            raise InvalidInput("direction", "must be 'outgoing' or 'incoming'")
        return query.order_by(Relation.created_at.desc(), Relation.id.asc()).all()

    def update_relation(self, relation_id: str, changes: Dict[str, Any], actor: Optional[Actor] = None) -> Optional[Relation]:
        if "strength" in changes:
            changes = dict(changes, strength=self._check_strength(changes["strength"]))
        relation = self.get_relation(relation_id)
        if relation is None:
            return None
        return self._apply_update(Relation, relation, changes, actor)

    def delete_relation(self, relation_id: str) -> Optional[Relation]:
        relation = self.get_relation(relation_id)
        if relation is None:
            return None
        self.session.delete(relation)
        self.session.flush()
        return relation

    def predicate_stats(self) -> List[Tuple[str, int, float]]:
        """(predicate, count, average strength) ordered by predicate."""
        rows = (
            self._query(Relation)
            .with_entities(Relation.predicate, func.count(Relation.id), func.avg(Relation.strength))
            .group_by(Relation.predicate)
            .order_by(Relation.predicate.asc())
            .all()
        )
        return [(predicate, count, float(avg or 0.0)) for predicate, count, avg in rows]

    # ------------------------------------------------------------- observations

    def create_observation(self, data: Dict[str, Any], actor: Optional[Actor] = None) -> Observation:
        self._require(data, "entity_id", "content")
        observation = Observation(
            tenant_id=self.tenant_id,
            entity_id=data["entity_id"],
            content=data["content"],
            source=data.get("source"),
            metadata_json=data.get("metadata_json"),
        )
        self._stamp_creator(observation, actor)
        observation.observed_at = data.get("observed_at") or observation.created_at
        self.session.add(observation)
        self.session.flush()
        return observation

    def get_observation(self, observation_id: str) -> Optional[Observation]:
        return self._query(Observation).filter(Observation.id == observation_id).first()

    def list_observations(self, filters: Optional[Dict[str, Any]] = None, pagination: Optional[Pagination] = None) -> Page[Observation]:
        filters = filters or {}
        query = self._query(Observation)
        if filters.get("entity_id"):
            query = query.filter(Observation.entity_id == filters["entity_id"])
        if filters.get("source"):
            query = query.filter(Observation.source == filters["source"])
        if filters.get("search"):
            query = query.filter(_contains(Observation.content, filters["search"]))
        query = self._creator_filters(Observation, query, filters)

        rows, total, pagination = self._paginate(Observation, query, pagination)
        return Page(items=rows, total=total, limit=pagination.limit, offset=pagination.offset)

    def update_observation(self, observation_id: str, changes: Dict[str, Any], actor: Optional[Actor] = None) -> Optional[Observation]:
        observation = self.get_observation(observation_id)
        if observation is None:
            return None
        return self._apply_update(Observation, observation, changes, actor)

    def delete_observation(self, observation_id: str) -> Optional[Observation]:
        observation = self.get_observation(observation_id)
        if observation is None:
            return None
        self.session.delete(observation)
        self.session.flush()
        return observation

    def search_observations(self, pattern: Optional[str], limit: int = 20) -> List[Tuple[Observation, Entity]]:
        """Substring match on content, each row joined with its owning entity."""
        query = (
            self._query(Observation, Entity)
            .join(Entity, Entity.id == Observation.entity_id)
            .filter(Entity.tenant_id == self.tenant_id)
        )
        if pattern:
            query = query.filter(_contains(Observation.content, pattern))
        return query.order_by(Observation.created_at.desc(), Observation.id.asc()).limit(limit).all()

    def observation_stats(self, now: Optional[datetime] = None, recent_days: int = 7) -> Dict[str, Any]:
        now = now or utcnow()
        total = self._query(Observation).count()
        recent = self._query(Observation).filter(Observation.created_at >= now - timedelta(days=recent_days)).count()
        by_type = (
            self._query(Observation)
            .join(Entity, Entity.id == Observation.entity_id)
            .with_entities(Entity.type, func.count(Observation.id))
            .group_by(Entity.type)
            .order_by(func.count(Observation.id).desc(), Entity.type.asc())
            .all()
        )
        return {
            "total": total,
            "recent_activity": recent,
            "by_entity_type": [{"entity_type": t or "unknown", "count": c} for t, c in by_type],
        }

    # -------------------------------------------------------------------- erase

    def erase_all_for_tenant(self) -> Dict[str, int]:
        """Delete every observation, relation and entity of the active tenant in one savepoint."""
        with self.session.begin_nested():
            observations = self._query(Observation).delete(synchronize_session=False)
            relations = self._query(Relation).delete(synchronize_session=False)
            entities = self._query(Entity).delete(synchronize_session=False)
        self.session.expunge_all()

        logger.warning(
            f"Erased all memories for tenant {self.tenant_id}: "
            f"{entities} entities, {relations} relations, {observations} observations"
        )
        return {"entities": entities, "relations": relations, "observations": observations}
