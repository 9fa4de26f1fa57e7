"""
Memory Service

Validated, DTO-shaped operations over the graph store for one tenant scope.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union
import logging

from errors import InvalidInput, NotFound
from memory.store import Actor, CascadeDeletion, GraphStore, Page, Pagination
from memory.validation import (
    MAX_BATCH_SIZE,
    MAX_CONTENT_LENGTH,
    MAX_DESCRIPTION_LENGTH,
    MAX_NAME_LENGTH,
    MAX_SOURCE_LENGTH,
    clean_text,
    sanitize_metadata,
    validate_entity_type,
    validate_entity_types,
    validate_predicate,
    validate_strength,
    validate_uuid,
)
from models import (
    Attribution,
    Entity,
    EntityCreate,
    EntityDTO,
    EntityGraphDTO,
    EntityWithCountsDTO,
    Observation,
    ObservationDTO,
    Relation,
    RelationDTO,
    SearchResults,
)
from tenancy.context import TenantScope

logger = logging.getLogger(__name__)

WILDCARD_QUERIES = ("*", "", "all")
DIRECTIONS = ("outgoing", "incoming", "both")
DEFAULT_SEARCH_LIMIT = 20
MAX_SEARCH_LIMIT = 100


def _created_by(row) -> Attribution:
    return Attribution.from_columns(row.created_by_user, row.created_by_assistant_name, row.created_by_assistant_type)


def _updated_by(row) -> Attribution:
    return Attribution.from_columns(row.updated_by_user, row.updated_by_assistant_name, row.updated_by_assistant_type)


def to_entity_dto(entity: Entity) -> EntityDTO:
    metadata = dict(entity.metadata_json or {})
    description = metadata.pop("description", None)
    return EntityDTO(
        id=entity.id,
        type=entity.type,
        name=entity.name,
        description=description,
        metadata=metadata or None,
        created_by=_created_by(entity),
        updated_by=_updated_by(entity),
        created_at=entity.created_at,
        updated_at=entity.updated_at,
    )


def to_relation_dto(relation: Relation, subject: Optional[Entity] = None, object: Optional[Entity] = None) -> RelationDTO:
    return RelationDTO(
        id=relation.id,
        subject_id=relation.subject_id,
        predicate=relation.predicate,
        object_id=relation.object_id,
        strength=relation.strength,
        metadata=relation.metadata_json,
        subject=to_entity_dto(subject) if subject is not None else None,
        object=to_entity_dto(object) if object is not None else None,
        created_by=_created_by(relation),
        updated_by=_updated_by(relation),
        created_at=relation.created_at,
        updated_at=relation.updated_at,
    )


def to_observation_dto(observation: Observation, entity: Optional[Entity] = None) -> ObservationDTO:
    return ObservationDTO(
        id=observation.id,
        entity_id=observation.entity_id,
        content=observation.content,
        source=observation.source,
        observed_at=observation.observed_at,
        metadata=observation.metadata_json,
        entity=to_entity_dto(entity) if entity is not None else None,
        created_by=_created_by(observation),
        updated_by=_updated_by(observation),
        created_at=observation.created_at,
        updated_at=observation.updated_at,
    )


def _entity_metadata(description: Optional[str], metadata: Optional[Dict[str, Any]], prefix: str = "") -> Optional[Dict[str, Any]]:
    cleaned = sanitize_metadata(metadata, f"{prefix}metadata") or {}
    if description is not None:
        cleaned["description"] = description
        # the description counts toward the serialized metadata size
        cleaned = sanitize_metadata(cleaned, f"{prefix}metadata")
    return cleaned or None


class MemoryService:
    """
    High-level memory operations for the tenant bound to `scope`.

    Reads that find nothing raise NotFound; writes validate every field
    before touching the store.
    """

    def __init__(self, scope: TenantScope):
        self.scope = scope
        self.store = GraphStore(scope)

    @property
    def tenant_id(self) -> str:
        return self.scope.tenant_id

    # ----------------------------------------------------------------- entities

    def _prepare_entity(self, item: Union[EntityCreate, Dict[str, Any]], prefix: str = "") -> Dict[str, Any]:
        if isinstance(item, EntityCreate):
            item = item.model_dump()
        description = clean_text(f"{prefix}description", item.get("description"), MAX_DESCRIPTION_LENGTH, required=False)
        return {
            "type": validate_entity_type(item.get("type"), f"{prefix}type"),
            "name": clean_text(f"{prefix}name", item.get("name"), MAX_NAME_LENGTH),
            "metadata_json": _entity_metadata(description, item.get("metadata"), prefix),
        }

    def _require_entity(self, entity_id: str, field: str = "entity_id") -> Entity:
        entity_id = validate_uuid(entity_id, field)
        entity = self.store.get_entity(entity_id)
        if entity is None:
            raise NotFound("entity", entity_id)
        return entity

    def create_entity(
        self,
        type: str,
        name: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> EntityDTO:
        data = self._prepare_entity({"type": type, "name": name, "description": description, "metadata": metadata})
        entity = self.store.create_entity(data, actor)
        return to_entity_dto(entity)

    def batch_create_entities(self, items: Sequence[Union[EntityCreate, Dict[str, Any]]], actor: Optional[Actor] = None) -> List[EntityDTO]:
        """
        Create up to MAX_BATCH_SIZE entities, all or nothing.

        Every item is validated before anything is written; one invalid item
        rejects the whole batch with an InvalidInput naming it.
        """
        if not items:
            raise InvalidInput("items", "must contain at least one entity")
        if len(items) > MAX_BATCH_SIZE:
            raise InvalidInput("items", f"at most {MAX_BATCH_SIZE} entities per batch")

        prepared = [self._prepare_entity(item, f"items[{i}].") for i, item in enumerate(items)]
        with self.scope.session.begin_nested():
            created = [self.store.create_entity(data, actor) for data in prepared]
        logger.info(f"Batch-created {len(created)} entities for tenant {self.tenant_id}")
        return [to_entity_dto(entity) for entity in created]

    def get_entity(self, entity_id: str) -> EntityDTO:
        return to_entity_dto(self._require_entity(entity_id))

    def list_entities(self, filters: Optional[Dict[str, Any]] = None, pagination: Optional[Pagination] = None) -> Page[EntityDTO]:
        filters = self._entity_filters(filters)
        page = self.store.list_entities(filters, pagination)
        return Page(items=[to_entity_dto(e) for e in page.items], total=page.total, limit=page.limit, offset=page.offset)

    def list_entities_with_counts(
        self,
        filters: Optional[Dict[str, Any]] = None,
        pagination: Optional[Pagination] = None,
    ) -> Page[EntityWithCountsDTO]:
        filters = self._entity_filters(filters)
        page = self.store.get_entities_with_counts(filters, pagination)
        items = [
            EntityWithCountsDTO(
                **to_entity_dto(entity).model_dump(),
                relations_count=relations_count,
                observations_count=observations_count,
            )
            for entity, relations_count, observations_count in page.items
        ]
        return Page(items=items, total=page.total, limit=page.limit, offset=page.offset)

    @staticmethod
    def _entity_filters(filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        filters = dict(filters or {})
        if filters.get("type"):
            filters["type"] = validate_entity_type(filters["type"])
        return filters

    def update_entity(
        self,
        entity_id: str,
        type: Optional[str] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> EntityDTO:
        entity = self._require_entity(entity_id)
        changes: Dict[str, Any] = {}
        if type is not None:
            changes["type"] = validate_entity_type(type)
        if name is not None:
            changes["name"] = clean_text("name", name, MAX_NAME_LENGTH)
        if description is not None or metadata is not None:
            base = metadata if metadata is not None else {
                k: v for k, v in (entity.metadata_json or {}).items() if k != "description"
            }
            if description is None:
                description = (entity.metadata_json or {}).get("description")
            else:
                description = clean_text("description", description, MAX_DESCRIPTION_LENGTH, required=False)
            changes["metadata_json"] = _entity_metadata(description, base)

        updated = self.store.update_entity(entity.id, changes, actor)
        return to_entity_dto(updated)

    def delete_entity(self, entity_id: str) -> CascadeDeletion:
        entity_id = validate_uuid(entity_id, "entity_id")
        deletion = self.store.delete_entity(entity_id)
        if deletion is None:
            raise NotFound("entity", entity_id)
        return deletion

    def entity_type_counts(self) -> List[Dict[str, Any]]:
        return [{"type": t, "count": c} for t, c in self.store.entity_type_counts()]

    # ---------------------------------------------------------------- relations

    def create_relation(
        self,
        subject_id: str,
        predicate: str,
        object_id: str,
        strength: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> RelationDTO:
        predicate = validate_predicate(predicate)
        if strength is not None:
            strength = validate_strength(strength)
        metadata = sanitize_metadata(metadata)

        subject = self._require_entity(subject_id, "subject_id")
        object = self._require_entity(object_id, "object_id")

        relation = self.store.create_relation(
            {
                "subject_id": subject.id,
                "predicate": predicate,
                "object_id": object.id,
                "strength": strength,
                "metadata_json": metadata,
            },
            actor,
        )
        return to_relation_dto(relation, subject, object)

    def _require_relation(self, relation_id: str) -> Relation:
        relation_id = validate_uuid(relation_id, "relation_id")
        relation = self.store.get_relation(relation_id)
        if relation is None:
            raise NotFound("relation", relation_id)
        return relation

    def _hydrate_relations(self, relations: Sequence[Relation]) -> List[RelationDTO]:
        endpoint_ids = {r.subject_id for r in relations} | {r.object_id for r in relations}
        entities = self.store.get_entities_by_ids(endpoint_ids)
        return [
            to_relation_dto(r, entities.get(r.subject_id), entities.get(r.object_id))
            for r in relations
        ]

    def get_relation(self, relation_id: str) -> RelationDTO:
        return self._hydrate_relations([self._require_relation(relation_id)])[0]

    def list_relations(self, filters: Optional[Dict[str, Any]] = None, pagination: Optional[Pagination] = None) -> Page[RelationDTO]:
        page = self.store.list_relations(filters, pagination)
        return Page(items=self._hydrate_relations(page.items), total=page.total, limit=page.limit, offset=page.offset)

    def get_entity_relations(self, entity_id: str, direction: str = "both") -> List[RelationDTO]:
        if direction not in DIRECTIONS:
            raise InvalidInput("direction", f"must be one of {', '.join(DIRECTIONS)}")
        entity = self._require_entity(entity_id)

        if direction == "both":
            seen = set()
            relations = []
            for part in ("outgoing", "incoming"):
                for relation in self.store.relations_for_entity(entity.id, part):
                    if relation.id not in seen:
                        seen.add(relation.id)
                        relations.append(relation)
        else:
            relations = self.store.relations_for_entity(entity.id, direction)
        return self._hydrate_relations(relations)

    def update_relation(
        self,
        relation_id: str,
        predicate: Optional[str] = None,
        strength: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> RelationDTO:
        relation = self._require_relation(relation_id)
        changes: Dict[str, Any] = {}
        if predicate is not None:
            changes["predicate"] = validate_predicate(predicate)
        if strength is not None:
            changes["strength"] = validate_strength(strength)
        if metadata is not None:
            changes["metadata_json"] = sanitize_metadata(metadata)
        updated = self.store.update_relation(relation.id, changes, actor)
        return self._hydrate_relations([updated])[0]

    def delete_relation(self, relation_id: str) -> RelationDTO:
        relation_id = validate_uuid(relation_id, "relation_id")
        deleted = self.store.delete_relation(relation_id)
        if deleted is None:
            raise NotFound("relation", relation_id)
        return to_relation_dto(deleted)

    def predicate_stats(self) -> List[Dict[str, Any]]:
        return [
            {"predicate": p, "count": c, "avg_strength": avg}
            for p, c, avg in self.store.predicate_stats()
        ]

    # ------------------------------------------------------------- observations

    def create_observation(
        self,
        entity_id: str,
        content: str,
        source: Optional[str] = None,
        observed_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> ObservationDTO:
        content = clean_text("content", content, MAX_CONTENT_LENGTH)
        source = clean_text("source", source, MAX_SOURCE_LENGTH, required=False)
        metadata = sanitize_metadata(metadata)
        entity = self._require_entity(entity_id)

        observation = self.store.create_observation(
            {
                "entity_id": entity.id,
                "content": content,
                "source": source,
                "observed_at": observed_at,
                "metadata_json": metadata,
            },
            actor,
        )
        return to_observation_dto(observation, entity)

    def _require_observation(self, observation_id: str) -> Observation:
        observation_id = validate_uuid(observation_id, "observation_id")
        observation = self.store.get_observation(observation_id)
        if observation is None:
            raise NotFound("observation", observation_id)
        return observation

    def get_observation(self, observation_id: str) -> ObservationDTO:
        observation = self._require_observation(observation_id)
        return to_observation_dto(observation, self.store.get_entity(observation.entity_id))

    def list_observations(self, filters: Optional[Dict[str, Any]] = None, pagination: Optional[Pagination] = None) -> Page[ObservationDTO]:
        page = self.store.list_observations(filters, pagination)
        entities = self.store.get_entities_by_ids(o.entity_id for o in page.items)
        items = [to_observation_dto(o, entities.get(o.entity_id)) for o in page.items]
        return Page(items=items, total=page.total, limit=page.limit, offset=page.offset)

    def get_entity_observations(self, entity_id: str) -> List[ObservationDTO]:
        entity = self._require_entity(entity_id)
        observations: List[ObservationDTO] = []
        offset = 0
        while True:
            page = self.store.list_observations(
                {"entity_id": entity.id},
                Pagination(limit=1000, offset=offset, sort_by="observed_at", sort_order="desc"),
            )
            observations.extend(to_observation_dto(o, entity) for o in page.items)
            offset += len(page.items)
            if not page.items or offset >= page.total:
                return observations

    def update_observation(
        self,
        observation_id: str,
        content: Optional[str] = None,
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> ObservationDTO:
        observation = self._require_observation(observation_id)
        changes: Dict[str, Any] = {}
        if content is not None:
            changes["content"] = clean_text("content", content, MAX_CONTENT_LENGTH)
        if source is not None:
            changes["source"] = clean_text("source", source, MAX_SOURCE_LENGTH, required=False)
        if metadata is not None:
            changes["metadata_json"] = sanitize_metadata(metadata)
        updated = self.store.update_observation(observation.id, changes, actor)
        return to_observation_dto(updated, self.store.get_entity(updated.entity_id))

    def delete_observation(self, observation_id: str) -> ObservationDTO:
        observation_id = validate_uuid(observation_id, "observation_id")
        deleted = self.store.delete_observation(observation_id)
        if deleted is None:
            raise NotFound("observation", observation_id)
        return to_observation_dto(deleted)

    def observation_stats(self) -> Dict[str, Any]:
        return self.store.observation_stats()

    # ------------------------------------------------------------- graph reads

    def get_entity_graph(self, entity_id: str) -> EntityGraphDTO:
        """Entity with all of its relations (both directions) and observations."""
        entity = self._require_entity(entity_id)
        return EntityGraphDTO(
            entity=to_entity_dto(entity),
            relations=self.get_entity_relations(entity.id, "both"),
            observations=self.get_entity_observations(entity.id),
        )

    def search_memories(
        self,
        query: str,
        entity_types: Optional[List[str]] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> SearchResults:
        """
        Case-insensitive substring search over entity names and observation content.

        "*", "" and "all" list everything up to `limit`; the result is flagged
        with wildcard=True so callers can tell a listing from a match.
        """
        if query is None or not isinstance(query, str):
            raise InvalidInput("query", "must be a string")
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_SEARCH_LIMIT:
            raise InvalidInput("limit", f"must be between 1 and {MAX_SEARCH_LIMIT}")
        types = validate_entity_types(entity_types)

        cleaned = clean_text("query", query, MAX_NAME_LENGTH, required=False) or ""
        wildcard = cleaned.lower() in WILDCARD_QUERIES
        pattern = None if wildcard else cleaned
        if wildcard:
            logger.info(f"Wildcard memory search for tenant {self.tenant_id} (limit={limit})")

        entities = self.store.search_entities(pattern, types, limit)
        observation_rows = self.store.search_observations(pattern, limit)

        entity_dtos = [to_entity_dto(e) for e in entities]
        observation_dtos = [to_observation_dto(o, e) for o, e in observation_rows]
        return SearchResults(
            query=query,
            wildcard=wildcard,
            entities=entity_dtos,
            observations=observation_dtos,
            total_count=len(entity_dtos) + len(observation_dtos),
        )

    # -------------------------------------------------------------------- erase

    def erase_all(self) -> Dict[str, int]:
        return self.store.erase_all_for_tenant()
