from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from errors import InvalidInput
from knowledge_graph.pipeline import memory_items, resolve_memory_refs
from memory.service import MemoryService
from memory.store import Actor, Pagination
from models import (
    AssistantInfo,
    EmbedBatchRequest,
    EntityBatchCreate,
    EntityCreate,
    EntityDTO,
    EntityGraphDTO,
    EntityListResponse,
    EntityUpdate,
    EraseResponse,
    ObservationCreate,
    ObservationDTO,
    ObservationListResponse,
    ObservationUpdate,
    RelationCreate,
    RelationDTO,
    RelationListResponse,
    RelationUpdate,
    SearchResults,
    VectorSearchRequest,
)
from tenancy.resolver import get_tenant_id, run_for_tenant

router = APIRouter()


def _actor(tenant_id: str, assistant: Optional[AssistantInfo]) -> Actor:
    return Actor(
        user=tenant_id,
        assistant_name=assistant.name if assistant else None,
        assistant_type=assistant.type if assistant else None,
    )


def _pagination(limit: int, offset: int, sort_by: str, sort_order: str) -> Pagination:
    return Pagination(limit=limit, offset=offset, sort_by=sort_by, sort_order=sort_order)


def _scheduler(request: Request):
    return request.app.state.scheduler


def _pipeline(request: Request, tenant_id: str):
    return request.app.state.pipeline_factory(tenant_id)


# ---------------------------------------------------------------------- entities

@router.post("/entities", response_model=EntityDTO, status_code=201, tags=["Entities"])
async def create_entity(body: EntityCreate, request: Request, tenant_id: str = Depends(get_tenant_id)):
    entity = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).create_entity(
        body.type, body.name, body.description, body.metadata, _actor(tenant_id, body.assistant),
    ))
    _scheduler(request).schedule_entity(tenant_id, entity)
    return entity


@router.post("/entities/batch", response_model=List[EntityDTO], status_code=201, tags=["Entities"])
async def batch_create_entities(body: EntityBatchCreate, request: Request, tenant_id: str = Depends(get_tenant_id)):
    entities = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).batch_create_entities(
        body.items, _actor(tenant_id, body.assistant),
    ))
    for entity in entities:
        _scheduler(request).schedule_entity(tenant_id, entity)
    return entities


@router.get("/entities", response_model=EntityListResponse, tags=["Entities"])
async def list_entities(
    request: Request,
    type: Optional[str] = None,
    search: Optional[str] = None,
    created_by_user: Optional[str] = None,
    created_by_assistant_name: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    sort_by: str = "created_at",
    sort_order: str = "desc",
    tenant_id: str = Depends(get_tenant_id),
):
    filters = {
        "type": type,
        "search": search,
        "created_by_user": created_by_user,
        "created_by_assistant_name": created_by_assistant_name,
    }
    page = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).list_entities_with_counts(
        filters, _pagination(limit, offset, sort_by, sort_order),
    ))
    return EntityListResponse(items=page.items, total=page.total, limit=page.limit, offset=page.offset)


@router.get("/entities/types", tags=["Entities"])
async def entity_types(request: Request, tenant_id: str = Depends(get_tenant_id)):
    types = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).entity_type_counts())
    return {"types": types}


@router.get("/entities/{entity_id}", response_model=EntityDTO, tags=["Entities"])
async def get_entity(entity_id: str, request: Request, tenant_id: str = Depends(get_tenant_id)):
    return await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).get_entity(entity_id))


@router.get("/entities/{entity_id}/graph", response_model=EntityGraphDTO, tags=["Entities"])
async def get_entity_graph(entity_id: str, request: Request, tenant_id: str = Depends(get_tenant_id)):
    return await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).get_entity_graph(entity_id))


@router.get("/entities/{entity_id}/relations", response_model=List[RelationDTO], tags=["Entities"])
async def get_entity_relations(
    entity_id: str,
    request: Request,
    direction: str = "both",
    tenant_id: str = Depends(get_tenant_id),
):
    return await run_for_tenant(
        request, tenant_id, lambda scope: MemoryService(scope).get_entity_relations(entity_id, direction),
    )


@router.get("/entities/{entity_id}/observations", response_model=List[ObservationDTO], tags=["Entities"])
async def get_entity_observations(entity_id: str, request: Request, tenant_id: str = Depends(get_tenant_id)):
    return await run_for_tenant(
        request, tenant_id, lambda scope: MemoryService(scope).get_entity_observations(entity_id),
    )


@router.put("/entities/{entity_id}", response_model=EntityDTO, tags=["Entities"])
async def update_entity(entity_id: str, body: EntityUpdate, request: Request, tenant_id: str = Depends(get_tenant_id)):
    entity = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).update_entity(
        entity_id, body.type, body.name, body.description, body.metadata, _actor(tenant_id, body.assistant),
    ))
    _scheduler(request).schedule_entity(tenant_id, entity)
    return entity


@router.delete("/entities/{entity_id}", tags=["Entities"])
async def delete_entity(entity_id: str, request: Request, tenant_id: str = Depends(get_tenant_id)):
    deletion = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).delete_entity(entity_id))
    _scheduler(request).schedule_removal(
        tenant_id, [deletion.entity_id], deletion.relation_ids, deletion.observation_ids,
    )
    return {
        "deleted": True,
        "entity_id": deletion.entity_id,
        "relation_ids": deletion.relation_ids,
        "observation_ids": deletion.observation_ids,
    }


# --------------------------------------------------------------------- relations

@router.post("/relations", response_model=RelationDTO, status_code=201, tags=["Relations"])
async def create_relation(body: RelationCreate, request: Request, tenant_id: str = Depends(get_tenant_id)):
    relation = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).create_relation(
        body.subject_id, body.predicate, body.object_id, body.strength, body.metadata,
        _actor(tenant_id, body.assistant),
    ))
    _scheduler(request).schedule_relation(tenant_id, relation)
    return relation


@router.get("/relations", response_model=RelationListResponse, tags=["Relations"])
async def list_relations(
    request: Request,
    subject_id: Optional[str] = None,
    object_id: Optional[str] = None,
    predicate: Optional[str] = None,
    search: Optional[str] = None,
    created_by_user: Optional[str] = None,
    created_by_assistant_name: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    sort_by: str = "created_at",
    sort_order: str = "desc",
    tenant_id: str = Depends(get_tenant_id),
):
    filters = {
        "subject_id": subject_id,
        "object_id": object_id,
        "predicate": predicate,
        "search": search,
        "created_by_user": created_by_user,
        "created_by_assistant_name": created_by_assistant_name,
    }
    page = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).list_relations(
        filters, _pagination(limit, offset, sort_by, sort_order),
    ))
    return RelationListResponse(items=page.items, total=page.total, limit=page.limit, offset=page.offset)


@router.get("/relations/predicates", tags=["Relations"])
async def relation_predicates(request: Request, tenant_id: str = Depends(get_tenant_id)):
    predicates = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).predicate_stats())
    return {"predicates": predicates}


@router.get("/relations/{relation_id}", response_model=RelationDTO, tags=["Relations"])
async def get_relation(relation_id: str, request: Request, tenant_id: str = Depends(get_tenant_id)):
    return await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).get_relation(relation_id))


@router.put("/relations/{relation_id}", response_model=RelationDTO, tags=["Relations"])
async def update_relation(relation_id: str, body: RelationUpdate, request: Request, tenant_id: str = Depends(get_tenant_id)):
    relation = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).update_relation(
        relation_id, body.predicate, body.strength, body.metadata, _actor(tenant_id, body.assistant),
    ))
    _scheduler(request).schedule_relation(tenant_id, relation)
    return relation


@router.delete("/relations/{relation_id}", tags=["Relations"])
async def delete_relation(relation_id: str, request: Request, tenant_id: str = Depends(get_tenant_id)):
    relation = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).delete_relation(relation_id))
    _scheduler(request).schedule_removal(tenant_id, relation_ids=[relation.id])
    return {"deleted": True, "relation_id": relation.id}


# ------------------------------------------------------------------ observations

@router.post("/observations", response_model=ObservationDTO, status_code=201, tags=["Observations"])
async def create_observation(body: ObservationCreate, request: Request, tenant_id: str = Depends(get_tenant_id)):
    observation = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).create_observation(
        body.entity_id, body.content, body.source, body.observed_at, body.metadata,
        _actor(tenant_id, body.assistant),
    ))
    _scheduler(request).schedule_observation(tenant_id, observation)
    return observation


@router.get("/observations", response_model=ObservationListResponse, tags=["Observations"])
async def list_observations(
    request: Request,
    entity_id: Optional[str] = None,
    source: Optional[str] = None,
    search: Optional[str] = None,
    created_by_user: Optional[str] = None,
    created_by_assistant_name: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    sort_by: str = "created_at",
    sort_order: str = "desc",
    tenant_id: str = Depends(get_tenant_id),
):
    filters = {
        "entity_id": entity_id,
        "source": source,
        "search": search,
        "created_by_user": created_by_user,
        "created_by_assistant_name": created_by_assistant_name,
    }
    page = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).list_observations(
        filters, _pagination(limit, offset, sort_by, sort_order),
    ))
    return ObservationListResponse(items=page.items, total=page.total, limit=page.limit, offset=page.offset)


@router.get("/observations/stats", tags=["Observations"])
async def observation_stats(request: Request, tenant_id: str = Depends(get_tenant_id)):
    return await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).observation_stats())


@router.get("/observations/{observation_id}", response_model=ObservationDTO, tags=["Observations"])
async def get_observation(observation_id: str, request: Request, tenant_id: str = Depends(get_tenant_id)):
    return await run_for_tenant(
        request, tenant_id, lambda scope: MemoryService(scope).get_observation(observation_id),
    )


@router.put("/observations/{observation_id}", response_model=ObservationDTO, tags=["Observations"])
async def update_observation(
    observation_id: str,
    body: ObservationUpdate,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
):
    observation = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).update_observation(
        observation_id, body.content, body.source, body.metadata, _actor(tenant_id, body.assistant),
    ))
    _scheduler(request).schedule_observation(tenant_id, observation)
    return observation


@router.delete("/observations/{observation_id}", tags=["Observations"])
async def delete_observation(observation_id: str, request: Request, tenant_id: str = Depends(get_tenant_id)):
    observation = await run_for_tenant(
        request, tenant_id, lambda scope: MemoryService(scope).delete_observation(observation_id),
    )
    _scheduler(request).schedule_removal(tenant_id, observation_ids=[observation.id])
    return {"deleted": True, "observation_id": observation.id}


# ---------------------------------------------------------------------- memories

@router.get("/memories/search", response_model=SearchResults, tags=["Memories"])
async def search_memories(
    request: Request,
    query: str = "",
    entity_types: Optional[List[str]] = Query(None),
    limit: int = 20,
    tenant_id: str = Depends(get_tenant_id),
):
    return await run_for_tenant(
        request, tenant_id, lambda scope: MemoryService(scope).search_memories(query, entity_types, limit),
    )


@router.post("/memories/vector-search", tags=["Memories"])
async def vector_search(body: VectorSearchRequest, request: Request, tenant_id: str = Depends(get_tenant_id)):
    hits = await _pipeline(request, tenant_id).search(
        body.query, body.semantic_classes, body.limit, body.score_threshold, body.filters,
    )
    return {"query": body.query, "results": [hit.to_dict() for hit in hits]}


@router.post("/memories/embed/batch", tags=["Memories"])
async def embed_batch(body: EmbedBatchRequest, request: Request, tenant_id: str = Depends(get_tenant_id)):
    refs = [(ref.id, ref.kind) for ref in body.items]
    if not refs:
        raise InvalidInput("items", "must contain at least one reference")

    async def embed(pipeline):
        items, failed = await run_for_tenant(
            request, tenant_id, lambda scope: resolve_memory_refs(MemoryService(scope), refs),
        )
        return await pipeline.embed_resolved(items, failed, force=body.force)

    result = await _scheduler(request).run_exclusive(tenant_id, embed)
    return result.to_dict()


@router.post("/memories/{kind}/{source_id}/embed", tags=["Memories"])
async def embed_one(kind: str, source_id: str, request: Request, force: bool = False, tenant_id: str = Depends(get_tenant_id)):
    async def embed(pipeline):
        items = await run_for_tenant(
            request, tenant_id, lambda scope: memory_items(MemoryService(scope), source_id, kind),
        )
        return await pipeline.embed_resolved(items, force=force)

    result = await _scheduler(request).run_exclusive(tenant_id, embed)
    return result.to_dict()


@router.get("/memories/vector-stats", tags=["Memories"])
async def vector_stats(request: Request, tenant_id: str = Depends(get_tenant_id)):
    return {"collections": await _pipeline(request, tenant_id).stats()}


@router.delete("/memories", response_model=EraseResponse, tags=["Memories"])
async def erase_memories(request: Request, tenant_id: str = Depends(get_tenant_id)):
    counts = await run_for_tenant(request, tenant_id, lambda scope: MemoryService(scope).erase_all())
    dropped = await _scheduler(request).forget_tenant(tenant_id)
    return EraseResponse(**counts, vector_collections=dropped)
