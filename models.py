from sqlalchemy import Column, String, Float, Text, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
from pydantic import BaseModel
from typing import Optional, List, Dict, Any
import uuid

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# SQLAlchemy Models
class Entity(Base):
    __tablename__ = "entities"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(255), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    name = Column(String(200), nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)

    # Human and assistant attribution may both be present
    created_by_user = Column(String(255), nullable=True)
    created_by_assistant_name = Column(String(200), nullable=True)
    created_by_assistant_type = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    updated_by_user = Column(String(255), nullable=True)
    updated_by_assistant_name = Column(String(200), nullable=True)
    updated_by_assistant_type = Column(String(100), nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_entities_tenant_type", "tenant_id", "type"),
        Index("idx_entities_tenant_name", "tenant_id", "name"),
    )


class Relation(Base):
    __tablename__ = "relations"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(255), nullable=False, index=True)
    subject_id = Column(String(36), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False, index=True)
    predicate = Column(String(100), nullable=False)
    object_id = Column(String(36), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False, index=True)
    strength = Column(Float, default=1.0, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)

    created_by_user = Column(String(255), nullable=True)
    created_by_assistant_name = Column(String(200), nullable=True)
    created_by_assistant_type = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    updated_by_user = Column(String(255), nullable=True)
    updated_by_assistant_name = Column(String(200), nullable=True)
    updated_by_assistant_type = Column(String(100), nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_relations_tenant_predicate", "tenant_id", "predicate"),
    )


class Observation(Base):
    __tablename__ = "observations"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(255), nullable=False, index=True)
    entity_id = Column(String(36), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    source = Column(String(200), nullable=True)
    observed_at = Column(DateTime, default=utcnow, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)

    created_by_user = Column(String(255), nullable=True)
    created_by_assistant_name = Column(String(200), nullable=True)
    created_by_assistant_type = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    updated_by_user = Column(String(255), nullable=True)
    updated_by_assistant_name = Column(String(200), nullable=True)
    updated_by_assistant_type = Column(String(100), nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


# Pydantic Models
class AssistantInfo(BaseModel):
    name: str
    type: Optional[str] = None


class Attribution(BaseModel):
    user: Optional[str] = None
    assistant: Optional[AssistantInfo] = None

    @classmethod
    def from_columns(cls, user, assistant_name, assistant_type) -> "Attribution":
        assistant = AssistantInfo(name=assistant_name, type=assistant_type) if assistant_name else None
        return cls(user=user, assistant=assistant)


class EntityDTO(BaseModel):
    id: str
    type: str
    name: str
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_by: Attribution
    updated_by: Attribution
    created_at: datetime
    updated_at: datetime


class EntityWithCountsDTO(EntityDTO):
    relations_count: int = 0
    observations_count: int = 0


class RelationDTO(BaseModel):
    id: str
    subject_id: str
    predicate: str
    object_id: str
    strength: float
    metadata: Optional[Dict[str, Any]] = None
    subject: Optional[EntityDTO] = None
    object: Optional[EntityDTO] = None
    created_by: Attribution
    updated_by: Attribution
    created_at: datetime
    updated_at: datetime


class ObservationDTO(BaseModel):
    id: str
    entity_id: str
    content: str
    source: Optional[str] = None
    observed_at: datetime
    metadata: Optional[Dict[str, Any]] = None
    entity: Optional[EntityDTO] = None
    created_by: Attribution
    updated_by: Attribution
    created_at: datetime
    updated_at: datetime


class EntityGraphDTO(BaseModel):
    entity: EntityDTO
    relations: List[RelationDTO]
    observations: List[ObservationDTO]


class SearchResults(BaseModel):
    query: str
    wildcard: bool = False
    entities: List[EntityDTO]
    observations: List[ObservationDTO]
    total_count: int


class EntityListResponse(BaseModel):
    items: List[EntityWithCountsDTO]
    total: int
    limit: int
    offset: int


class RelationListResponse(BaseModel):
    items: List[RelationDTO]
    total: int
    limit: int
    offset: int


class ObservationListResponse(BaseModel):
    items: List[ObservationDTO]
    total: int
    limit: int
    offset: int


class EraseResponse(BaseModel):
    entities: int
    relations: int
    observations: int
    vector_collections: int = 0


# Request bodies
class EntityCreate(BaseModel):
    type: str
    name: str
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    assistant: Optional[AssistantInfo] = None


class EntityUpdate(BaseModel):
    type: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    assistant: Optional[AssistantInfo] = None


class EntityBatchCreate(BaseModel):
    items: List[EntityCreate]
    assistant: Optional[AssistantInfo] = None


class RelationCreate(BaseModel):
    subject_id: str
    predicate: str
    object_id: str
    strength: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None
    assistant: Optional[AssistantInfo] = None


class RelationUpdate(BaseModel):
    predicate: Optional[str] = None
    strength: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None
    assistant: Optional[AssistantInfo] = None


class ObservationCreate(BaseModel):
    entity_id: str
    content: str
    source: Optional[str] = None
    observed_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    assistant: Optional[AssistantInfo] = None


class ObservationUpdate(BaseModel):
    content: Optional[str] = None
    source: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    assistant: Optional[AssistantInfo] = None


class MemoryRef(BaseModel):
    id: str
    kind: str  # entity | relation | observation


class EmbedBatchRequest(BaseModel):
    items: List[MemoryRef]
    force: bool = False


class VectorSearchRequest(BaseModel):
    query: str
    semantic_classes: Optional[List[str]] = None
    limit: int = 10
    score_threshold: Optional[float] = None
    filters: Optional[Dict[str, Any]] = None
