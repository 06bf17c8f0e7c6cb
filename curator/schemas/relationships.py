from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from curator.schemas.content import TriggerType


class EntityType(str, Enum):
    DOC = "doc"
    RESOURCE = "resource"


class AnalysisJobType(str, Enum):
    DOC_TO_RESOURCES = "doc_to_resources"
    RESOURCE_TO_DOCS = "resource_to_docs"
    RESOURCE_TO_RESOURCES = "resource_to_resources"
    BATCH_DOCS = "batch_docs"
    BATCH_RESOURCES = "batch_resources"
    FULL_REINDEX = "full_reindex"


class TargetType(str, Enum):
    """What an analysis job is anchored on; sweeps cover every entity."""

    DOC = "doc"
    RESOURCE = "resource"
    ALL = "all"


class AnalysisJobStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


DOC_RESOURCE_RELATIONSHIP_TYPES = frozenset(
    {
        "related",
        "mentioned",
        "example",
        "required",
        "recommended",
        "alternative",
        "extends",
        "implements",
    }
)
RESOURCE_RELATIONSHIP_TYPES = frozenset(
    {
        "similar",
        "alternative",
        "complement",
        "prerequisite",
        "successor",
        "uses",
        "integrates",
        "fork",
        "inspired_by",
    }
)


def vocabulary_for(source_type: EntityType, target_type: EntityType) -> frozenset[str]:
    if source_type is EntityType.RESOURCE and target_type is EntityType.RESOURCE:
        return RESOURCE_RELATIONSHIP_TYPES
    if source_type is EntityType.DOC and target_type is EntityType.DOC:
        return frozenset()
    return DOC_RESOURCE_RELATIONSHIP_TYPES


def target_type_for(job_type: AnalysisJobType) -> TargetType:
    match job_type:
        case AnalysisJobType.DOC_TO_RESOURCES:
            return TargetType.DOC
        case AnalysisJobType.RESOURCE_TO_DOCS | AnalysisJobType.RESOURCE_TO_RESOURCES:
            return TargetType.RESOURCE
        case AnalysisJobType.BATCH_DOCS | AnalysisJobType.BATCH_RESOURCES | AnalysisJobType.FULL_REINDEX:
            return TargetType.ALL


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


class DiscoveredRelationship(BaseModel):
    source_type: EntityType
    source_id: str
    target_type: EntityType
    target_id: str
    relationship_type: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    shared_tags: list[str] = Field(default_factory=list)


class AnalyzedRelationship(BaseModel):
    """One relationship entry as returned by the generation service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    target_id: str = Field(alias="targetId", min_length=1)
    relationship_type: str = Field(alias="relationshipType", min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = Field(min_length=1)
    shared_tags: list[str] = Field(default_factory=list, alias="sharedTags")


class Relationship(BaseModel):
    source_type: EntityType
    source_id: str
    target_type: EntityType
    target_id: str
    relationship_type: str
    confidence: float
    reasoning: str | None = None
    shared_tags: list[str] = Field(default_factory=list)
    ai_model: str | None = None
    is_manual: bool = False
    is_active: bool = True
    analyzed_at: datetime | None = None


class RelationshipAnalysisJob(BaseModel):
    id: str
    job_type: AnalysisJobType
    target_type: TargetType
    target_id: str
    status: AnalysisJobStatus = AnalysisJobStatus.PENDING
    progress_current: int = 0
    progress_total: int = 0
    discovered_relationships: list[DiscoveredRelationship] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    relationships_created: int = 0
    relationships_updated: int = 0
    relationships_skipped: int = 0
    ai_model: str | None = None
    tokens_used: int = 0
    cost_estimate: float | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    trigger_type: TriggerType = TriggerType.MANUAL
    triggered_by: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class CreateAnalysisJobRequest(BaseModel):
    job_type: AnalysisJobType
    target_id: str | None = None
    trigger_type: TriggerType = TriggerType.MANUAL
    triggered_by: str | None = None


class ApplyRelationshipsRequest(BaseModel):
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    relationship_types: list[str] | None = None


class ApplyCountsOut(BaseModel):
    created: int
    updated: int
    skipped: int
