from fastapi import APIRouter, Depends

from curator.api.deps import get_relationship_discovery, http_errors
from curator.pipeline.relationships import RelationshipDiscovery
from curator.schemas.relationships import (
    ApplyCountsOut,
    ApplyRelationshipsRequest,
    CreateAnalysisJobRequest,
    EntityType,
    Relationship,
    RelationshipAnalysisJob,
)

router = APIRouter()
related_router = APIRouter()


@router.post("", response_model=RelationshipAnalysisJob, status_code=201)
async def create_relationship_job(
    payload: CreateAnalysisJobRequest,
    discovery: RelationshipDiscovery = Depends(get_relationship_discovery),
) -> RelationshipAnalysisJob:
    with http_errors():
        return await discovery.create_job(
            payload.job_type,
            payload.target_id,
            triggered_by=payload.triggered_by,
            trigger_type=payload.trigger_type,
        )


@router.get("/{job_id}", response_model=RelationshipAnalysisJob)
async def get_relationship_job(
    job_id: str,
    discovery: RelationshipDiscovery = Depends(get_relationship_discovery),
) -> RelationshipAnalysisJob:
    with http_errors():
        return await discovery.get_job(job_id)


@router.post("/{job_id}/process", response_model=RelationshipAnalysisJob)
async def process_relationship_job(
    job_id: str,
    discovery: RelationshipDiscovery = Depends(get_relationship_discovery),
) -> RelationshipAnalysisJob:
    with http_errors():
        return await discovery.process_job(job_id)


@router.post("/{job_id}/apply", response_model=ApplyCountsOut)
async def apply_relationship_job(
    job_id: str,
    payload: ApplyRelationshipsRequest | None = None,
    discovery: RelationshipDiscovery = Depends(get_relationship_discovery),
) -> ApplyCountsOut:
    options = payload or ApplyRelationshipsRequest()
    with http_errors():
        counts = await discovery.apply_job_relationships(
            job_id,
            min_confidence=options.min_confidence,
            relationship_types=options.relationship_types,
        )
    return ApplyCountsOut(created=counts.created, updated=counts.updated, skipped=counts.skipped)


@router.post("/{job_id}/cancel", response_model=RelationshipAnalysisJob)
async def cancel_relationship_job(
    job_id: str,
    discovery: RelationshipDiscovery = Depends(get_relationship_discovery),
) -> RelationshipAnalysisJob:
    with http_errors():
        return await discovery.cancel_job(job_id)


@related_router.get("/{entity_type}/{entity_id}", response_model=list[Relationship])
async def list_related(
    entity_type: EntityType,
    entity_id: str,
    discovery: RelationshipDiscovery = Depends(get_relationship_discovery),
) -> list[Relationship]:
    with http_errors():
        return await discovery.list_related(entity_type, entity_id)
