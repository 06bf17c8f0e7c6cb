from fastapi import APIRouter, Depends

from curator.api.deps import get_content_pipeline, http_errors
from curator.pipeline.content_updates import ContentUpdatePipeline
from curator.schemas.content import (
    ContentJobStatsOut,
    ContentUpdateJob,
    CreateBatchContentJobsRequest,
    CreateContentJobRequest,
    ReviewRequest,
)

router = APIRouter()


@router.post("", response_model=ContentUpdateJob, status_code=201)
async def create_content_job(
    payload: CreateContentJobRequest,
    pipeline: ContentUpdatePipeline = Depends(get_content_pipeline),
) -> ContentUpdateJob:
    with http_errors():
        return await pipeline.create_job(payload.slug, payload.trigger_type, payload.triggered_by)


@router.post("/batch", response_model=list[str], status_code=201)
async def create_batch_content_jobs(
    payload: CreateBatchContentJobsRequest,
    pipeline: ContentUpdatePipeline = Depends(get_content_pipeline),
) -> list[str]:
    with http_errors():
        return await pipeline.create_batch_jobs(
            payload.trigger_type,
            payload.triggered_by,
            stale_after_days=payload.stale_after_days,
            categories=payload.categories,
            limit=payload.limit,
        )


@router.get("/stats", response_model=ContentJobStatsOut)
async def content_job_stats(pipeline: ContentUpdatePipeline = Depends(get_content_pipeline)) -> ContentJobStatsOut:
    with http_errors():
        counts = await pipeline.get_job_stats()
    return ContentJobStatsOut(counts=counts)


@router.get("/{job_id}", response_model=ContentUpdateJob)
async def get_content_job(
    job_id: str,
    pipeline: ContentUpdatePipeline = Depends(get_content_pipeline),
) -> ContentUpdateJob:
    with http_errors():
        return await pipeline.get_job(job_id)


@router.post("/{job_id}/process", response_model=ContentUpdateJob)
async def process_content_job(
    job_id: str,
    pipeline: ContentUpdatePipeline = Depends(get_content_pipeline),
) -> ContentUpdateJob:
    with http_errors():
        return await pipeline.process_job(job_id)


@router.post("/{job_id}/retry", response_model=ContentUpdateJob)
async def retry_content_job(
    job_id: str,
    pipeline: ContentUpdatePipeline = Depends(get_content_pipeline),
) -> ContentUpdateJob:
    with http_errors():
        return await pipeline.retry_job(job_id)


@router.post("/{job_id}/approve", response_model=ContentUpdateJob)
async def approve_content_job(
    job_id: str,
    payload: ReviewRequest,
    pipeline: ContentUpdatePipeline = Depends(get_content_pipeline),
) -> ContentUpdateJob:
    with http_errors():
        return await pipeline.approve_job(job_id, payload.reviewed_by, payload.notes)


@router.post("/{job_id}/reject", response_model=ContentUpdateJob)
async def reject_content_job(
    job_id: str,
    payload: ReviewRequest,
    pipeline: ContentUpdatePipeline = Depends(get_content_pipeline),
) -> ContentUpdateJob:
    with http_errors():
        return await pipeline.reject_job(job_id, payload.reviewed_by, payload.notes)


@router.post("/{job_id}/cancel", response_model=ContentUpdateJob)
async def cancel_content_job(
    job_id: str,
    pipeline: ContentUpdatePipeline = Depends(get_content_pipeline),
) -> ContentUpdateJob:
    with http_errors():
        return await pipeline.cancel_job(job_id)
