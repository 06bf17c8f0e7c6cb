from __future__ import annotations

import asyncio

from curator.core.config import PipelineConfig
from curator.pipeline.content_updates import ContentUpdatePipeline
from curator.pipeline.relationships import RelationshipDiscovery
from curator.schemas.content import ContentJobStatus
from curator.schemas.relationships import AnalysisJobStatus, AnalysisJobType
from curator.worker import run_cycle

from doubles import DOC_SLUG, RESOURCE_SDK, FakeGenerator, FakeScraper, relationships_response, rewrite_response, seeded_store


def _respond(prompt: str) -> str:
    if "## Candidates" in prompt:
        return relationships_response()
    return rewrite_response()


def _pipelines(store):
    config = PipelineConfig(ai_model="test-model")
    generator = FakeGenerator(_respond)
    return (
        ContentUpdatePipeline(store, FakeScraper(), generator, config),
        RelationshipDiscovery(store, generator, config),
    )


def test_run_cycle_processes_pending_jobs_of_both_kinds() -> None:
    store = seeded_store()
    content, discovery = _pipelines(store)

    async def run():
        content_job = await content.create_job(DOC_SLUG)
        analysis_job = await discovery.create_job(AnalysisJobType.RESOURCE_TO_RESOURCES, RESOURCE_SDK)
        first = await run_cycle(store, content, discovery, batch_size=5, concurrency=2)
        second = await run_cycle(store, content, discovery, batch_size=5, concurrency=2)
        return content_job.id, analysis_job.id, first, second

    content_id, analysis_id, first, second = asyncio.run(run())
    assert (first, second) == (2, 0)
    assert store.content_jobs[content_id].status is ContentJobStatus.READY_FOR_REVIEW
    assert store.analysis_jobs[analysis_id].status is AnalysisJobStatus.COMPLETED


def test_run_cycle_respects_batch_size() -> None:
    store = seeded_store()
    content, discovery = _pipelines(store)

    async def run():
        await content.create_job(DOC_SLUG)
        await content.create_job("configuration/settings")
        return await run_cycle(store, content, discovery, batch_size=1, concurrency=1)

    assert asyncio.run(run()) == 1
    statuses = sorted(job.status.value for job in store.content_jobs.values())
    assert statuses == ["pending", "ready_for_review"]


def test_run_cycle_skips_jobs_claimed_elsewhere() -> None:
    store = seeded_store()
    content, discovery = _pipelines(store)

    async def run():
        job = await content.create_job(DOC_SLUG)
        await content.cancel_job(job.id)

        async def stale_listing(*, limit: int) -> list[str]:
            return [job.id]

        store.list_pending_content_job_ids = stale_listing
        return job.id, await run_cycle(store, content, discovery, batch_size=5, concurrency=1)

    job_id, processed = asyncio.run(run())
    assert processed == 1
    assert store.content_jobs[job_id].status is ContentJobStatus.CANCELLED
