from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from curator.core.config import Settings, get_settings
from curator.core.errors import InvalidStateError
from curator.core.telemetry import configure_logging, set_job_attributes, setup_telemetry, shutdown_telemetry
from curator.pipeline.content_updates import ContentUpdatePipeline
from curator.pipeline.relationships import RelationshipDiscovery
from curator.schemas.content import TriggerType
from curator.services.generation import GenerationClient
from curator.services.repository import get_repository
from curator.services.scraper import ScraperClient
from curator.services.store import PipelineStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_cycle(
    store: PipelineStore,
    content: ContentUpdatePipeline,
    discovery: RelationshipDiscovery,
    *,
    batch_size: int,
    concurrency: int,
) -> int:
    """Process one batch of pending jobs of both kinds; returns how many ran."""
    content_ids = await store.list_pending_content_job_ids(limit=batch_size)
    analysis_ids = await store.list_pending_analysis_job_ids(limit=batch_size)
    if not content_ids and not analysis_ids:
        return 0

    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_one(kind: str, job_id: str) -> None:
        async with semaphore:
            with tracer.start_as_current_span("worker.process_job") as span:
                set_job_attributes(span, kind=kind, job_id=job_id)
                try:
                    if kind == "content":
                        job = await content.process_job(job_id)
                    else:
                        job = await discovery.process_job(job_id)
                except InvalidStateError as exc:
                    # Another worker or a cancel got there first.
                    logger.info("skipping %s job id=%s: %s", kind, job_id, exc)
                    return
                logger.info("%s job id=%s finished with status=%s", kind, job_id, job.status.value)

    await asyncio.gather(
        *(run_one("content", job_id) for job_id in content_ids),
        *(run_one("relationship", job_id) for job_id in analysis_ids),
    )
    return len(content_ids) + len(analysis_ids)


async def run_worker(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    configure_logging(settings)
    telemetry_runtime = setup_telemetry(settings, service_suffix="worker")
    config = settings.pipeline_config()
    store = get_repository()
    generator = GenerationClient(settings.anthropic_api_key, config.ai_model)
    content = ContentUpdatePipeline(
        store,
        ScraperClient(
            settings.scraper_base_url,
            settings.scraper_api_key,
            timeout_seconds=config.scrape_timeout_seconds,
        ),
        generator,
        config,
    )
    discovery = RelationshipDiscovery(store, generator, config)

    backoff = settings.poll_interval_seconds
    last_sweep_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_sweep_at >= settings.stale_sweep_interval_seconds:
                        created = await content.create_batch_jobs(
                            TriggerType.SCHEDULED,
                            "worker",
                            stale_after_days=settings.stale_after_days,
                            limit=settings.stale_sweep_limit,
                        )
                        if created:
                            logger.info("enqueued stale refresh jobs: %s", len(created))
                        last_sweep_at = now

                    processed = await run_cycle(
                        store,
                        content,
                        discovery,
                        batch_size=settings.worker_batch_size,
                        concurrency=config.sweep_concurrency,
                    )
                    if not processed:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await generator.close()
        await store.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
