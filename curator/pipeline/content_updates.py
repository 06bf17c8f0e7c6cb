from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from opentelemetry import trace

from curator.core.config import PipelineConfig
from curator.core.errors import (
    ApplyError,
    GenerationServiceError,
    InvalidStateError,
    NotFoundError,
    PipelineError,
    ScrapeFailure,
)
from curator.core.telemetry import set_job_attributes
from curator.pipeline.diff import generate_content_diff
from curator.pipeline.parsing import parse_rewrite_response
from curator.pipeline.prompts import DOC_REWRITER_SYSTEM_PROMPT, build_rewrite_prompt
from curator.schemas.content import (
    OPEN_CONTENT_STATUSES,
    ContentHistoryEntry,
    ContentItem,
    ContentJobStatus,
    ContentUpdateJob,
    ScrapedSnapshot,
    ScrapeErrorRecord,
    TriggerType,
)
from curator.services.generation import GenerationResult, Generator
from curator.services.scraper import Scraper
from curator.services.store import PipelineStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ContentUpdatePipeline:
    """Refreshes content items from their cited sources.

    A job moves pending -> scraping -> analyzing -> ready_for_review and then
    waits for a reviewer. Every move is a conditional update on the previous
    status, so a job cancelled mid-run stops at its next transition.
    """

    def __init__(
        self,
        store: PipelineStore,
        scraper: Scraper,
        generator: Generator,
        config: PipelineConfig,
    ) -> None:
        self.store = store
        self.scraper = scraper
        self.generator = generator
        self.config = config

    async def create_job(
        self,
        slug: str,
        trigger_type: TriggerType = TriggerType.MANUAL,
        triggered_by: str | None = None,
    ) -> ContentUpdateJob:
        item = await self.store.get_content_item(slug)
        if item is None:
            raise NotFoundError(f"content item {slug} not found")

        now = _utcnow()
        job = await self.store.insert_content_job(
            ContentUpdateJob(
                id=str(uuid4()),
                item_slug=slug,
                trigger_type=trigger_type,
                triggered_by=triggered_by,
                current_content=item.content,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("content job created id=%s slug=%s trigger=%s", job.id, slug, trigger_type.value)
        return job

    async def create_batch_jobs(
        self,
        trigger_type: TriggerType = TriggerType.SCHEDULED,
        triggered_by: str | None = None,
        *,
        stale_after_days: int = 7,
        categories: Collection[str] | None = None,
        limit: int = 50,
    ) -> list[str]:
        stale_before = _utcnow() - timedelta(days=stale_after_days)
        slugs = await self.store.list_stale_content_slugs(
            stale_before=stale_before,
            categories=categories,
            limit=limit,
        )
        job_ids: list[str] = []
        for slug in slugs:
            if await self.store.has_open_content_job(slug):
                logger.debug("skipping %s: a refresh is already open", slug)
                continue
            job = await self.create_job(slug, trigger_type, triggered_by)
            job_ids.append(job.id)
        if job_ids:
            logger.info("created %s stale refresh jobs", len(job_ids))
        return job_ids

    async def process_job(self, job_id: str) -> ContentUpdateJob:
        with tracer.start_as_current_span("content_job.process") as span:
            set_job_attributes(span, kind="content", job_id=job_id)
            await self.get_job(job_id)
            claimed = await self.store.transition_content_job(
                job_id,
                expected={ContentJobStatus.PENDING},
                status=ContentJobStatus.SCRAPING,
            )
            if claimed is None:
                raise await self._invalid_state(job_id, "process", expected="pending")

            stage = "scraping"
            recorded: dict[str, Any] = {}
            try:
                item = await self.store.get_content_item(claimed.item_slug)
                if item is None:
                    raise NotFoundError(f"content item {claimed.item_slug} not found")

                snapshots, scrape_errors = await self._scrape_sources(item)
                recorded.update(
                    scraped_content=snapshots,
                    scrape_errors=scrape_errors,
                    scraped_at=_utcnow(),
                )
                analyzing = await self.store.transition_content_job(
                    job_id,
                    expected={ContentJobStatus.SCRAPING},
                    status=ContentJobStatus.ANALYZING,
                    fields=recorded,
                )
                if analyzing is None:
                    return await self._stopped(job_id, stage)

                stage = "analyzing"
                result = await self._generate(item, snapshots)
                recorded.update(
                    ai_model=self.config.ai_model,
                    input_tokens=result.input_tokens,
                    output_tokens=result.output_tokens,
                )
                proposal = parse_rewrite_response(result.text)

                warnings = list(proposal.warnings)
                if not snapshots:
                    warnings.append("No source content could be scraped; the rewrite is based on the current page only.")
                if proposal.confidence < self.config.rewrite_apply_threshold:
                    warnings.append(
                        f"Low confidence ({proposal.confidence:.2f}); review the changes carefully before applying."
                    )
                current_content = claimed.current_content if claimed.current_content is not None else item.content
                ready = await self.store.transition_content_job(
                    job_id,
                    expected={ContentJobStatus.ANALYZING},
                    status=ContentJobStatus.READY_FOR_REVIEW,
                    fields={
                        **recorded,
                        "proposed_title": proposal.title,
                        "proposed_description": proposal.description,
                        "proposed_content": proposal.content,
                        "proposed_sources": proposal.sources or item.sources,
                        "summary": proposal.summary,
                        "confidence": proposal.confidence,
                        "warnings": warnings,
                        "key_changes": proposal.key_changes,
                        "content_diff": generate_content_diff(current_content, proposal.content),
                        "analyzed_at": _utcnow(),
                    },
                )
                if ready is None:
                    return await self._stopped(job_id, stage)
            except Exception as exc:
                return await self._fail(job_id, exc, stage=stage, fields=recorded)

            span.set_attribute("job.confidence", proposal.confidence)
            logger.info(
                "content job ready for review id=%s slug=%s confidence=%.2f scraped=%s scrape_errors=%s",
                job_id,
                ready.item_slug,
                proposal.confidence,
                len(ready.scraped_content),
                len(ready.scrape_errors),
            )
            return ready

    async def retry_job(self, job_id: str) -> ContentUpdateJob:
        job = await self.get_job(job_id)
        if job.status is not ContentJobStatus.FAILED:
            raise InvalidStateError(
                f"content job {job_id} is {job.status.value}; only failed jobs can be retried",
                status=job.status.value,
            )
        if job.retry_count >= self.config.max_retries:
            raise InvalidStateError(
                f"content job {job_id} already retried {job.retry_count} times",
                status=job.status.value,
            )

        retried = await self.store.transition_content_job(
            job_id,
            expected={ContentJobStatus.FAILED},
            status=ContentJobStatus.PENDING,
            fields={
                "retry_count": job.retry_count + 1,
                "error_message": None,
                "error_details": None,
                "scraped_content": [],
                "scrape_errors": [],
                "scraped_at": None,
                "completed_at": None,
            },
        )
        if retried is None:
            raise await self._invalid_state(job_id, "retry", expected="failed")
        logger.info("content job requeued id=%s retry=%s", job_id, retried.retry_count)
        return retried

    async def approve_job(self, job_id: str, reviewed_by: str, notes: str | None = None) -> ContentUpdateJob:
        await self.get_job(job_id)
        approved = await self.store.transition_content_job(
            job_id,
            expected={ContentJobStatus.READY_FOR_REVIEW},
            status=ContentJobStatus.APPROVED,
            fields={
                "reviewed_by": reviewed_by,
                "review_notes": notes,
                "reviewed_at": _utcnow(),
                "error_message": None,
                "error_details": None,
            },
        )
        if approved is None:
            raise await self._invalid_state(job_id, "approve", expected="ready_for_review")

        with tracer.start_as_current_span("content_job.apply") as span:
            set_job_attributes(span, kind="content", job_id=job_id)
            try:
                item = await self.store.apply_content_update(job_id)
            except Exception as exc:
                await self.store.transition_content_job(
                    job_id,
                    expected={ContentJobStatus.APPROVED},
                    status=ContentJobStatus.READY_FOR_REVIEW,
                    fields={
                        "error_message": f"apply failed: {exc}",
                        "error_details": {"error_type": type(exc).__name__, "stage": "applying"},
                    },
                )
                logger.warning("content job apply failed id=%s error=%r", job_id, exc)
                raise ApplyError(f"failed to apply content job {job_id}: {exc}") from exc

        logger.info("content job applied id=%s slug=%s version=%s", job_id, item.slug, item.version)
        return await self.get_job(job_id)

    async def reject_job(self, job_id: str, reviewed_by: str, notes: str | None = None) -> ContentUpdateJob:
        await self.get_job(job_id)
        now = _utcnow()
        rejected = await self.store.transition_content_job(
            job_id,
            expected={ContentJobStatus.READY_FOR_REVIEW},
            status=ContentJobStatus.REJECTED,
            fields={
                "reviewed_by": reviewed_by,
                "review_notes": notes,
                "reviewed_at": now,
                "completed_at": now,
            },
        )
        if rejected is None:
            raise await self._invalid_state(job_id, "reject", expected="ready_for_review")
        logger.info("content job rejected id=%s by=%s", job_id, reviewed_by)
        return rejected

    async def cancel_job(self, job_id: str) -> ContentUpdateJob:
        await self.get_job(job_id)
        cancelled = await self.store.transition_content_job(
            job_id,
            expected=OPEN_CONTENT_STATUSES,
            status=ContentJobStatus.CANCELLED,
            fields={"completed_at": _utcnow()},
        )
        if cancelled is None:
            raise await self._invalid_state(job_id, "cancel", expected="an open status")
        logger.info("content job cancelled id=%s", job_id)
        return cancelled

    async def get_job(self, job_id: str) -> ContentUpdateJob:
        job = await self.store.get_content_job(job_id)
        if job is None:
            raise NotFoundError(f"content job {job_id} not found")
        return job

    async def get_job_stats(self) -> dict[str, int]:
        return await self.store.count_content_jobs_by_status()

    async def list_history(self, slug: str) -> list[ContentHistoryEntry]:
        return await self.store.list_content_history(slug)

    async def _scrape_sources(self, item: ContentItem) -> tuple[list[ScrapedSnapshot], list[ScrapeErrorRecord]]:
        urls = item.source_urls()
        if not urls:
            return [], []

        semaphore = asyncio.Semaphore(self.config.scrape_concurrency)
        timeout = self.config.scrape_timeout_seconds

        async def scrape_one(url: str) -> ScrapedSnapshot | ScrapeErrorRecord:
            async with semaphore:
                with tracer.start_as_current_span("content_job.scrape_source") as span:
                    span.set_attribute("source.url", url)
                    try:
                        result = await asyncio.wait_for(
                            self.scraper.scrape(url, formats=["markdown"], only_main_content=True),
                            timeout=timeout,
                        )
                        if not result.success or not result.markdown:
                            raise ScrapeFailure(result.error or "no content returned", url=url)
                    except asyncio.TimeoutError:
                        return ScrapeErrorRecord(url=url, error=f"scrape timed out after {timeout:g}s")
                    except ScrapeFailure as exc:
                        span.set_attribute("source.error", str(exc))
                        return ScrapeErrorRecord(url=url, error=str(exc))
                    except Exception as exc:
                        logger.warning("scrape failed url=%s error=%s", url, exc)
                        return ScrapeErrorRecord(url=url, error=str(exc) or type(exc).__name__)

            return ScrapedSnapshot(
                url=url,
                markdown=result.markdown,
                title=result.metadata.get("title"),
                description=result.metadata.get("description"),
                scraped_at=_utcnow(),
            )

        outcomes = await asyncio.gather(*(scrape_one(url) for url in urls))
        snapshots = [outcome for outcome in outcomes if isinstance(outcome, ScrapedSnapshot)]
        errors = [outcome for outcome in outcomes if isinstance(outcome, ScrapeErrorRecord)]
        return snapshots, errors

    async def _generate(self, item: ContentItem, snapshots: list[ScrapedSnapshot]) -> GenerationResult:
        prompt = build_rewrite_prompt(item, snapshots, max_source_chars=self.config.max_source_chars)
        timeout = self.config.generation_timeout_seconds
        with tracer.start_as_current_span("content_job.generate") as span:
            span.set_attribute("ai.model", self.config.ai_model)
            try:
                result = await asyncio.wait_for(
                    self.generator.generate(
                        system_prompt=DOC_REWRITER_SYSTEM_PROMPT,
                        user_prompt=prompt,
                        max_tokens=self.config.rewrite_max_tokens,
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as exc:
                raise GenerationServiceError(f"generation timed out after {timeout:g}s") from exc
            span.set_attribute("ai.input_tokens", result.input_tokens)
            span.set_attribute("ai.output_tokens", result.output_tokens)
        return result

    async def _fail(self, job_id: str, exc: Exception, *, stage: str, fields: dict[str, Any]) -> ContentUpdateJob:
        if isinstance(exc, PipelineError):
            details = exc.details()
            logger.warning("content job failed id=%s stage=%s error=%s", job_id, stage, exc)
        else:
            details = {"error_type": type(exc).__name__}
            logger.exception("content job crashed id=%s stage=%s", job_id, stage)
        details["stage"] = stage

        failed = await self.store.transition_content_job(
            job_id,
            expected={ContentJobStatus.SCRAPING, ContentJobStatus.ANALYZING},
            status=ContentJobStatus.FAILED,
            fields={
                **fields,
                "error_message": str(exc) or type(exc).__name__,
                "error_details": details,
                "completed_at": _utcnow(),
            },
        )
        if failed is None:
            return await self._stopped(job_id, stage)
        return failed

    async def _stopped(self, job_id: str, stage: str) -> ContentUpdateJob:
        job = await self.get_job(job_id)
        logger.info("content job stopped id=%s stage=%s status=%s", job_id, stage, job.status.value)
        return job

    async def _invalid_state(self, job_id: str, action: str, *, expected: str) -> InvalidStateError:
        job = await self.get_job(job_id)
        return InvalidStateError(
            f"cannot {action} content job {job_id}: status is {job.status.value}, expected {expected}",
            status=job.status.value,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
