from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from opentelemetry import trace

from curator.core.config import PipelineConfig
from curator.core.errors import GenerationServiceError, InvalidStateError, NotFoundError, PipelineError
from curator.core.telemetry import set_job_attributes
from curator.pipeline.apply import ApplyCounts, apply_relationships
from curator.pipeline.batching import Candidate, batch_candidates
from curator.pipeline.confidence import filter_and_sort
from curator.pipeline.parsing import parse_relationship_response, validate_relationships
from curator.pipeline.prompts import RELATIONSHIP_ANALYZER_SYSTEM_PROMPT, build_relationship_prompt
from curator.schemas.content import ContentItem, Resource, TriggerType
from curator.schemas.relationships import (
    AnalysisJobStatus,
    AnalysisJobType,
    DiscoveredRelationship,
    EntityType,
    Relationship,
    RelationshipAnalysisJob,
    target_type_for,
)
from curator.services.generation import Generator
from curator.services.store import PipelineStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SWEEP_TARGET = "all"


@dataclass(slots=True)
class DiscoveryOutcome:
    relationships: list[DiscoveredRelationship] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens

    def merge(self, other: DiscoveryOutcome) -> None:
        self.relationships.extend(other.relationships)
        self.warnings.extend(other.warnings)
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


@dataclass(slots=True)
class _Progress:
    store: PipelineStore
    job_id: str
    total: int
    current: int = 0
    cancelled: bool = False

    async def start(self) -> None:
        await self._write({"progress_total": self.total, "progress_current": self.current})

    async def advance(self) -> None:
        self.current += 1
        await self._write({"progress_current": self.current})

    async def _write(self, fields: dict[str, int]) -> None:
        updated = await self.store.transition_analysis_job(
            self.job_id,
            expected={AnalysisJobStatus.ANALYZING},
            status=AnalysisJobStatus.ANALYZING,
            fields=fields,
        )
        if updated is None:
            self.cancelled = True


class RelationshipDiscovery:
    """Finds typed relationships between content items and catalog resources."""

    def __init__(self, store: PipelineStore, generator: Generator, config: PipelineConfig) -> None:
        self.store = store
        self.generator = generator
        self.config = config

    async def create_job(
        self,
        job_type: AnalysisJobType,
        target_id: str | None = None,
        *,
        triggered_by: str | None = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> RelationshipAnalysisJob:
        match job_type:
            case AnalysisJobType.DOC_TO_RESOURCES:
                await self._require_content_item(_require_target(job_type, target_id))
            case AnalysisJobType.RESOURCE_TO_DOCS | AnalysisJobType.RESOURCE_TO_RESOURCES:
                await self._require_resource(_require_target(job_type, target_id))
            case AnalysisJobType.BATCH_DOCS | AnalysisJobType.BATCH_RESOURCES | AnalysisJobType.FULL_REINDEX:
                target_id = SWEEP_TARGET

        job = await self.store.insert_analysis_job(
            RelationshipAnalysisJob(
                id=str(uuid4()),
                job_type=job_type,
                target_type=target_type_for(job_type),
                target_id=target_id,
                ai_model=self.config.ai_model,
                trigger_type=trigger_type,
                triggered_by=triggered_by,
                created_at=_utcnow(),
            )
        )
        logger.info("relationship job created id=%s type=%s target=%s", job.id, job_type.value, target_id)
        return job

    async def process_job(self, job_id: str) -> RelationshipAnalysisJob:
        with tracer.start_as_current_span("relationship_job.process") as span:
            set_job_attributes(span, kind="relationship", job_id=job_id)
            await self.get_job(job_id)
            started = await self.store.transition_analysis_job(
                job_id,
                expected={AnalysisJobStatus.PENDING},
                status=AnalysisJobStatus.ANALYZING,
                fields={"started_at": _utcnow(), "ai_model": self.config.ai_model},
            )
            if started is None:
                raise await self._invalid_state(job_id, "process", expected="pending")
            span.set_attribute("job.type", started.job_type.value)

            try:
                outcome = await self._dispatch(started)
            except Exception as exc:
                return await self._fail(job_id, exc)

            relationships = filter_and_sort(outcome.relationships, self.config.relationship_create_threshold)
            completed = await self.store.transition_analysis_job(
                job_id,
                expected={AnalysisJobStatus.ANALYZING},
                status=AnalysisJobStatus.COMPLETED,
                fields={
                    "discovered_relationships": relationships,
                    "warnings": outcome.warnings,
                    "tokens_used": outcome.tokens_used,
                    "cost_estimate": self.config.estimate_cost(outcome.input_tokens, outcome.output_tokens),
                    "completed_at": _utcnow(),
                },
            )
            if completed is None:
                job = await self.get_job(job_id)
                logger.info("relationship job stopped id=%s status=%s", job_id, job.status.value)
                return job

            span.set_attribute("relationships.discovered", len(relationships))
            logger.info(
                "relationship job completed id=%s discovered=%s warnings=%s tokens=%s",
                job_id,
                len(relationships),
                len(outcome.warnings),
                outcome.tokens_used,
            )
            if self.config.auto_apply_relationships and relationships:
                await self.apply_job_relationships(job_id)
                return await self.get_job(job_id)
            return completed

    async def apply_job_relationships(
        self,
        job_id: str,
        *,
        min_confidence: float | None = None,
        relationship_types: Collection[str] | None = None,
    ) -> ApplyCounts:
        job = await self.get_job(job_id)
        if job.status is not AnalysisJobStatus.COMPLETED:
            raise InvalidStateError(
                f"cannot apply relationship job {job_id}: status is {job.status.value}, expected completed",
                status=job.status.value,
            )

        threshold = self.config.relationship_create_threshold if min_confidence is None else min_confidence
        selected = filter_and_sort(job.discovered_relationships, threshold)
        if relationship_types:
            allowed = set(relationship_types)
            selected = [relationship for relationship in selected if relationship.relationship_type in allowed]

        counts = await apply_relationships(self.store, selected, ai_model=job.ai_model or self.config.ai_model)
        await self.store.transition_analysis_job(
            job_id,
            expected={AnalysisJobStatus.COMPLETED},
            status=AnalysisJobStatus.COMPLETED,
            fields={
                "relationships_created": counts.created,
                "relationships_updated": counts.updated,
                "relationships_skipped": counts.skipped,
            },
        )
        logger.info(
            "relationship job applied id=%s created=%s updated=%s skipped=%s",
            job_id,
            counts.created,
            counts.updated,
            counts.skipped,
        )
        return counts

    async def cancel_job(self, job_id: str) -> RelationshipAnalysisJob:
        await self.get_job(job_id)
        cancelled = await self.store.transition_analysis_job(
            job_id,
            expected={AnalysisJobStatus.PENDING, AnalysisJobStatus.ANALYZING},
            status=AnalysisJobStatus.CANCELLED,
            fields={"completed_at": _utcnow()},
        )
        if cancelled is None:
            raise await self._invalid_state(job_id, "cancel", expected="pending or analyzing")
        logger.info("relationship job cancelled id=%s", job_id)
        return cancelled

    async def get_job(self, job_id: str) -> RelationshipAnalysisJob:
        job = await self.store.get_analysis_job(job_id)
        if job is None:
            raise NotFoundError(f"relationship job {job_id} not found")
        return job

    async def list_related(self, entity_type: EntityType, entity_id: str) -> list[Relationship]:
        return await self.store.list_relationships(
            entity_type,
            entity_id,
            min_confidence=self.config.relationship_display_threshold,
        )

    async def analyze_doc_to_resources(self, slug: str, *, limiter: asyncio.Semaphore) -> DiscoveryOutcome:
        item = await self._require_content_item(slug)
        resources = await self.store.list_published_resources()
        return await self._analyze(
            _doc_candidate(item),
            [_resource_candidate(resource) for resource in resources],
            source_content=item.content[: self.config.max_source_content_chars],
            limiter=limiter,
        )

    async def analyze_resource_to_docs(self, resource_id: str, *, limiter: asyncio.Semaphore) -> DiscoveryOutcome:
        resource = await self._require_resource(resource_id)
        items = await self.store.list_published_content_items()
        return await self._analyze(
            _resource_candidate(resource),
            [_doc_candidate(item) for item in items],
            limiter=limiter,
        )

    async def analyze_resource_to_resources(self, resource_id: str, *, limiter: asyncio.Semaphore) -> DiscoveryOutcome:
        resource = await self._require_resource(resource_id)
        others = await self.store.list_published_resources()
        return await self._analyze(
            _resource_candidate(resource),
            [_resource_candidate(other) for other in others if other.id != resource.id],
            limiter=limiter,
        )

    async def _dispatch(self, job: RelationshipAnalysisJob) -> DiscoveryOutcome:
        limiter = asyncio.Semaphore(self.config.generation_concurrency)
        match job.job_type:
            case AnalysisJobType.DOC_TO_RESOURCES:
                outcome = await self.analyze_doc_to_resources(job.target_id, limiter=limiter)
            case AnalysisJobType.RESOURCE_TO_DOCS:
                outcome = await self.analyze_resource_to_docs(job.target_id, limiter=limiter)
            case AnalysisJobType.RESOURCE_TO_RESOURCES:
                outcome = await self.analyze_resource_to_resources(job.target_id, limiter=limiter)
            case AnalysisJobType.BATCH_DOCS:
                return await self._sweep(job.id, [EntityType.DOC], limiter=limiter)
            case AnalysisJobType.BATCH_RESOURCES:
                return await self._sweep(job.id, [EntityType.RESOURCE], limiter=limiter)
            case AnalysisJobType.FULL_REINDEX:
                return await self._sweep(job.id, [EntityType.DOC, EntityType.RESOURCE], limiter=limiter)
        progress = _Progress(self.store, job.id, total=1, current=1)
        await progress.start()
        return outcome

    async def _sweep(
        self,
        job_id: str,
        entity_types: list[EntityType],
        *,
        limiter: asyncio.Semaphore,
    ) -> DiscoveryOutcome:
        """Run the single-entity strategy for every published entity of each kind.

        A failure on one entity is logged and recorded as a warning; the sweep
        carries on with the rest.
        """
        targets: list[tuple[EntityType, str]] = []
        for entity_type in entity_types:
            match entity_type:
                case EntityType.DOC:
                    items = await self.store.list_published_content_items()
                    targets.extend((EntityType.DOC, item.slug) for item in items)
                case EntityType.RESOURCE:
                    resources = await self.store.list_published_resources()
                    targets.extend((EntityType.RESOURCE, resource.id) for resource in resources)

        progress = _Progress(self.store, job_id, total=len(targets))
        await progress.start()
        outcome = DiscoveryOutcome()
        sweep_limit = asyncio.Semaphore(self.config.sweep_concurrency)

        async def run_one(entity_type: EntityType, entity_id: str) -> None:
            async with sweep_limit:
                if progress.cancelled:
                    return
                with tracer.start_as_current_span("relationship_job.sweep_entity") as span:
                    span.set_attribute("entity.type", entity_type.value)
                    span.set_attribute("entity.id", entity_id)
                    try:
                        match entity_type:
                            case EntityType.DOC:
                                result = await self.analyze_doc_to_resources(entity_id, limiter=limiter)
                            case EntityType.RESOURCE:
                                result = await self.analyze_resource_to_resources(entity_id, limiter=limiter)
                    except Exception as exc:
                        logger.warning("relationship sweep failed for %s %s: %s", entity_type.value, entity_id, exc)
                        outcome.warnings.append(f"{entity_type.value}:{entity_id}: analysis failed: {exc}")
                    else:
                        outcome.merge(result)
                await progress.advance()

        with tracer.start_as_current_span("relationship_job.sweep") as span:
            span.set_attribute("sweep.targets", len(targets))
            await asyncio.gather(*(run_one(entity_type, entity_id) for entity_type, entity_id in targets))
        return outcome

    async def _analyze(
        self,
        source: Candidate,
        candidates: list[Candidate],
        *,
        limiter: asyncio.Semaphore,
        source_content: str | None = None,
    ) -> DiscoveryOutcome:
        outcome = DiscoveryOutcome()
        if not candidates:
            return outcome

        batches = batch_candidates(
            candidates,
            max_items=self.config.batch_max_items,
            max_tokens=self.config.batch_max_tokens,
        )
        results = await asyncio.gather(
            *(self._analyze_batch(source, batch, limiter=limiter, source_content=source_content) for batch in batches),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
            outcome.merge(result)
        outcome.relationships = filter_and_sort(outcome.relationships, self.config.relationship_create_threshold)
        return outcome

    async def _analyze_batch(
        self,
        source: Candidate,
        batch: list[Candidate],
        *,
        limiter: asyncio.Semaphore,
        source_content: str | None,
    ) -> DiscoveryOutcome:
        prompt = build_relationship_prompt(source, batch, source_content=source_content)
        timeout = self.config.generation_timeout_seconds
        async with limiter:
            with tracer.start_as_current_span("relationship_job.generate") as span:
                span.set_attribute("batch.size", len(batch))
                try:
                    result = await asyncio.wait_for(
                        self.generator.generate(
                            system_prompt=RELATIONSHIP_ANALYZER_SYSTEM_PROMPT,
                            user_prompt=prompt,
                            max_tokens=self.config.analysis_max_tokens,
                        ),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError as exc:
                    raise GenerationServiceError(f"generation timed out after {timeout:g}s") from exc

        entries = parse_relationship_response(result.text)
        relationships, warnings = validate_relationships(
            entries,
            source_type=source.entity_type,
            source_id=source.id,
            target_type=batch[0].entity_type,
            known_target_ids={candidate.id for candidate in batch},
        )
        prefix = f"{source.entity_type.value}:{source.id}"
        return DiscoveryOutcome(
            relationships=relationships,
            warnings=[f"{prefix}: {warning}" for warning in warnings],
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )

    async def _fail(self, job_id: str, exc: Exception) -> RelationshipAnalysisJob:
        if isinstance(exc, PipelineError):
            details = exc.details()
            logger.warning("relationship job failed id=%s error=%s", job_id, exc)
        else:
            details = {"error_type": type(exc).__name__}
            logger.exception("relationship job crashed id=%s", job_id)
        details["stage"] = "analyzing"

        failed = await self.store.transition_analysis_job(
            job_id,
            expected={AnalysisJobStatus.ANALYZING},
            status=AnalysisJobStatus.FAILED,
            fields={
                "error_message": str(exc) or type(exc).__name__,
                "error_details": details,
                "completed_at": _utcnow(),
            },
        )
        return failed or await self.get_job(job_id)

    async def _require_content_item(self, slug: str) -> ContentItem:
        item = await self.store.get_content_item(slug)
        if item is None:
            raise NotFoundError(f"content item {slug} not found")
        return item

    async def _require_resource(self, resource_id: str) -> Resource:
        resource = await self.store.get_resource(resource_id)
        if resource is None:
            raise NotFoundError(f"resource {resource_id} not found")
        return resource

    async def _invalid_state(self, job_id: str, action: str, *, expected: str) -> InvalidStateError:
        job = await self.get_job(job_id)
        return InvalidStateError(
            f"cannot {action} relationship job {job_id}: status is {job.status.value}, expected {expected}",
            status=job.status.value,
        )


def _require_target(job_type: AnalysisJobType, target_id: str | None) -> str:
    if not target_id:
        raise ValueError(f"{job_type.value} jobs need a target id")
    return target_id


def _doc_candidate(item: ContentItem) -> Candidate:
    return Candidate(
        entity_type=EntityType.DOC,
        id=item.slug,
        title=item.title,
        description=item.description or "",
        category=item.category,
    )


def _resource_candidate(resource: Resource) -> Candidate:
    return Candidate(
        entity_type=EntityType.RESOURCE,
        id=resource.id,
        title=resource.title,
        description=resource.description or "",
        category=resource.category,
        tags=list(resource.tags),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
