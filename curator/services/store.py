from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Collection
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from curator.pipeline.diff import content_hash
from curator.schemas.content import (
    OPEN_CONTENT_STATUSES,
    ContentHistoryEntry,
    ContentItem,
    ContentJobStatus,
    ContentUpdateJob,
    Resource,
)
from curator.schemas.relationships import (
    AnalysisJobStatus,
    EntityType,
    Relationship,
    RelationshipAnalysisJob,
    UpsertOutcome,
)
from curator.services.repository import (
    PostgresRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
)


class InMemoryStore:
    """Process-local store with the same async interface as PostgresRepository.

    Records are copied on the way in and out so callers never share state with
    the store.
    """

    def __init__(self) -> None:
        self.content_items: dict[str, ContentItem] = {}
        self.resources: dict[str, Resource] = {}
        self.content_jobs: dict[str, ContentUpdateJob] = {}
        self.analysis_jobs: dict[str, RelationshipAnalysisJob] = {}
        self.history: list[ContentHistoryEntry] = []
        self.doc_resource_relationships: dict[tuple[str, str], Relationship] = {}
        self.resource_relationships: dict[tuple[str, str], Relationship] = {}
        self._item_locks: dict[str, asyncio.Lock] = {}

    async def close(self) -> None:
        return None

    def add_content_item(self, item: ContentItem) -> None:
        if item.content_hash is None:
            item = item.model_copy(update={"content_hash": content_hash(item.content)})
        self.content_items[item.slug] = item.model_copy(deep=True)

    def add_resource(self, resource: Resource) -> None:
        self.resources[resource.id] = resource.model_copy(deep=True)

    async def get_content_item(self, slug: str) -> ContentItem | None:
        item = self.content_items.get(slug)
        return item.model_copy(deep=True) if item else None

    async def list_published_content_items(self) -> list[ContentItem]:
        return [
            item.model_copy(deep=True)
            for item in sorted(self.content_items.values(), key=lambda item: item.slug)
            if item.is_published
        ]

    async def list_stale_content_slugs(
        self,
        *,
        stale_before: datetime,
        categories: Collection[str] | None = None,
        limit: int = 50,
    ) -> list[str]:
        stale = [
            item
            for item in self.content_items.values()
            if item.is_published
            and (item.last_refreshed_at is None or item.last_refreshed_at < stale_before)
            and (not categories or item.category in categories)
        ]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        stale.sort(key=lambda item: (item.last_refreshed_at is not None, item.last_refreshed_at or epoch, item.slug))
        return [item.slug for item in stale[:limit]]

    async def insert_content_job(self, job: ContentUpdateJob) -> ContentUpdateJob:
        if job.id in self.content_jobs:
            raise RepositoryConflictError(f"content job {job.id} already exists")
        self.content_jobs[job.id] = job.model_copy(deep=True)
        return job.model_copy(deep=True)

    async def get_content_job(self, job_id: str) -> ContentUpdateJob | None:
        job = self.content_jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def transition_content_job(
        self,
        job_id: str,
        *,
        expected: Collection[ContentJobStatus],
        status: ContentJobStatus,
        fields: dict[str, Any] | None = None,
    ) -> ContentUpdateJob | None:
        job = self.content_jobs.get(job_id)
        if job is None or job.status not in expected:
            return None
        update = dict(fields or {})
        update["status"] = status
        update["updated_at"] = datetime.now(timezone.utc)
        updated = job.model_copy(update=update, deep=True)
        self.content_jobs[job_id] = updated
        return updated.model_copy(deep=True)

    async def has_open_content_job(self, slug: str) -> bool:
        return any(job.item_slug == slug and job.status in OPEN_CONTENT_STATUSES for job in self.content_jobs.values())

    async def list_pending_content_job_ids(self, *, limit: int) -> list[str]:
        pending = [job for job in self.content_jobs.values() if job.status is ContentJobStatus.PENDING]
        pending.sort(key=lambda job: job.created_at)
        return [job.id for job in pending[:limit]]

    async def count_content_jobs_by_status(self) -> dict[str, int]:
        counts = Counter(job.status.value for job in self.content_jobs.values())
        return {status.value: counts.get(status.value, 0) for status in ContentJobStatus}

    async def apply_content_update(self, job_id: str) -> ContentItem:
        job = self.content_jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError(f"content job {job_id} not found")
        lock = self._item_locks.setdefault(job.item_slug, asyncio.Lock())
        async with lock:
            job = self.content_jobs[job_id]
            if job.status is not ContentJobStatus.APPROVED:
                raise RepositoryConflictError(f"content job {job_id} is not approved")
            item = self.content_items.get(job.item_slug)
            if item is None:
                raise RepositoryNotFoundError(f"content item {job.item_slug} not found")
            if job.proposed_content is None or job.proposed_title is None:
                raise RepositoryConflictError(f"content job {job_id} has no proposal")

            now = datetime.now(timezone.utc)
            self.history.append(
                ContentHistoryEntry(
                    id=str(uuid4()),
                    item_slug=item.slug,
                    version=item.version,
                    title=item.title,
                    description=item.description,
                    content=item.content,
                    sources=item.sources,
                    change_summary=job.summary,
                    changed_by=job.reviewed_by,
                    job_id=job.id,
                    ai_model=job.ai_model,
                    ai_confidence=job.confidence,
                    created_at=now,
                )
            )
            updated_item = item.model_copy(
                update={
                    "title": job.proposed_title,
                    "description": job.proposed_description,
                    "content": job.proposed_content,
                    "sources": job.proposed_sources if job.proposed_sources is not None else item.sources,
                    "content_hash": content_hash(job.proposed_content),
                    "version": item.version + 1,
                    "last_refreshed_at": now,
                    "updated_at": now,
                },
                deep=True,
            )
            self.content_items[item.slug] = updated_item
            self.content_jobs[job_id] = job.model_copy(
                update={
                    "status": ContentJobStatus.APPLIED,
                    "applied_at": now,
                    "completed_at": now,
                    "updated_at": now,
                }
            )
            return updated_item.model_copy(deep=True)

    async def list_content_history(self, slug: str) -> list[ContentHistoryEntry]:
        entries = [entry for entry in self.history if entry.item_slug == slug]
        entries.sort(key=lambda entry: entry.version, reverse=True)
        return [entry.model_copy(deep=True) for entry in entries]

    async def get_resource(self, resource_id: str) -> Resource | None:
        resource = self.resources.get(resource_id)
        return resource.model_copy(deep=True) if resource else None

    async def list_published_resources(self) -> list[Resource]:
        return [
            resource.model_copy(deep=True)
            for resource in sorted(self.resources.values(), key=lambda resource: resource.id)
            if resource.is_published
        ]

    async def insert_analysis_job(self, job: RelationshipAnalysisJob) -> RelationshipAnalysisJob:
        if job.id in self.analysis_jobs:
            raise RepositoryConflictError(f"analysis job {job.id} already exists")
        self.analysis_jobs[job.id] = job.model_copy(deep=True)
        return job.model_copy(deep=True)

    async def get_analysis_job(self, job_id: str) -> RelationshipAnalysisJob | None:
        job = self.analysis_jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def transition_analysis_job(
        self,
        job_id: str,
        *,
        expected: Collection[AnalysisJobStatus],
        status: AnalysisJobStatus,
        fields: dict[str, Any] | None = None,
    ) -> RelationshipAnalysisJob | None:
        job = self.analysis_jobs.get(job_id)
        if job is None or job.status not in expected:
            return None
        update = dict(fields or {})
        update["status"] = status
        updated = job.model_copy(update=update, deep=True)
        self.analysis_jobs[job_id] = updated
        return updated.model_copy(deep=True)

    async def list_pending_analysis_job_ids(self, *, limit: int) -> list[str]:
        pending = [job for job in self.analysis_jobs.values() if job.status is AnalysisJobStatus.PENDING]
        pending.sort(key=lambda job: job.created_at)
        return [job.id for job in pending[:limit]]

    async def upsert_doc_resource_relationship(
        self,
        *,
        doc_slug: str,
        resource_id: str,
        relationship_type: str,
        confidence: float,
        reasoning: str,
        ai_model: str | None,
    ) -> UpsertOutcome:
        key = (doc_slug, resource_id)
        if doc_slug not in self.content_items or resource_id not in self.resources:
            raise RepositoryConflictError(f"unknown relationship endpoint {doc_slug} -> {resource_id}")
        return self._upsert(
            self.doc_resource_relationships,
            key,
            Relationship(
                source_type=EntityType.DOC,
                source_id=doc_slug,
                target_type=EntityType.RESOURCE,
                target_id=resource_id,
                relationship_type=relationship_type,
                confidence=confidence,
                reasoning=reasoning,
                ai_model=ai_model,
                analyzed_at=datetime.now(timezone.utc),
            ),
        )

    async def upsert_resource_relationship(
        self,
        *,
        source_resource_id: str,
        target_resource_id: str,
        relationship_type: str,
        confidence: float,
        reasoning: str,
        shared_tags: list[str],
        ai_model: str | None,
    ) -> UpsertOutcome:
        key = (source_resource_id, target_resource_id)
        if source_resource_id not in self.resources or target_resource_id not in self.resources:
            raise RepositoryConflictError(f"unknown relationship endpoint {source_resource_id} -> {target_resource_id}")
        return self._upsert(
            self.resource_relationships,
            key,
            Relationship(
                source_type=EntityType.RESOURCE,
                source_id=source_resource_id,
                target_type=EntityType.RESOURCE,
                target_id=target_resource_id,
                relationship_type=relationship_type,
                confidence=confidence,
                reasoning=reasoning,
                shared_tags=list(shared_tags),
                ai_model=ai_model,
                analyzed_at=datetime.now(timezone.utc),
            ),
        )

    async def list_relationships(
        self,
        entity_type: EntityType,
        entity_id: str,
        *,
        min_confidence: float,
        limit: int = 20,
    ) -> list[Relationship]:
        found: list[Relationship] = []
        for (doc_slug, resource_id), relationship in self.doc_resource_relationships.items():
            if entity_type is EntityType.DOC and doc_slug == entity_id:
                found.append(relationship)
            elif entity_type is EntityType.RESOURCE and resource_id == entity_id:
                found.append(_reversed(relationship))
        if entity_type is EntityType.RESOURCE:
            found.extend(
                relationship
                for (source_id, _), relationship in self.resource_relationships.items()
                if source_id == entity_id
            )
        visible = [
            relationship
            for relationship in found
            if relationship.is_active and relationship.confidence >= min_confidence
        ]
        visible.sort(key=lambda relationship: relationship.confidence, reverse=True)
        return [relationship.model_copy(deep=True) for relationship in visible[:limit]]

    @staticmethod
    def _upsert(
        table: dict[tuple[str, str], Relationship],
        key: tuple[str, str],
        relationship: Relationship,
    ) -> UpsertOutcome:
        existing = table.get(key)
        if existing is None:
            table[key] = relationship
            return UpsertOutcome.CREATED
        if existing.is_manual:
            return UpsertOutcome.SKIPPED
        table[key] = relationship.model_copy(update={"is_active": existing.is_active})
        return UpsertOutcome.UPDATED


def _reversed(relationship: Relationship) -> Relationship:
    return relationship.model_copy(
        update={
            "source_type": relationship.target_type,
            "source_id": relationship.target_id,
            "target_type": relationship.source_type,
            "target_id": relationship.source_id,
        }
    )


PipelineStore = PostgresRepository | InMemoryStore
