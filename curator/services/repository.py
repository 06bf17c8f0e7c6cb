from __future__ import annotations

import json
from collections.abc import Collection, Iterable
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc
from pydantic_core import to_jsonable_python

from curator.core.config import get_settings
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


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


CONTENT_JOB_COLUMNS = tuple(ContentUpdateJob.model_fields)
CONTENT_JOB_JSON_COLUMNS = frozenset(
    {"scraped_content", "scrape_errors", "proposed_sources", "warnings", "key_changes", "error_details"}
)
ANALYSIS_JOB_COLUMNS = tuple(RelationshipAnalysisJob.model_fields)
ANALYSIS_JOB_JSON_COLUMNS = frozenset({"discovered_relationships", "warnings", "error_details"})
UUID_COLUMNS = frozenset({"id", "job_id", "resource_id", "source_resource_id", "target_resource_id"})


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_content_item(self, slug: str) -> ContentItem | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select slug, title, description, content, sources, category, is_published,
                   version, content_hash, last_refreshed_at, updated_at
            from content_items
            where slug = $1
            """,
            slug,
        )
        return self._content_item_from_row(row) if row else None

    async def list_published_content_items(self) -> list[ContentItem]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select slug, title, description, content, sources, category, is_published,
                   version, content_hash, last_refreshed_at, updated_at
            from content_items
            where is_published = true
            order by slug
            """
        )
        return [self._content_item_from_row(row) for row in rows]

    async def list_stale_content_slugs(
        self,
        *,
        stale_before: datetime,
        categories: Collection[str] | None = None,
        limit: int = 50,
    ) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select slug
            from content_items
            where is_published = true
              and (last_refreshed_at is null or last_refreshed_at < $1)
              and ($2::text[] is null or category = any($2::text[]))
            order by last_refreshed_at asc nulls first, slug
            limit $3
            """,
            stale_before,
            list(categories) if categories else None,
            limit,
        )
        return [row["slug"] for row in rows]

    async def insert_content_job(self, job: ContentUpdateJob) -> ContentUpdateJob:
        row = await self._insert_row(
            "content_update_jobs",
            job.model_dump(),
            json_columns=CONTENT_JOB_JSON_COLUMNS,
        )
        return self._content_job_from_row(row)

    async def get_content_job(self, job_id: str) -> ContentUpdateJob | None:
        row = await self._fetch_by_id("content_update_jobs", job_id)
        return self._content_job_from_row(row) if row else None

    async def transition_content_job(
        self,
        job_id: str,
        *,
        expected: Collection[ContentJobStatus],
        status: ContentJobStatus,
        fields: dict[str, Any] | None = None,
    ) -> ContentUpdateJob | None:
        assignments = dict(fields or {})
        assignments["status"] = status
        row = await self._conditional_update(
            "content_update_jobs",
            job_id,
            expected=[state.value for state in expected],
            assignments=assignments,
            allowed_columns=CONTENT_JOB_COLUMNS,
            json_columns=CONTENT_JOB_JSON_COLUMNS,
            touch_updated_at=True,
        )
        return self._content_job_from_row(row) if row else None

    async def has_open_content_job(self, slug: str) -> bool:
        pool = await self._get_pool()
        found = await pool.fetchval(
            """
            select exists(
              select 1 from content_update_jobs
              where item_slug = $1 and status = any($2::text[])
            )
            """,
            slug,
            [status.value for status in OPEN_CONTENT_STATUSES],
        )
        return bool(found)

    async def list_pending_content_job_ids(self, *, limit: int) -> list[str]:
        return await self._pending_ids("content_update_jobs", ContentJobStatus.PENDING.value, limit)

    async def count_content_jobs_by_status(self) -> dict[str, int]:
        pool = await self._get_pool()
        rows = await pool.fetch("select status, count(*) as total from content_update_jobs group by status")
        counts = {status.value: 0 for status in ContentJobStatus}
        for row in rows:
            counts[row["status"]] = int(row["total"])
        return counts

    async def apply_content_update(self, job_id: str) -> ContentItem:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    job_row = await conn.fetchrow(
                        "select * from content_update_jobs where id = $1::uuid for update",
                        job_id,
                    )
                    if job_row is None:
                        raise RepositoryNotFoundError(f"content job {job_id} not found")
                    job = self._content_job_from_row(job_row)
                    if job.status is not ContentJobStatus.APPROVED:
                        raise RepositoryConflictError(f"content job {job_id} is not approved")
                    if job.proposed_content is None or job.proposed_title is None:
                        raise RepositoryConflictError(f"content job {job_id} has no proposal")

                    await conn.execute("select pg_advisory_xact_lock(hashtext($1))", job.item_slug)
                    item_row = await conn.fetchrow(
                        """
                        select slug, title, description, content, sources, category, is_published,
                               version, content_hash, last_refreshed_at, updated_at
                        from content_items
                        where slug = $1
                        for update
                        """,
                        job.item_slug,
                    )
                    if item_row is None:
                        raise RepositoryNotFoundError(f"content item {job.item_slug} not found")
                    item = self._content_item_from_row(item_row)

                    await conn.execute(
                        """
                        insert into content_history (
                          item_slug, version, title, description, content, sources,
                          change_summary, change_type, changed_by, job_id, ai_model, ai_confidence
                        )
                        values ($1, $2, $3, $4, $5, $6::jsonb, $7, 'ai_rewrite', $8, $9::uuid, $10, $11)
                        """,
                        item.slug,
                        item.version,
                        item.title,
                        item.description,
                        item.content,
                        _dump_json(item.sources),
                        job.summary,
                        job.reviewed_by,
                        job.id,
                        job.ai_model,
                        job.confidence,
                    )
                    sources = job.proposed_sources if job.proposed_sources is not None else item.sources
                    updated_row = await conn.fetchrow(
                        """
                        update content_items
                        set title = $2,
                            description = $3,
                            content = $4,
                            sources = $5::jsonb,
                            content_hash = $6,
                            version = version + 1,
                            last_refreshed_at = now(),
                            updated_at = now()
                        where slug = $1
                        returning slug, title, description, content, sources, category, is_published,
                                  version, content_hash, last_refreshed_at, updated_at
                        """,
                        item.slug,
                        job.proposed_title,
                        job.proposed_description,
                        job.proposed_content,
                        _dump_json(sources),
                        content_hash(job.proposed_content),
                    )
                    await conn.execute(
                        """
                        update content_update_jobs
                        set status = 'applied',
                            applied_at = now(),
                            completed_at = now(),
                            updated_at = now()
                        where id = $1::uuid
                        """,
                        job_id,
                    )
                    return self._content_item_from_row(updated_row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError("invalid content job id") from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryError(f"applying content job {job_id} failed: {exc}") from exc

    async def list_content_history(self, slug: str) -> list[ContentHistoryEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select *
            from content_history
            where item_slug = $1
            order by version desc
            """,
            slug,
        )
        return [
            ContentHistoryEntry.model_validate(_row_to_dict(row, json_columns={"sources"}))
            for row in rows
        ]

    async def get_resource(self, resource_id: str) -> Resource | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select id, slug, title, description, category, tags, is_published
                from resources
                where id = $1::uuid
                """,
                resource_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._resource_from_row(row) if row else None

    async def list_published_resources(self) -> list[Resource]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, slug, title, description, category, tags, is_published
            from resources
            where is_published = true
            order by id
            """
        )
        return [self._resource_from_row(row) for row in rows]

    async def insert_analysis_job(self, job: RelationshipAnalysisJob) -> RelationshipAnalysisJob:
        row = await self._insert_row(
            "relationship_analysis_jobs",
            job.model_dump(),
            json_columns=ANALYSIS_JOB_JSON_COLUMNS,
        )
        return self._analysis_job_from_row(row)

    async def get_analysis_job(self, job_id: str) -> RelationshipAnalysisJob | None:
        row = await self._fetch_by_id("relationship_analysis_jobs", job_id)
        return self._analysis_job_from_row(row) if row else None

    async def transition_analysis_job(
        self,
        job_id: str,
        *,
        expected: Collection[AnalysisJobStatus],
        status: AnalysisJobStatus,
        fields: dict[str, Any] | None = None,
    ) -> RelationshipAnalysisJob | None:
        assignments = dict(fields or {})
        assignments["status"] = status
        row = await self._conditional_update(
            "relationship_analysis_jobs",
            job_id,
            expected=[state.value for state in expected],
            assignments=assignments,
            allowed_columns=ANALYSIS_JOB_COLUMNS,
            json_columns=ANALYSIS_JOB_JSON_COLUMNS,
            touch_updated_at=False,
        )
        return self._analysis_job_from_row(row) if row else None

    async def list_pending_analysis_job_ids(self, *, limit: int) -> list[str]:
        return await self._pending_ids("relationship_analysis_jobs", AnalysisJobStatus.PENDING.value, limit)

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
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        insert into doc_resource_relationships (
                          doc_slug, resource_id, relationship_type, confidence, reasoning,
                          ai_model, is_manual, is_active, analyzed_at
                        )
                        values ($1, $2::uuid, $3, $4, $5, $6, false, true, now())
                        on conflict (doc_slug, resource_id) do update
                        set relationship_type = excluded.relationship_type,
                            confidence = excluded.confidence,
                            reasoning = excluded.reasoning,
                            ai_model = excluded.ai_model,
                            analyzed_at = excluded.analyzed_at,
                            updated_at = now()
                        where doc_resource_relationships.is_manual = false
                        returning (xmax = 0) as inserted
                        """,
                        doc_slug,
                        resource_id,
                        relationship_type,
                        confidence,
                        reasoning,
                        ai_model,
                    )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryError(f"relationship upsert failed: {exc}") from exc
        return _upsert_outcome(row)

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
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        insert into resource_relationships (
                          source_resource_id, target_resource_id, relationship_type, confidence,
                          reasoning, shared_tags, ai_model, is_manual, is_active, analyzed_at
                        )
                        values ($1::uuid, $2::uuid, $3, $4, $5, $6::text[], $7, false, true, now())
                        on conflict (source_resource_id, target_resource_id) do update
                        set relationship_type = excluded.relationship_type,
                            confidence = excluded.confidence,
                            reasoning = excluded.reasoning,
                            shared_tags = excluded.shared_tags,
                            ai_model = excluded.ai_model,
                            analyzed_at = excluded.analyzed_at,
                            updated_at = now()
                        where resource_relationships.is_manual = false
                        returning (xmax = 0) as inserted
                        """,
                        source_resource_id,
                        target_resource_id,
                        relationship_type,
                        confidence,
                        reasoning,
                        list(shared_tags),
                        ai_model,
                    )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryError(f"relationship upsert failed: {exc}") from exc
        return _upsert_outcome(row)

    async def list_relationships(
        self,
        entity_type: EntityType,
        entity_id: str,
        *,
        min_confidence: float,
        limit: int = 20,
    ) -> list[Relationship]:
        pool = await self._get_pool()
        match entity_type:
            case EntityType.DOC:
                query = """
                    select 'doc' as source_type, rel.doc_slug as source_id,
                           'resource' as target_type, rel.resource_id::text as target_id,
                           rel.relationship_type, rel.confidence, rel.reasoning,
                           '{}'::text[] as shared_tags, rel.ai_model, rel.is_manual,
                           rel.is_active, rel.analyzed_at
                    from doc_resource_relationships rel
                    where rel.doc_slug = $1
                      and rel.is_active = true
                      and rel.confidence >= $2
                    order by rel.confidence desc
                    limit $3
                """
            case EntityType.RESOURCE:
                query = """
                    select * from (
                      select 'resource' as source_type, rel.resource_id::text as source_id,
                             'doc' as target_type, rel.doc_slug as target_id,
                             rel.relationship_type, rel.confidence, rel.reasoning,
                             '{}'::text[] as shared_tags, rel.ai_model, rel.is_manual,
                             rel.is_active, rel.analyzed_at
                      from doc_resource_relationships rel
                      where rel.resource_id::text = $1
                        and rel.is_active = true
                        and rel.confidence >= $2
                      union all
                      select 'resource', rel.source_resource_id::text,
                             'resource', rel.target_resource_id::text,
                             rel.relationship_type, rel.confidence, rel.reasoning,
                             rel.shared_tags, rel.ai_model, rel.is_manual,
                             rel.is_active, rel.analyzed_at
                      from resource_relationships rel
                      where rel.source_resource_id::text = $1
                        and rel.is_active = true
                        and rel.confidence >= $2
                    ) related
                    order by confidence desc
                    limit $3
                """
        rows = await pool.fetch(query, entity_id, min_confidence, limit)
        return [
            Relationship.model_validate({**dict(row), "shared_tags": list(row["shared_tags"] or [])})
            for row in rows
        ]

    async def _insert_row(
        self,
        table: str,
        values: dict[str, Any],
        *,
        json_columns: frozenset[str],
    ) -> asyncpg.Record:
        columns = list(values)
        placeholders = [
            f"${index}::jsonb" if column in json_columns else f"${index}"
            for index, column in enumerate(columns, start=1)
        ]
        pool = await self._get_pool()
        try:
            return await pool.fetchrow(
                f"insert into {table} ({', '.join(columns)}) values ({', '.join(placeholders)}) returning *",
                *(_to_db_value(column, values[column], json_columns) for column in columns),
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"{table} row already exists") from exc
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc

    async def _fetch_by_id(self, table: str, row_id: str) -> asyncpg.Record | None:
        pool = await self._get_pool()
        try:
            return await pool.fetchrow(f"select * from {table} where id = $1::uuid", row_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None

    async def _conditional_update(
        self,
        table: str,
        row_id: str,
        *,
        expected: list[str],
        assignments: dict[str, Any],
        allowed_columns: Iterable[str],
        json_columns: frozenset[str],
        touch_updated_at: bool,
    ) -> asyncpg.Record | None:
        allowed = set(allowed_columns)
        unknown = set(assignments) - allowed
        if unknown:
            raise RepositoryConflictError(f"unknown {table} columns: {', '.join(sorted(unknown))}")

        clauses: list[str] = []
        params: list[Any] = [row_id, expected]
        for column, value in assignments.items():
            params.append(_to_db_value(column, value, json_columns))
            cast = "::jsonb" if column in json_columns else ""
            clauses.append(f"{column} = ${len(params)}{cast}")
        if touch_updated_at:
            clauses.append("updated_at = now()")

        pool = await self._get_pool()
        try:
            return await pool.fetchrow(
                f"""
                update {table}
                set {', '.join(clauses)}
                where id = $1::uuid
                  and status = any($2::text[])
                returning *
                """,
                *params,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(f"invalid {table} update") from exc

    async def _pending_ids(self, table: str, status: str, limit: int) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select id::text as id
            from {table}
            where status = $1
            order by created_at asc
            limit $2
            """,
            status,
            limit,
        )
        return [row["id"] for row in rows]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CURATOR_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _content_item_from_row(row: asyncpg.Record) -> ContentItem:
        return ContentItem.model_validate(_row_to_dict(row, json_columns={"sources"}))

    @staticmethod
    def _resource_from_row(row: asyncpg.Record) -> Resource:
        payload = _row_to_dict(row, json_columns=set())
        payload["tags"] = list(payload.get("tags") or [])
        return Resource.model_validate(payload)

    @staticmethod
    def _content_job_from_row(row: asyncpg.Record) -> ContentUpdateJob:
        return ContentUpdateJob.model_validate(_row_to_dict(row, json_columns=CONTENT_JOB_JSON_COLUMNS))

    @staticmethod
    def _analysis_job_from_row(row: asyncpg.Record) -> RelationshipAnalysisJob:
        return RelationshipAnalysisJob.model_validate(_row_to_dict(row, json_columns=ANALYSIS_JOB_JSON_COLUMNS))


def _row_to_dict(row: asyncpg.Record, *, json_columns: Collection[str]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key, value in dict(row).items():
        if key in json_columns and isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                value = None
        elif key in UUID_COLUMNS and value is not None:
            value = str(value)
        payload[key] = value
    return payload


def _to_db_value(column: str, value: Any, json_columns: Collection[str]) -> Any:
    if column in json_columns:
        return None if value is None else _dump_json(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _dump_json(value: Any) -> str:
    return json.dumps(to_jsonable_python(value))


def _upsert_outcome(row: asyncpg.Record | None) -> UpsertOutcome:
    # A manual row matches the conflict target but fails the update predicate,
    # so nothing is returned.
    if row is None:
        return UpsertOutcome.SKIPPED
    return UpsertOutcome.CREATED if row["inserted"] else UpsertOutcome.UPDATED


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
