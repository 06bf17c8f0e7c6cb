from __future__ import annotations

import asyncio

import pytest

from curator.core.config import PipelineConfig
from curator.core.errors import InvalidStateError, NotFoundError
from curator.pipeline.relationships import RelationshipDiscovery
from curator.schemas.relationships import AnalysisJobStatus, AnalysisJobType, EntityType, TargetType

from doubles import (
    DOC_SLUG,
    RESOURCE_CLI,
    RESOURCE_DOCKER,
    RESOURCE_SDK,
    FailingStore,
    FakeGenerator,
    relationships_response,
    seeded_store,
)

SETTINGS_SLUG = "configuration/settings"


def _source_of(prompt: str) -> str:
    return prompt.split("## Candidates")[0]


def _responder(prompt: str) -> str:
    source = _source_of(prompt)
    if f'"id": "{DOC_SLUG}"' in source:
        return relationships_response(
            {
                "targetId": RESOURCE_CLI,
                "relationshipType": "required",
                "confidence": 0.95,
                "reasoning": "The page installs the CLI.",
            },
            {
                "targetId": RESOURCE_DOCKER,
                "relationshipType": "alternative",
                "confidence": 0.7,
                "reasoning": "The image ships the CLI preinstalled.",
            },
            {
                "targetId": RESOURCE_SDK,
                "relationshipType": "related",
                "confidence": 0.5,
                "reasoning": "Same vendor.",
            },
            {
                "targetId": RESOURCE_DOCKER,
                "relationshipType": "similar",
                "confidence": 0.8,
                "reasoning": "Both are ways to run the tool.",
            },
            {
                "targetId": "not-a-candidate",
                "relationshipType": "related",
                "confidence": 0.9,
                "reasoning": "Made up.",
            },
        )
    if f'"id": "{SETTINGS_SLUG}"' in source:
        return "Sorry, I cannot help with that."
    if f'"id": "{RESOURCE_CLI}"' in source:
        return relationships_response(
            {
                "targetId": RESOURCE_DOCKER,
                "relationshipType": "complement",
                "confidence": 0.8,
                "reasoning": "The image bundles the CLI.",
                "sharedTags": ["cli"],
            },
            {
                "targetId": RESOURCE_CLI,
                "relationshipType": "similar",
                "confidence": 0.99,
                "reasoning": "Itself.",
            },
        )
    if f'"id": "{RESOURCE_SDK}"' in source:
        return relationships_response(
            {
                "targetId": SETTINGS_SLUG,
                "relationshipType": "example",
                "confidence": 0.75,
                "reasoning": "The settings page shows SDK configuration.",
            }
        )
    return relationships_response()


def _discovery(store=None, generator=None, **config) -> RelationshipDiscovery:
    return RelationshipDiscovery(
        store or seeded_store(),
        generator or FakeGenerator(_responder),
        PipelineConfig(**config),
    )


def test_doc_to_resources_filters_validates_and_sorts() -> None:
    discovery = _discovery()

    async def run():
        job = await discovery.create_job(AnalysisJobType.DOC_TO_RESOURCES, DOC_SLUG, triggered_by="alice")
        return await discovery.process_job(job.id)

    job = asyncio.run(run())
    assert job.status is AnalysisJobStatus.COMPLETED
    assert job.target_type is TargetType.DOC
    assert [(r.target_id, r.relationship_type, r.confidence) for r in job.discovered_relationships] == [
        (RESOURCE_CLI, "required", 0.95),
        (RESOURCE_DOCKER, "alternative", 0.7),
    ]
    assert len(job.warnings) == 2
    assert any("'similar' is not valid" in warning for warning in job.warnings)
    assert any("unknown target 'not-a-candidate'" in warning for warning in job.warnings)
    assert job.tokens_used == 1600
    assert job.cost_estimate == pytest.approx(0.048)
    assert (job.progress_current, job.progress_total) == (1, 1)
    assert job.started_at is not None
    assert job.completed_at is not None


def test_candidates_are_split_into_batches() -> None:
    generator = FakeGenerator(lambda prompt: relationships_response())
    discovery = _discovery(generator=generator, batch_max_items=1)

    async def run():
        job = await discovery.create_job(AnalysisJobType.DOC_TO_RESOURCES, DOC_SLUG)
        return await discovery.process_job(job.id)

    job = asyncio.run(run())
    assert job.status is AnalysisJobStatus.COMPLETED
    assert len(generator.prompts) == 3
    assert job.tokens_used == 3 * 1600


def test_resource_to_resources_excludes_the_source() -> None:
    generator = FakeGenerator(_responder)
    discovery = _discovery(generator=generator)

    async def run():
        job = await discovery.create_job(AnalysisJobType.RESOURCE_TO_RESOURCES, RESOURCE_CLI)
        return await discovery.process_job(job.id)

    job = asyncio.run(run())
    candidates_section = generator.prompts[0].split("## Candidates")[1]
    assert RESOURCE_CLI not in candidates_section
    assert [(r.target_id, r.shared_tags) for r in job.discovered_relationships] == [(RESOURCE_DOCKER, ["cli"])]
    assert any("unknown target" in warning for warning in job.warnings)


def test_unparseable_analysis_fails_single_entity_job() -> None:
    discovery = _discovery()

    async def run():
        job = await discovery.create_job(AnalysisJobType.DOC_TO_RESOURCES, SETTINGS_SLUG)
        return await discovery.process_job(job.id)

    job = asyncio.run(run())
    assert job.status is AnalysisJobStatus.FAILED
    assert job.error_details is not None
    assert job.error_details["error_type"] == "ResponseParseError"
    assert job.completed_at is not None


def test_batch_docs_sweep_continues_past_entity_failure() -> None:
    discovery = _discovery()

    async def run():
        job = await discovery.create_job(AnalysisJobType.BATCH_DOCS)
        return await discovery.process_job(job.id)

    job = asyncio.run(run())
    assert job.status is AnalysisJobStatus.COMPLETED
    assert job.target_id == "all"
    assert job.target_type is TargetType.ALL
    assert [r.source_id for r in job.discovered_relationships] == [DOC_SLUG, DOC_SLUG]
    assert any(warning.startswith(f"doc:{SETTINGS_SLUG}: analysis failed") for warning in job.warnings)
    assert (job.progress_current, job.progress_total) == (2, 2)


def test_full_reindex_sweeps_docs_and_resources() -> None:
    discovery = _discovery()

    async def run():
        job = await discovery.create_job(AnalysisJobType.FULL_REINDEX)
        return await discovery.process_job(job.id)

    job = asyncio.run(run())
    assert job.status is AnalysisJobStatus.COMPLETED
    assert job.progress_total == 5
    pairs = {(r.source_type, r.target_type) for r in job.discovered_relationships}
    assert pairs == {(EntityType.DOC, EntityType.RESOURCE), (EntityType.RESOURCE, EntityType.RESOURCE)}
    confidences = [r.confidence for r in job.discovered_relationships]
    assert confidences == sorted(confidences, reverse=True)


def test_apply_is_idempotent_and_counts_are_recorded() -> None:
    store = seeded_store()
    discovery = _discovery(store=store)

    async def run():
        job = await discovery.create_job(AnalysisJobType.DOC_TO_RESOURCES, DOC_SLUG)
        await discovery.process_job(job.id)
        first = await discovery.apply_job_relationships(job.id)
        second = await discovery.apply_job_relationships(job.id)
        return first, second, await discovery.get_job(job.id)

    first, second, job = asyncio.run(run())
    assert (first.created, first.updated, first.skipped) == (2, 0, 0)
    assert (second.created, second.updated, second.skipped) == (0, 2, 0)
    assert len(store.doc_resource_relationships) == 2
    assert (job.relationships_created, job.relationships_updated, job.relationships_skipped) == (0, 2, 0)


def test_apply_records_counts_when_a_row_write_breaks() -> None:
    store = FailingStore()
    seeded_store(store)
    store.upsert_failures[(DOC_SLUG, RESOURCE_CLI)] = ConnectionResetError("connection lost")
    discovery = _discovery(store=store)

    async def run():
        job = await discovery.create_job(AnalysisJobType.DOC_TO_RESOURCES, DOC_SLUG)
        await discovery.process_job(job.id)
        counts = await discovery.apply_job_relationships(job.id)
        return counts, await discovery.get_job(job.id)

    counts, job = asyncio.run(run())
    assert (counts.created, counts.updated, counts.skipped) == (1, 0, 1)
    assert (job.relationships_created, job.relationships_skipped) == (1, 1)
    assert list(store.doc_resource_relationships) == [(DOC_SLUG, RESOURCE_DOCKER)]


def test_apply_never_overwrites_manual_rows() -> None:
    store = seeded_store()
    discovery = _discovery(store=store)

    async def run():
        job = await discovery.create_job(AnalysisJobType.DOC_TO_RESOURCES, DOC_SLUG)
        await discovery.process_job(job.id)
        await discovery.apply_job_relationships(job.id)
        key = (DOC_SLUG, RESOURCE_CLI)
        store.doc_resource_relationships[key] = store.doc_resource_relationships[key].model_copy(
            update={"is_manual": True, "relationship_type": "recommended", "confidence": 1.0}
        )
        return await discovery.apply_job_relationships(job.id)

    counts = asyncio.run(run())
    manual = store.doc_resource_relationships[(DOC_SLUG, RESOURCE_CLI)]
    assert (counts.created, counts.updated, counts.skipped) == (0, 1, 1)
    assert manual.relationship_type == "recommended"
    assert manual.confidence == 1.0


def test_apply_filters_by_confidence_and_type() -> None:
    store = seeded_store()
    discovery = _discovery(store=store)

    async def run():
        job = await discovery.create_job(AnalysisJobType.DOC_TO_RESOURCES, DOC_SLUG)
        await discovery.process_job(job.id)
        return await discovery.apply_job_relationships(job.id, min_confidence=0.9, relationship_types=["required"])

    counts = asyncio.run(run())
    assert (counts.created, counts.updated, counts.skipped) == (1, 0, 0)
    assert list(store.doc_resource_relationships) == [(DOC_SLUG, RESOURCE_CLI)]


def test_resource_to_docs_links_land_in_the_doc_table() -> None:
    store = seeded_store()
    discovery = _discovery(store=store)

    async def run():
        job = await discovery.create_job(AnalysisJobType.RESOURCE_TO_DOCS, RESOURCE_SDK)
        await discovery.process_job(job.id)
        await discovery.apply_job_relationships(job.id)
        from_resource = await discovery.list_related(EntityType.RESOURCE, RESOURCE_SDK)
        from_doc = await discovery.list_related(EntityType.DOC, SETTINGS_SLUG)
        return from_resource, from_doc

    from_resource, from_doc = asyncio.run(run())
    assert list(store.doc_resource_relationships) == [(SETTINGS_SLUG, RESOURCE_SDK)]
    assert [(r.target_type, r.target_id) for r in from_resource] == [(EntityType.DOC, SETTINGS_SLUG)]
    assert [(r.target_type, r.target_id) for r in from_doc] == [(EntityType.RESOURCE, RESOURCE_SDK)]


def test_list_related_hides_rows_below_display_threshold() -> None:
    store = seeded_store()
    discovery = _discovery(store=store, relationship_display_threshold=0.8)

    async def run():
        job = await discovery.create_job(AnalysisJobType.DOC_TO_RESOURCES, DOC_SLUG)
        await discovery.process_job(job.id)
        await discovery.apply_job_relationships(job.id)
        return await discovery.list_related(EntityType.DOC, DOC_SLUG)

    related = asyncio.run(run())
    assert [r.target_id for r in related] == [RESOURCE_CLI]


def test_auto_apply_runs_after_completion() -> None:
    store = seeded_store()
    discovery = _discovery(store=store, auto_apply_relationships=True)

    async def run():
        job = await discovery.create_job(AnalysisJobType.DOC_TO_RESOURCES, DOC_SLUG)
        return await discovery.process_job(job.id)

    job = asyncio.run(run())
    assert job.status is AnalysisJobStatus.COMPLETED
    assert job.relationships_created == 2
    assert len(store.doc_resource_relationships) == 2


def test_cancel_and_state_guards() -> None:
    discovery = _discovery()

    async def run():
        job = await discovery.create_job(AnalysisJobType.RESOURCE_TO_RESOURCES, RESOURCE_CLI)
        cancelled = await discovery.cancel_job(job.id)
        with pytest.raises(InvalidStateError):
            await discovery.process_job(job.id)
        with pytest.raises(InvalidStateError):
            await discovery.apply_job_relationships(job.id)
        with pytest.raises(InvalidStateError):
            await discovery.cancel_job(job.id)
        return cancelled

    cancelled = asyncio.run(run())
    assert cancelled.status is AnalysisJobStatus.CANCELLED


def test_create_job_validates_targets() -> None:
    discovery = _discovery()

    async def run():
        with pytest.raises(NotFoundError):
            await discovery.create_job(AnalysisJobType.DOC_TO_RESOURCES, "no/such-page")
        with pytest.raises(NotFoundError):
            await discovery.create_job(AnalysisJobType.RESOURCE_TO_DOCS, "missing-resource")
        with pytest.raises(ValueError):
            await discovery.create_job(AnalysisJobType.RESOURCE_TO_RESOURCES)
        with pytest.raises(NotFoundError):
            await discovery.get_job("missing")

    asyncio.run(run())


def test_job_target_type_follows_job_type() -> None:
    discovery = _discovery()

    async def run():
        return {
            job_type: (await discovery.create_job(job_type, target)).target_type
            for job_type, target in [
                (AnalysisJobType.DOC_TO_RESOURCES, DOC_SLUG),
                (AnalysisJobType.RESOURCE_TO_DOCS, RESOURCE_CLI),
                (AnalysisJobType.RESOURCE_TO_RESOURCES, RESOURCE_SDK),
                (AnalysisJobType.BATCH_RESOURCES, None),
                (AnalysisJobType.FULL_REINDEX, None),
            ]
        }

    assert asyncio.run(run()) == {
        AnalysisJobType.DOC_TO_RESOURCES: TargetType.DOC,
        AnalysisJobType.RESOURCE_TO_DOCS: TargetType.RESOURCE,
        AnalysisJobType.RESOURCE_TO_RESOURCES: TargetType.RESOURCE,
        AnalysisJobType.BATCH_RESOURCES: TargetType.ALL,
        AnalysisJobType.FULL_REINDEX: TargetType.ALL,
    }
