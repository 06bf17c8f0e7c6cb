from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from opentelemetry import trace

from curator.schemas.relationships import DiscoveredRelationship, EntityType, UpsertOutcome
from curator.services.store import PipelineStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class ApplyCounts:
    created: int = 0
    updated: int = 0
    skipped: int = 0

    def record(self, outcome: UpsertOutcome) -> None:
        match outcome:
            case UpsertOutcome.CREATED:
                self.created += 1
            case UpsertOutcome.UPDATED:
                self.updated += 1
            case UpsertOutcome.SKIPPED:
                self.skipped += 1


async def apply_relationships(
    store: PipelineStore,
    relationships: Iterable[DiscoveredRelationship],
    *,
    ai_model: str | None,
) -> ApplyCounts:
    """Upsert discovered relationships one row at a time.

    A row that cannot be written is counted as skipped and the rest still run.
    Manual rows are never overwritten.
    """
    counts = ApplyCounts()
    with tracer.start_as_current_span("relationships.apply") as span:
        for relationship in relationships:
            try:
                outcome = await _upsert(store, relationship, ai_model=ai_model)
            except Exception as exc:
                logger.warning(
                    "relationship upsert failed source=%s:%s target=%s:%s error=%r",
                    relationship.source_type.value,
                    relationship.source_id,
                    relationship.target_type.value,
                    relationship.target_id,
                    exc,
                )
                outcome = UpsertOutcome.SKIPPED
            counts.record(outcome)
        span.set_attribute("relationships.created", counts.created)
        span.set_attribute("relationships.updated", counts.updated)
        span.set_attribute("relationships.skipped", counts.skipped)
    return counts


async def _upsert(
    store: PipelineStore,
    relationship: DiscoveredRelationship,
    *,
    ai_model: str | None,
) -> UpsertOutcome:
    match (relationship.source_type, relationship.target_type):
        case (EntityType.DOC, EntityType.RESOURCE):
            return await store.upsert_doc_resource_relationship(
                doc_slug=relationship.source_id,
                resource_id=relationship.target_id,
                relationship_type=relationship.relationship_type,
                confidence=relationship.confidence,
                reasoning=relationship.reasoning,
                ai_model=ai_model,
            )
        case (EntityType.RESOURCE, EntityType.DOC):
            # Content/resource links live in one table keyed by (doc, resource).
            return await store.upsert_doc_resource_relationship(
                doc_slug=relationship.target_id,
                resource_id=relationship.source_id,
                relationship_type=relationship.relationship_type,
                confidence=relationship.confidence,
                reasoning=relationship.reasoning,
                ai_model=ai_model,
            )
        case (EntityType.RESOURCE, EntityType.RESOURCE):
            return await store.upsert_resource_relationship(
                source_resource_id=relationship.source_id,
                target_resource_id=relationship.target_id,
                relationship_type=relationship.relationship_type,
                confidence=relationship.confidence,
                reasoning=relationship.reasoning,
                shared_tags=relationship.shared_tags,
                ai_model=ai_model,
            )
        case _:
            return UpsertOutcome.SKIPPED
