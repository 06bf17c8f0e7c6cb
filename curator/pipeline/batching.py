from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from curator.schemas.relationships import EntityType

CANDIDATE_TOKEN_OVERHEAD = 20
CHARS_PER_TOKEN = 4
DEFAULT_MAX_ITEMS = 15
DEFAULT_MAX_TOKENS = 4000


@dataclass(slots=True)
class Candidate:
    entity_type: EntityType
    id: str
    title: str
    description: str = ""
    category: str | None = None
    tags: list[str] = field(default_factory=list)

    def prompt_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.entity_type.value,
            "id": self.id,
            "title": self.title,
            "description": self.description,
        }
        if self.category:
            payload["category"] = self.category
        if self.tags:
            payload["tags"] = list(self.tags)
        return payload


def estimate_tokens(candidate: Candidate) -> int:
    text_length = len(candidate.title or "") + len(candidate.description or "")
    return math.ceil(text_length / CHARS_PER_TOKEN) + CANDIDATE_TOKEN_OVERHEAD


def batch_candidates(
    candidates: Sequence[Candidate],
    *,
    max_items: int = DEFAULT_MAX_ITEMS,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> list[list[Candidate]]:
    """Greedily split candidates into batches bounded by item count and estimated tokens.

    Input order is preserved within and across batches and every candidate lands
    in exactly one batch. A candidate that alone exceeds ``max_tokens`` gets a
    batch of its own.
    """
    if max_items < 1:
        raise ValueError("max_items must be at least 1")
    if max_tokens < 1:
        raise ValueError("max_tokens must be at least 1")

    batches: list[list[Candidate]] = []
    current: list[Candidate] = []
    current_tokens = 0
    for candidate in candidates:
        weight = estimate_tokens(candidate)
        if current and (len(current) + 1 > max_items or current_tokens + weight > max_tokens):
            batches.append(current)
            current = []
            current_tokens = 0
        current.append(candidate)
        current_tokens += weight
    if current:
        batches.append(current)
    return batches
