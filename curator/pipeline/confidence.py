from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol, TypeVar


class Scored(Protocol):
    confidence: float


T = TypeVar("T", bound=Scored)

DEFAULT_MIN_CONFIDENCE = 0.6


def filter_by_confidence(relationships: Iterable[T], threshold: float = DEFAULT_MIN_CONFIDENCE) -> list[T]:
    return [relationship for relationship in relationships if relationship.confidence >= threshold]


def sort_by_confidence(relationships: Iterable[T]) -> list[T]:
    # sorted() is stable, so ties keep their discovery order.
    return sorted(relationships, key=lambda relationship: relationship.confidence, reverse=True)


def filter_and_sort(relationships: Iterable[T], threshold: float = DEFAULT_MIN_CONFIDENCE) -> list[T]:
    return sort_by_confidence(filter_by_confidence(relationships, threshold))
