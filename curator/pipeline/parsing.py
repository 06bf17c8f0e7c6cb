from __future__ import annotations

import json
import re
from collections.abc import Collection
from typing import Any

from pydantic import ValidationError

from curator.core.errors import ResponseParseError, ValidationFailedError
from curator.schemas.content import RewriteProposal
from curator.schemas.relationships import (
    AnalyzedRelationship,
    DiscoveredRelationship,
    EntityType,
    vocabulary_for,
)

_FENCED_BLOCK_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_OBJECT_START_RE = re.compile(r"\{")


def extract_json_object(text: str) -> dict[str, Any]:
    """Decode the JSON object in a generation response.

    Tries the whole text, then fenced code blocks, then the first decodable
    object embedded in loose text.
    """
    stripped = (text or "").strip()
    if not stripped:
        raise ResponseParseError("generation response is empty")

    direct = _loads_object(stripped)
    if direct is not None:
        return direct

    for block in _FENCED_BLOCK_RE.findall(stripped):
        fenced = _loads_object(block.strip())
        if fenced is not None:
            return fenced

    decoder = json.JSONDecoder()
    for match in _OBJECT_START_RE.finditer(stripped):
        try:
            value, _ = decoder.raw_decode(stripped, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value

    raise ResponseParseError("generation response contains no JSON object")


def parse_rewrite_response(text: str) -> RewriteProposal:
    payload = extract_json_object(text)
    try:
        return RewriteProposal.model_validate(payload)
    except ValidationError as exc:
        errors = [_format_error(error) for error in exc.errors()]
        raise ValidationFailedError(
            f"rewrite output validation failed: {'; '.join(errors)}",
            errors=errors,
        ) from exc


def parse_relationship_response(text: str) -> list[Any]:
    payload = extract_json_object(text)
    relationships = payload.get("relationships")
    if not isinstance(relationships, list):
        raise ResponseParseError("generation response has no relationships array")
    return relationships


def validate_relationships(
    entries: list[Any],
    *,
    source_type: EntityType,
    source_id: str,
    target_type: EntityType,
    known_target_ids: Collection[str],
) -> tuple[list[DiscoveredRelationship], list[str]]:
    """Split analyzed entries into usable relationships and warnings.

    Invalid entries never fail the analysis; each one produces a warning and is
    left out of the returned relationships.
    """
    vocabulary = vocabulary_for(source_type, target_type)
    relationships: list[DiscoveredRelationship] = []
    warnings: list[str] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            warnings.append(f"relationship[{index}]: expected an object")
            continue
        try:
            analyzed = AnalyzedRelationship.model_validate(entry)
        except ValidationError as exc:
            detail = "; ".join(_format_error(error) for error in exc.errors())
            warnings.append(f"relationship[{index}]: {detail}")
            continue

        if not analyzed.reasoning.strip():
            warnings.append(f"relationship[{index}]: reasoning is blank")
            continue
        if analyzed.target_id not in known_target_ids:
            warnings.append(f"relationship[{index}]: unknown target {analyzed.target_id!r}")
            continue
        if analyzed.target_id == source_id and source_type is target_type:
            warnings.append(f"relationship[{index}]: target is the source itself")
            continue
        if analyzed.relationship_type not in vocabulary:
            warnings.append(
                f"relationship[{index}]: type {analyzed.relationship_type!r} is not valid "
                f"for {source_type.value} -> {target_type.value}"
            )
            continue

        relationships.append(
            DiscoveredRelationship(
                source_type=source_type,
                source_id=source_id,
                target_type=target_type,
                target_id=analyzed.target_id,
                relationship_type=analyzed.relationship_type,
                confidence=analyzed.confidence,
                reasoning=analyzed.reasoning.strip(),
                shared_tags=analyzed.shared_tags,
            )
        )
    return relationships, warnings


def _loads_object(raw: str) -> dict[str, Any] | None:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _format_error(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "response"
    return f"{location}: {error.get('msg', 'invalid value')}"
