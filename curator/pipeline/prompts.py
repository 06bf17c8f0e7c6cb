from __future__ import annotations

import json

from curator.pipeline.batching import Candidate
from curator.schemas.content import ContentItem, ScrapedSnapshot
from curator.schemas.relationships import EntityType, vocabulary_for

DOC_REWRITER_SYSTEM_PROMPT = """You maintain technical documentation pages.
You receive the current page and fresh content scraped from the sources the page cites.
Rewrite the page so it is accurate against the sources while keeping its structure,
headings and tone. Do not invent facts that the sources do not support. Keep existing
source citations unless a source is gone, and add citations for new material.

Respond with ONLY a JSON object of this shape:
{
  "title": "page title",
  "description": "one or two sentence summary of the page",
  "content": "full rewritten markdown body",
  "sources": [{"title": "source title", "url": "https://..."}],
  "summary": "2-3 sentences describing what changed and why",
  "keyChanges": ["short bullet per notable change"],
  "confidence": 0.0,
  "warnings": ["anything a reviewer should double-check"]
}
confidence is a number from 0 to 1 describing how well the sources support the rewrite."""

RELATIONSHIP_ANALYZER_SYSTEM_PROMPT = """You curate links between documentation pages and a catalog of tools and resources.
Given one source entity and a list of candidates, identify the candidates that are
genuinely related to the source. Skip weak or generic matches. Use only candidate ids
from the list you are given and only the relationship types you are offered.

Respond with ONLY a JSON object of this shape:
{
  "relationships": [
    {
      "targetId": "candidate id",
      "relationshipType": "one of the allowed types",
      "confidence": 0.0,
      "reasoning": "one sentence explaining the link",
      "sharedTags": ["optional", "tags"]
    }
  ]
}
confidence is a number from 0 to 1. Return an empty list when nothing is related."""

_TRUNCATION_MARKER = "\n[... content truncated ...]"


def build_rewrite_prompt(item: ContentItem, snapshots: list[ScrapedSnapshot], *, max_source_chars: int) -> str:
    sources = [{"title": source.title, "url": source.url} for source in item.sources]
    sections = [
        "## Current page",
        f"Slug: {item.slug}",
        f"Title: {item.title}",
        f"Description: {item.description or ''}",
        "Sources:",
        "```json",
        json.dumps(sources, indent=2),
        "```",
        "",
        "Content:",
        item.content,
        "",
        "## Scraped sources",
    ]
    if not snapshots:
        sections.append("No source content could be scraped. Keep the page as accurate as the current content allows.")
    for index, snapshot in enumerate(snapshots, start=1):
        markdown = snapshot.markdown
        if len(markdown) > max_source_chars:
            markdown = markdown[:max_source_chars] + _TRUNCATION_MARKER
        sections.append(f"### Source {index}: {snapshot.url}")
        if snapshot.title:
            sections.append(f"Title: {snapshot.title}")
        if snapshot.description:
            sections.append(f"Meta description: {snapshot.description}")
        sections.extend(["", markdown, "", "---"])
    return "\n".join(sections)


def build_relationship_prompt(
    source: Candidate,
    candidates: list[Candidate],
    *,
    source_content: str | None = None,
) -> str:
    target_type = candidates[0].entity_type if candidates else EntityType.RESOURCE
    allowed = sorted(vocabulary_for(source.entity_type, target_type))
    source_payload = source.prompt_payload()
    if source_content:
        source_payload["content"] = source_content
    return "\n".join(
        [
            "## Source",
            "```json",
            json.dumps(source_payload, indent=2),
            "```",
            "",
            f"## Candidates ({len(candidates)})",
            "```json",
            json.dumps([candidate.prompt_payload() for candidate in candidates], indent=2),
            "```",
            "",
            f"Allowed relationship types: {', '.join(allowed)}",
        ]
    )

