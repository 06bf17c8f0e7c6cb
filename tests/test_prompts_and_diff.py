from __future__ import annotations

from datetime import datetime, timezone

from curator.pipeline.batching import Candidate
from curator.pipeline.diff import content_hash, generate_content_diff
from curator.pipeline.prompts import build_relationship_prompt, build_rewrite_prompt
from curator.schemas.content import ContentItem, ScrapedSnapshot, SourceCitation
from curator.schemas.relationships import EntityType


def test_diff_is_empty_for_identical_content() -> None:
    assert generate_content_diff("same\n", "same\n") == ""


def test_diff_marks_changed_lines() -> None:
    diff = generate_content_diff("# Title\nold line\n", "# Title\nnew line\n")
    assert diff.startswith("--- current\n+++ proposed\n")
    assert "-old line\n" in diff
    assert "+new line\n" in diff


def test_diff_handles_missing_trailing_newline() -> None:
    diff = generate_content_diff("a", "b")
    assert diff.endswith("+b\n")


def test_content_hash_is_sha256_hex() -> None:
    assert content_hash("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert len(content_hash("# Page")) == 64


def test_rewrite_prompt_includes_page_and_sources() -> None:
    item = ContentItem(
        slug="guide",
        title="Guide",
        description="A guide.",
        content="Body text",
        sources=[SourceCitation(title="Docs", url="https://docs.example.com")],
    )
    snapshot = ScrapedSnapshot(
        url="https://docs.example.com",
        markdown="Fresh docs",
        title="Docs home",
        scraped_at=datetime.now(timezone.utc),
    )
    prompt = build_rewrite_prompt(item, [snapshot], max_source_chars=8000)
    assert "Slug: guide" in prompt
    assert "Body text" in prompt
    assert "### Source 1: https://docs.example.com" in prompt
    assert "Title: Docs home" in prompt
    assert "Fresh docs" in prompt
    assert "truncated" not in prompt
    assert "No source content could be scraped" not in prompt


def test_rewrite_prompt_without_snapshots_says_so() -> None:
    item = ContentItem(slug="guide", title="Guide", description=None, content="Body text")
    prompt = build_rewrite_prompt(item, [], max_source_chars=8000)
    assert "Body text" in prompt
    assert "No source content could be scraped" in prompt
    assert "### Source 1" not in prompt


def test_relationship_prompt_lists_allowed_types_for_the_pair() -> None:
    source = Candidate(entity_type=EntityType.RESOURCE, id="r1", title="CLI", tags=["cli"])
    candidates = [Candidate(entity_type=EntityType.RESOURCE, id="r2", title="SDK")]
    prompt = build_relationship_prompt(source, candidates)
    assert '"id": "r2"' in prompt.split("## Candidates")[1]
    assert "inspired_by" in prompt
    assert "implements" not in prompt


def test_relationship_prompt_carries_source_content() -> None:
    source = Candidate(entity_type=EntityType.DOC, id="guide", title="Guide")
    candidates = [Candidate(entity_type=EntityType.RESOURCE, id="r1", title="CLI")]
    prompt = build_relationship_prompt(source, candidates, source_content="Install the CLI first.")
    assert "Install the CLI first." in prompt.split("## Candidates")[0]
    assert "implements" in prompt
