from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator


class ContentJobStatus(str, Enum):
    PENDING = "pending"
    SCRAPING = "scraping"
    ANALYZING = "analyzing"
    READY_FOR_REVIEW = "ready_for_review"
    APPROVED = "approved"
    APPLIED = "applied"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_CONTENT_STATUSES = frozenset(
    {
        ContentJobStatus.APPLIED,
        ContentJobStatus.REJECTED,
        ContentJobStatus.FAILED,
        ContentJobStatus.CANCELLED,
    }
)
OPEN_CONTENT_STATUSES = frozenset(
    {
        ContentJobStatus.PENDING,
        ContentJobStatus.SCRAPING,
        ContentJobStatus.ANALYZING,
        ContentJobStatus.READY_FOR_REVIEW,
    }
)


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


class SourceCitation(BaseModel):
    title: StrictStr
    url: StrictStr = Field(min_length=1)


class ContentItem(BaseModel):
    slug: str
    title: str
    description: str | None = None
    content: str
    sources: list[SourceCitation] = Field(default_factory=list)
    category: str | None = None
    is_published: bool = True
    version: int = 1
    content_hash: str | None = None
    last_refreshed_at: datetime | None = None
    updated_at: datetime | None = None

    def source_urls(self) -> list[str]:
        seen: set[str] = set()
        urls: list[str] = []
        for source in self.sources:
            url = source.url.strip()
            if url and url not in seen:
                seen.add(url)
                urls.append(url)
        return urls


class Resource(BaseModel):
    id: str
    slug: str
    title: str
    description: str | None = None
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    is_published: bool = True


class ScrapedSnapshot(BaseModel):
    url: str
    markdown: str
    title: str | None = None
    description: str | None = None
    scraped_at: datetime


class ScrapeErrorRecord(BaseModel):
    url: str
    error: str


class ContentUpdateJob(BaseModel):
    id: str
    item_slug: str
    status: ContentJobStatus = ContentJobStatus.PENDING
    trigger_type: TriggerType = TriggerType.MANUAL
    triggered_by: str | None = None
    current_content: str | None = None
    scraped_content: list[ScrapedSnapshot] = Field(default_factory=list)
    scrape_errors: list[ScrapeErrorRecord] = Field(default_factory=list)
    proposed_title: str | None = None
    proposed_description: str | None = None
    proposed_content: str | None = None
    proposed_sources: list[SourceCitation] | None = None
    summary: str | None = None
    confidence: float | None = None
    warnings: list[str] = Field(default_factory=list)
    key_changes: list[str] = Field(default_factory=list)
    content_diff: str | None = None
    ai_model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    reviewed_by: str | None = None
    review_notes: str | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    retry_count: int = 0
    created_at: datetime
    updated_at: datetime
    scraped_at: datetime | None = None
    analyzed_at: datetime | None = None
    reviewed_at: datetime | None = None
    applied_at: datetime | None = None
    completed_at: datetime | None = None


class ContentHistoryEntry(BaseModel):
    id: str
    item_slug: str
    version: int
    title: str
    description: str | None = None
    content: str
    sources: list[SourceCitation] = Field(default_factory=list)
    change_summary: str | None = None
    change_type: str = "ai_rewrite"
    changed_by: str | None = None
    job_id: str | None = None
    ai_model: str | None = None
    ai_confidence: float | None = None
    created_at: datetime


class RewriteProposal(BaseModel):
    """Decoded rewrite returned by the generation service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: StrictStr = Field(min_length=1)
    description: StrictStr
    content: StrictStr = Field(min_length=1)
    sources: list[SourceCitation] = Field(default_factory=list)
    summary: StrictStr = Field(min_length=1)
    key_changes: list[StrictStr] = Field(default_factory=list, alias="keyChanges")
    confidence: float = Field(ge=0.0, le=1.0)
    warnings: list[StrictStr] = Field(default_factory=list)

    @field_validator("title", "content", "summary")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _numeric_confidence(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("confidence must be a number between 0 and 1")
        return value


class CreateContentJobRequest(BaseModel):
    slug: str
    trigger_type: TriggerType = TriggerType.MANUAL
    triggered_by: str | None = None


class CreateBatchContentJobsRequest(BaseModel):
    trigger_type: TriggerType = TriggerType.SCHEDULED
    triggered_by: str | None = None
    stale_after_days: int = Field(default=7, ge=0)
    categories: list[str] | None = None
    limit: int = Field(default=50, ge=1, le=500)


class ReviewRequest(BaseModel):
    reviewed_by: str
    notes: str | None = None


class ContentJobStatsOut(BaseModel):
    counts: dict[str, int]
