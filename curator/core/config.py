from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(slots=True, frozen=True)
class PipelineConfig:
    ai_model: str = "claude-opus-4-5-20251101"
    rewrite_max_tokens: int = 8192
    analysis_max_tokens: int = 4096
    relationship_create_threshold: float = 0.6
    relationship_display_threshold: float = 0.5
    rewrite_apply_threshold: float = 0.7
    max_retries: int = 3
    max_source_chars: int = 8000
    max_source_content_chars: int = 3000
    batch_max_items: int = 15
    batch_max_tokens: int = 4000
    scrape_timeout_seconds: float = 60.0
    generation_timeout_seconds: float = 180.0
    scrape_concurrency: int = 4
    generation_concurrency: int = 2
    sweep_concurrency: int = 2
    auto_apply_relationships: bool = False
    input_cost_per_million_tokens: float = 15.0
    output_cost_per_million_tokens: float = 75.0

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        cost = (
            input_tokens * self.input_cost_per_million_tokens
            + output_tokens * self.output_cost_per_million_tokens
        ) / 1_000_000
        return round(cost, 6)


class Settings(BaseSettings):
    app_name: str = "curation-pipeline"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    scraper_base_url: str = "https://api.firecrawl.dev"
    scraper_api_key: str | None = None
    anthropic_api_key: str | None = None
    ai_model: str = "claude-opus-4-5-20251101"
    rewrite_max_tokens: int = 8192
    analysis_max_tokens: int = 4096
    relationship_create_threshold: float = 0.6
    relationship_display_threshold: float = 0.5
    rewrite_apply_threshold: float = 0.7
    max_retries: int = 3
    max_source_chars: int = 8000
    max_source_content_chars: int = 3000
    batch_max_items: int = 15
    batch_max_tokens: int = 4000
    scrape_timeout_seconds: float = 60.0
    generation_timeout_seconds: float = 180.0
    scrape_concurrency: int = 4
    generation_concurrency: int = 2
    sweep_concurrency: int = 2
    auto_apply_relationships: bool = False
    input_cost_per_million_tokens: float = 15.0
    output_cost_per_million_tokens: float = 75.0
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    worker_batch_size: int = 5
    stale_sweep_interval_seconds: float = 3600.0
    stale_after_days: int = 7
    stale_sweep_limit: int = 50
    otel_enabled: bool = True
    otel_service_name: str = "curation-pipeline"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CURATOR_", extra="ignore")

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            ai_model=self.ai_model,
            rewrite_max_tokens=self.rewrite_max_tokens,
            analysis_max_tokens=self.analysis_max_tokens,
            relationship_create_threshold=self.relationship_create_threshold,
            relationship_display_threshold=self.relationship_display_threshold,
            rewrite_apply_threshold=self.rewrite_apply_threshold,
            max_retries=max(0, self.max_retries),
            max_source_chars=max(1, self.max_source_chars),
            max_source_content_chars=max(1, self.max_source_content_chars),
            batch_max_items=max(1, self.batch_max_items),
            batch_max_tokens=max(1, self.batch_max_tokens),
            scrape_timeout_seconds=self.scrape_timeout_seconds,
            generation_timeout_seconds=self.generation_timeout_seconds,
            scrape_concurrency=max(1, self.scrape_concurrency),
            generation_concurrency=max(1, self.generation_concurrency),
            sweep_concurrency=max(1, self.sweep_concurrency),
            auto_apply_relationships=self.auto_apply_relationships,
            input_cost_per_million_tokens=self.input_cost_per_million_tokens,
            output_cost_per_million_tokens=self.output_cost_per_million_tokens,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
