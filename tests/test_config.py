from __future__ import annotations

import pytest

from curator.core.config import PipelineConfig, Settings, get_settings
from curator.core.telemetry import parse_headers, setup_telemetry


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CURATOR_RELATIONSHIP_CREATE_THRESHOLD", "0.8")
    monkeypatch.setenv("CURATOR_AUTO_APPLY_RELATIONSHIPS", "true")
    monkeypatch.setenv("CURATOR_BATCH_MAX_ITEMS", "0")
    monkeypatch.setenv("RELATIONSHIP_DISPLAY_THRESHOLD", "0.9")

    config = Settings().pipeline_config()

    assert config.relationship_create_threshold == 0.8
    assert config.relationship_display_threshold == 0.5
    assert config.auto_apply_relationships is True
    assert config.batch_max_items == 1


def test_get_settings_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    get_settings.cache_clear()
    monkeypatch.setenv("CURATOR_AI_MODEL", "model-x")
    try:
        assert get_settings() is get_settings()
        assert get_settings().pipeline_config().ai_model == "model-x"
    finally:
        get_settings.cache_clear()


def test_cost_estimate_uses_per_million_prices() -> None:
    config = PipelineConfig(input_cost_per_million_tokens=15.0, output_cost_per_million_tokens=75.0)
    assert config.estimate_cost(1_000_000, 0) == 15.0
    assert config.estimate_cost(1200, 400) == 0.048


def test_parse_headers() -> None:
    assert parse_headers(None) == {}
    assert parse_headers("authorization=Bearer abc, x-team = core,broken, =empty") == {
        "authorization": "Bearer abc",
        "x-team": "core",
    }


def test_disabled_telemetry_keeps_service_name() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False), service_suffix="worker")
    assert runtime.enabled is False
    assert runtime.service_name == "curation-pipeline-worker"
