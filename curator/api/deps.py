from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache

from fastapi import Depends, HTTPException, status

from curator.core.config import PipelineConfig, get_settings
from curator.core.errors import ApplyError, InvalidStateError, NotFoundError
from curator.pipeline.content_updates import ContentUpdatePipeline
from curator.pipeline.relationships import RelationshipDiscovery
from curator.services.generation import GenerationClient, Generator
from curator.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from curator.services.scraper import Scraper, ScraperClient
from curator.services.store import PipelineStore


def get_store() -> PipelineStore:
    return get_repository()


def get_pipeline_config() -> PipelineConfig:
    return get_settings().pipeline_config()


@lru_cache
def get_scraper() -> Scraper:
    settings = get_settings()
    return ScraperClient(
        settings.scraper_base_url,
        settings.scraper_api_key,
        timeout_seconds=settings.scrape_timeout_seconds,
    )


@lru_cache
def get_generator() -> Generator:
    settings = get_settings()
    return GenerationClient(settings.anthropic_api_key, settings.ai_model)


def get_content_pipeline(
    store=Depends(get_store),
    scraper=Depends(get_scraper),
    generator=Depends(get_generator),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> ContentUpdatePipeline:
    return ContentUpdatePipeline(store, scraper, generator, config)


def get_relationship_discovery(
    store=Depends(get_store),
    generator=Depends(get_generator),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> RelationshipDiscovery:
    return RelationshipDiscovery(store, generator, config)


@contextmanager
def http_errors() -> Iterator[None]:
    try:
        yield
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (NotFoundError, RepositoryNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvalidStateError, ApplyError, RepositoryConflictError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
