from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel

from curator.core.config import Settings, get_settings
from curator.core.errors import PipelineError
from curator.core.telemetry import configure_logging
from curator.pipeline.content_updates import ContentUpdatePipeline
from curator.pipeline.relationships import RelationshipDiscovery
from curator.schemas.content import TriggerType
from curator.schemas.relationships import AnalysisJobType
from curator.services.generation import GenerationClient
from curator.services.repository import RepositoryError, get_repository
from curator.services.scraper import ScraperClient
from curator.services.store import PipelineStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="curator", description="Operate the content curation pipeline.")
    parser.add_argument("--actor", default=None, help="Recorded as triggered_by / reviewed_by")
    commands = parser.add_subparsers(dest="command", required=True)

    refresh = commands.add_parser("refresh", help="Create and run a refresh job for one content item")
    refresh.add_argument("slug")
    refresh.add_argument("--no-process", action="store_true", help="Only create the job")

    stale = commands.add_parser("refresh-stale", help="Create refresh jobs for stale content items")
    stale.add_argument("--days", type=int, default=None, help="Stale after this many days")
    stale.add_argument("--category", action="append", dest="categories", help="Limit to a category (repeatable)")
    stale.add_argument("--limit", type=int, default=None)

    analyze = commands.add_parser("analyze", help="Create and run a relationship analysis job")
    analyze.add_argument("job_type", choices=[job_type.value for job_type in AnalysisJobType])
    analyze.add_argument("target", nargs="?", default=None)
    analyze.add_argument("--apply", action="store_true", help="Apply the discovered relationships afterwards")

    for name in ("approve", "reject"):
        review = commands.add_parser(name, help=f"{name.capitalize()} a content job awaiting review")
        review.add_argument("job_id")
        review.add_argument("--notes", default=None)

    return parser


async def run_command(args: argparse.Namespace, store: PipelineStore, settings: Settings) -> Any:
    config = settings.pipeline_config()
    generator = GenerationClient(settings.anthropic_api_key, config.ai_model)
    content = ContentUpdatePipeline(
        store,
        ScraperClient(settings.scraper_base_url, settings.scraper_api_key, timeout_seconds=config.scrape_timeout_seconds),
        generator,
        config,
    )
    discovery = RelationshipDiscovery(store, generator, config)
    actor = args.actor or "cli"

    try:
        match args.command:
            case "refresh":
                job = await content.create_job(args.slug, TriggerType.MANUAL, actor)
                return job if args.no_process else await content.process_job(job.id)
            case "refresh-stale":
                return await content.create_batch_jobs(
                    TriggerType.MANUAL,
                    actor,
                    stale_after_days=settings.stale_after_days if args.days is None else args.days,
                    categories=args.categories,
                    limit=settings.stale_sweep_limit if args.limit is None else args.limit,
                )
            case "analyze":
                job = await discovery.create_job(AnalysisJobType(args.job_type), args.target, triggered_by=actor)
                job = await discovery.process_job(job.id)
                if args.apply and not config.auto_apply_relationships:
                    counts = await discovery.apply_job_relationships(job.id)
                    logger.info("applied created=%s updated=%s skipped=%s", counts.created, counts.updated, counts.skipped)
                    job = await discovery.get_job(job.id)
                return job
            case "approve":
                return await content.approve_job(args.job_id, actor, args.notes)
            case "reject":
                return await content.reject_job(args.job_id, actor, args.notes)
        raise ValueError(f"unknown command: {args.command}")
    finally:
        await generator.close()


def _render(result: Any) -> str:
    if isinstance(result, BaseModel):
        return result.model_dump_json(indent=2)
    return json.dumps(result, indent=2, default=str)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    async def run() -> Any:
        store = get_repository()
        try:
            return await run_command(args, store, settings)
        finally:
            await store.close()

    try:
        result = asyncio.run(run())
    except (PipelineError, RepositoryError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    print(_render(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
