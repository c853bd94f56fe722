#!/usr/bin/env python3
import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from scopedrop.config import ResilienceConfig, load_config
from scopedrop.pipeline.content_aggregator import (
    Category,
    CategorizedFetchOrchestrator,
    CategorySpec,
    FetchRun,
)
from scopedrop.services.cache_service import SingleFlightCache
from scopedrop.services.feed_client import HttpFeedOperation
from scopedrop.services.preference_stores import SqlitePreferenceStore
from scopedrop.services.preference_sync import (
    BOOL_CODEC,
    IdentityProvider,
    LocalPreferenceStore,
    PreferenceSync,
)
from scopedrop.services.resource_content import ResourceContentService
from scopedrop.utils.error_monitoring import DiagnosticLog
from scopedrop.utils.logging_config import setup_logging


DARK_MODE = "darkMode"


@dataclass
class ResilienceServices:
    """Process-scoped services, built once and injected into callers"""
    config: ResilienceConfig
    diagnostics: DiagnosticLog
    cache: SingleFlightCache
    orchestrator: CategorizedFetchOrchestrator
    resources: ResourceContentService
    preference_store: SqlitePreferenceStore


def build_services(config: Optional[ResilienceConfig] = None) -> ResilienceServices:
    cfg = config or load_config()
    diagnostics = DiagnosticLog(capacity=cfg.error_log_capacity, timezone=cfg.tzinfo())
    cache = SingleFlightCache(default_ttl=cfg.cache_default_ttl)
    orchestrator = CategorizedFetchOrchestrator(
        diagnostics=diagnostics,
        cache=cache,
        fetch_timeout=cfg.fetch_timeout,
        max_retries=cfg.fetch_max_retries,
        retry_delay=cfg.fetch_retry_delay,
    )

    async def fetch_topic(topic: str, limit: int) -> List[Any]:
        operation = HttpFeedOperation(
            cfg.feed_base_url, Category.RESOURCES,
            timeout=cfg.fetch_timeout or 30.0, params={'topic': topic},
        )
        return await operation(limit)

    resources = ResourceContentService(cache, fetch_topic, ttl=cfg.cache_default_ttl)
    return ResilienceServices(
        config=cfg,
        diagnostics=diagnostics,
        cache=cache,
        orchestrator=orchestrator,
        resources=resources,
        preference_store=SqlitePreferenceStore(cfg.preferences_db_path),
    )


def dark_mode_preference(
    services: ResilienceServices,
    local_store: LocalPreferenceStore,
    identity_provider: Optional[IdentityProvider] = None,
    system_prefers_dark: Callable[[], bool] = lambda: False,
    on_change: Optional[Callable[[Optional[bool]], None]] = None,
) -> PreferenceSync:
    """The `darkMode` preference: local copy first, remote store wins once it answers."""
    return PreferenceSync(
        name=DARK_MODE,
        local_store=local_store,
        remote_store=services.preference_store,
        identity_provider=identity_provider,
        diagnostics=services.diagnostics,
        default_factory=system_prefers_dark,
        codec=BOOL_CODEC,
        on_change=on_change,
    )


def home_page_specs(config: ResilienceConfig) -> List[CategorySpec]:
    """Categories requested by the home page; `latest` supplies the featured story."""
    timeout = config.fetch_timeout or 30.0

    def op(name: str):
        return HttpFeedOperation(config.feed_base_url, name, timeout=timeout)

    return [
        CategorySpec(Category.LATEST, op(Category.LATEST), limit=7, primary=True),
        CategorySpec(Category.FUNDING, op(Category.FUNDING), limit=3, cache_key="feed:funding:3"),
        CategorySpec(Category.IPO, op(Category.IPO), limit=3, cache_key="feed:ipo:3"),
    ]


def print_run(run: FetchRun) -> None:
    featured = run.featured
    if featured is not None:
        print(f"Featured: {getattr(featured, 'headline', featured)}")
    for name, category in run.categories.items():
        if category.last_result is None:
            print(f"  {name}: no data ({category.error})")
            continue
        listing = run.listing(name)
        print(f"  {name}: {len(listing)} items ({category.fetch_time:.2f}s)")
        for item in listing:
            print(f"    - {getattr(item, 'headline', item)}")


async def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='ScopeDrop resilience layer runner')
    parser.add_argument('--once', action='store_true', help='Fetch the home page categories once')
    parser.add_argument('--topic', action='append', default=[], help='Also derive resource content for a topic')
    parser.add_argument('--errors-format', choices=['json', 'csv'], default='json',
                        help='Format for the diagnostic log dump')
    args = parser.parse_args(argv)

    services = build_services()
    cfg = services.config
    setup_logging(
        log_level=cfg.log_level,
        log_dir=cfg.log_dir,
        enable_structured_logging=cfg.structured_logs,
    )
    logger = logging.getLogger(__name__)

    if not args.once and not args.topic:
        parser.print_help()
        return 0

    try:
        if args.once:
            run = await services.orchestrator.fetch_all(home_page_specs(cfg))
            print_run(run)
        for topic in args.topic:
            try:
                content = await services.resources.get_topic_content(topic)
                print(f"Topic '{topic}': {len(content.items)} items from {', '.join(content.sources) or 'no sources'}")
            except Exception as e:
                print(f"Topic '{topic}': unavailable ({e})")
    except KeyboardInterrupt:
        print("\n⚠️ Shutting down gracefully...")
        return 130

    stats = services.diagnostics.get_error_statistics()
    print(f"Diagnostic log: {stats['total_errors']} errors")
    if stats['total_errors']:
        print(services.diagnostics.export(args.errors_format))
    logger.info(f"Fetch statistics: {services.orchestrator.get_fetch_statistics()}")
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
