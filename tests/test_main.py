from __future__ import annotations

from pathlib import Path

import pytest

from scopedrop.config import ResilienceConfig
from scopedrop.main import DARK_MODE, build_services, dark_mode_preference, home_page_specs
from scopedrop.pipeline.content_aggregator import Category
from scopedrop.services.preference_stores import InMemoryLocalStore, StaticIdentityProvider
from scopedrop.services.preference_sync import PreferenceSource, SyncPhase


def make_config(tmp_path: Path) -> ResilienceConfig:
    return ResilienceConfig(
        error_log_capacity=10,
        preferences_db_path=str(tmp_path / "prefs.db"),
        log_dir=str(tmp_path / "logs"),
    )


def test_build_services_shares_one_log_and_cache(tmp_path: Path) -> None:
    services = build_services(make_config(tmp_path))

    assert services.orchestrator.diagnostics is services.diagnostics
    assert services.orchestrator.cache is services.cache
    assert services.resources.cache is services.cache
    assert services.diagnostics.capacity == 10
    assert services.cache.default_ttl == 1800


def test_home_page_specs_mark_latest_as_primary(tmp_path: Path) -> None:
    specs = home_page_specs(make_config(tmp_path))

    assert [s.name for s in specs] == [Category.LATEST, Category.FUNDING, Category.IPO]
    assert [s.name for s in specs if s.primary] == [Category.LATEST]
    assert all(s.limit > 0 for s in specs)


@pytest.mark.asyncio
async def test_dark_mode_round_trips_through_sqlite(tmp_path: Path) -> None:
    services = build_services(make_config(tmp_path))
    await services.preference_store.initialize_db()
    identity = StaticIdentityProvider("user-1")
    applied = []

    # first session: no stored value anywhere, system prefers dark
    first = dark_mode_preference(
        services, InMemoryLocalStore(), identity,
        system_prefers_dark=lambda: True, on_change=applied.append,
    )
    state = await first.initialize()
    assert state.value is True
    assert state.source is PreferenceSource.DEFAULT

    first.toggle()
    await first.flush()
    assert await services.preference_store.get("user-1", DARK_MODE) is False

    # second session on another device with a stale local copy: remote wins
    second = dark_mode_preference(services, InMemoryLocalStore(initial={DARK_MODE: "true"}), identity)
    state = await second.initialize()
    assert state.value is False
    assert state.phase is SyncPhase.RECONCILED
    assert applied[-1] is False
    assert services.diagnostics.list() == []
