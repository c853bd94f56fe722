from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from scopedrop.services.preference_stores import (
    InMemoryLocalStore,
    SqlitePreferenceStore,
    StaticIdentityProvider,
)
from scopedrop.services.preference_sync import StoreError


def test_in_memory_local_store_is_prefixed() -> None:
    store = InMemoryLocalStore(prefix="scopedrop_")
    assert store.get("darkMode") is None
    store.set("darkMode", "true")
    assert store.get("darkMode") == "true"
    assert store._data == {"scopedrop_darkMode": "true"}
    store.remove("darkMode")
    assert store.get("darkMode") is None


def test_static_identity_provider_sign_in_and_out() -> None:
    provider = StaticIdentityProvider()
    assert provider.current_identity() is None
    provider.sign_in("user-1")
    assert provider.current_identity() == "user-1"
    provider.sign_out()
    assert provider.current_identity() is None


@pytest.mark.asyncio
async def test_sqlite_store_upsert_and_get(tmp_path: Path) -> None:
    store = SqlitePreferenceStore(str(tmp_path / "prefs.db"))
    await store.initialize_db()

    assert await store.get("user-1", "darkMode") is None

    await store.upsert("user-1", "darkMode", True)
    assert await store.get("user-1", "darkMode") is True

    await store.upsert("user-1", "darkMode", False)
    assert await store.get("user-1", "darkMode") is False
    assert await store.get("user-2", "darkMode") is None

    await store.upsert("user-1", "digest", {"frequency": "weekly"})
    assert await store.get("user-1", "digest") == {"frequency": "weekly"}


@pytest.mark.asyncio
async def test_sqlite_store_wraps_database_errors(tmp_path: Path) -> None:
    # never initialized: the table does not exist
    store = SqlitePreferenceStore(str(tmp_path / "empty.db"))

    with pytest.raises(StoreError):
        await store.get("user-1", "darkMode")
    with pytest.raises(StoreError):
        await store.upsert("user-1", "darkMode", True)


@pytest.mark.asyncio
async def test_sqlite_store_rejects_unserializable_values(tmp_path: Path) -> None:
    store = SqlitePreferenceStore(str(tmp_path / "prefs.db"))
    await store.initialize_db()

    with pytest.raises(StoreError):
        await store.upsert("user-1", "darkMode", object())


@pytest.mark.asyncio
async def test_sqlite_store_reports_malformed_rows(tmp_path: Path) -> None:
    db_path = tmp_path / "prefs.db"
    store = SqlitePreferenceStore(str(db_path))
    await store.initialize_db()

    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "INSERT INTO user_preferences (identity, name, value) VALUES (?, ?, ?)",
            ("user-1", "darkMode", "{not json"),
        )

    with pytest.raises(StoreError):
        await store.get("user-1", "darkMode")
