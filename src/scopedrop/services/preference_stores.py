import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional

import aiosqlite
import pytz

from scopedrop.services.preference_sync import (
    IdentityProvider,
    LocalPreferenceStore,
    RemotePreferenceStore,
    StoreError,
)


class InMemoryLocalStore(LocalPreferenceStore):
    """Session-storage style string map, optionally namespaced by a key prefix"""

    def __init__(self, prefix: str = "", initial: Optional[Dict[str, str]] = None):
        self.prefix = prefix
        self._data: Dict[str, str] = {}
        for name, value in (initial or {}).items():
            self.set(name, value)

    def get(self, name: str) -> Optional[str]:
        return self._data.get(f"{self.prefix}{name}")

    def set(self, name: str, value: str) -> None:
        self._data[f"{self.prefix}{name}"] = str(value)

    def remove(self, name: str) -> None:
        self._data.pop(f"{self.prefix}{name}", None)


class StaticIdentityProvider(IdentityProvider):

    def __init__(self, identity: Optional[str] = None):
        self.identity = identity

    def current_identity(self) -> Optional[str]:
        return self.identity

    def sign_in(self, identity: str) -> None:
        self.identity = identity

    def sign_out(self) -> None:
        self.identity = None


class SqlitePreferenceStore(RemotePreferenceStore):
    """
    Reference remote store backed by SQLite.

    Values are stored JSON-encoded in a `user_preferences` table keyed by
    (identity, name). Any database or decoding failure surfaces as StoreError.
    Call `await initialize_db()` once before use.
    """

    def __init__(self, db_path: str = "data/preferences.db"):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)

    async def initialize_db(self) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS user_preferences (
                        identity TEXT NOT NULL,
                        name TEXT NOT NULL,
                        value TEXT,
                        updated_at TEXT,
                        PRIMARY KEY (identity, name)
                    );
                    """
                )
                await db.commit()
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Failed to initialize preference store at {self.db_path}: {e}") from e
        self.logger.info(f"Preference store ready at {self.db_path}")

    async def get(self, identity: str, name: str) -> Optional[Any]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cur = await db.execute(
                    "SELECT value FROM user_preferences WHERE identity = ? AND name = ?",
                    (identity, name),
                )
                row = await cur.fetchone()
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Failed to read preference '{name}': {e}") from e

        if row is None or row[0] is None:
            return None
        try:
            return json.loads(row[0])
        except ValueError as e:
            raise StoreError(f"Malformed stored value for preference '{name}': {e}") from e

    async def upsert(self, identity: str, name: str, value: Any) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Preference '{name}' value is not serializable: {e}") from e

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO user_preferences (identity, name, value, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(identity, name) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (identity, name, encoded, datetime.now(pytz.utc).isoformat()),
                )
                await db.commit()
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Failed to write preference '{name}': {e}") from e
