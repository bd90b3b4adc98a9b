"""
SQLite access for the activity log.

Schema changes are applied as numbered migrations tracked in
``PRAGMA user_version``; every operation opens a short-lived aiosqlite
connection so the database can be shared by the API process and tests
running on different event loops.
"""

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)

MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            timestamp TIMESTAMP NOT NULL,
            severity TEXT NOT NULL DEFAULT 'info',
            category TEXT NOT NULL,
            action TEXT NOT NULL,
            resource_type TEXT,
            resource_id TEXT,
            message TEXT NOT NULL,
            details_json TEXT,
            source TEXT DEFAULT 'api'
        );
        CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
        CREATE INDEX IF NOT EXISTS idx_events_category ON events(category);
        CREATE INDEX IF NOT EXISTS idx_events_resource ON events(resource_id);
        """,
    ),
    (
        2,
        """
        ALTER TABLE events ADD COLUMN principal TEXT;
        CREATE INDEX IF NOT EXISTS idx_events_severity ON events(severity);
        """,
    ),
]

SCHEMA_VERSION = MIGRATIONS[-1][0]


class Database:
    """Async SQLite helper with schema migrations."""

    def __init__(self, db_path: str | Path, busy_timeout: float = 5.0):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout

    async def initialize(self) -> int:
        """
        Create the database file and bring the schema up to date.

        Returns:
            The schema version after migration
        """
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with self.connection() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            cursor = await db.execute("PRAGMA user_version")
            current = (await cursor.fetchone())[0]
            for version, script in MIGRATIONS:
                if version <= current:
                    continue
                await db.executescript(script)
                await db.execute(f"PRAGMA user_version = {version}")
                await db.commit()
                logger.info(f"Activity database migrated to schema v{version}")
                current = version
        logger.info(f"Database initialized at {self.db_path} (schema v{current})")
        return current

    @asynccontextmanager
    async def connection(self):
        conn = await aiosqlite.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    async def execute(self, query: str, params: tuple = ()) -> int:
        """Run a statement and return the affected row count."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def fetch_one(self, query: str, params: tuple = ()) -> dict[str, Any] | None:
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def fetch_all(self, query: str, params: tuple = ()) -> list[dict[str, Any]]:
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            return [dict(row) for row in await cursor.fetchall()]

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        await self.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(row.values()))


def serialize_json(data: dict[str, Any] | None) -> str | None:
    """Serialize a dict to JSON string for storage."""
    if data is None:
        return None
    return json.dumps(data, default=str)


def deserialize_json(data: str | None) -> dict[str, Any] | None:
    if data is None:
        return None
    return json.loads(data)
