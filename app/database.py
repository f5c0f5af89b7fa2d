from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import aiosqlite

from app.config import DATABASE_PATH

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def insert(self, query: str, params: Sequence | None = None) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def rollback(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executescript(self, script: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    conn: aiosqlite.Connection
    engine: str = "sqlite"

    async def execute(self, query: str, params: Sequence | None = None) -> None:
        await self.conn.execute(query, params or ())

    async def insert(self, query: str, params: Sequence | None = None) -> int:
        cursor = await self.conn.execute(query, params or ())
        return cursor.lastrowid

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        await self.conn.executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        cursor = await self.conn.execute(query, params or ())
        return await cursor.fetchall()

    async def commit(self) -> None:
        await self.conn.commit()

    async def rollback(self) -> None:
        await self.conn.rollback()

    async def close(self) -> None:
        await self.conn.close()

    async def executescript(self, script: str) -> None:
        await self.conn.executescript(script)


_db: DatabaseAdapter | None = None


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        conn = await aiosqlite.connect(DATABASE_PATH)
        conn.row_factory = aiosqlite.Row
        _db = SQLiteAdapter(conn)
        logger.info("Connected to SQLite database at %s", DATABASE_PATH)
    return _db


SQLITE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp REAL NOT NULL,
        clinical_text TEXT NOT NULL,
        coding_system TEXT NOT NULL,
        extracted_concepts TEXT NOT NULL DEFAULT '[]',
        suggested_diagnoses TEXT NOT NULL DEFAULT '[]',
        source_file_name TEXT,
        clinical_summary TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_history_timestamp ON history (timestamp);

    CREATE TABLE IF NOT EXISTS preferences (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT (datetime('now'))
    );
"""


async def init_db() -> None:
    db = await get_db()
    await db.executescript(SQLITE_SCHEMA)
    await db.commit()


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None
