"""Persistent history of saved analyses.

Records live in the ``history`` table. Every mutation runs under one lock, so a
``clear`` or ``import_replace`` never interleaves with another write, and each
mutation publishes the fresh, most-recent-first snapshot to all subscribers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime

import aiosqlite
from pydantic import TypeAdapter, ValidationError

from app.database import DatabaseAdapter, get_db
from app.models.history import HistoryImportEntry, HistoryRecord, HistoryRecordCreate
from app.services.errors import HistoryImportError, HistoryRecordNotFoundError, HistoryStoreError

logger = logging.getLogger(__name__)

_IMPORT_ADAPTER = TypeAdapter(list[HistoryImportEntry])

_INSERT = """INSERT INTO history (
    timestamp, clinical_text, coding_system, extracted_concepts,
    suggested_diagnoses, source_file_name, clinical_summary
) VALUES (?, ?, ?, ?, ?, ?, ?)"""


def _now_ms() -> float:
    return float(round(datetime.now(UTC).timestamp() * 1000))


def _row_params(timestamp: float, record: HistoryRecordCreate) -> tuple:
    return (
        timestamp,
        record.clinical_text,
        record.coding_system.value,
        json.dumps(record.extracted_concepts, ensure_ascii=False),
        json.dumps(
            [d.model_dump(mode="json", by_alias=True) for d in record.suggested_diagnoses],
            ensure_ascii=False,
        ),
        record.source_file_name,
        record.clinical_summary,
    )


def _row_to_record(row) -> HistoryRecord:
    concepts: list = []
    diagnoses: list = []
    try:
        concepts = json.loads(row["extracted_concepts"] or "[]")
        diagnoses = json.loads(row["suggested_diagnoses"] or "[]")
    except json.JSONDecodeError:
        logger.warning("Failed to parse stored collections for history entry %s", row["id"])
    return HistoryRecord(
        id=row["id"],
        timestamp=row["timestamp"],
        clinical_text=row["clinical_text"],
        coding_system=row["coding_system"],
        extracted_concepts=concepts,
        suggested_diagnoses=diagnoses,
        source_file_name=row["source_file_name"],
        clinical_summary=row["clinical_summary"],
    )


class HistoryStore:
    def __init__(self, db: DatabaseAdapter) -> None:
        self._db = db
        self._lock = asyncio.Lock()
        self._subscribers: set[asyncio.Queue] = set()

    # --- Reactive view ---

    async def subscribe(self) -> asyncio.Queue:
        """Return a queue primed with the current snapshot, then fed on every change."""
        queue: asyncio.Queue = asyncio.Queue()
        async with self._lock:
            queue.put_nowait(await self._fetch_all())
            self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    async def _publish(self) -> None:
        snapshot = await self._fetch_all()
        for queue in self._subscribers:
            try:
                queue.put_nowait(snapshot)
            except asyncio.QueueFull:
                logger.warning("History subscriber queue full")

    # --- Reads ---

    async def _fetch_all(self) -> list[HistoryRecord]:
        rows = await self._db.fetch_all("SELECT * FROM history ORDER BY timestamp DESC, id DESC")
        return [_row_to_record(row) for row in rows]

    async def list(self) -> list[HistoryRecord]:
        """All records, most recent first."""
        return await self._fetch_all()

    async def get(self, record_id: int) -> HistoryRecord:
        row = await self._db.fetch_one("SELECT * FROM history WHERE id = ?", (record_id,))
        if row is None:
            raise HistoryRecordNotFoundError(record_id)
        return _row_to_record(row)

    async def export_all(self) -> str:
        """Serialize every record (ids included) as a JSON array."""
        rows = await self._db.fetch_all("SELECT * FROM history ORDER BY id ASC")
        payload = [_row_to_record(row).model_dump(mode="json", by_alias=True) for row in rows]
        return json.dumps(payload, indent=2, ensure_ascii=False)

    # --- Writes ---

    async def add(self, record: HistoryRecordCreate) -> HistoryRecord:
        async with self._lock:
            timestamp = _now_ms()
            try:
                record_id = await self._db.insert(_INSERT, _row_params(timestamp, record))
                await self._db.commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                logger.error("Failed to save history entry: %s", exc)
                raise HistoryStoreError(f"Could not save the analysis: {exc}") from exc
            logger.info("Saved history entry %d", record_id)
            await self._publish()
        return HistoryRecord(id=record_id, timestamp=timestamp, **record.model_dump())

    async def delete(self, record_id: int) -> None:
        async with self._lock:
            row = await self._db.fetch_one("SELECT id FROM history WHERE id = ?", (record_id,))
            if row is None:
                logger.warning("Cannot delete history entry %d: not found", record_id)
                raise HistoryRecordNotFoundError(record_id)
            try:
                await self._db.execute("DELETE FROM history WHERE id = ?", (record_id,))
                await self._db.commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                logger.error("Failed to delete history entry %d: %s", record_id, exc)
                raise HistoryStoreError(f"Could not delete history entry {record_id}: {exc}") from exc
            logger.info("Deleted history entry %d", record_id)
            await self._publish()

    async def clear(self) -> int:
        async with self._lock:
            row = await self._db.fetch_one("SELECT COUNT(*) AS count FROM history")
            count = row["count"] if row else 0
            try:
                await self._db.execute("DELETE FROM history")
                await self._db.commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                logger.error("Failed to clear history: %s", exc)
                raise HistoryStoreError(f"Could not clear the history: {exc}") from exc
            logger.info("Cleared %d history entries", count)
            await self._publish()
        return count

    async def import_replace(self, raw: str | bytes) -> int:
        """Validate ``raw`` and atomically replace the whole store with it.

        Ids in the payload are ignored; missing ``isPrincipal``/``isSelected``
        default to False. On any validation error nothing is modified.
        """
        try:
            entries = _IMPORT_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            logger.warning("Rejected history import: %d validation errors", exc.error_count())
            raise HistoryImportError(
                "The file does not have the expected history format.",
                details={
                    "errors": exc.errors(include_url=False, include_context=False, include_input=False)
                },
            ) from exc

        params = [_row_params(entry.timestamp, entry.to_record()) for entry in entries]
        async with self._lock:
            try:
                await self._db.execute("DELETE FROM history")
                if params:
                    await self._db.executemany(_INSERT, params)
                await self._db.commit()
            except aiosqlite.Error as exc:
                await self._rollback()
                logger.error("History import failed, changes rolled back: %s", exc)
                raise HistoryStoreError(f"Could not import the history: {exc}") from exc
            logger.info("Imported %d history entries (store replaced)", len(params))
            await self._publish()
        return len(params)

    async def _rollback(self) -> None:
        try:
            await self._db.rollback()
        except aiosqlite.Error:
            logger.exception("Rollback failed")


_store: HistoryStore | None = None


async def get_history_store() -> HistoryStore:
    global _store
    db = await get_db()
    if _store is None or _store._db is not db:
        _store = HistoryStore(db)
    return _store
