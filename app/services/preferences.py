import logging
from datetime import UTC, datetime

from app.config import DEFAULT_DOCUMENT_STRATEGY
from app.database import DatabaseAdapter
from app.models.clinical import DocumentStrategy

logger = logging.getLogger(__name__)

DOCUMENT_STRATEGY_KEY = "document_strategy"


def _default_strategy() -> DocumentStrategy:
    try:
        return DocumentStrategy(DEFAULT_DOCUMENT_STRATEGY)
    except ValueError:
        logger.warning("Invalid DEFAULT_DOCUMENT_STRATEGY %r; using standard", DEFAULT_DOCUMENT_STRATEGY)
        return DocumentStrategy.STANDARD


async def get_document_strategy(db: DatabaseAdapter) -> DocumentStrategy:
    row = await db.fetch_one("SELECT value FROM preferences WHERE key = ?", (DOCUMENT_STRATEGY_KEY,))
    if row is None:
        return _default_strategy()
    try:
        return DocumentStrategy(row["value"])
    except ValueError:
        logger.warning("Ignoring stored document strategy %r", row["value"])
        return _default_strategy()


async def set_document_strategy(db: DatabaseAdapter, strategy: DocumentStrategy) -> DocumentStrategy:
    now = datetime.now(UTC).isoformat()
    await db.execute(
        """INSERT INTO preferences (key, value, updated_at) VALUES (?, ?, ?)
           ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
        (DOCUMENT_STRATEGY_KEY, strategy.value, now),
    )
    await db.commit()
    logger.info("Document strategy preference set to %s", strategy.value)
    return strategy
