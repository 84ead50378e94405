"""
SQLite connection management and schema initialization for the call audit log.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from callrelay.config import DB_PATH

logger = logging.getLogger(__name__)

# Single shared connection (WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                if DB_PATH != ":memory:":
                    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
                _db = await aiosqlite.connect(DB_PATH)
                _db.row_factory = aiosqlite.Row
                await _db.execute("PRAGMA journal_mode=WAL")
                await init_schema(_db)
                logger.info(f"Audit database initialized at {DB_PATH}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Calls: append-only audit log, one row per dispatch attempt
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS calls (
            id                   INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp            TEXT NOT NULL,
            customer_id          TEXT NOT NULL DEFAULT '',
            phone                TEXT NOT NULL DEFAULT '',
            agent                TEXT NOT NULL DEFAULT '',
            extension_connected  INTEGER NOT NULL DEFAULT 0,
            result               TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_calls_agent
            ON calls(agent);
    """)
    await db.commit()
