import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import aiosqlite

from config import DB_PATH
from sqlite_lock_logger import log_sqlite_lock_event


# Plan catalog seeded on first start. Plans are read-only to the bot;
# edits happen directly in the database.
DEFAULT_PLANS = [
    {
        "id": 1,
        "name": "Monthly VIP",
        "price_usd": 39.0,
        "term": "monthly",
        "features": ["Daily signals", "Private VIP channel", "Market updates"],
    },
    {
        "id": 2,
        "name": "Quarterly VIP",
        "price_usd": 99.0,
        "term": "quarterly",
        "features": ["Everything in Monthly", "Weekly strategy call", "Save 15%"],
    },
    {
        "id": 3,
        "name": "Semiannual VIP",
        "price_usd": 179.0,
        "term": "semiannual",
        "features": ["Everything in Quarterly", "1:1 onboarding", "Save 23%"],
    },
]

SQLITE_BUSY_TIMEOUT_MS = 5000
SQLITE_RETRY_ATTEMPTS = 3
SQLITE_RETRY_BASE_DELAY_SEC = 0.05
logger = logging.getLogger(__name__)

T = TypeVar("T")


async def apply_sqlite_pragmas(db: aiosqlite.Connection) -> None:
    """Apply SQLite settings for concurrent access from bot, API and background jobs."""
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")


@asynccontextmanager
async def open_db(db_path: str | None = None) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path or DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await apply_sqlite_pragmas(db)
        yield db


def is_sqlite_locked_error(exc: BaseException) -> bool:
    if not isinstance(exc, (sqlite3.OperationalError, aiosqlite.OperationalError)):
        return False
    msg = str(exc).lower()
    return "database is locked" in msg or "database table is locked" in msg


async def with_sqlite_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    where: str,
    retries: int = SQLITE_RETRY_ATTEMPTS,
    base_delay: float = SQLITE_RETRY_BASE_DELAY_SEC,
) -> T:
    """Run fn, retrying with exponential backoff while SQLite reports a lock."""
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not is_sqlite_locked_error(exc) or attempt >= retries:
                raise
            delay = base_delay * (2**attempt)
            logger.warning("SQLite locked in %s; retry %s/%s in %.2fs", where, attempt + 1, retries, delay)
            log_sqlite_lock_event(
                where=where,
                exc=exc,
                attempt=attempt + 1,
                retries=retries,
                delay_sec=delay,
            )
            await asyncio.sleep(delay)
            attempt += 1


async def init_db(db_path: str | None = None) -> None:
    """Create tables and seed the plan catalog."""
    async with open_db(db_path) as db:
        await db.execute(
            """CREATE TABLE IF NOT EXISTS plans (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                price_usd REAL NOT NULL,
                term TEXT DEFAULT NULL,
                features TEXT DEFAULT NULL,
                channel_id TEXT DEFAULT NULL,
                is_active INTEGER NOT NULL DEFAULT 1
            )"""
        )
        await db.execute(
            """CREATE TABLE IF NOT EXISTS subscribers (
                handle TEXT PRIMARY KEY,
                chat_id INTEGER DEFAULT NULL,
                whatsapp TEXT DEFAULT NULL,
                full_name TEXT DEFAULT NULL,
                email TEXT DEFAULT NULL,
                plan_id INTEGER DEFAULT NULL REFERENCES plans(id),
                subscription_status TEXT NOT NULL DEFAULT 'pending',
                expires_on TEXT DEFAULT NULL,
                review_reason TEXT DEFAULT NULL,
                registered_on TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )"""
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_subscribers_status_expires "
            "ON subscribers (subscription_status, expires_on)"
        )
        # Orders are append-only history: rows are never deleted.
        await db.execute(
            """CREATE TABLE IF NOT EXISTS orders (
                order_id TEXT PRIMARY KEY,
                user_handle TEXT NOT NULL,
                chat_id INTEGER NOT NULL,
                plan_id INTEGER NOT NULL REFERENCES plans(id),
                amount_usd REAL NOT NULL,
                pay_currency TEXT NOT NULL,
                pay_network TEXT NOT NULL,
                pay_address TEXT DEFAULT NULL,
                pay_amount REAL DEFAULT NULL,
                provider_payment_id TEXT DEFAULT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                paid_at TEXT DEFAULT NULL,
                finalized_at TEXT DEFAULT NULL
            )"""
        )
        # Migration: databases created before invite issuance was recorded.
        async with db.execute("PRAGMA table_info(orders)") as cur:
            order_columns = {row["name"] for row in await cur.fetchall()}
        if "finalized_at" not in order_columns:
            await db.execute("ALTER TABLE orders ADD COLUMN finalized_at TEXT DEFAULT NULL")
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_orders_handle_plan_status "
            "ON orders (user_handle, plan_id, status)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_orders_status_created ON orders (status, created_at)"
        )

        for plan in DEFAULT_PLANS:
            await db.execute(
                "INSERT OR IGNORE INTO plans (id, name, price_usd, term, features) VALUES (?, ?, ?, ?, ?)",
                (
                    plan["id"],
                    plan["name"],
                    plan["price_usd"],
                    plan["term"],
                    json.dumps(plan["features"], ensure_ascii=False),
                ),
            )
        await db.commit()
    logger.info("Database initialized: %s", db_path or DB_PATH)
