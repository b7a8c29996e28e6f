"""Persistence for plans, orders and subscribers.

Every mutation here is a single-row statement; status transitions are
conditional updates ("set paid only if not paid yet") so the bot, the webhook
endpoint and the background jobs can write concurrently without a
read-then-write race.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any

import aiosqlite

from checkout.errors import StoreUnavailable
from checkout.models import (
    ORDER_FAILED,
    ORDER_PAID,
    ORDER_PENDING,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_EXPIRED,
    Order,
    Plan,
    Subscriber,
)
from database import open_db, with_sqlite_retry


_ORDER_COLUMNS = (
    "order_id, user_handle, chat_id, plan_id, amount_usd, pay_currency, pay_network, "
    "pay_address, pay_amount, provider_payment_id, status, created_at, paid_at, finalized_at"
)
_SUBSCRIBER_COLUMNS = (
    "handle, chat_id, whatsapp, full_name, email, plan_id, subscription_status, "
    "expires_on, review_reason, registered_on, updated_at"
)


def utc_now_iso() -> str:
    """Current UTC timestamp in ISO-8601."""
    return datetime.now(timezone.utc).isoformat()


async def execute_write_with_retry(
    db: aiosqlite.Connection,
    query: str,
    params: Sequence[Any] | dict[str, Any] = (),
) -> aiosqlite.Cursor:
    """Execute and commit a write, retrying on lock contention."""

    async def _op() -> aiosqlite.Cursor:
        cursor = await db.execute(query, params)
        await db.commit()
        return cursor

    return await with_sqlite_retry(_op, where="repository.execute_write_with_retry")


class OrderRepository:
    """Order store: plans (read-only), orders and subscribers."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with open_db(self.db_path) as db:
                yield db
        except aiosqlite.Error as error:
            raise StoreUnavailable(f"Order store error: {error}") from error

    # ---- plans -------------------------------------------------------------

    async def list_plans(self) -> list[Plan]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT id, name, price_usd, term, features, channel_id, is_active "
                "FROM plans WHERE is_active = 1 ORDER BY price_usd, id"
            ) as cur:
                rows = await cur.fetchall()
                return [Plan.from_row(row) for row in rows]

    async def get_plan(self, plan_id: int) -> Plan | None:
        async with self._connect() as db:
            async with db.execute(
                "SELECT id, name, price_usd, term, features, channel_id, is_active FROM plans WHERE id = ?",
                (int(plan_id),),
            ) as cur:
                row = await cur.fetchone()
                return Plan.from_row(row) if row else None

    # ---- orders ------------------------------------------------------------

    async def create_order(self, order: Order) -> None:
        async with self._connect() as db:
            await execute_write_with_retry(
                db,
                f"INSERT INTO orders ({_ORDER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    order.order_id,
                    order.user_handle,
                    int(order.chat_id),
                    int(order.plan_id),
                    float(order.amount_usd),
                    order.pay_currency,
                    order.pay_network,
                    order.pay_address,
                    order.pay_amount,
                    order.provider_payment_id,
                    order.status,
                    order.created_at,
                    order.paid_at,
                    order.finalized_at,
                ),
            )

    async def update_order_payment(
        self,
        order_id: str,
        *,
        provider_payment_id: str | None,
        pay_address: str,
        pay_amount: float | None,
        pay_currency: str,
    ) -> None:
        """Attach provider payment details to an existing order."""
        async with self._connect() as db:
            await execute_write_with_retry(
                db,
                """
                UPDATE orders
                   SET provider_payment_id = ?,
                       pay_address = ?,
                       pay_amount = ?,
                       pay_currency = ?
                 WHERE order_id = ?
                """,
                (provider_payment_id, pay_address, pay_amount, pay_currency, str(order_id)),
            )

    async def get_order(self, order_id: str) -> Order | None:
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {_ORDER_COLUMNS} FROM orders WHERE order_id = ?",
                (str(order_id),),
            ) as cur:
                row = await cur.fetchone()
                return Order.from_row(row) if row else None

    async def mark_paid(self, order_id: str) -> bool:
        """Set the order paid. Returns True only for the call that applied it."""
        async with self._connect() as db:
            cursor = await execute_write_with_retry(
                db,
                """
                UPDATE orders
                   SET status = ?,
                       paid_at = ?
                 WHERE order_id = ?
                   AND status IN (?, ?)
                """,
                (ORDER_PAID, utc_now_iso(), str(order_id), ORDER_PENDING, ORDER_FAILED),
            )
            return int(cursor.rowcount or 0) == 1

    async def mark_failed(self, order_id: str) -> bool:
        async with self._connect() as db:
            cursor = await execute_write_with_retry(
                db,
                "UPDATE orders SET status = ? WHERE order_id = ? AND status = ?",
                (ORDER_FAILED, str(order_id), ORDER_PENDING),
            )
            return int(cursor.rowcount or 0) == 1

    async def claim_finalization(self, order_id: str) -> bool:
        """Record that the invite for a paid order is being issued.

        Returns True only for the first call; later calls find finalized_at set.
        """
        async with self._connect() as db:
            cursor = await execute_write_with_retry(
                db,
                """
                UPDATE orders
                   SET finalized_at = ?
                 WHERE order_id = ?
                   AND status = ?
                   AND finalized_at IS NULL
                """,
                (utc_now_iso(), str(order_id), ORDER_PAID),
            )
            return int(cursor.rowcount or 0) == 1

    async def release_finalization(self, order_id: str) -> None:
        """Undo claim_finalization when no invite was issued."""
        async with self._connect() as db:
            await execute_write_with_retry(
                db,
                "UPDATE orders SET finalized_at = NULL WHERE order_id = ?",
                (str(order_id),),
            )

    async def find_live_order(self, handle: str, plan_id: int, *, since_iso: str) -> Order | None:
        """Most recent pending order for handle/plan created at or after since_iso."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_ORDER_COLUMNS}
                  FROM orders
                 WHERE user_handle = ?
                   AND plan_id = ?
                   AND status = ?
                   AND created_at >= ?
                 ORDER BY created_at DESC
                 LIMIT 1
                """,
                (str(handle), int(plan_id), ORDER_PENDING, str(since_iso)),
            ) as cur:
                row = await cur.fetchone()
                return Order.from_row(row) if row else None

    async def list_pending_orders(self, *, since_iso: str, limit: int = 100) -> list[Order]:
        """Pending orders that already have a provider payment id."""
        safe_limit = max(1, min(int(limit), 500))
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_ORDER_COLUMNS}
                  FROM orders
                 WHERE status = ?
                   AND provider_payment_id IS NOT NULL
                   AND created_at >= ?
                 ORDER BY created_at
                 LIMIT ?
                """,
                (ORDER_PENDING, str(since_iso), safe_limit),
            ) as cur:
                rows = await cur.fetchall()
                return [Order.from_row(row) for row in rows]

    async def count_orders(self, *, handle: str | None = None) -> int:
        query = "SELECT COUNT(*) FROM orders"
        params: tuple[Any, ...] = ()
        if handle is not None:
            query += " WHERE user_handle = ?"
            params = (str(handle),)
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
                return int(row[0] if row else 0)

    # ---- subscribers -------------------------------------------------------

    async def get_subscriber(self, handle: str) -> Subscriber | None:
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {_SUBSCRIBER_COLUMNS} FROM subscribers WHERE handle = ?",
                (str(handle),),
            ) as cur:
                row = await cur.fetchone()
                return Subscriber.from_row(row) if row else None

    async def upsert_subscriber(
        self,
        handle: str,
        *,
        status: str | None = None,
        chat_id: int | None = None,
        whatsapp: str | None = None,
        full_name: str | None = None,
        email: str | None = None,
        plan_id: int | None = None,
    ) -> Subscriber:
        """Insert or update the single subscriber row for handle.

        None fields keep their stored value. A 'pending' status never replaces
        an 'active' one (and keeps the active plan); only activation and
        expiry move an active row.
        """
        now = utc_now_iso()
        params = {
            "handle": str(handle),
            "chat_id": chat_id,
            "whatsapp": whatsapp,
            "full_name": full_name,
            "email": email,
            "plan_id": plan_id,
            "status": status,
            "active": SUBSCRIPTION_ACTIVE,
            "today": date.today().isoformat(),
            "now": now,
        }
        async with self._connect() as db:
            await execute_write_with_retry(
                db,
                """
                INSERT INTO subscribers (
                    handle, chat_id, whatsapp, full_name, email, plan_id,
                    subscription_status, registered_on, updated_at
                )
                VALUES (
                    :handle, :chat_id, :whatsapp, :full_name, :email, :plan_id,
                    COALESCE(:status, 'pending'), :today, :now
                )
                ON CONFLICT(handle) DO UPDATE SET
                    chat_id = COALESCE(excluded.chat_id, subscribers.chat_id),
                    whatsapp = COALESCE(excluded.whatsapp, subscribers.whatsapp),
                    full_name = COALESCE(excluded.full_name, subscribers.full_name),
                    email = COALESCE(excluded.email, subscribers.email),
                    plan_id = CASE
                        WHEN subscribers.subscription_status = :active AND :status IS NOT :active
                            THEN subscribers.plan_id
                        ELSE COALESCE(excluded.plan_id, subscribers.plan_id)
                    END,
                    subscription_status = CASE
                        WHEN :status IS NULL THEN subscribers.subscription_status
                        WHEN subscribers.subscription_status = :active AND :status = 'pending'
                            THEN subscribers.subscription_status
                        ELSE :status
                    END,
                    updated_at = :now
                """,
                params,
            )
            async with db.execute(
                f"SELECT {_SUBSCRIBER_COLUMNS} FROM subscribers WHERE handle = ?",
                (str(handle),),
            ) as cur:
                row = await cur.fetchone()
                return Subscriber.from_row(row)

    async def activate_subscriber(
        self,
        handle: str,
        *,
        plan_id: int,
        expires_on: date | None,
        review_reason: str | None = None,
        chat_id: int | None = None,
    ) -> None:
        """Set the subscriber active with a freshly computed expiry."""
        now = utc_now_iso()
        async with self._connect() as db:
            await execute_write_with_retry(
                db,
                """
                INSERT INTO subscribers (
                    handle, chat_id, plan_id, subscription_status, expires_on,
                    review_reason, registered_on, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(handle) DO UPDATE SET
                    chat_id = COALESCE(excluded.chat_id, subscribers.chat_id),
                    plan_id = excluded.plan_id,
                    subscription_status = excluded.subscription_status,
                    expires_on = excluded.expires_on,
                    review_reason = excluded.review_reason,
                    updated_at = excluded.updated_at
                """,
                (
                    str(handle),
                    chat_id,
                    int(plan_id),
                    SUBSCRIPTION_ACTIVE,
                    expires_on.isoformat() if expires_on else None,
                    review_reason,
                    date.today().isoformat(),
                    now,
                ),
            )

    async def list_expirable(self, as_of: date) -> list[Subscriber]:
        """Active subscribers whose expiry date is strictly before as_of."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_SUBSCRIBER_COLUMNS}
                  FROM subscribers
                 WHERE subscription_status = ?
                   AND expires_on IS NOT NULL
                   AND expires_on < ?
                 ORDER BY expires_on, handle
                """,
                (SUBSCRIPTION_ACTIVE, as_of.isoformat()),
            ) as cur:
                rows = await cur.fetchall()
                return [Subscriber.from_row(row) for row in rows]

    async def mark_expired(self, subscribers: Sequence[Subscriber]) -> list[str]:
        """Expire rows that still look the way they did when selected.

        A row re-activated after selection has a new expires_on and is left
        alone. Returns handles that were actually expired.
        """
        expired: list[str] = []
        if not subscribers:
            return expired
        now = utc_now_iso()
        async with self._connect() as db:
            for subscriber in subscribers:
                cursor = await execute_write_with_retry(
                    db,
                    """
                    UPDATE subscribers
                       SET subscription_status = ?,
                           updated_at = ?
                     WHERE handle = ?
                       AND subscription_status = ?
                       AND expires_on IS ?
                    """,
                    (
                        SUBSCRIPTION_EXPIRED,
                        now,
                        subscriber.handle,
                        subscriber.subscription_status,
                        subscriber.expires_on,
                    ),
                )
                if int(cursor.rowcount or 0) == 1:
                    expired.append(subscriber.handle)
        return expired
