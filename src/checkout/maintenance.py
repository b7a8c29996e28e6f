"""Background maintenance tasks for checkout."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from checkout.errors import OrderNotFound, ProviderUnavailable
from checkout.payments import PaymentProvider, is_final_success
from checkout.reconciler import OUTCOME_APPLIED, WebhookReconciler
from checkout.repository import OrderRepository


logger = logging.getLogger(__name__)

SUBSCRIPTION_SWEEP_INTERVAL_SEC = 3600
PENDING_POLL_INTERVAL_SEC = 300
PENDING_LOOKBACK_HOURS = 24
RECENT_PAYMENTS_LIMIT = 500


@dataclass(frozen=True, slots=True)
class SweepResult:
    count: int
    handles: list[str] = field(default_factory=list)
    as_of: date | None = None


class ExpirySweeper:
    """Moves active subscriptions past their expiry date to expired."""

    def __init__(self, repository: OrderRepository) -> None:
        self.repository = repository

    async def sweep(self, as_of: date | None = None) -> SweepResult:
        as_of = as_of or date.today()
        candidates = await self.repository.list_expirable(as_of)
        handles = await self.repository.mark_expired(candidates)
        skipped = len(candidates) - len(handles)
        if handles or skipped:
            logger.info(
                "Subscriptions expired as of %s: %s (renewed since selection: %s)",
                as_of,
                ", ".join(handles) or "-",
                skipped,
            )
        return SweepResult(count=len(handles), handles=handles, as_of=as_of)


async def subscription_expiry_loop(
    sweeper: ExpirySweeper,
    *,
    interval_sec: int = SUBSCRIPTION_SWEEP_INTERVAL_SEC,
) -> None:
    """Periodically expire lapsed subscriptions."""
    sleep_for = max(30, int(interval_sec))
    while True:
        try:
            await sweeper.sweep()
        except Exception:
            logger.exception("Subscription expiry loop failed")
        await asyncio.sleep(sleep_for)


async def poll_pending_payments(
    repository: OrderRepository,
    provider: PaymentProvider,
    reconciler: WebhookReconciler,
    *,
    lookback_hours: int = PENDING_LOOKBACK_HOURS,
) -> int:
    """Ask the provider about recent pending orders; apply the settled ones.

    Catches payments whose notification never arrived. Returns how many
    orders were applied.
    """
    since = (datetime.now(timezone.utc) - timedelta(hours=max(1, int(lookback_hours)))).isoformat()
    applied = 0
    for order in await repository.list_pending_orders(since_iso=since):
        if not order.provider_payment_id:
            continue
        try:
            status = await provider.get_status(order.provider_payment_id)
        except ProviderUnavailable as error:
            logger.warning("Status poll failed for order %s: %s", order.order_id, error)
            continue
        if not is_final_success(status):
            continue
        try:
            result = await reconciler.apply_confirmed(order.order_id, status=status, source="poll")
        except OrderNotFound:
            logger.warning("Polled order %s disappeared", order.order_id)
            continue
        if result.outcome == OUTCOME_APPLIED:
            applied += 1
    return applied


async def pending_payments_loop(
    repository: OrderRepository,
    provider: PaymentProvider,
    reconciler: WebhookReconciler,
    *,
    interval_sec: int = PENDING_POLL_INTERVAL_SEC,
    lookback_hours: int = PENDING_LOOKBACK_HOURS,
) -> None:
    """Periodically reconcile payments missed by the webhook."""
    sleep_for = max(30, int(interval_sec))
    while True:
        try:
            applied = await poll_pending_payments(
                repository,
                provider,
                reconciler,
                lookback_hours=lookback_hours,
            )
            if applied:
                logger.info("Pending payment poll applied %s order(s)", applied)
        except Exception:
            logger.exception("Pending payments loop failed")
        await asyncio.sleep(sleep_for)


async def reconcile_recent_payments(
    provider: PaymentProvider,
    reconciler: WebhookReconciler,
    *,
    limit: int = RECENT_PAYMENTS_LIMIT,
) -> int:
    """Apply every settled payment in the provider's recent history.

    Recovers orders the pending poll cannot see: settlements older than its
    lookback and orders whose provider payment id was never stored. Already
    paid orders come back as duplicates. Returns how many orders were applied.
    """
    try:
        records = await provider.list_payments(limit=limit)
    except ProviderUnavailable as error:
        logger.warning("Payment history unavailable, startup reconciliation skipped: %s", error)
        return 0

    applied = 0
    for record in records:
        if not record.order_id or not is_final_success(record.status):
            continue
        try:
            result = await reconciler.apply_confirmed(
                record.order_id,
                status=record.status,
                source="history",
                payload=record.payload,
            )
        except OrderNotFound:
            logger.debug("Provider payment %s references unknown order %s", record.provider_payment_id, record.order_id)
            continue
        if result.outcome == OUTCOME_APPLIED:
            applied += 1
    logger.info("Startup reconciliation: %s payment(s) checked, %s order(s) applied", len(records), applied)
    return applied


async def startup_payment_reconciliation(
    provider: PaymentProvider,
    reconciler: WebhookReconciler,
    *,
    limit: int = RECENT_PAYMENTS_LIMIT,
) -> None:
    """One-shot reconciliation run at startup."""
    try:
        await reconcile_recent_payments(provider, reconciler, limit=limit)
    except Exception:
        logger.exception("Startup payment reconciliation failed")
