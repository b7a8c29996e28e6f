"""Provider status notifications -> order and subscriber state.

Applying a confirmation is idempotent: the order flips to paid through a
conditional update and only the call that flipped it activates the
subscriber and notifies the buyer. Re-delivered notifications end up as
"duplicate" without touching the subscriber's expiry.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from typing import Any

from checkout.errors import OrderNotFound, SignatureInvalid, UnmappedPlanTerm
from checkout.models import (
    REVIEW_AMOUNT_MISMATCH,
    REVIEW_UNMAPPED_TERM,
    SUBSCRIPTION_PENDING,
    Order,
)
from checkout.payments import PaymentProvider, is_final_success
from checkout.plans import PRICE_CURRENCY, compute_expiry
from checkout.repository import OrderRepository


logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"

AMOUNT_TOLERANCE_USD = 0.01

PaidCallback = Callable[[Order], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    outcome: str
    order_id: str | None = None
    status: str | None = None
    expires_on: date | None = None
    review_reason: str | None = None


def _amount_mismatch(order: Order, payload: dict[str, Any] | None) -> bool:
    """True when the notification's price disagrees with what the order asked for."""
    if not payload:
        return False
    currency = payload.get("price_currency")
    if currency is not None and str(currency).strip().lower() != PRICE_CURRENCY:
        return True
    amount = payload.get("price_amount")
    if amount is None:
        return False
    try:
        return abs(float(amount) - float(order.amount_usd)) > AMOUNT_TOLERANCE_USD
    except (TypeError, ValueError):
        return True


class WebhookReconciler:
    def __init__(
        self,
        repository: OrderRepository,
        provider: PaymentProvider,
        *,
        secret: str,
        on_paid: PaidCallback | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.secret = secret
        self.on_paid = on_paid
        self.today = today

    async def handle_callback(self, raw_body: bytes | str, signature: str | None) -> ReconcileResult:
        """Authenticate and apply one provider notification.

        Raises SignatureInvalid (nothing is read or written), ValueError on a
        body that is not a JSON object, OrderNotFound for an unknown order id.
        """
        if not self.provider.verify_callback(raw_body, signature, self.secret):
            logger.warning("Payment callback rejected: signature mismatch")
            raise SignatureInvalid("Invalid callback signature")

        payload = json.loads(raw_body)
        if not isinstance(payload, dict):
            raise ValueError("callback body must be a JSON object")

        order_id = str(payload.get("order_id") or "").strip()
        status = str(payload.get("payment_status") or "").strip().lower()
        if not is_final_success(status):
            logger.info("Payment callback for order %s: status=%s (informational)", order_id or "?", status or "?")
            return ReconcileResult(outcome=OUTCOME_IGNORED, order_id=order_id or None, status=status or None)
        if not order_id:
            raise OrderNotFound(order_id)

        return await self.apply_confirmed(order_id, status=status, source="webhook", payload=payload)

    async def apply_confirmed(
        self,
        order_id: str,
        *,
        status: str,
        source: str,
        payload: dict[str, Any] | None = None,
    ) -> ReconcileResult:
        """Mark the order paid and activate its subscriber, once."""
        order = await self.repository.get_order(order_id)
        if order is None:
            logger.warning("Confirmed payment for unknown order %s (source=%s)", order_id, source)
            raise OrderNotFound(order_id)

        if order.is_paid:
            await self._repair_activation(order)
            logger.info("Order %s already paid; %s confirmation ignored", order_id, source)
            return ReconcileResult(outcome=OUTCOME_DUPLICATE, order_id=order_id, status=status)

        expires_on, review_reason = await self._expiry_for(order)
        if _amount_mismatch(order, payload):
            review_reason = review_reason or REVIEW_AMOUNT_MISMATCH
            logger.warning(
                "Order %s paid amount mismatch: expected %.2f %s, got %s %s",
                order_id,
                order.amount_usd,
                PRICE_CURRENCY,
                (payload or {}).get("price_amount"),
                (payload or {}).get("price_currency"),
            )

        if not await self.repository.mark_paid(order_id):
            logger.info("Order %s was marked paid concurrently; %s confirmation ignored", order_id, source)
            return ReconcileResult(outcome=OUTCOME_DUPLICATE, order_id=order_id, status=status)

        await self.repository.activate_subscriber(
            order.user_handle,
            plan_id=order.plan_id,
            expires_on=expires_on,
            review_reason=review_reason,
            chat_id=order.chat_id,
        )
        logger.info(
            "Order %s paid via %s: handle=%s plan=%s expires_on=%s review=%s",
            order_id,
            source,
            order.user_handle,
            order.plan_id,
            expires_on,
            review_reason,
        )

        if self.on_paid is not None:
            try:
                await self.on_paid(order)
            except Exception:
                logger.exception("Payment confirmed notification failed for order %s", order_id)

        return ReconcileResult(
            outcome=OUTCOME_APPLIED,
            order_id=order_id,
            status=status,
            expires_on=expires_on,
            review_reason=review_reason,
        )

    async def _expiry_for(self, order: Order) -> tuple[date | None, str | None]:
        plan = await self.repository.get_plan(order.plan_id)
        if plan is None:
            logger.error("Order %s references missing plan %s; activating without expiry", order.order_id, order.plan_id)
            return None, REVIEW_UNMAPPED_TERM
        try:
            return compute_expiry(plan, self.today()), None
        except UnmappedPlanTerm:
            logger.error(
                "Order %s: plan %s (%s) has no billing term; activating without expiry for review",
                order.order_id,
                plan.id,
                plan.name,
            )
            return None, REVIEW_UNMAPPED_TERM

    async def _repair_activation(self, order: Order) -> None:
        """Finish an activation that failed after the order was marked paid."""
        subscriber = await self.repository.get_subscriber(order.user_handle)
        if (
            subscriber is None
            or subscriber.subscription_status != SUBSCRIPTION_PENDING
            or subscriber.plan_id != order.plan_id
            or subscriber.expires_on is not None
        ):
            return
        expires_on, review_reason = await self._expiry_for(order)
        await self.repository.activate_subscriber(
            order.user_handle,
            plan_id=order.plan_id,
            expires_on=expires_on,
            review_reason=review_reason,
            chat_id=order.chat_id,
        )
        logger.warning("Order %s: subscriber %s was still pending; activation repaired", order.order_id, order.user_handle)
