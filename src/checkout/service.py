"""Checkout use-cases shared by the chat flow, webhook and background jobs."""

from __future__ import annotations

import dataclasses
import logging
import secrets
from datetime import datetime, timedelta, timezone

from checkout.errors import DuplicateOrderError, NotFoundError, ProviderUnavailable, ValidationError
from checkout.models import (
    ORDER_PENDING,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_PENDING,
    Order,
    Plan,
    Subscriber,
)
from checkout.payments import MockPaymentProvider, NowPaymentsProvider, PaymentProvider
from checkout.plans import PRICE_CURRENCY, network_pay_currency
from checkout.repository import OrderRepository
from config import CFG, payment_callback_url


logger = logging.getLogger(__name__)

ORDER_ID_PREFIX = "NXT"

PAYMENT_PROVIDER_MOCK = "mock"
PAYMENT_PROVIDER_NOWPAYMENTS = "nowpayments"
SUPPORTED_PAYMENT_PROVIDERS = {PAYMENT_PROVIDER_MOCK, PAYMENT_PROVIDER_NOWPAYMENTS}


def new_order_id() -> str:
    """Provider-facing correlation id, e.g. NXT-1f2e3d4c5b6a7980."""
    return f"{ORDER_ID_PREFIX}-{secrets.token_hex(8)}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_payment_provider(name: str | None = None) -> PaymentProvider:
    """Build the configured payment provider."""
    raw = str(name or CFG.payment_provider or "").strip().lower()
    if raw not in SUPPORTED_PAYMENT_PROVIDERS:
        logger.warning("Unknown PAYMENT_PROVIDER %r; using %s", raw, PAYMENT_PROVIDER_NOWPAYMENTS)
        raw = PAYMENT_PROVIDER_NOWPAYMENTS
    if raw == PAYMENT_PROVIDER_MOCK:
        return MockPaymentProvider()
    return NowPaymentsProvider(
        api_key=CFG.nowpayments_api_key,
        api_url=CFG.nowpayments_api_url,
        callback_url=payment_callback_url(),
        timeout_sec=CFG.provider_timeout_sec,
    )


class CheckoutService:
    """Order creation and subscriber registration."""

    def __init__(
        self,
        repository: OrderRepository,
        provider: PaymentProvider,
        *,
        pending_order_window_min: int | None = None,
    ) -> None:
        self.repository = repository
        self.provider = provider
        window = CFG.pending_order_window_min if pending_order_window_min is None else pending_order_window_min
        self.pending_order_window = timedelta(minutes=max(0, int(window)))

    async def list_plans(self) -> list[Plan]:
        return await self.repository.list_plans()

    async def get_plan(self, plan_id: int) -> Plan:
        plan = await self.repository.get_plan(int(plan_id))
        if plan is None or not plan.is_active:
            raise NotFoundError("This plan is no longer available.")
        return plan

    async def find_order(self, order_id: str) -> Order | None:
        return await self.repository.get_order(order_id)

    async def get_order(self, order_id: str) -> Order:
        order = await self.repository.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found.")
        return order

    async def grants_access(self, order: Order) -> bool:
        """True while the order's buyer holds an active subscription on the order's plan."""
        subscriber = await self.repository.get_subscriber(order.user_handle)
        return (
            subscriber is not None
            and subscriber.subscription_status == SUBSCRIPTION_ACTIVE
            and subscriber.plan_id == order.plan_id
        )

    async def claim_finalization(self, order_id: str) -> bool:
        return await self.repository.claim_finalization(order_id)

    async def release_finalization(self, order_id: str) -> None:
        await self.repository.release_finalization(order_id)

    async def _assert_no_live_checkout(self, handle: str, plan: Plan) -> None:
        """Reject a second checkout for a plan the handle already holds or is paying for."""
        subscriber = await self.repository.get_subscriber(handle)
        if (
            subscriber is not None
            and subscriber.subscription_status == SUBSCRIPTION_ACTIVE
            and subscriber.plan_id == plan.id
        ):
            raise DuplicateOrderError(
                f"You already have an active {plan.name} subscription.",
                handle=handle,
                plan_id=plan.id,
                reason="active_subscription",
            )

        if self.pending_order_window:
            since = (_utc_now() - self.pending_order_window).isoformat()
            live = await self.repository.find_live_order(handle, plan.id, since_iso=since)
            if live is not None:
                raise DuplicateOrderError(
                    f"You already have a {plan.name} payment in progress.",
                    handle=handle,
                    plan_id=plan.id,
                    reason="pending_order",
                )

    async def start_payment(
        self,
        *,
        handle: str,
        chat_id: int,
        plan_id: int,
        network: str,
        whatsapp: str,
    ) -> Order:
        """Create the order and ask the provider for a deposit address.

        The order row is written before the provider call so the provider
        callback always finds it. On provider failure the order is marked
        failed and ProviderUnavailable propagates to the caller.
        """
        plan = await self.get_plan(plan_id)
        pay_currency = network_pay_currency(network)
        if pay_currency is None:
            raise ValidationError("Unsupported payment network.")

        await self._assert_no_live_checkout(handle, plan)

        await self.repository.upsert_subscriber(
            handle,
            status=SUBSCRIPTION_PENDING,
            chat_id=int(chat_id),
            whatsapp=whatsapp,
            plan_id=plan.id,
        )
        order = Order(
            order_id=new_order_id(),
            user_handle=handle,
            chat_id=int(chat_id),
            plan_id=plan.id,
            amount_usd=float(plan.price_usd),
            pay_currency=pay_currency,
            pay_network=network,
            status=ORDER_PENDING,
            created_at=_utc_now().isoformat(),
        )
        await self.repository.create_order(order)
        logger.info("Order %s created: handle=%s plan=%s network=%s", order.order_id, handle, plan.id, network)

        try:
            invoice = await self.provider.create_payment(
                amount=order.amount_usd,
                currency=PRICE_CURRENCY,
                network=network,
                order_id=order.order_id,
                description=f"{plan.name} subscription",
            )
        except ProviderUnavailable as error:
            await self.repository.mark_failed(order.order_id)
            logger.warning("Order %s failed at provider: %s", order.order_id, error)
            raise

        await self.repository.update_order_payment(
            order.order_id,
            provider_payment_id=invoice.provider_payment_id,
            pay_address=invoice.pay_address,
            pay_amount=invoice.pay_amount,
            pay_currency=invoice.pay_currency,
        )
        return dataclasses.replace(
            order,
            provider_payment_id=invoice.provider_payment_id,
            pay_address=invoice.pay_address,
            pay_amount=invoice.pay_amount,
            pay_currency=invoice.pay_currency,
        )

    async def complete_registration(
        self,
        *,
        handle: str,
        chat_id: int,
        full_name: str,
        email: str,
    ) -> Subscriber:
        """Store the contact details collected after payment."""
        return await self.repository.upsert_subscriber(
            handle,
            chat_id=int(chat_id),
            full_name=full_name,
            email=email,
        )
