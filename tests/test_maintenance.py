from datetime import date, timedelta

from checkout.errors import ProviderUnavailable
from checkout.maintenance import (
    ExpirySweeper,
    poll_pending_payments,
    reconcile_recent_payments,
    startup_payment_reconciliation,
)
from checkout.models import ORDER_PAID, ORDER_PENDING, SUBSCRIPTION_ACTIVE, SUBSCRIPTION_EXPIRED
from checkout.payments import MockPaymentProvider, PaymentRecord
from checkout.repository import OrderRepository


AS_OF = date(2024, 6, 1)


async def test_sweep_expires_lapsed_subscribers_once(repository):
    await repository.activate_subscriber("@a", plan_id=1, expires_on=AS_OF - timedelta(days=1))
    await repository.activate_subscriber("@b", plan_id=2, expires_on=AS_OF - timedelta(days=30))
    await repository.activate_subscriber("@c", plan_id=1, expires_on=AS_OF + timedelta(days=1))
    sweeper = ExpirySweeper(repository)

    first = await sweeper.sweep(AS_OF)
    second = await sweeper.sweep(AS_OF)

    assert first.count == 2
    assert sorted(first.handles) == ["@a", "@b"]
    assert second.count == 0
    assert (await repository.get_subscriber("@a")).subscription_status == SUBSCRIPTION_EXPIRED
    assert (await repository.get_subscriber("@c")).subscription_status == SUBSCRIPTION_ACTIVE


class RenewingRepository(OrderRepository):
    """Renews @renewed right after the sweep has selected it."""

    async def list_expirable(self, as_of):
        rows = await super().list_expirable(as_of)
        await self.activate_subscriber("@renewed", plan_id=1, expires_on=as_of + timedelta(days=30))
        return rows


async def test_sweep_does_not_expire_a_row_renewed_mid_sweep(db_path):
    repository = RenewingRepository(db_path)
    await repository.activate_subscriber("@renewed", plan_id=1, expires_on=AS_OF - timedelta(days=2))
    await repository.activate_subscriber("@lapsed", plan_id=1, expires_on=AS_OF - timedelta(days=2))

    result = await ExpirySweeper(repository).sweep(AS_OF)

    assert result.handles == ["@lapsed"]
    renewed = await repository.get_subscriber("@renewed")
    assert renewed.subscription_status == SUBSCRIPTION_ACTIVE
    assert renewed.expires_on == (AS_OF + timedelta(days=30)).isoformat()


async def test_poll_applies_payments_missed_by_the_webhook(repository, provider, service, reconciler):
    order = await service.start_payment(
        handle="@alice",
        chat_id=100,
        plan_id=1,
        network="usdt_trc20",
        whatsapp="+14155551234",
    )
    assert await poll_pending_payments(repository, provider, reconciler) == 0

    provider.statuses[order.provider_payment_id] = "finished"
    assert await poll_pending_payments(repository, provider, reconciler) == 1
    assert await poll_pending_payments(repository, provider, reconciler) == 0

    assert (await repository.get_order(order.order_id)).status == ORDER_PAID
    assert (await repository.get_subscriber("@alice")).subscription_status == SUBSCRIPTION_ACTIVE


class HistoryProvider(MockPaymentProvider):
    def __init__(self, records, *, down=False):
        super().__init__()
        self.records = records
        self.down = down

    async def list_payments(self, *, limit=500):
        if self.down:
            raise ProviderUnavailable("Provider returned HTTP 503", status=503)
        return self.records[:limit]


async def test_startup_reconciliation_recovers_orders_the_poll_cannot_see(repository, reconciler, make_order):
    # No provider payment id stored, so the pending poll skips this order.
    await make_order("NXT-LOST")
    await make_order("NXT-WAIT", handle="@bob", chat_id=200, plan_id=1)
    history = HistoryProvider(
        [
            PaymentRecord(provider_payment_id="11", order_id="NXT-LOST", status="finished"),
            PaymentRecord(provider_payment_id="12", order_id="NXT-WAIT", status="waiting"),
            PaymentRecord(provider_payment_id="13", order_id="SHOP-999", status="finished"),
            PaymentRecord(provider_payment_id="14", order_id=None, status="finished"),
        ]
    )

    assert await reconcile_recent_payments(history, reconciler) == 1
    assert await reconcile_recent_payments(history, reconciler) == 0

    assert (await repository.get_order("NXT-LOST")).status == ORDER_PAID
    assert (await repository.get_order("NXT-WAIT")).status == ORDER_PENDING
    assert (await repository.get_subscriber("@alice")).subscription_status == SUBSCRIPTION_ACTIVE
    assert await repository.get_subscriber("@bob") is None


async def test_startup_reconciliation_tolerates_a_provider_outage(reconciler, make_order):
    await make_order("NXT-LOST")
    history = HistoryProvider(
        [PaymentRecord(provider_payment_id="11", order_id="NXT-LOST", status="finished")],
        down=True,
    )

    assert await reconcile_recent_payments(history, reconciler) == 0
    await startup_payment_reconciliation(history, reconciler)
