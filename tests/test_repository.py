from datetime import date, datetime, timedelta, timezone

import pytest

from checkout.errors import StoreUnavailable
from checkout.models import ORDER_FAILED, ORDER_PAID, SUBSCRIPTION_ACTIVE, SUBSCRIPTION_PENDING
from checkout.repository import OrderRepository
from database import init_db, open_db


async def test_seeded_plans_are_listed_by_price(repository):
    plans = await repository.list_plans()
    assert [plan.name for plan in plans] == ["Monthly VIP", "Quarterly VIP", "Semiannual VIP"]
    assert plans[1].term == "quarterly"
    assert plans[0].features


async def test_mark_paid_applies_once(repository, make_order):
    await make_order("NXT-A")
    assert await repository.mark_paid("NXT-A") is True
    assert await repository.mark_paid("NXT-A") is False

    order = await repository.get_order("NXT-A")
    assert order.status == ORDER_PAID
    assert order.paid_at is not None


async def test_failed_order_can_still_be_paid(repository, make_order):
    await make_order("NXT-B")
    assert await repository.mark_failed("NXT-B") is True
    assert (await repository.get_order("NXT-B")).status == ORDER_FAILED
    assert await repository.mark_paid("NXT-B") is True


async def test_paid_order_is_never_marked_failed(repository, make_order):
    await make_order("NXT-C")
    await repository.mark_paid("NXT-C")
    assert await repository.mark_failed("NXT-C") is False
    assert (await repository.get_order("NXT-C")).status == ORDER_PAID


async def test_finalization_is_claimed_once_and_only_for_paid_orders(repository, make_order):
    await make_order("NXT-F")
    assert await repository.claim_finalization("NXT-F") is False

    await repository.mark_paid("NXT-F")
    assert await repository.claim_finalization("NXT-F") is True
    assert await repository.claim_finalization("NXT-F") is False
    assert (await repository.get_order("NXT-F")).finalized_at is not None

    await repository.release_finalization("NXT-F")
    assert await repository.claim_finalization("NXT-F") is True


async def test_init_db_adds_finalized_at_to_older_order_tables(tmp_path):
    path = str(tmp_path / "old.db")
    async with open_db(path) as db:
        await db.execute(
            "CREATE TABLE orders (order_id TEXT PRIMARY KEY, user_handle TEXT NOT NULL, "
            "chat_id INTEGER NOT NULL, plan_id INTEGER NOT NULL, amount_usd REAL NOT NULL, "
            "pay_currency TEXT NOT NULL, pay_network TEXT NOT NULL, pay_address TEXT, "
            "pay_amount REAL, provider_payment_id TEXT, status TEXT NOT NULL DEFAULT 'pending', "
            "created_at TEXT NOT NULL, paid_at TEXT)"
        )
        await db.commit()

    await init_db(path)

    async with open_db(path) as db:
        async with db.execute("PRAGMA table_info(orders)") as cur:
            columns = {row["name"] for row in await cur.fetchall()}
    assert "finalized_at" in columns


async def test_find_live_order_respects_window(repository, make_order):
    await make_order("NXT-D", plan_id=1)
    recent = (datetime.now(timezone.utc) - timedelta(minutes=30)).isoformat()
    future = (datetime.now(timezone.utc) + timedelta(minutes=1)).isoformat()

    live = await repository.find_live_order("@alice", 1, since_iso=recent)
    assert live is not None and live.order_id == "NXT-D"
    assert await repository.find_live_order("@alice", 1, since_iso=future) is None
    assert await repository.find_live_order("@alice", 2, since_iso=recent) is None


async def test_list_pending_orders_needs_provider_payment_id(repository, make_order):
    await make_order("NXT-E")
    await make_order("NXT-F", provider_payment_id="5001")
    since = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    pending = await repository.list_pending_orders(since_iso=since)
    assert [order.order_id for order in pending] == ["NXT-F"]


async def test_upsert_subscriber_keeps_unspecified_fields(repository):
    await repository.upsert_subscriber("@bob", status=SUBSCRIPTION_PENDING, chat_id=7, whatsapp="+14155550000", plan_id=1)
    subscriber = await repository.upsert_subscriber("@bob", full_name="Bob Stone", email="bob@example.com")

    assert subscriber.whatsapp == "+14155550000"
    assert subscriber.full_name == "Bob Stone"
    assert subscriber.plan_id == 1
    assert subscriber.subscription_status == SUBSCRIPTION_PENDING


async def test_pending_checkout_does_not_downgrade_active_subscriber(repository):
    await repository.activate_subscriber("@carol", plan_id=1, expires_on=date(2030, 1, 1))
    subscriber = await repository.upsert_subscriber("@carol", status=SUBSCRIPTION_PENDING, plan_id=3)

    assert subscriber.subscription_status == SUBSCRIPTION_ACTIVE
    assert subscriber.plan_id == 1
    assert subscriber.expires_on == "2030-01-01"


async def test_list_expirable_is_strictly_before(repository):
    await repository.activate_subscriber("@due", plan_id=1, expires_on=date(2024, 3, 9))
    await repository.activate_subscriber("@today", plan_id=1, expires_on=date(2024, 3, 10))
    await repository.activate_subscriber("@open", plan_id=1, expires_on=None)

    rows = await repository.list_expirable(date(2024, 3, 10))
    assert [row.handle for row in rows] == ["@due"]


async def test_mark_expired_skips_rows_renewed_after_selection(repository):
    await repository.activate_subscriber("@dave", plan_id=1, expires_on=date(2024, 3, 1))
    selected = await repository.list_expirable(date(2024, 3, 10))
    await repository.activate_subscriber("@dave", plan_id=1, expires_on=date(2024, 4, 10))

    assert await repository.mark_expired(selected) == []
    subscriber = await repository.get_subscriber("@dave")
    assert subscriber.subscription_status == SUBSCRIPTION_ACTIVE
    assert subscriber.expires_on == "2024-04-10"


async def test_unreachable_database_raises_store_unavailable(tmp_path):
    repository = OrderRepository(str(tmp_path / "missing" / "checkout.db"))
    with pytest.raises(StoreUnavailable):
        await repository.get_order("NXT-X")
