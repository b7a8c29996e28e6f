#!/usr/bin/env python3
"""
Smoke test for the checkout flow against the mock provider:
- chat walk-through creates one pending order with a deposit address
- a signed "finished" callback activates the subscriber, re-delivery is a no-op
- the expiry sweep expires the subscription once its date has passed

Run:
  python3 scripts/smoke_checkout_mock_flow.py
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import sys
import tempfile
from datetime import date, timedelta
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
IPN_SECRET = "smoke-ipn-secret"


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


class _PrintTransport:
    def __init__(self) -> None:
        self.last_text = ""

    async def send_text(self, chat_id, text, keyboard=None):
        self.last_text = text
        print(f"[chat {chat_id}] {text.splitlines()[0]}")

    async def send_image(self, chat_id, url, caption=None, keyboard=None):
        print(f"[chat {chat_id}] <image {url}>")

    async def create_invite(self, channel_id):
        return f"https://t.me/+smoke-{channel_id}"


async def _run_checks(db_path: str) -> None:
    # Import only after env is set, because config reads env on import.
    from aiogram.fsm.storage.memory import MemoryStorage  # noqa: WPS433

    from checkout.conversation import ChatEvent, ChatUser, ConversationEngine  # noqa: WPS433
    from checkout.maintenance import ExpirySweeper  # noqa: WPS433
    from checkout.payments import MockPaymentProvider, sign_payload  # noqa: WPS433
    from checkout.reconciler import WebhookReconciler  # noqa: WPS433
    from checkout.repository import OrderRepository  # noqa: WPS433
    from checkout.service import CheckoutService  # noqa: WPS433
    from checkout.sessions import SessionStore  # noqa: WPS433
    from database import init_db  # noqa: WPS433

    await init_db(db_path)
    repo = OrderRepository(db_path)
    provider = MockPaymentProvider()
    transport = _PrintTransport()
    engine = ConversationEngine(
        SessionStore(MemoryStorage()),
        CheckoutService(repo, provider),
        transport,
        default_channel_id="-1000000000001",
    )
    user = ChatUser(id=4242, username="smoke_user")

    for step in ("plan:1", "pay:crypto", "net:usdt_trc20"):
        await engine.handle(ChatEvent(chat_id=4242, user=user, callback_data=step))
    await engine.handle(ChatEvent(chat_id=4242, user=user, text="+14155551234"))

    session = await engine.sessions.get(4242)
    _assert(session is not None and session.order_id is not None, f"no order on session: {session}")
    order = await repo.get_order(session.order_id)
    _assert(order is not None and order.status == "pending", f"order not pending: {order}")
    _assert(bool(order.pay_address), f"no deposit address: {order}")

    reconciler = WebhookReconciler(repo, provider, secret=IPN_SECRET)
    payload = {"order_id": order.order_id, "payment_status": "finished", "price_amount": order.amount_usd}
    raw = json.dumps(payload).encode("utf-8")
    signature = sign_payload(payload, IPN_SECRET)

    first = await reconciler.handle_callback(raw, signature)
    _assert(first.outcome == "applied", f"first callback not applied: {first}")
    second = await reconciler.handle_callback(raw, signature)
    _assert(second.outcome == "duplicate", f"re-delivery not idempotent: {second}")

    sub = await repo.get_subscriber("@smoke_user")
    _assert(sub is not None and sub.subscription_status == "active", f"subscriber not active: {sub}")
    _assert(sub.expires_on == first.expires_on.isoformat(), f"expiry mismatch: {sub}")

    sweeper = ExpirySweeper(repo)
    _assert((await sweeper.sweep(date.today())).count == 0, "sweep expired a fresh subscription")
    after_expiry = date.fromisoformat(sub.expires_on) + timedelta(days=1)
    _assert((await sweeper.sweep(after_expiry)).count == 1, "sweep did not expire the subscription")
    _assert((await sweeper.sweep(after_expiry)).count == 0, "sweep is not idempotent")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="checkoutbot-smoke-mock-flow-"))
    try:
        db_path = tmpdir / "checkout.db"

        # Minimal env required by src/config.py.
        os.environ["DB_PATH"] = str(db_path)
        os.environ["PAYMENT_PROVIDER"] = "mock"
        os.environ["NOWPAYMENTS_IPN_SECRET"] = IPN_SECRET

        # Make project importable.
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(str(db_path)))
        print("OK: checkout mock flow smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
