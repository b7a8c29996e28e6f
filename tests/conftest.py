from __future__ import annotations

from datetime import datetime, timezone

import pytest
from aiogram.fsm.storage.memory import MemoryStorage

from checkout.conversation import ChatEvent, ChatUser, ConversationEngine
from checkout.errors import ProviderUnavailable
from checkout.models import ORDER_PENDING, Order
from checkout.payments import MockPaymentProvider
from checkout.reconciler import WebhookReconciler
from checkout.repository import OrderRepository
from checkout.service import CheckoutService
from checkout.sessions import SessionStore
from database import init_db


IPN_SECRET = "test-ipn-secret"
CHANNEL_ID = "-1001234567890"


class RecordingTransport:
    """ChatTransport that keeps everything the engine sends."""

    def __init__(self) -> None:
        self.texts: list[tuple[int, str, list | None]] = []
        self.images: list[tuple[int, str, str | None, list | None]] = []
        self.invites: list[str] = []
        self.fail_invite = False

    async def send_text(self, chat_id, text, keyboard=None):
        self.texts.append((chat_id, text, keyboard))

    async def send_image(self, chat_id, url, caption=None, keyboard=None):
        self.images.append((chat_id, url, caption, keyboard))

    async def create_invite(self, channel_id):
        if self.fail_invite:
            raise RuntimeError("bot is not an admin of the channel")
        self.invites.append(channel_id)
        return f"https://t.me/+invite{len(self.invites)}"

    @property
    def last_text(self) -> str:
        return self.texts[-1][1]

    @property
    def last_actions(self) -> list[str]:
        keyboard = self.texts[-1][2] or []
        return [action for row in keyboard for _, action in row]


class DownProvider(MockPaymentProvider):
    async def create_payment(self, **kwargs):
        raise ProviderUnavailable("Provider returned HTTP 502", status=502)


class Chat:
    """One user talking to the engine."""

    def __init__(self, engine: ConversationEngine, chat_id: int = 100, username: str | None = "alice") -> None:
        self.engine = engine
        self.chat_id = chat_id
        self.user = ChatUser(id=chat_id, username=username, full_name="Alice")

    async def say(self, text: str) -> None:
        await self.engine.handle(ChatEvent(chat_id=self.chat_id, user=self.user, text=text))

    async def press(self, action: str) -> None:
        await self.engine.handle(ChatEvent(chat_id=self.chat_id, user=self.user, callback_data=action))

    async def session(self):
        return await self.engine.sessions.get(self.chat_id)


@pytest.fixture
async def db_path(tmp_path):
    path = str(tmp_path / "checkout.db")
    await init_db(path)
    return path


@pytest.fixture
def repository(db_path):
    return OrderRepository(db_path)


@pytest.fixture
def provider():
    return MockPaymentProvider()


@pytest.fixture
def service(repository, provider):
    return CheckoutService(repository, provider, pending_order_window_min=30)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def engine(service, transport):
    return ConversationEngine(
        SessionStore(MemoryStorage(), ttl_sec=3600),
        service,
        transport,
        fiat_checkout_url="https://pay.example.com/checkout",
        support_handle="vip_support",
        default_channel_id=CHANNEL_ID,
    )


@pytest.fixture
def chat(engine):
    return Chat(engine)


@pytest.fixture
def reconciler(repository, provider, engine):
    return WebhookReconciler(
        repository,
        provider,
        secret=IPN_SECRET,
        on_paid=engine.notify_payment_confirmed,
    )


@pytest.fixture
def make_order(repository):
    async def _make(
        order_id: str = "NXT-0001",
        *,
        handle: str = "@alice",
        chat_id: int = 100,
        plan_id: int = 2,
        amount_usd: float = 99.0,
        status: str = ORDER_PENDING,
        provider_payment_id: str | None = None,
    ) -> Order:
        order = Order(
            order_id=order_id,
            user_handle=handle,
            chat_id=chat_id,
            plan_id=plan_id,
            amount_usd=amount_usd,
            pay_currency="usdttrc20",
            pay_network="usdt_trc20",
            status=status,
            created_at=datetime.now(timezone.utc).isoformat(),
            pay_address="TXdeposit",
            pay_amount=amount_usd,
            provider_payment_id=provider_payment_id,
        )
        await repository.create_order(order)
        return order

    return _make
