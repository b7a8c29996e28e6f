from datetime import date

from aiogram.fsm.storage.memory import MemoryStorage

from checkout import ui
from checkout.conversation import ConversationEngine
from checkout.maintenance import ExpirySweeper
from checkout.models import ORDER_PENDING, SUBSCRIPTION_ACTIVE
from checkout.payments import MockPaymentProvider
from checkout.sessions import SessionStore, Stage
from database import open_db

from conftest import CHANNEL_ID, Chat, DownProvider


async def _to_whatsapp_step(chat, plan_id=1, network="usdt_trc20"):
    await chat.press(f"plan:{plan_id}")
    await chat.press("pay:crypto")
    await chat.press(f"net:{network}")


async def test_free_text_without_session_only_shows_menu(chat, transport, repository):
    await chat.say("hello?")

    assert transport.last_text == ui.IDLE_HINT_TEXT
    assert ui.CB_PLANS in transport.last_actions
    assert await chat.session() is None
    assert await repository.count_orders() == 0


async def test_start_shows_welcome(chat, transport):
    await chat.say("/start")
    assert transport.last_text == ui.WELCOME_TEXT


async def test_plan_list_has_a_button_per_plan(chat, transport):
    await chat.press(ui.CB_PLANS)
    assert transport.last_actions == ["plan:1", "plan:2", "plan:3", ui.CB_MENU]


async def test_full_checkout_happy_path(chat, transport, repository, reconciler):
    await _to_whatsapp_step(chat, plan_id=2)
    assert (await chat.session()).stage is Stage.AWAITING_WHATSAPP

    await chat.say("+1 (415) 555-1234")
    session = await chat.session()
    assert session.stage is Stage.AWAITING_PAYMENT
    assert session.whatsapp == "+14155551234"
    order = await repository.get_order(session.order_id)
    assert order.status == ORDER_PENDING
    assert order.plan_id == 2
    assert order.pay_address
    chat_id, qr_url, caption, keyboard = transport.images[-1]
    assert qr_url.startswith("https://api.qrserver.com/")
    assert order.order_id in caption

    await chat.press(f"status:{order.order_id}")
    assert transport.last_text == ui.PAYMENT_PENDING_TEXT
    assert (await chat.session()).stage is Stage.AWAITING_PAYMENT

    await reconciler.apply_confirmed(order.order_id, status="finished", source="test")
    assert transport.last_actions == [f"status:{order.order_id}"]

    await chat.press(f"status:{order.order_id}")
    assert (await chat.session()).stage is Stage.AWAITING_FULL_NAME

    await chat.say("Alice   Smith")
    assert (await chat.session()).stage is Stage.AWAITING_EMAIL

    await chat.say("not-an-email")
    assert (await chat.session()).stage is Stage.AWAITING_EMAIL

    await chat.say("Alice@Example.com")
    assert await chat.session() is None
    assert transport.invites == [CHANNEL_ID]
    assert transport.last_actions == ["https://t.me/+invite1"]

    subscriber = await repository.get_subscriber("@alice")
    assert subscriber.subscription_status == SUBSCRIPTION_ACTIVE
    assert subscriber.full_name == "Alice Smith"
    assert subscriber.email == "alice@example.com"
    assert subscriber.whatsapp == "+14155551234"
    assert subscriber.expires_on is not None


async def test_invalid_phone_reprompts_without_creating_an_order(chat, transport, repository):
    await _to_whatsapp_step(chat)

    await chat.say("call me maybe")

    assert (await chat.session()).stage is Stage.AWAITING_WHATSAPP
    assert "valid WhatsApp number" in transport.last_text
    assert transport.images == []
    assert await repository.count_orders() == 0


async def test_new_plan_starts_clean_session(chat, repository):
    await _to_whatsapp_step(chat, plan_id=1)
    await chat.say("+14155551234")
    first_order_id = (await chat.session()).order_id

    await chat.press("plan:3")
    session = await chat.session()
    assert session.stage is Stage.PLAN_SELECTED
    assert session.order_id is None
    assert session.whatsapp is None

    await chat.press("pay:crypto")
    await chat.press("net:btc")
    await chat.say("+14155551234")
    second = await repository.get_order((await chat.session()).order_id)

    assert second.order_id != first_order_id
    assert second.plan_id == 3
    assert second.pay_network == "btc"
    assert await repository.count_orders(handle="@alice") == 2


async def test_second_checkout_for_same_plan_is_blocked(chat, transport, repository):
    await _to_whatsapp_step(chat, plan_id=1)
    await chat.say("+14155551234")

    await _to_whatsapp_step(chat, plan_id=1)
    await chat.say("+14155551234")

    assert await chat.session() is None
    assert transport.last_actions == [ui.CB_PLANS, ui.CB_SUPPORT]
    assert await repository.count_orders() == 1


async def test_active_subscriber_cannot_buy_the_same_plan_again(chat, transport, repository):
    await repository.activate_subscriber("@alice", plan_id=2, expires_on=None)

    await _to_whatsapp_step(chat, plan_id=2)
    await chat.say("+14155551234")

    assert "already have an active" in transport.last_text
    assert await repository.count_orders() == 0


async def test_provider_outage_keeps_stage_and_offers_retry(service, transport, repository):
    service.provider = DownProvider()
    engine = ConversationEngine(SessionStore(MemoryStorage()), service, transport)
    chat = Chat(engine)
    await _to_whatsapp_step(chat)

    await chat.say("+14155551234")

    assert (await chat.session()).stage is Stage.AWAITING_WHATSAPP
    assert transport.last_text == ui.PROVIDER_UNAVAILABLE_TEXT
    assert ui.CB_PAY_RETRY in transport.last_actions
    assert await repository.count_orders() == 1

    service.provider = MockPaymentProvider()
    await chat.press(ui.CB_PAY_RETRY)

    session = await chat.session()
    assert session.stage is Stage.AWAITING_PAYMENT
    assert (await repository.get_order(session.order_id)).status == ORDER_PENDING
    assert await repository.count_orders() == 2


async def test_cancel_discards_session(chat, transport):
    await chat.press("plan:1")
    await chat.press("pay:crypto")

    await chat.press(ui.CB_CANCEL)

    assert await chat.session() is None
    assert transport.last_text == ui.CANCELLED_TEXT


async def test_stale_button_does_not_touch_session(chat, transport):
    await chat.press("plan:1")

    await chat.press("net:btc")

    assert transport.last_text == ui.STALE_ACTION_TEXT
    assert (await chat.session()).stage is Stage.PLAN_SELECTED


async def test_fiat_redirect_ends_the_session(chat, transport):
    await chat.press("plan:2")

    await chat.press(ui.CB_PAY_FIAT)

    assert await chat.session() is None
    assert transport.last_actions[0] == "https://pay.example.com/checkout?plan=2"


async def test_fiat_without_checkout_url_stays_on_plan(service, transport):
    engine = ConversationEngine(SessionStore(MemoryStorage()), service, transport)
    chat = Chat(engine)
    await chat.press("plan:2")

    await chat.press(ui.CB_PAY_FIAT)

    assert transport.last_text == ui.FIAT_UNAVAILABLE_TEXT
    assert (await chat.session()).stage is Stage.PLAN_SELECTED


async def test_invite_failure_tells_user_to_contact_support(chat, transport, repository, reconciler):
    transport.fail_invite = True
    await _to_whatsapp_step(chat)
    await chat.say("+14155551234")
    order_id = (await chat.session()).order_id
    await reconciler.apply_confirmed(order_id, status="finished", source="test")
    await chat.press(f"status:{order_id}")
    await chat.say("Alice Smith")

    await chat.say("alice@example.com")

    assert transport.last_text == ui.ACCESS_FAILED_TEXT
    assert await chat.session() is None
    assert (await repository.get_subscriber("@alice")).email == "alice@example.com"


async def test_status_button_resumes_after_lost_session(chat, engine, repository, reconciler):
    await _to_whatsapp_step(chat)
    await chat.say("+14155551234")
    order_id = (await chat.session()).order_id
    await engine.sessions.discard(chat.chat_id)
    await reconciler.apply_confirmed(order_id, status="finished", source="test")

    await chat.press(f"status:{order_id}")

    session = await chat.session()
    assert session.stage is Stage.AWAITING_FULL_NAME
    assert session.order_id == order_id


async def test_status_button_of_another_chat_is_rejected(engine, transport, repository):
    owner = Chat(engine, chat_id=100, username="alice")
    other = Chat(engine, chat_id=200, username="mallory")
    await _to_whatsapp_step(owner)
    await owner.say("+14155551234")
    order_id = (await owner.session()).order_id

    await other.press(f"status:{order_id}")

    assert transport.last_text == ui.STALE_ACTION_TEXT
    assert await other.session() is None


async def test_user_without_username_gets_a_stable_handle(engine, repository):
    chat = Chat(engine, chat_id=300, username=None)
    await _to_whatsapp_step(chat)
    await chat.say("+14155551234")

    order = await repository.get_order((await chat.session()).order_id)
    assert order.user_handle == "tg:300"


async def _paid_and_registered(chat, reconciler):
    await _to_whatsapp_step(chat)
    await chat.say("+14155551234")
    order_id = (await chat.session()).order_id
    await reconciler.apply_confirmed(order_id, status="finished", source="test")
    await chat.press(f"status:{order_id}")
    await chat.say("Alice Smith")
    await chat.say("alice@example.com")
    return order_id


async def test_completed_order_cannot_issue_a_second_invite(chat, transport, repository, reconciler):
    order_id = await _paid_and_registered(chat, reconciler)
    assert len(transport.invites) == 1
    assert (await repository.get_order(order_id)).finalized_at is not None

    await chat.press(f"status:{order_id}")

    assert transport.last_text == ui.ALREADY_FINALIZED_TEXT
    assert await chat.session() is None
    assert len(transport.invites) == 1


async def test_expired_subscriber_cannot_replay_the_status_button(chat, transport, repository, reconciler):
    order_id = await _paid_and_registered(chat, reconciler)
    swept = await ExpirySweeper(repository).sweep(date(2099, 1, 1))
    assert swept.handles == ["@alice"]

    await chat.press(f"status:{order_id}")
    await chat.say("Alice Smith")
    await chat.say("alice@example.com")

    assert len(transport.invites) == 1
    assert await chat.session() is None


async def test_paid_order_without_active_subscription_does_not_resume(chat, transport, repository, reconciler):
    await _to_whatsapp_step(chat)
    await chat.say("+14155551234")
    order_id = (await chat.session()).order_id
    await reconciler.apply_confirmed(order_id, status="finished", source="test")
    await ExpirySweeper(repository).sweep(date(2099, 1, 1))

    await chat.press(f"status:{order_id}")

    assert transport.last_text == ui.ACCESS_NOT_ACTIVE_TEXT
    assert await chat.session() is None
    assert transport.invites == []


async def test_invite_failure_leaves_the_order_open_for_a_retry(chat, transport, repository, reconciler):
    transport.fail_invite = True
    order_id = await _paid_and_registered(chat, reconciler)
    assert transport.last_text == ui.ACCESS_FAILED_TEXT
    assert (await repository.get_order(order_id)).finalized_at is None

    transport.fail_invite = False
    await chat.press(f"status:{order_id}")
    await chat.say("Alice Smith")
    await chat.say("alice@example.com")

    assert transport.invites == [CHANNEL_ID]
    assert (await repository.get_order(order_id)).finalized_at is not None


async def test_fiat_for_a_plan_retired_mid_flow_shows_the_plans(chat, transport, db_path):
    await chat.press("plan:2")
    async with open_db(db_path) as db:
        await db.execute("UPDATE plans SET is_active = 0 WHERE id = 2")
        await db.commit()

    await chat.press(ui.CB_PAY_FIAT)

    assert await chat.session() is None
    assert any(text == "This plan is no longer available." for _, text, _ in transport.texts)
    assert transport.last_actions == ["plan:1", "plan:3", ui.CB_MENU]
