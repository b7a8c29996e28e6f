"""Checkout conversation state machine.

The engine is transport-agnostic: it receives ChatEvent objects and answers
through a ChatTransport. Telegram glue lives in checkout.handlers.

Stages (see checkout.sessions.Stage):

    idle -> plan_selected -> network_choice -> awaiting_whatsapp
         -> awaiting_payment -> awaiting_full_name -> awaiting_email
         -> finalizing -> complete

plan_selected may also leave through fiat_redirect. Cancel / main menu return
to idle from any stage. Terminal stages discard the session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from checkout import ui
from checkout.errors import (
    DuplicateOrderError,
    NotFoundError,
    ProviderUnavailable,
    StoreUnavailable,
    ValidationError,
)
from checkout.models import ORDER_FAILED, Order
from checkout.plans import PAYMENT_NETWORKS
from checkout.service import CheckoutService
from checkout.sessions import ChatSequencer, Session, SessionStore, Stage
from checkout.validation import normalize_email, normalize_full_name, normalize_phone


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChatUser:
    id: int
    username: str | None = None
    full_name: str | None = None

    @property
    def handle(self) -> str:
        """Stable subscriber key: @username, or tg:<id> for users without one."""
        if self.username:
            return f"@{self.username.lstrip('@')}"
        return f"tg:{self.id}"


@dataclass(frozen=True, slots=True)
class ChatEvent:
    chat_id: int
    user: ChatUser
    text: str | None = None
    callback_data: str | None = None


class ChatTransport(Protocol):
    async def send_text(self, chat_id: int, text: str, keyboard: ui.Keyboard | None = None) -> None:
        ...

    async def send_image(
        self,
        chat_id: int,
        url: str,
        caption: str | None = None,
        keyboard: ui.Keyboard | None = None,
    ) -> None:
        ...

    async def create_invite(self, channel_id: str) -> str:
        """Return a one-time invite link to the channel."""
        ...


class ConversationEngine:
    def __init__(
        self,
        sessions: SessionStore,
        service: CheckoutService,
        transport: ChatTransport,
        *,
        sequencer: ChatSequencer | None = None,
        fiat_checkout_url: str = "",
        support_handle: str = "",
        default_channel_id: str = "",
    ) -> None:
        self.sessions = sessions
        self.service = service
        self.transport = transport
        self.sequencer = sequencer or ChatSequencer()
        self.fiat_checkout_url = fiat_checkout_url
        self.support_handle = support_handle
        self.default_channel_id = default_channel_id

    async def handle(self, event: ChatEvent) -> None:
        """Process one inbound event; events of the same chat never interleave."""
        async with self.sequencer.hold(event.chat_id):
            try:
                await self._dispatch(event)
            except StoreUnavailable:
                logger.exception("Order store unavailable while handling chat %s", event.chat_id)
                await self.transport.send_text(event.chat_id, ui.STORE_UNAVAILABLE_TEXT)

    async def _dispatch(self, event: ChatEvent) -> None:
        session = await self.sessions.get(event.chat_id)
        if event.callback_data:
            await self._on_action(event, session, event.callback_data.strip())
            return

        text = (event.text or "").strip()
        if text.startswith("/"):
            await self._on_command(event, session, text)
            return
        await self._on_text(event, session, text)

    # ---- commands & actions ------------------------------------------------

    async def _on_command(self, event: ChatEvent, session: Session | None, text: str) -> None:
        command = text.split()[0].split("@", 1)[0].lower()
        if command == "/start":
            await self._reset(event.chat_id, session)
            await self.transport.send_text(event.chat_id, ui.WELCOME_TEXT, ui.main_menu_keyboard())
        elif command == "/cancel":
            await self._cancel(event.chat_id, session)
        elif command == "/plans":
            await self._show_plans(event.chat_id)
        elif command == "/support":
            await self._show_support(event.chat_id)
        else:
            await self._on_text(event, session, text)

    async def _on_action(self, event: ChatEvent, session: Session | None, action: str) -> None:
        chat_id = event.chat_id
        if action == ui.CB_MENU:
            await self._reset(chat_id, session)
            await self.transport.send_text(chat_id, ui.WELCOME_TEXT, ui.main_menu_keyboard())
        elif action == ui.CB_CANCEL:
            await self._cancel(chat_id, session)
        elif action == ui.CB_PLANS:
            await self._show_plans(chat_id)
        elif action == ui.CB_SUPPORT:
            await self._show_support(chat_id)
        elif action.startswith(ui.CB_PLAN_PREFIX):
            await self._select_plan(event, session, action.removeprefix(ui.CB_PLAN_PREFIX))
        elif action == ui.CB_PAY_CRYPTO:
            await self._choose_crypto(chat_id, session)
        elif action == ui.CB_PAY_FIAT:
            await self._choose_fiat(chat_id, session)
        elif action.startswith(ui.CB_NETWORK_PREFIX):
            await self._choose_network(chat_id, session, action.removeprefix(ui.CB_NETWORK_PREFIX))
        elif action == ui.CB_PAY_RETRY:
            if session is None or session.stage != Stage.AWAITING_WHATSAPP or not session.whatsapp:
                await self._stale(chat_id)
                return
            await self._create_payment(session)
        elif action.startswith(ui.CB_STATUS_PREFIX):
            await self._check_status(event, session, action.removeprefix(ui.CB_STATUS_PREFIX))
        else:
            await self._stale(chat_id)

    async def _on_text(self, event: ChatEvent, session: Session | None, text: str) -> None:
        chat_id = event.chat_id
        if session is None or session.stage == Stage.IDLE:
            await self.transport.send_text(chat_id, ui.IDLE_HINT_TEXT, ui.main_menu_keyboard())
            return

        if session.stage == Stage.AWAITING_WHATSAPP:
            try:
                session.whatsapp = normalize_phone(text)
            except ValidationError as error:
                await self.transport.send_text(chat_id, str(error))
                return
            session.order_id = None
            await self.sessions.save(session)
            await self._create_payment(session)
        elif session.stage == Stage.AWAITING_FULL_NAME:
            try:
                session.full_name = normalize_full_name(text)
            except ValidationError as error:
                await self.transport.send_text(chat_id, str(error))
                return
            session.stage = Stage.AWAITING_EMAIL
            await self.sessions.save(session)
            await self.transport.send_text(chat_id, ui.ASK_EMAIL_TEXT)
        elif session.stage == Stage.AWAITING_EMAIL:
            try:
                session.email = normalize_email(text)
            except ValidationError as error:
                await self.transport.send_text(chat_id, str(error))
                return
            session.stage = Stage.FINALIZING
            await self.sessions.save(session)
            await self._finalize(session)
        elif session.stage == Stage.AWAITING_PAYMENT and session.order_id:
            await self.transport.send_text(chat_id, ui.AWAITING_PAYMENT_TEXT, ui.payment_keyboard(session.order_id))
        else:
            await self.transport.send_text(chat_id, ui.USE_BUTTONS_TEXT)

    # ---- transitions -------------------------------------------------------

    async def _reset(self, chat_id: int, session: Session | None) -> None:
        if session is not None:
            await self.sessions.discard(chat_id)

    async def _cancel(self, chat_id: int, session: Session | None) -> None:
        if session is not None:
            logger.info("Checkout cancelled: chat=%s stage=%s order=%s", chat_id, session.stage.value, session.order_id)
        await self._reset(chat_id, session)
        await self.transport.send_text(chat_id, ui.CANCELLED_TEXT, ui.main_menu_keyboard())

    async def _stale(self, chat_id: int) -> None:
        await self.transport.send_text(chat_id, ui.STALE_ACTION_TEXT, ui.main_menu_keyboard())

    async def _show_plans(self, chat_id: int) -> None:
        plans = await self.service.list_plans()
        await self.transport.send_text(chat_id, ui.plans_text(plans), ui.plans_keyboard(plans))

    async def _show_support(self, chat_id: int) -> None:
        await self.transport.send_text(
            chat_id,
            ui.support_text(self.support_handle),
            ui.support_keyboard(self.support_handle),
        )

    async def _select_plan(self, event: ChatEvent, session: Session | None, raw_plan_id: str) -> None:
        chat_id = event.chat_id
        # A new plan always starts a fresh session; nothing from the old order carries over.
        await self._reset(chat_id, session)
        try:
            plan = await self.service.get_plan(int(raw_plan_id))
        except ValueError:
            await self._stale(chat_id)
            return
        except NotFoundError as error:
            await self.transport.send_text(chat_id, str(error))
            await self._show_plans(chat_id)
            return

        fresh = Session(chat_id=chat_id, handle=event.user.handle, stage=Stage.PLAN_SELECTED, plan_id=plan.id)
        await self.sessions.save(fresh)
        await self.transport.send_text(chat_id, ui.plan_details_text(plan), ui.payment_method_keyboard())

    async def _choose_crypto(self, chat_id: int, session: Session | None) -> None:
        if session is None or session.stage != Stage.PLAN_SELECTED:
            await self._stale(chat_id)
            return
        session.stage = Stage.NETWORK_CHOICE
        await self.sessions.save(session)
        await self.transport.send_text(chat_id, ui.networks_text(), ui.networks_keyboard())

    async def _choose_fiat(self, chat_id: int, session: Session | None) -> None:
        if session is None or session.stage != Stage.PLAN_SELECTED or session.plan_id is None:
            await self._stale(chat_id)
            return
        if not self.fiat_checkout_url:
            await self.transport.send_text(chat_id, ui.FIAT_UNAVAILABLE_TEXT, ui.payment_method_keyboard())
            return

        try:
            plan = await self.service.get_plan(session.plan_id)
        except NotFoundError as error:
            await self.sessions.discard(chat_id)
            await self.transport.send_text(chat_id, str(error))
            await self._show_plans(chat_id)
            return
        url = ui.fiat_redirect_url(self.fiat_checkout_url, plan)
        session.stage = Stage.FIAT_REDIRECT
        logger.info("Fiat redirect: chat=%s plan=%s", chat_id, plan.id)
        await self.transport.send_text(chat_id, ui.fiat_redirect_text(plan), ui.fiat_redirect_keyboard(url))
        await self.sessions.discard(chat_id)

    async def _choose_network(self, chat_id: int, session: Session | None, network: str) -> None:
        if session is None or session.stage != Stage.NETWORK_CHOICE or network not in PAYMENT_NETWORKS:
            await self._stale(chat_id)
            return
        session.payment_network = network
        session.order_id = None
        session.stage = Stage.AWAITING_WHATSAPP
        await self.sessions.save(session)
        await self.transport.send_text(chat_id, ui.ASK_WHATSAPP_TEXT)

    async def _create_payment(self, session: Session) -> None:
        """Create the order and show the deposit address."""
        chat_id = session.chat_id
        if session.plan_id is None or not session.payment_network or not session.whatsapp:
            await self._stale(chat_id)
            return
        try:
            order = await self.service.start_payment(
                handle=session.handle,
                chat_id=chat_id,
                plan_id=session.plan_id,
                network=session.payment_network,
                whatsapp=session.whatsapp,
            )
        except DuplicateOrderError as error:
            logger.info("Duplicate checkout blocked: handle=%s plan=%s reason=%s", error.handle, error.plan_id, error.reason)
            await self.sessions.discard(chat_id)
            await self.transport.send_text(chat_id, ui.duplicate_order_text(str(error)), ui.duplicate_order_keyboard())
            return
        except ProviderUnavailable as error:
            logger.warning("Payment creation failed: chat=%s stage=%s: %s", chat_id, session.stage.value, error)
            await self.transport.send_text(chat_id, ui.PROVIDER_UNAVAILABLE_TEXT, ui.provider_retry_keyboard())
            return
        except (NotFoundError, ValidationError) as error:
            await self.sessions.discard(chat_id)
            await self.transport.send_text(chat_id, str(error), ui.main_menu_keyboard())
            return

        session.order_id = order.order_id
        session.stage = Stage.AWAITING_PAYMENT
        await self.sessions.save(session)
        await self.transport.send_image(
            chat_id,
            ui.payment_qr_url(order.pay_address or ""),
            caption=ui.payment_caption(order),
            keyboard=ui.payment_keyboard(order.order_id),
        )

    async def _check_status(self, event: ChatEvent, session: Session | None, order_id: str) -> None:
        chat_id = event.chat_id
        order = await self.service.find_order(order_id)
        if order is None or order.chat_id != chat_id:
            await self._stale(chat_id)
            return

        if session is None or session.order_id != order.order_id:
            if session is not None and session.stage not in (Stage.IDLE, Stage.AWAITING_PAYMENT):
                await self._stale(chat_id)
                return
            # Resume after a restart or session expiry: the order row is the source of truth.
            session = Session(
                chat_id=chat_id,
                handle=order.user_handle,
                stage=Stage.AWAITING_PAYMENT,
                plan_id=order.plan_id,
                payment_network=order.pay_network,
                order_id=order.order_id,
            )
        elif session.stage != Stage.AWAITING_PAYMENT:
            await self.transport.send_text(chat_id, ui.USE_BUTTONS_TEXT)
            return

        if order.is_paid:
            if order.finalized_at:
                await self.sessions.discard(chat_id)
                await self.transport.send_text(chat_id, ui.ALREADY_FINALIZED_TEXT, ui.support_keyboard(self.support_handle))
                return
            if not await self.service.grants_access(order):
                logger.info("Paid order %s does not grant access any more: handle=%s", order.order_id, order.user_handle)
                await self.sessions.discard(chat_id)
                await self.transport.send_text(chat_id, ui.ACCESS_NOT_ACTIVE_TEXT, ui.duplicate_order_keyboard())
                return
            session.stage = Stage.AWAITING_FULL_NAME
            await self.sessions.save(session)
            await self.transport.send_text(chat_id, ui.ASK_FULL_NAME_TEXT)
        elif order.status == ORDER_FAILED:
            await self.sessions.discard(chat_id)
            await self.transport.send_text(chat_id, ui.PAYMENT_FAILED_TEXT, ui.main_menu_keyboard())
        else:
            await self.sessions.save(session)
            await self.transport.send_text(chat_id, ui.PAYMENT_PENDING_TEXT, ui.payment_keyboard(order.order_id))

    async def _finalize(self, session: Session) -> None:
        chat_id = session.chat_id
        order_id = session.order_id
        # One invite per paid order, across sessions and restarts.
        if not order_id or not await self.service.claim_finalization(order_id):
            logger.warning("Finalize refused, invite already issued: chat=%s order=%s", chat_id, order_id)
            await self.sessions.discard(chat_id)
            await self.transport.send_text(chat_id, ui.ALREADY_FINALIZED_TEXT, ui.support_keyboard(self.support_handle))
            return
        try:
            subscriber = await self.service.complete_registration(
                handle=session.handle,
                chat_id=chat_id,
                full_name=session.full_name or "",
                email=session.email or "",
            )
            plan = await self.service.get_plan(subscriber.plan_id or session.plan_id or 0)
            channel_id = plan.channel_id or self.default_channel_id
            if not channel_id:
                raise NotFoundError(f"No channel configured for plan {plan.id}")
            invite_url = await self.transport.create_invite(channel_id)
        except Exception:
            logger.exception("Finalize failed: chat=%s handle=%s order=%s", chat_id, session.handle, session.order_id)
            await self.service.release_finalization(order_id)
            await self.sessions.discard(chat_id)
            await self.transport.send_text(chat_id, ui.ACCESS_FAILED_TEXT, ui.support_keyboard(self.support_handle))
            return

        session.stage = Stage.COMPLETE
        logger.info("Checkout complete: handle=%s order=%s plan=%s", session.handle, session.order_id, plan.id)
        await self.transport.send_text(
            chat_id,
            ui.welcome_member_text(plan, subscriber),
            ui.invite_keyboard(invite_url),
        )
        await self.sessions.discard(chat_id)

    # ---- outbound ----------------------------------------------------------

    async def notify_payment_confirmed(self, order: Order) -> None:
        """Tell the buyer their payment cleared; the Continue button resumes the flow."""
        await self.transport.send_text(
            order.chat_id,
            ui.payment_confirmed_text(order),
            ui.payment_confirmed_keyboard(order.order_id),
        )
