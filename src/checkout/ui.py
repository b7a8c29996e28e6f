"""Texts and keyboards of the checkout conversation.

Keyboards are rows of (label, action) pairs. Actions are opaque tokens routed
back to the conversation engine; an action starting with https:// is a link.
"""

from __future__ import annotations

import html
from urllib.parse import quote_plus, urlencode

from checkout.models import Order, Plan, Subscriber
from checkout.plans import PAYMENT_NETWORKS, network_title, plan_term_title


Keyboard = list[list[tuple[str, str]]]

CB_MENU = "menu:main"
CB_PLANS = "menu:plans"
CB_SUPPORT = "menu:support"
CB_CANCEL = "menu:cancel"
CB_PLAN_PREFIX = "plan:"
CB_PAY_CRYPTO = "pay:crypto"
CB_PAY_FIAT = "pay:fiat"
CB_PAY_RETRY = "pay:retry"
CB_NETWORK_PREFIX = "net:"
CB_STATUS_PREFIX = "status:"

BTN_PLANS = "💎 View plans"
BTN_SUPPORT = "💬 Contact support"
BTN_CANCEL = "❌ Cancel"
BTN_MAIN_MENU = "🏠 Main menu"

WELCOME_TEXT = (
    "👋 <b>Welcome to the VIP club!</b>\n\n"
    "Pick a plan, pay in crypto, and get your private channel invite "
    "right here in the chat."
)
IDLE_HINT_TEXT = "Use the menu below to pick a plan."
CANCELLED_TEXT = "Checkout cancelled. Nothing was charged."
STALE_ACTION_TEXT = "This button is no longer active."
USE_BUTTONS_TEXT = "Please use the buttons above to continue."
PLANS_EMPTY_TEXT = "No plans are available right now. Please check back later."
ASK_WHATSAPP_TEXT = (
    "📱 Send your <b>WhatsApp number</b> in international format, e.g. <code>+14155551234</code>.\n"
    "We use it only for subscription support."
)
ASK_FULL_NAME_TEXT = "✅ <b>Payment confirmed!</b>\n\nPlease send your <b>full name</b>."
ASK_EMAIL_TEXT = "Thanks! Now send your <b>email address</b>."
AWAITING_PAYMENT_TEXT = "Send the payment to the address above, then tap <b>Check payment status</b>."
PAYMENT_PENDING_TEXT = (
    "⏳ Payment not confirmed yet. Crypto transfers can take a few minutes "
    "to reach enough confirmations. Try again shortly."
)
PAYMENT_FAILED_TEXT = "This payment could not be completed. Please start a new checkout."
PROVIDER_UNAVAILABLE_TEXT = (
    "⚠️ The payment service is temporarily unavailable. "
    "Please try again in a moment."
)
STORE_UNAVAILABLE_TEXT = "⚠️ Something went wrong on our side. Please try again in a minute."
FIAT_UNAVAILABLE_TEXT = "Card payments aren't available right now. Please choose crypto."
ACCESS_FAILED_TEXT = (
    "We confirmed your payment, but there was an issue granting you access. "
    "Please contact support."
)
ALREADY_FINALIZED_TEXT = (
    "Your invite for this order was already issued. "
    "If you lost it, please contact support."
)
ACCESS_NOT_ACTIVE_TEXT = (
    "This order no longer grants access: the subscription is not active. "
    "Pick a plan to renew, or contact support."
)


def main_menu_keyboard() -> Keyboard:
    return [[(BTN_PLANS, CB_PLANS)], [(BTN_SUPPORT, CB_SUPPORT)]]


def _format_price(value: float) -> str:
    return f"${value:,.0f}" if float(value).is_integer() else f"${value:,.2f}"


def plans_text(plans: list[Plan]) -> str:
    if not plans:
        return PLANS_EMPTY_TEXT
    lines = ["💎 <b>Choose your plan</b>", ""]
    for plan in plans:
        lines.append(
            f"• <b>{html.escape(plan.name)}</b> ({plan_term_title(plan)}) - {_format_price(plan.price_usd)}"
        )
    return "\n".join(lines)


def plans_keyboard(plans: list[Plan]) -> Keyboard:
    rows: Keyboard = [
        [(f"{plan.name} · {_format_price(plan.price_usd)}", f"{CB_PLAN_PREFIX}{plan.id}")]
        for plan in plans
    ]
    rows.append([(BTN_MAIN_MENU, CB_MENU)])
    return rows


def plan_details_text(plan: Plan) -> str:
    lines = [
        f"<b>{html.escape(plan.name)}</b>",
        f"Price: <b>{_format_price(plan.price_usd)}</b> for {plan_term_title(plan)}",
    ]
    if plan.features:
        lines.append("")
        lines.extend(f"✔️ {html.escape(feature)}" for feature in plan.features)
    lines.extend(["", "How would you like to pay?"])
    return "\n".join(lines)


def payment_method_keyboard() -> Keyboard:
    return [
        [("🪙 Crypto", CB_PAY_CRYPTO), ("💳 Card", CB_PAY_FIAT)],
        [(BTN_CANCEL, CB_CANCEL)],
    ]


def networks_text() -> str:
    return "Choose the coin and network you'll pay with:"


def networks_keyboard() -> Keyboard:
    rows: Keyboard = [[(title, f"{CB_NETWORK_PREFIX}{code}")] for code, (title, _) in PAYMENT_NETWORKS.items()]
    rows.append([(BTN_CANCEL, CB_CANCEL)])
    return rows


def fiat_redirect_url(base_url: str, plan: Plan) -> str:
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{urlencode({'plan': plan.id})}"


def fiat_redirect_text(plan: Plan) -> str:
    return (
        f"💳 Complete your <b>{html.escape(plan.name)}</b> payment on our secure checkout page. "
        "Your access details will be sent by email."
    )


def fiat_redirect_keyboard(url: str) -> Keyboard:
    return [[("Open checkout page", url)], [(BTN_MAIN_MENU, CB_MENU)]]


def payment_qr_url(address: str) -> str:
    return f"https://api.qrserver.com/v1/create-qr-code/?size=400x400&data={quote_plus(address)}"


def payment_caption(order: Order) -> str:
    amount = f"{order.pay_amount:g}" if order.pay_amount is not None else "-"
    return (
        f"🧾 Order <code>{html.escape(order.order_id)}</code>\n"
        f"Network: <b>{html.escape(network_title(order.pay_network))}</b>\n"
        f"Amount: <b>{amount} {html.escape(order.pay_currency.upper())}</b> "
        f"(≈ {_format_price(order.amount_usd)})\n\n"
        f"Address:\n<code>{html.escape(order.pay_address or '')}</code>\n\n"
        "Send exactly this amount. We'll confirm as soon as the network does."
    )


def payment_keyboard(order_id: str) -> Keyboard:
    return [
        [("🔄 Check payment status", f"{CB_STATUS_PREFIX}{order_id}")],
        [(BTN_CANCEL, CB_CANCEL)],
    ]


def provider_retry_keyboard() -> Keyboard:
    return [[("🔁 Try again", CB_PAY_RETRY)], [(BTN_CANCEL, CB_CANCEL)]]


def duplicate_order_text(message: str) -> str:
    return f"🚫 {html.escape(message)}\n\nYou can pick a different plan or contact support."


def duplicate_order_keyboard() -> Keyboard:
    return [[("💎 Pick a different plan", CB_PLANS)], [(BTN_SUPPORT, CB_SUPPORT)]]


def support_text(support_handle: str) -> str:
    if not support_handle:
        return "Support will reply to messages in this chat."
    return f"💬 Contact support: @{html.escape(support_handle)}"


def support_keyboard(support_handle: str) -> Keyboard:
    rows: Keyboard = []
    if support_handle:
        rows.append([("Open support chat", f"https://t.me/{support_handle}")])
    rows.append([(BTN_MAIN_MENU, CB_MENU)])
    return rows


def payment_confirmed_text(order: Order) -> str:
    return (
        f"✅ Payment for order <code>{html.escape(order.order_id)}</code> has been received.\n"
        "Tap <b>Continue</b> to finish your registration."
    )


def payment_confirmed_keyboard(order_id: str) -> Keyboard:
    return [[("➡️ Continue", f"{CB_STATUS_PREFIX}{order_id}")]]


def welcome_member_text(plan: Plan, subscriber: Subscriber) -> str:
    expiry = f"\nYour subscription is active until <b>{subscriber.expires_on}</b>." if subscriber.expires_on else ""
    return (
        f"🎉 Welcome, {html.escape(subscriber.full_name or 'friend')}! "
        f"Your <b>{html.escape(plan.name)}</b> access is ready.{expiry}\n\n"
        "Here is your one-time invite link to the VIP channel. It can only be used once."
    )


def invite_keyboard(invite_url: str) -> Keyboard:
    return [[("Join VIP Channel", invite_url)]]
