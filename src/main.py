import asyncio

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from config import CFG, is_bot_configured
from logging_setup import configure_logging

configure_logging("checkoutbot")

import logging

from database import init_db
from api_server import create_api_app, start_api_server, stop_api_server
from checkout.conversation import ConversationEngine
from checkout.handlers import AiogramTransport, router
from checkout.maintenance import (
    ExpirySweeper,
    pending_payments_loop,
    startup_payment_reconciliation,
    subscription_expiry_loop,
)
from checkout.reconciler import WebhookReconciler
from checkout.repository import OrderRepository
from checkout.service import CheckoutService, get_payment_provider
from checkout.sessions import SessionStore, build_session_storage


logger = logging.getLogger(__name__)


async def main():
    """Entry point of the checkout bot."""
    if not is_bot_configured():
        raise SystemExit("BOT_TOKEN is not set")

    await init_db()

    bot = Bot(
        token=CFG.token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    storage = build_session_storage()
    dp = Dispatcher(storage=storage)
    dp.include_router(router)

    repository = OrderRepository()
    provider = get_payment_provider()
    service = CheckoutService(repository, provider)
    engine = ConversationEngine(
        SessionStore(storage, bot_id=bot.id),
        service,
        AiogramTransport(bot),
        fiat_checkout_url=CFG.fiat_checkout_url,
        support_handle=CFG.support_handle,
        default_channel_id=CFG.private_channel_id,
    )
    reconciler = WebhookReconciler(
        repository,
        provider,
        secret=CFG.nowpayments_ipn_secret,
        on_paid=engine.notify_payment_confirmed,
    )
    sweeper = ExpirySweeper(repository)
    if not CFG.nowpayments_ipn_secret:
        logger.warning("NOWPAYMENTS_IPN_SECRET is empty: every payment callback will be rejected")

    # Webhook + admin endpoints
    api_app = create_api_app(reconciler=reconciler, sweeper=sweeper, repository=repository)
    api_runner = await start_api_server(api_app)

    # Background jobs
    tasks = [
        asyncio.create_task(startup_payment_reconciliation(provider, reconciler)),
        asyncio.create_task(subscription_expiry_loop(sweeper, interval_sec=CFG.sweep_interval_sec)),
        asyncio.create_task(
            pending_payments_loop(
                repository,
                provider,
                reconciler,
                interval_sec=CFG.pending_poll_interval_sec,
            )
        ),
    ]

    dp["engine"] = engine
    try:
        await dp.start_polling(bot)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await stop_api_server(api_runner)
        await storage.close()
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
