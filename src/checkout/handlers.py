"""aiogram glue for the checkout conversation."""

from __future__ import annotations

import logging

from aiogram import Bot, F, Router
from aiogram.exceptions import TelegramAPIError
from aiogram.types import CallbackQuery, LinkPreviewOptions, Message

from checkout.conversation import ChatEvent, ChatUser, ConversationEngine
from checkout.ui import Keyboard
from tg_buttons import build_inline_keyboard

logger = logging.getLogger(__name__)
router = Router()


class AiogramTransport:
    """ChatTransport over a live Bot."""

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def send_text(self, chat_id: int, text: str, keyboard: Keyboard | None = None) -> None:
        await self.bot.send_message(
            chat_id,
            text,
            reply_markup=build_inline_keyboard(keyboard),
            link_preview_options=LinkPreviewOptions(is_disabled=True),
        )

    async def send_image(
        self,
        chat_id: int,
        url: str,
        caption: str | None = None,
        keyboard: Keyboard | None = None,
    ) -> None:
        markup = build_inline_keyboard(keyboard)
        try:
            await self.bot.send_photo(chat_id, photo=url, caption=caption, reply_markup=markup)
        except TelegramAPIError:
            # QR service unreachable from Telegram; the caption alone still carries the address.
            logger.warning("send_photo failed for chat %s, falling back to text", chat_id, exc_info=True)
            await self.bot.send_message(chat_id, caption or url, reply_markup=markup)

    async def create_invite(self, channel_id: str) -> str:
        chat_ref: int | str = int(channel_id) if channel_id.lstrip("-").isdigit() else channel_id
        link = await self.bot.create_chat_invite_link(chat_ref, member_limit=1)
        return link.invite_link


def _user_from(tg_user) -> ChatUser:
    return ChatUser(id=int(tg_user.id), username=tg_user.username, full_name=tg_user.full_name)


def event_from_message(message: Message) -> ChatEvent | None:
    if message.from_user is None:
        return None
    return ChatEvent(chat_id=message.chat.id, user=_user_from(message.from_user), text=message.text)


def event_from_callback(callback: CallbackQuery) -> ChatEvent | None:
    if callback.message is None:
        return None
    return ChatEvent(
        chat_id=callback.message.chat.id,
        user=_user_from(callback.from_user),
        callback_data=callback.data,
    )


@router.message(F.chat.type == "private", F.text)
async def on_text(message: Message, engine: ConversationEngine) -> None:
    event = event_from_message(message)
    if event is None:
        return
    await engine.handle(event)


@router.callback_query(F.data)
async def on_action(callback: CallbackQuery, engine: ConversationEngine) -> None:
    await callback.answer()
    event = event_from_callback(callback)
    if event is None:
        return
    await engine.handle(event)
