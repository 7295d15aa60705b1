"""Telegram nudge delivery (NudgeNotifier implementation)."""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import TelegramError

from lingxin.ports.notification_port import DeliveryError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Sends nudges as plain-text chat messages; the chat id is the user id."""

    channel = "telegram"

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, user_id: int, text: str) -> None:
        try:
            await self._bot.send_message(chat_id=user_id, text=text)
        except TelegramError as exc:
            logger.warning("Telegram refused nudge for user %d: %s", user_id, exc)
            raise DeliveryError(user_id, exc.message) from exc
        logger.debug("Nudge delivered to %d", user_id)
