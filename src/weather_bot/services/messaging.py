"""Outbound Telegram delivery built on python-telegram-bot's ``Bot``."""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from telegram import Bot
from telegram.error import RetryAfter, TelegramError, TimedOut

LOGGER = logging.getLogger("weather_bot.messaging")

_BACKOFF_SCHEDULE = (0.5, 1.0, 2.0)
ALLOWED_UPDATES = ("message", "edited_message")


class DeliveryError(RuntimeError):
    """Raised when Telegram does not accept a request."""


def _retry_delay(exc: RetryAfter, fallback: float) -> float:
    value = getattr(exc, "retry_after", None)
    if isinstance(value, timedelta):
        return max(0.0, value.total_seconds())
    if isinstance(value, (int, float)):
        return max(0.0, float(value))
    return fallback


class TelegramGateway:
    """Sends replies and broadcasts, and points Telegram's webhook at us."""

    def __init__(
        self,
        token: str | None = None,
        *,
        bot: Bot | None = None,
        backoff: tuple[float, ...] = _BACKOFF_SCHEDULE,
    ) -> None:
        if bot is None:
            if not token:
                raise RuntimeError("BOT_TOKEN is required to talk to Telegram")
            bot = Bot(token)
        self._bot = bot
        self._backoff = backoff

    @property
    def bot(self) -> Bot:
        return self._bot

    async def initialize(self) -> None:
        await self._bot.initialize()

    async def shutdown(self) -> None:
        await self._bot.shutdown()

    async def send(self, chat_id: int | str, text: str) -> None:
        for attempt, backoff in enumerate(self._backoff, start=1):
            try:
                await self._bot.send_message(chat_id=chat_id, text=text)
                return
            except RetryAfter as exc:
                delay = _retry_delay(exc, backoff)
                LOGGER.warning(
                    "Telegram rate limit hit for chat %s, retry %s/%s in %.1fs",
                    chat_id,
                    attempt,
                    len(self._backoff),
                    delay,
                )
                await asyncio.sleep(delay)
            except TimedOut:
                LOGGER.warning(
                    "Telegram timed out for chat %s, retry %s/%s in %.1fs",
                    chat_id,
                    attempt,
                    len(self._backoff),
                    backoff,
                )
                await asyncio.sleep(backoff)
            except TelegramError as exc:
                raise DeliveryError(f"Telegram API error for chat {chat_id}: {exc}") from exc
        raise DeliveryError(f"Telegram API unavailable for chat {chat_id} after retries")

    async def register_endpoint(self, url: str, *, secret_token: str | None = None) -> bool:
        """Register ``url`` as the webhook for inbound updates."""

        try:
            registered = await self._bot.set_webhook(
                url=url,
                allowed_updates=list(ALLOWED_UPDATES),
                secret_token=secret_token,
            )
        except TelegramError as exc:
            raise DeliveryError(f"Failed to register webhook {url}: {exc}") from exc
        LOGGER.info("Webhook registered url=%s ok=%s", url, registered)
        return bool(registered)
