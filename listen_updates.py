#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Routes inbound Telegram updates onto the registered command handlers."""
from __future__ import annotations

import asyncio
import logging
import weakref
from collections import OrderedDict
from typing import Any, Iterable, Optional

import listen_start

__all__ = ["UpdateRouter", "extract_message", "normalise_command_text"]

LOGGER = logging.getLogger("weather_bot.listen_updates")

DEFAULT_REDELIVERY_WINDOW = 1024
# Same update types the webhook is registered for.
MESSAGE_KEYS = ("message", "edited_message")


def extract_message(update: dict) -> Optional[dict]:
    for key in MESSAGE_KEYS:
        message = update.get(key)
        if isinstance(message, dict):
            return message
    return None


def normalise_command_text(text: str) -> str:
    """Lower-case the command token and drop a ``@BotName`` suffix from it."""

    parts = text.strip().split(maxsplit=1)
    if not parts:
        return ""
    command = parts[0]
    if command.startswith("/"):
        command = command.split("@", 1)[0].lower()
    if len(parts) == 1:
        return command
    return f"{command} {parts[1]}"


class UpdateRouter:
    """Matches one update against the command registry and runs the handler.

    Handlers for the same Telegram user never run concurrently, and updates
    whose ``update_id`` was seen recently are dropped so webhook retries do
    not produce duplicate replies.
    """

    def __init__(
        self,
        context: listen_start.CommandContext,
        registry: Iterable[listen_start.Command] = listen_start.COMMAND_REGISTRY,
        *,
        redelivery_window: int = DEFAULT_REDELIVERY_WINDOW,
    ) -> None:
        self._context = context
        self._registry = tuple(registry)
        self._window = max(0, int(redelivery_window))
        self._seen: OrderedDict[Any, None] = OrderedDict()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _is_redelivery(self, update_id: Any) -> bool:
        if update_id is None or self._window == 0:
            return False
        if update_id in self._seen:
            return True
        self._seen[update_id] = None
        while len(self._seen) > self._window:
            self._seen.popitem(last=False)
        return False

    def _lock_for(self, telegram_id: str) -> asyncio.Lock:
        lock = self._locks.get(telegram_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[telegram_id] = lock
        return lock

    async def route(self, update: Any) -> bool:
        """Dispatch ``update``; return ``True`` when a handler was invoked."""

        if not isinstance(update, dict):
            LOGGER.debug("Ignoring non-dict update: %r", update)
            return False

        update_id = update.get("update_id")
        if self._is_redelivery(update_id):
            LOGGER.info("Dropping redelivered update_id=%s", update_id)
            return False

        message = extract_message(update)
        if message is None:
            LOGGER.debug("Ignoring update_id=%s without a message", update_id)
            return False

        text = message.get("text")
        if not isinstance(text, str) or not text.strip():
            return False

        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        chat_id = chat.get("id")
        telegram_id = sender.get("id", chat_id)
        if chat_id is None or telegram_id is None:
            LOGGER.debug("Ignoring update_id=%s without chat or sender", update_id)
            return False

        matched = listen_start.match_command(normalise_command_text(text), self._registry)
        if matched is None:
            LOGGER.debug("No command matched update_id=%s chat_id=%s", update_id, chat_id)
            return False

        command, args = matched
        telegram_id_str = str(telegram_id)
        LOGGER.info(
            "Routing /%s update_id=%s telegram_id=%s chat_id=%s",
            command.name,
            update_id,
            telegram_id_str,
            chat_id,
        )
        try:
            async with self._lock_for(telegram_id_str):
                await command.handler(self._context, telegram_id_str, chat_id, args)
        except Exception:
            LOGGER.exception("Handler /%s failed for telegram_id=%s", command.name, telegram_id_str)
        return True
