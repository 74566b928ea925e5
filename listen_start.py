#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Bot command handlers and the registry that maps commands onto them."""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Protocol

from subscriptions import (
    SubscriberStoreError,
    set_preferred_city,
    subscribe_user,
    unsubscribe_user,
)

LOGGER = logging.getLogger("weather_bot.listen_start")

WELCOME_MESSAGE = (
    "Welcome to WeatherFatherBot\n"
    "/subscribe - receive daily weather updates\n"
    "/setcity <city> - choose the city for your updates\n"
    "/unsubscribe - stop the updates"
)
SUBSCRIBED_MESSAGE = "You are now subscribed to daily weather updates."
ALREADY_SUBSCRIBED_MESSAGE = "You are already subscribed to daily weather updates."
SUBSCRIBE_FAILED_MESSAGE = "Failed to subscribe. Please try again later."
UNSUBSCRIBED_MESSAGE = "You are now unsubscribed from daily weather updates."
ALREADY_UNSUBSCRIBED_MESSAGE = "You are already unsubscribed from daily weather updates."
UNSUBSCRIBE_FAILED_MESSAGE = "Failed to unsubscribe. Please try again later."
CITY_SET_MESSAGE = "Your preferred city has been set to {city}."
CITY_NOT_SUBSCRIBED_MESSAGE = "Send /subscribe first, then set your preferred city with /setcity <city>."
SETCITY_FAILED_MESSAGE = "Failed to set your preferred city. Please try again later."


class Messenger(Protocol):
    async def send(self, chat_id: int | str, text: str) -> None: ...


@dataclass(frozen=True)
class CommandContext:
    """Collaborators shared by every handler invocation."""

    messenger: Messenger
    subs_path: Path | None = None


Handler = Callable[[CommandContext, str, int | str, tuple], Awaitable[None]]


@dataclass(frozen=True)
class Command:
    name: str
    pattern: re.Pattern[str]
    handler: Handler


async def _reply(ctx: CommandContext, chat_id: int | str, text: str) -> None:
    try:
        await ctx.messenger.send(chat_id, text)
    except Exception as exc:
        LOGGER.warning("Failed to send reply to chat_id=%s: %s", chat_id, exc)


async def handle_start(ctx: CommandContext, telegram_id: str, chat_id: int | str, args: tuple) -> None:
    await _reply(ctx, chat_id, WELCOME_MESSAGE)


async def handle_subscribe(ctx: CommandContext, telegram_id: str, chat_id: int | str, args: tuple) -> None:
    try:
        changed, _ = await asyncio.to_thread(subscribe_user, telegram_id, path=ctx.subs_path)
    except SubscriberStoreError as exc:
        LOGGER.error("Subscribe failed for telegram_id=%s: %s", telegram_id, exc)
        await _reply(ctx, chat_id, SUBSCRIBE_FAILED_MESSAGE)
        return
    await _reply(ctx, chat_id, SUBSCRIBED_MESSAGE if changed else ALREADY_SUBSCRIBED_MESSAGE)


async def handle_unsubscribe(ctx: CommandContext, telegram_id: str, chat_id: int | str, args: tuple) -> None:
    try:
        changed, _ = await asyncio.to_thread(unsubscribe_user, telegram_id, path=ctx.subs_path)
    except SubscriberStoreError as exc:
        LOGGER.error("Unsubscribe failed for telegram_id=%s: %s", telegram_id, exc)
        await _reply(ctx, chat_id, UNSUBSCRIBE_FAILED_MESSAGE)
        return
    await _reply(ctx, chat_id, UNSUBSCRIBED_MESSAGE if changed else ALREADY_UNSUBSCRIBED_MESSAGE)


async def handle_setcity(ctx: CommandContext, telegram_id: str, chat_id: int | str, args: tuple) -> None:
    city = " ".join((args[0] if args else "").split())
    if not city:
        await _reply(ctx, chat_id, CITY_NOT_SUBSCRIBED_MESSAGE)
        return
    try:
        changed, _ = await asyncio.to_thread(
            set_preferred_city, telegram_id, city, path=ctx.subs_path
        )
    except SubscriberStoreError as exc:
        LOGGER.error("Set city failed for telegram_id=%s: %s", telegram_id, exc)
        await _reply(ctx, chat_id, SETCITY_FAILED_MESSAGE)
        return
    if not changed:
        # Unknown users are not created here, unlike /subscribe.
        await _reply(ctx, chat_id, CITY_NOT_SUBSCRIBED_MESSAGE)
        return
    await _reply(ctx, chat_id, CITY_SET_MESSAGE.format(city=city))


COMMAND_REGISTRY: tuple[Command, ...] = (
    Command("start", re.compile(r"^/start(?:\s|$)"), handle_start),
    Command("subscribe", re.compile(r"^/subscribe(?:\s|$)"), handle_subscribe),
    Command("unsubscribe", re.compile(r"^/unsubscribe(?:\s|$)"), handle_unsubscribe),
    Command("setcity", re.compile(r"^/setcity\s+(.+)", re.DOTALL), handle_setcity),
)


def match_command(text: str, registry: tuple[Command, ...] = COMMAND_REGISTRY) -> tuple[Command, tuple] | None:
    """Return the first command whose pattern matches ``text`` and its captures."""

    for command in registry:
        match = command.pattern.match(text)
        if match:
            return command, match.groups()
    return None
