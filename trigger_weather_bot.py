#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Weather broadcaster: one run sends every eligible subscriber their forecast."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Sequence

SRC_DIR = Path(__file__).resolve().parent / "src"
if SRC_DIR.exists() and str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from settings import load_settings
from subscriptions import Subscriber, SubscriberStoreError, load_eligible_subscribers
from weather_bot.services.messaging import TelegramGateway
from weather_bot.services.weather import WeatherbitClient, WeatherReport

LOGGER = logging.getLogger("weather_bot.broadcast")

WEATHER_UNAVAILABLE_MESSAGE = "Failed to fetch weather data. Please try again later."


class WeatherSource(Protocol):
    def fetch_conditions(self, city: str) -> WeatherReport: ...


class Messenger(Protocol):
    async def send(self, chat_id: int | str, text: str) -> None: ...


@dataclass
class BroadcastResult:
    attempted: int = 0
    delivered: int = 0
    fallbacks: int = 0
    failed: list[str] = field(default_factory=list)
    duration_ms: int = 0


def format_weather_message(report: WeatherReport) -> str:
    return (
        f"The weather in {report.city} is {report.description} "
        f"with a temperature of {report.temperature:g}°C."
    )


async def compose_message(weather: WeatherSource, city: str, *, timeout: float) -> tuple[str, bool]:
    """Return ``(text, used_fallback)`` for ``city``.

    Every lookup failure, timeouts included, yields the fallback text so the
    recipient still gets a message.
    """

    try:
        report = await asyncio.wait_for(asyncio.to_thread(weather.fetch_conditions, city), timeout)
    except Exception as exc:
        LOGGER.warning("Weather lookup failed for city=%s: %s", city, exc)
        return WEATHER_UNAVAILABLE_MESSAGE, True
    return format_weather_message(report), False


async def _deliver(
    subscriber: Subscriber,
    *,
    messenger: Messenger,
    weather: WeatherSource,
    semaphore: asyncio.Semaphore,
    timeout: float,
    result: BroadcastResult,
) -> None:
    telegram_id = str(subscriber["telegram_id"])
    city = subscriber["preferred_city"]
    async with semaphore:
        result.attempted += 1
        text, used_fallback = await compose_message(weather, city, timeout=timeout)
        if used_fallback:
            result.fallbacks += 1
        try:
            await asyncio.wait_for(messenger.send(telegram_id, text), timeout)
        except Exception as exc:
            LOGGER.warning("Broadcast delivery failed for telegram_id=%s: %s", telegram_id, exc)
            result.failed.append(telegram_id)
            return
        result.delivered += 1


def _log_job_metrics(result: BroadcastResult, started_at: float) -> None:
    result.duration_ms = int(max(0.0, (time.perf_counter() - started_at) * 1000.0))
    payload = {
        "job": "weather_broadcast",
        "attempted": result.attempted,
        "delivered": result.delivered,
        "fallbacks": result.fallbacks,
        "failed": len(result.failed),
        "duration_ms": result.duration_ms,
    }
    LOGGER.info(json.dumps(payload, sort_keys=True))


async def run_broadcast(
    *,
    messenger: Messenger,
    weather: WeatherSource,
    subs_path: Path | None = None,
    concurrency: int = 4,
    recipient_timeout: float = 20.0,
    target_chat_ids: Sequence[str] | None = None,
) -> BroadcastResult:
    """Send the current weather to every eligible subscriber once.

    Recipients are processed concurrently, at most ``concurrency`` at a
    time. A failure for one recipient is logged and counted but never stops
    the others, and failed recipients are not retried within the run.
    """

    started_at = time.perf_counter()
    result = BroadcastResult()
    LOGGER.info("Starting weather broadcast")
    try:
        subscribers = await asyncio.to_thread(load_eligible_subscribers, subs_path)
    except SubscriberStoreError as exc:
        LOGGER.error("Cannot load subscribers for broadcast: %s", exc)
        _log_job_metrics(result, started_at)
        return result

    if target_chat_ids:
        wanted = {str(chat_id) for chat_id in target_chat_ids}
        subscribers = [sub for sub in subscribers if sub["telegram_id"] in wanted]

    semaphore = asyncio.Semaphore(max(1, int(concurrency)))
    outcomes = await asyncio.gather(
        *(
            _deliver(
                subscriber,
                messenger=messenger,
                weather=weather,
                semaphore=semaphore,
                timeout=recipient_timeout,
                result=result,
            )
            for subscriber in subscribers
        ),
        return_exceptions=True,
    )
    for subscriber, outcome in zip(subscribers, outcomes):
        if isinstance(outcome, Exception):
            LOGGER.error(
                "Unexpected broadcast error for telegram_id=%s: %s",
                subscriber["telegram_id"],
                outcome,
            )
            result.failed.append(str(subscriber["telegram_id"]))

    _log_job_metrics(result, started_at)
    return result


# ========= CLI =========
def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Weather broadcaster")
    parser.add_argument(
        "--chat-id",
        default=None,
        help="Optional single subscriber to target (mostly for manual debugging)",
    )
    return parser.parse_args(argv)


async def _run_once(chat_id: str | None) -> BroadcastResult:
    settings = load_settings()
    gateway = TelegramGateway(settings.bot_token)
    weather = WeatherbitClient(settings.weather_api_key, timeout=settings.recipient_timeout)
    await gateway.initialize()
    try:
        return await run_broadcast(
            messenger=gateway,
            weather=weather,
            subs_path=settings.subscribers_path,
            concurrency=settings.broadcast_concurrency,
            recipient_timeout=settings.recipient_timeout,
            target_chat_ids=[chat_id] if chat_id else None,
        )
    finally:
        await gateway.shutdown()


def main(argv: Sequence[str] | None = None) -> BroadcastResult:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = parse_args(argv)
    return asyncio.run(_run_once(args.chat_id))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main(sys.argv[1:])
