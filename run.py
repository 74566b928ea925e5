"""Service entry point: webhook server, command router and broadcast scheduler."""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
import sys
from pathlib import Path

SRC_DIR = Path(__file__).resolve().parent / "src"
if SRC_DIR.exists() and str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import migrate_db
from listen_start import CommandContext
from listen_updates import UpdateRouter
from schedule_jobs import BroadcastScheduler, build_trigger
from settings import Settings, load_settings
from trigger_weather_bot import run_broadcast
from webhook import start_server
from weather_bot.services.messaging import DeliveryError, TelegramGateway
from weather_bot.services.weather import WeatherbitClient

LOGGER = logging.getLogger("weather_bot.run")

_SECRET_TOKENS = ("TOKEN", "SECRET", "KEY", "PASS", "PWD", "URL")


def _is_secret_key(key: str) -> bool:
    key_upper = key.upper()
    return any(token in key_upper for token in _SECRET_TOKENS)


def _masked_settings(settings: Settings) -> dict:
    masked = {}
    for key, value in vars(settings).items():
        if _is_secret_key(key) and value:
            masked[key] = "***"
        else:
            masked[key] = str(value) if value not in (None, "") else "<unset>"
    return masked


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop: asyncio.Event) -> None:
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - non-Unix platforms
            LOGGER.debug("Signal handler for %s not supported", signum)


async def _register_webhook(gateway: TelegramGateway, settings: Settings) -> None:
    if not settings.webhook_url:
        LOGGER.warning("APP_URL is not set; webhook registration skipped")
        return
    try:
        await gateway.register_endpoint(settings.webhook_url, secret_token=settings.webhook_secret)
    except DeliveryError as exc:
        # Keep serving; updates resume once the webhook is registered again.
        LOGGER.error("Webhook registration failed: %s", exc)


async def serve(settings: Settings, stop: asyncio.Event | None = None) -> None:
    """Run every component until ``stop`` is set (or SIGINT/SIGTERM arrives)."""

    loop = asyncio.get_running_loop()
    stop = stop or asyncio.Event()
    _install_signal_handlers(loop, stop)

    gateway = TelegramGateway(settings.bot_token)
    await gateway.initialize()

    router = UpdateRouter(CommandContext(messenger=gateway, subs_path=settings.subscribers_path))
    weather = WeatherbitClient(settings.weather_api_key, timeout=settings.recipient_timeout)
    job = functools.partial(
        run_broadcast,
        messenger=gateway,
        weather=weather,
        subs_path=settings.subscribers_path,
        concurrency=settings.broadcast_concurrency,
        recipient_timeout=settings.recipient_timeout,
    )
    scheduler = BroadcastScheduler(job, trigger=build_trigger(settings))

    server, thread = start_server(
        router,
        loop,
        host=settings.host,
        port=settings.port,
        subs_path=settings.subscribers_path,
        webhook_path=settings.webhook_path,
        secret_token=settings.webhook_secret,
    )
    try:
        scheduler.start()
        await _register_webhook(gateway, settings)
        await stop.wait()
        LOGGER.info("Shutdown requested")
    finally:
        scheduler.stop()
        await asyncio.to_thread(server.shutdown)
        server.server_close()
        await asyncio.to_thread(thread.join, 5.0)
        await gateway.shutdown()


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    LOGGER.info("Starting weather bot with settings: %s", _masked_settings(settings))
    migrate_db.verify_or_create(path=settings.subscribers_path, logger=LOGGER)
    asyncio.run(serve(settings))


if __name__ == "__main__":  # pragma: no cover - manual execution
    main()
