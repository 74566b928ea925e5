"""CI entry point for scheduled workflows."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import time

import migrate_db
from settings import load_settings
from trigger_weather_bot import BroadcastResult, _run_once
from weather_bot.services.messaging import TelegramGateway


LOGGER = logging.getLogger(__name__)


def _mode_broadcast() -> BroadcastResult:
    return asyncio.run(_run_once(None))


async def _register_webhook() -> bool:
    settings = load_settings()
    if not settings.webhook_url:
        raise RuntimeError("APP_URL is required to register the webhook")
    gateway = TelegramGateway(settings.bot_token)
    await gateway.initialize()
    try:
        return await gateway.register_endpoint(
            settings.webhook_url, secret_token=settings.webhook_secret
        )
    finally:
        await gateway.shutdown()


def _mode_register_webhook() -> bool:
    return asyncio.run(_register_webhook())


def _mode_migrate() -> None:
    started_at = time.perf_counter()
    settings = load_settings()
    columns = migrate_db.verify_or_create(path=settings.subscribers_path, logger=LOGGER)
    payload = {
        "job": "migrate",
        "columns": sorted(columns),
        "duration_ms": int(max(0.0, (time.perf_counter() - started_at) * 1000.0)),
    }
    LOGGER.info(json.dumps(payload, sort_keys=True))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="CI entry point for the weather bot")
    parser.add_argument(
        "--mode",
        required=True,
        choices=["broadcast", "register-webhook", "migrate"],
        help="Select pipeline stage to run",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    args = parse_args(argv)

    if args.mode == "broadcast":
        _mode_broadcast()
    elif args.mode == "register-webhook":
        _mode_register_webhook()
    elif args.mode == "migrate":
        _mode_migrate()


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
