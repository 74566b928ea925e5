"""Process configuration loaded from ``.env`` files and the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

_REPO_ROOT = Path(__file__).resolve().parent

DEFAULT_BROADCAST_INTERVAL_SECONDS = 24 * 3600
DEFAULT_PORT = 10000


@dataclass(frozen=True)
class Settings:
    bot_token: str
    weather_api_key: str = ""
    app_url: str = ""
    webhook_path: str = "/telegram"
    webhook_secret: str | None = None
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    broadcast_interval_seconds: int = DEFAULT_BROADCAST_INTERVAL_SECONDS
    broadcast_cron: str | None = None
    broadcast_concurrency: int = 4
    recipient_timeout: float = 20.0
    timezone: str = "UTC"
    subscribers_path: Path = _REPO_ROOT / "subscribers.sqlite3"
    log_level: str = "INFO"

    @property
    def webhook_url(self) -> str:
        if not self.app_url:
            return ""
        return self.app_url.rstrip("/") + self.webhook_path


def load_env_file() -> Path | None:
    """Load the first ``.env`` candidate that exists and return its path."""

    for candidate in (os.getenv("ENV_FILE"), _REPO_ROOT / ".env"):
        if not candidate:
            continue
        candidate_path = Path(candidate).expanduser()
        if candidate_path.exists():
            load_dotenv(candidate_path)
            return candidate_path
    return None


def get_bot_token(env: Mapping[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    token = env.get("BOT_TOKEN") or env.get("TELEGRAM_BOT_TOKEN")
    if not token:
        raise RuntimeError("BOT_TOKEN is required (set in .env or environment)")
    return token


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return value


def _positive_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return value


def _webhook_path(raw: str | None) -> str:
    path = (raw or "").strip() or "/telegram"
    if not path.startswith("/"):
        path = "/" + path
    return path


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from ``env`` (defaults to ``os.environ``).

    The ``.env`` file is only consulted when reading the real process
    environment so tests can pass an explicit mapping.
    """

    if env is None:
        load_env_file()
        env = os.environ

    subs_override = env.get("SUBSCRIBERS_DB_PATH") or env.get("SUBSCRIBERS_PATH")
    subscribers_path = (
        Path(subs_override).expanduser()
        if subs_override
        else _REPO_ROOT / "subscribers.sqlite3"
    )
    cron = (env.get("BROADCAST_CRON") or "").strip() or None
    secret = (env.get("WEBHOOK_SECRET") or "").strip() or None

    return Settings(
        bot_token=get_bot_token(env),
        weather_api_key=(env.get("WEATHER_API_KEY") or "").strip(),
        app_url=(env.get("APP_URL") or "").strip(),
        webhook_path=_webhook_path(env.get("WEBHOOK_PATH")),
        webhook_secret=secret,
        host=(env.get("HOST") or "0.0.0.0").strip(),
        port=_positive_int(env, "PORT", DEFAULT_PORT),
        broadcast_interval_seconds=_positive_int(
            env, "BROADCAST_INTERVAL_SECONDS", DEFAULT_BROADCAST_INTERVAL_SECONDS
        ),
        broadcast_cron=cron,
        broadcast_concurrency=_positive_int(env, "BROADCAST_CONCURRENCY", 4),
        recipient_timeout=_positive_float(env, "RECIPIENT_TIMEOUT_S", 20.0),
        timezone=(env.get("TIMEZONE") or "UTC").strip(),
        subscribers_path=subscribers_path,
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
    )
