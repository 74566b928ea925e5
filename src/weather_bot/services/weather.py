"""Current-conditions lookups against the Weatherbit API."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import requests

LOGGER = logging.getLogger("weather_bot.weather")

WEATHERBIT_CURRENT_URL = "https://api.weatherbit.io/v2.0/current"
_BACKOFF_SCHEDULE = (0.5, 1.0, 2.0)
_RETRY_STATUSES = frozenset({420, 429, 500, 502, 503, 504})


class WeatherUnavailable(RuntimeError):
    """Raised when current conditions cannot be obtained for a city."""


@dataclass(frozen=True)
class WeatherReport:
    city: str
    description: str
    temperature: float


def parse_current_payload(city: str, payload: Any) -> WeatherReport:
    """Extract the first observation of a ``/current`` response."""

    try:
        observation = payload["data"][0]
        description = str(observation["weather"]["description"]).strip()
        temperature = float(observation["temp"])
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise WeatherUnavailable(f"Malformed Weatherbit payload for {city!r}") from exc
    if not description:
        raise WeatherUnavailable(f"Weatherbit returned no description for {city!r}")
    return WeatherReport(city=city, description=description, temperature=temperature)


class WeatherbitClient:
    """Blocking Weatherbit client; callers run it in a worker thread."""

    def __init__(
        self,
        api_key: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 20.0,
        base_url: str = WEATHERBIT_CURRENT_URL,
        backoff: tuple[float, ...] = _BACKOFF_SCHEDULE,
    ) -> None:
        self._api_key = api_key
        self._session = session or requests.Session()
        self._timeout = timeout
        self._base_url = base_url
        self._backoff = backoff

    def fetch_conditions(self, city: str) -> WeatherReport:
        city = (city or "").strip()
        if not city:
            raise WeatherUnavailable("city is required")
        if not self._api_key:
            raise WeatherUnavailable("WEATHER_API_KEY is not configured")

        params = {"city": city, "key": self._api_key}
        for attempt, backoff in enumerate(self._backoff, start=1):
            try:
                resp = self._session.get(self._base_url, params=params, timeout=self._timeout)
            except requests.RequestException as exc:
                raise WeatherUnavailable(f"Weatherbit request failed for {city!r}: {exc}") from exc
            if resp.status_code in _RETRY_STATUSES:
                LOGGER.warning(
                    "Weatherbit returned status=%s for city=%s, retry %s/%s in %.1fs",
                    resp.status_code,
                    city,
                    attempt,
                    len(self._backoff),
                    backoff,
                )
                time.sleep(backoff)
                continue
            if resp.status_code == 204:
                raise WeatherUnavailable(f"Weatherbit has no data for {city!r}")
            if resp.status_code >= 400:
                raise WeatherUnavailable(
                    f"Weatherbit API error for {city!r}: {resp.status_code} {resp.text}"
                )
            try:
                payload = resp.json()
            except ValueError as exc:
                raise WeatherUnavailable(f"Weatherbit returned invalid JSON for {city!r}") from exc
            return parse_current_payload(city, payload)
        raise WeatherUnavailable(f"Weatherbit unavailable for {city!r} after retries")
