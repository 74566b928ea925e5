import asyncio
import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

os.environ.setdefault("BOT_TOKEN", "test-token")

import subscriptions  # noqa: E402
import trigger_weather_bot  # noqa: E402
from weather_bot.services.weather import WeatherReport, WeatherUnavailable  # noqa: E402


class FakeWeather:
    def __init__(self, reports=None, failing=(), delay=0.0):
        self.reports = reports or {}
        self.failing = set(failing)
        self.delay = delay
        self.calls = []

    def fetch_conditions(self, city):
        self.calls.append(city)
        if self.delay:
            time.sleep(self.delay)
        if city in self.failing:
            raise WeatherUnavailable(f"no data for {city}")
        description, temperature = self.reports.get(city, ("clear sky", 20.0))
        return WeatherReport(city=city, description=description, temperature=temperature)


class FakeMessenger:
    def __init__(self, failing=(), hang=()):
        self.sent = []
        self.failing = {str(chat_id) for chat_id in failing}
        self.hang = {str(chat_id) for chat_id in hang}

    async def send(self, chat_id, text):
        if str(chat_id) in self.hang:
            await asyncio.sleep(10)
        if str(chat_id) in self.failing:
            raise RuntimeError("chat not found")
        self.sent.append((str(chat_id), text))


class FormatTests(unittest.TestCase):
    def test_format_weather_message(self):
        report = WeatherReport(city="Paris", description="light rain", temperature=14.5)
        self.assertEqual(
            trigger_weather_bot.format_weather_message(report),
            "The weather in Paris is light rain with a temperature of 14.5°C.",
        )
        whole = WeatherReport(city="Oslo", description="snow", temperature=-3.0)
        self.assertIn("temperature of -3°C", trigger_weather_bot.format_weather_message(whole))


class BroadcastTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.subs_path = Path(self.tmpdir.name) / "subs.sqlite3"

    def _subscriber(self, telegram_id, city=None, subscribed=True):
        subscriptions.subscribe_user(telegram_id, path=self.subs_path)
        if city:
            subscriptions.set_preferred_city(telegram_id, city, path=self.subs_path)
        if not subscribed:
            subscriptions.unsubscribe_user(telegram_id, path=self.subs_path)

    def _broadcast(self, messenger, weather, **kwargs):
        kwargs.setdefault("recipient_timeout", 2.0)
        return asyncio.run(
            trigger_weather_bot.run_broadcast(
                messenger=messenger,
                weather=weather,
                subs_path=self.subs_path,
                **kwargs,
            )
        )

    def test_only_eligible_subscribers_receive_updates(self):
        self._subscriber("A", city="Paris")
        self._subscriber("B")
        self._subscriber("C", city="Rome", subscribed=False)
        messenger = FakeMessenger()
        weather = FakeWeather({"Paris": ("light rain", 14.0)})

        result = self._broadcast(messenger, weather)

        self.assertEqual(
            messenger.sent,
            [("A", "The weather in Paris is light rain with a temperature of 14°C.")],
        )
        self.assertEqual(weather.calls, ["Paris"])
        self.assertEqual(result.attempted, 1)
        self.assertEqual(result.delivered, 1)
        self.assertEqual(result.failed, [])

    def test_mixed_run_sends_to_eligible_only_with_fallback(self):
        self._subscriber("A", city="Paris")
        self._subscriber("B", city="Atlantis")
        self._subscriber("C", city="Rome", subscribed=False)
        messenger = FakeMessenger()

        result = self._broadcast(messenger, FakeWeather(failing={"Atlantis"}))

        sent = dict(messenger.sent)
        self.assertEqual(sorted(sent), ["A", "B"])
        self.assertEqual(sent["B"], trigger_weather_bot.WEATHER_UNAVAILABLE_MESSAGE)
        self.assertEqual(result.attempted, 2)

    def test_weather_failure_sends_fallback(self):
        self._subscriber("A", city="Atlantis")
        self._subscriber("B", city="Paris")
        messenger = FakeMessenger()

        result = self._broadcast(messenger, FakeWeather(failing={"Atlantis"}))

        sent = dict(messenger.sent)
        self.assertEqual(sent["A"], trigger_weather_bot.WEATHER_UNAVAILABLE_MESSAGE)
        self.assertTrue(sent["B"].startswith("The weather in Paris"))
        self.assertEqual(result.fallbacks, 1)
        self.assertEqual(result.delivered, 2)

    def test_send_failure_does_not_stop_others(self):
        for telegram_id in ("1", "2", "3"):
            self._subscriber(telegram_id, city="Lima")
        messenger = FakeMessenger(failing={"2"})

        result = self._broadcast(messenger, FakeWeather())

        self.assertEqual(sorted(chat_id for chat_id, _ in messenger.sent), ["1", "3"])
        self.assertEqual(result.attempted, 3)
        self.assertEqual(result.failed, ["2"])

    def test_slow_recipient_times_out(self):
        self._subscriber("1", city="Lima")
        self._subscriber("2", city="Quito")
        messenger = FakeMessenger(hang={"1"})

        started = time.perf_counter()
        result = self._broadcast(messenger, FakeWeather(), recipient_timeout=0.2)
        elapsed = time.perf_counter() - started

        self.assertLess(elapsed, 5.0)
        self.assertEqual([chat_id for chat_id, _ in messenger.sent], ["2"])
        self.assertEqual(result.failed, ["1"])

    def test_slow_weather_lookup_falls_back(self):
        self._subscriber("1", city="Lima")
        messenger = FakeMessenger()

        result = self._broadcast(messenger, FakeWeather(delay=0.5), recipient_timeout=0.1)

        self.assertEqual(messenger.sent, [("1", trigger_weather_bot.WEATHER_UNAVAILABLE_MESSAGE)])
        self.assertEqual(result.fallbacks, 1)

    def test_city_change_applies_to_next_run(self):
        self._subscriber("1", city="Paris")
        messenger = FakeMessenger()
        self._broadcast(messenger, FakeWeather())
        subscriptions.set_preferred_city("1", "Berlin", path=self.subs_path)
        self._broadcast(messenger, FakeWeather())

        self.assertIn("Paris", messenger.sent[0][1])
        self.assertIn("Berlin", messenger.sent[1][1])

    def test_target_chat_ids_limit_recipients(self):
        self._subscriber("1", city="Paris")
        self._subscriber("2", city="Paris")
        messenger = FakeMessenger()

        self._broadcast(messenger, FakeWeather(), target_chat_ids=["2"])

        self.assertEqual([chat_id for chat_id, _ in messenger.sent], ["2"])

    def test_store_failure_ends_run_without_sending(self):
        messenger = FakeMessenger()
        with mock.patch.object(
            trigger_weather_bot,
            "load_eligible_subscribers",
            side_effect=subscriptions.SubscriberStoreError("locked"),
        ):
            result = self._broadcast(messenger, FakeWeather())

        self.assertEqual(messenger.sent, [])
        self.assertEqual(result.attempted, 0)

    def test_concurrency_is_bounded(self):
        for telegram_id in range(6):
            self._subscriber(str(telegram_id), city="Paris")
        active = []
        peak = []

        class SlowMessenger:
            async def send(self, chat_id, text):
                active.append(chat_id)
                peak.append(len(active))
                await asyncio.sleep(0.01)
                active.remove(chat_id)

        result = self._broadcast(SlowMessenger(), FakeWeather(), concurrency=2)

        self.assertEqual(result.delivered, 6)
        self.assertLessEqual(max(peak), 2)

    def test_metrics_line_is_logged(self):
        self._subscriber("1", city="Paris")
        with self.assertLogs("weather_bot.broadcast", level="INFO") as captured:
            self._broadcast(FakeMessenger(), FakeWeather())
        self.assertTrue(any('"job": "weather_broadcast"' in line for line in captured.output))


class CliTests(unittest.TestCase):
    def test_parse_args_chat_id(self):
        args = trigger_weather_bot.parse_args(["--chat-id", "123"])
        self.assertEqual(args.chat_id, "123")
        self.assertIsNone(trigger_weather_bot.parse_args([]).chat_id)


if __name__ == "__main__":
    unittest.main()
