import asyncio
import unittest
from unittest import mock

from telegram.error import BadRequest, RetryAfter, TimedOut

from weather_bot.services.messaging import ALLOWED_UPDATES, DeliveryError, TelegramGateway


class TelegramGatewayTests(unittest.TestCase):
    def setUp(self):
        self.bot = mock.AsyncMock()
        self.gateway = TelegramGateway(bot=self.bot, backoff=(0, 0, 0))

    def test_send_message(self):
        asyncio.run(self.gateway.send(42, "hello"))
        self.bot.send_message.assert_awaited_once_with(chat_id=42, text="hello")

    def test_send_retries_rate_limit_and_timeouts(self):
        self.bot.send_message.side_effect = [RetryAfter(0), TimedOut(), None]
        asyncio.run(self.gateway.send("42", "hello"))
        self.assertEqual(self.bot.send_message.await_count, 3)

    def test_send_gives_up_after_retries(self):
        self.bot.send_message.side_effect = TimedOut()
        with self.assertRaises(DeliveryError):
            asyncio.run(self.gateway.send("42", "hello"))
        self.assertEqual(self.bot.send_message.await_count, 3)

    def test_permanent_error_is_not_retried(self):
        self.bot.send_message.side_effect = BadRequest("Chat not found")
        with self.assertRaises(DeliveryError):
            asyncio.run(self.gateway.send("42", "hello"))
        self.assertEqual(self.bot.send_message.await_count, 1)

    def test_register_endpoint(self):
        self.bot.set_webhook.return_value = True
        registered = asyncio.run(
            self.gateway.register_endpoint("https://bot.example/telegram", secret_token="s3")
        )
        self.assertTrue(registered)
        self.bot.set_webhook.assert_awaited_once_with(
            url="https://bot.example/telegram",
            allowed_updates=list(ALLOWED_UPDATES),
            secret_token="s3",
        )

    def test_register_endpoint_failure(self):
        self.bot.set_webhook.side_effect = BadRequest("bad webhook url")
        with self.assertRaises(DeliveryError):
            asyncio.run(self.gateway.register_endpoint("http://insecure"))

    def test_token_required_without_bot(self):
        with self.assertRaises(RuntimeError):
            TelegramGateway(None)


if __name__ == "__main__":
    unittest.main()
