"""HTTP front end: Telegram webhook, direct subscriber endpoints and health check."""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from concurrent.futures import Future
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Dict

import subscriptions

LOGGER = logging.getLogger("weather_bot.webhook")

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
MAX_BODY_BYTES = 1 << 20


class BadRequest(ValueError):
    pass


def _require(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    if value is None or not str(value).strip():
        raise BadRequest(f"{key} is required")
    return str(value).strip()


def _subscribe_action(body: Dict[str, Any], subs_path: Path | None) -> subscriptions.Subscriber | None:
    _, subscriber = subscriptions.subscribe_user(_require(body, "telegramId"), path=subs_path)
    return subscriber


def _unsubscribe_action(body: Dict[str, Any], subs_path: Path | None) -> subscriptions.Subscriber | None:
    _, subscriber = subscriptions.unsubscribe_user(_require(body, "telegramId"), path=subs_path)
    return subscriber


def _setcity_action(body: Dict[str, Any], subs_path: Path | None) -> subscriptions.Subscriber | None:
    _, subscriber = subscriptions.set_preferred_city(
        _require(body, "telegramId"), _require(body, "city"), path=subs_path
    )
    return subscriber


UserAction = Callable[[Dict[str, Any], "Path | None"], "subscriptions.Subscriber | None"]

USER_ACTIONS: Dict[str, UserAction] = {
    "/users/subscribe": _subscribe_action,
    "/users/unsubscribe": _unsubscribe_action,
    "/users/setcity": _setcity_action,
}


def _log_dispatch_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOGGER.error("Update dispatch failed: %s", exc)


class WebhookServer(ThreadingHTTPServer):
    """Threaded HTTP server that hands webhook updates to the event loop."""

    daemon_threads = True

    def __init__(
        self,
        address: tuple[str, int],
        *,
        router: Any,
        loop: asyncio.AbstractEventLoop,
        subs_path: Path | None = None,
        webhook_path: str = "/telegram",
        secret_token: str | None = None,
    ) -> None:
        super().__init__(address, WebhookRequestHandler)
        self.router = router
        self.loop = loop
        self.subs_path = subs_path
        self.webhook_path = webhook_path
        self.secret_token = secret_token


class WebhookRequestHandler(BaseHTTPRequestHandler):
    server: WebhookServer

    def log_message(self, format: str, *args: Any) -> None:
        LOGGER.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self) -> None:
        route = self.path.split("?", 1)[0]
        if route in ("/", "/healthz"):
            self._send_text(200, "OK")
            return
        self._send_text(404, "Not Found")

    def do_POST(self) -> None:
        route = self.path.split("?", 1)[0]
        if route == self.server.webhook_path:
            self._handle_webhook()
            return
        action = USER_ACTIONS.get(route)
        if action is not None:
            self._handle_user_action(action)
            return
        self._send_text(404, "Not Found")

    def _read_json(self) -> Any:
        length = int(self.headers.get("Content-Length") or 0)
        if length > MAX_BODY_BYTES:
            raise BadRequest("request body too large")
        raw = self.rfile.read(length) if length > 0 else b""
        if not raw:
            raise BadRequest("request body is empty")
        return json.loads(raw)

    def _handle_webhook(self) -> None:
        secret = self.server.secret_token
        if secret and self.headers.get(SECRET_HEADER) != secret:
            LOGGER.warning("Rejected webhook call with a bad secret token")
            self._send_text(403, "Forbidden")
            return
        try:
            update = self._read_json()
        except ValueError as exc:
            self._send_text(400, f"Bad Request: {exc}")
            return
        if not isinstance(update, dict):
            self._send_text(400, "Bad Request: update must be an object")
            return
        try:
            future = asyncio.run_coroutine_threadsafe(self.server.router.route(update), self.server.loop)
        except RuntimeError as exc:
            LOGGER.error("Event loop unavailable for update_id=%s: %s", update.get("update_id"), exc)
            self._send_text(503, "Service Unavailable")
            return
        future.add_done_callback(_log_dispatch_failure)
        # Acknowledge before the handler finishes.
        self._send_text(200, "OK")

    def _handle_user_action(self, action: UserAction) -> None:
        try:
            body = self._read_json()
            if not isinstance(body, dict):
                raise BadRequest("body must be an object")
            subscriber = action(body, self.server.subs_path)
        except ValueError as exc:
            self._send_json(400, {"error": str(exc)})
            return
        except subscriptions.SubscriberStoreError as exc:
            LOGGER.error("Subscriber endpoint %s failed: %s", self.path, exc)
            self._send_json(500, {"error": "subscriber store unavailable"})
            return
        self._send_json(200, subscriber)

    def _send_text(self, status: int, text: str) -> None:
        self._send_body(status, text.encode("utf-8"), "text/plain; charset=utf-8")

    def _send_json(self, status: int, payload: Any) -> None:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        self._send_body(status, body, "application/json")

    def _send_body(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


def start_server(
    router: Any,
    loop: asyncio.AbstractEventLoop,
    *,
    host: str = "0.0.0.0",
    port: int = 10000,
    subs_path: Path | None = None,
    webhook_path: str = "/telegram",
    secret_token: str | None = None,
) -> tuple[WebhookServer, threading.Thread]:
    """Bind the server and serve it from a daemon thread."""

    server = WebhookServer(
        (host, port),
        router=router,
        loop=loop,
        subs_path=subs_path,
        webhook_path=webhook_path,
        secret_token=secret_token,
    )
    thread = threading.Thread(target=server.serve_forever, name="webhook-server", daemon=True)
    thread.start()
    LOGGER.info("HTTP server listening on %s:%s (webhook path %s)", host, server.server_port, webhook_path)
    return server, thread
