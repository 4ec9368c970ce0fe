"""Streaming trade quotes from the Polygon websocket.

Consumers subscribe per symbol with a callback. The stream keeps one socket,
re-authenticates and resubscribes on every (re)open, and retries a dropped
connection a bounded number of times.

Usage:
    stream = QuoteStream.from_settings()
    stream.open()
    unsubscribe = stream.subscribe("AAPL", lambda event: print(event["p"]))
    ...
    unsubscribe()
    stream.close()
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Set

from websocket import WebSocketApp

from trader_insights.config import Settings, get_settings

logger = logging.getLogger(__name__)

QuoteCallback = Callable[[Dict[str, Any]], None]

MAX_RECONNECT_ERROR = "Max reconnection attempts reached"


class SocketHandlers:
    """Callbacks a socket factory wires to its transport."""

    def __init__(
        self,
        on_open: Callable[[], None],
        on_message: Callable[[Any], None],
        on_error: Callable[[Any], None],
        on_close: Callable[[], None],
    ):
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close


def websocket_app_factory(url: str, handlers: SocketHandlers) -> WebSocketApp:
    """Open a WebSocketApp on a daemon thread."""
    app = WebSocketApp(
        url,
        on_open=lambda ws: handlers.on_open(),
        on_message=lambda ws, message: handlers.on_message(message),
        on_error=lambda ws, error: handlers.on_error(error),
        on_close=lambda ws, status_code, message: handlers.on_close(),
    )
    thread = threading.Thread(target=app.run_forever, kwargs={"ping_interval": 30}, daemon=True)
    thread.start()
    return app


def _daemon_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    return timer


def channel_for(symbol: str) -> str:
    return f"T.{symbol.upper()}"


class QuoteStream:
    """Reconnect-aware trade stream with per-symbol reference counting."""

    def __init__(
        self,
        url: str,
        api_key: str,
        reconnect_delay: float = 3.0,
        max_reconnect_attempts: int = 5,
        socket_factory: Callable[[str, SocketHandlers], Any] = websocket_app_factory,
        timer_factory: Callable[[float, Callable[[], None]], Any] = _daemon_timer,
    ):
        """Initialize the stream. Nothing connects until open().

        Args:
            url: Websocket URL
            api_key: Polygon API key sent in the auth message
            reconnect_delay: Seconds between a drop and the next attempt
            max_reconnect_attempts: Attempts before giving up
            socket_factory: Builds a socket with send()/close() and wires handlers
            timer_factory: Builds a timer with start()/cancel()
        """
        self.url = url
        self.api_key = api_key
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._socket_factory = socket_factory
        self._timer_factory = timer_factory

        self.is_connected = False
        self.is_connecting = False
        self.last_error: Optional[str] = None
        self.reconnect_attempts = 0

        self._socket: Any = None
        self._generation = 0
        self._timer: Any = None
        self._closed = False
        self._callbacks: Dict[str, List[QuoteCallback]] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "QuoteStream":
        settings = settings or get_settings()
        return cls(
            url=settings.polygon_ws_url,
            api_key=settings.polygon_api_key,
            reconnect_delay=settings.quote_reconnect_delay_seconds,
            max_reconnect_attempts=settings.quote_max_reconnect_attempts,
        )

    @property
    def subscriptions(self) -> Set[str]:
        """Network channels currently tracked, e.g. {"T.AAPL"}."""
        with self._lock:
            return {channel_for(symbol) for symbol in self._callbacks}

    @property
    def gave_up(self) -> bool:
        """True once reconnect attempts are exhausted."""
        return not self.is_connected and self.last_error == MAX_RECONNECT_ERROR

    def callback_count(self, symbol: str) -> int:
        with self._lock:
            return len(self._callbacks.get(symbol.upper(), []))

    def open(self) -> None:
        """Create the socket. A no-op while one is already open.

        A manual open starts a fresh reconnect budget, so a stream that
        gave up can be revived.
        """
        with self._lock:
            self._closed = False
            if self._socket is not None and (self.is_connected or self.is_connecting):
                return
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self.reconnect_attempts = 0
            self.last_error = None
            self._connect()

    def _connect(self) -> None:
        self._generation += 1
        generation = self._generation
        self.is_connecting = True

        def current(fn):
            def wrapper(*args):
                if generation == self._generation:
                    fn(*args)
            return wrapper

        handlers = SocketHandlers(
            on_open=current(self._handle_open),
            on_message=current(self._handle_message),
            on_error=current(self._handle_error),
            on_close=current(self._handle_close),
        )
        try:
            self._socket = self._socket_factory(self.url, handlers)
        except Exception as e:
            logger.error(f"Quote stream connect failed: {e}")
            self.is_connecting = False
            self._handle_error(e)

    def _send(self, payload: Dict[str, Any]) -> None:
        if self._socket is None:
            return
        try:
            self._socket.send(json.dumps(payload))
        except Exception as e:
            logger.error(f"Quote stream send failed: {e}")

    def _handle_open(self) -> None:
        with self._lock:
            self.is_connected = True
            self.is_connecting = False
            self.reconnect_attempts = 0
            self.last_error = None
            self._send({"action": "auth", "params": self.api_key})
            channels = sorted(channel_for(symbol) for symbol in self._callbacks)
            if channels:
                self._send({"action": "subscribe", "params": ",".join(channels)})
        logger.info(f"Quote stream connected ({len(channels)} subscription(s))")

    def _handle_close(self) -> None:
        with self._lock:
            self.is_connected = False
            self.is_connecting = False
            if self._closed:
                return
            logger.warning("Quote stream closed")
            self._schedule_reconnect()

    def _handle_error(self, error: Any) -> None:
        with self._lock:
            self.is_connected = False
            self.is_connecting = False
            self.last_error = str(error) or "WebSocket error occurred"
            logger.error(f"Quote stream error: {self.last_error}")
            if self._closed:
                return
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            self.last_error = MAX_RECONNECT_ERROR
            logger.error(MAX_RECONNECT_ERROR)
            return

        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._timer_factory(self.reconnect_delay, self._reconnect)
        self._timer.start()

    def _reconnect(self) -> None:
        with self._lock:
            self._timer = None
            if self._closed:
                return
            self.reconnect_attempts += 1
            logger.info(
                f"Reconnecting quote stream (attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})"
            )
            self._connect()

    def _handle_message(self, message: Any) -> None:
        try:
            data = json.loads(message)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed quote frame: {e}")
            return

        events = data if isinstance(data, list) else [data]
        for event in events:
            if not isinstance(event, dict):
                continue
            if event.get("ev") == "status":
                logger.debug(f"Quote stream status: {event.get('message')}")
                continue
            symbol = event.get("sym")
            if not symbol:
                continue
            with self._lock:
                callbacks = list(self._callbacks.get(str(symbol).upper(), []))
            for callback in callbacks:
                try:
                    callback(event)
                except Exception as e:
                    logger.error(f"Quote callback for {symbol} failed: {e}")

    def subscribe(self, symbol: str, callback: QuoteCallback) -> Callable[[], None]:
        """Register a callback for a symbol's trades.

        The first callback for a symbol subscribes on the network.

        Returns:
            Function that removes this callback
        """
        symbol = symbol.upper()
        with self._lock:
            callbacks = self._callbacks.setdefault(symbol, [])
            first = not callbacks
            if callback not in callbacks:
                callbacks.append(callback)
            if first and self.is_connected:
                self._send({"action": "subscribe", "params": channel_for(symbol)})

        def unsubscribe() -> None:
            self._unsubscribe(symbol, callback)

        return unsubscribe

    def _unsubscribe(self, symbol: str, callback: QuoteCallback) -> None:
        with self._lock:
            callbacks = self._callbacks.get(symbol)
            if not callbacks or callback not in callbacks:
                return
            callbacks.remove(callback)
            if not callbacks:
                del self._callbacks[symbol]
                if self.is_connected:
                    self._send({"action": "unsubscribe", "params": channel_for(symbol)})

    def close(self) -> None:
        """Tear down: cancel any pending reconnect, drop subscriptions, close the socket."""
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._callbacks.clear()
            socket, self._socket = self._socket, None
            self.is_connected = False
            self.is_connecting = False
        if socket is not None:
            try:
                socket.close()
            except Exception as e:
                logger.warning(f"Error closing quote stream socket: {e}")
        logger.info("Quote stream closed")
