"""Client side of the relay: reconnecting WebSocket controller and the state it feeds.

``ReconnectionController`` owns at most one socket and one pending retry timer.
Lost connections are retried after ``base * 2**(attempt-1)`` seconds; once
``max_attempts`` retries in a row have failed it stops and reports exhaustion
until ``connect()`` is called again by hand.
"""

import asyncio
import json
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from . import protocol
from .cache import MessageCache
from .config import (
    CLIENT_MESSAGE_LIMIT,
    LOCAL_REPLAY_LIMIT,
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_BASE_DELAY,
)
from .errors import NotConnectedError
from .history import ChatMessage, HistoryBuffer
from .logging_config import get_logger

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def backoff_delay(attempt: int, base: float = RECONNECT_BASE_DELAY) -> float:
    """Delay in seconds before reconnect attempt ``attempt`` (counted from 1)."""
    return base * (2 ** (attempt - 1))


class ClientState:
    """What the UI renders: connection flags, presence and messages (newest first)."""

    def __init__(self, cache: Optional[MessageCache] = None, limit: int = CLIENT_MESSAGE_LIMIT):
        self.connected = False
        self.connecting = False
        self.user_count = 0
        self.client_id: Optional[str] = None
        self.cache = cache
        self._history = HistoryBuffer(limit)

    @property
    def messages(self) -> List[ChatMessage]:
        return self._history.recent(self._history.capacity, newest_first=True)

    def apply(self, envelope: Dict[str, Any]) -> bool:
        """Fold one envelope from the hub into the state. Returns False if it was ignored."""
        kind = envelope.get("type")
        if kind == protocol.EnvelopeType.CONNECTED.value:
            if envelope.get("clientId"):
                self.client_id = envelope["clientId"]
            if isinstance(envelope.get("userCount"), int):
                self.user_count = envelope["userCount"]
            recent = envelope.get("recentMessages")
            if isinstance(recent, list):
                msgs = [ChatMessage.from_wire(m) for m in recent if isinstance(m, dict)]
                self._history.replace([m for m in msgs if m is not None])
            return True
        if kind == protocol.EnvelopeType.USER_COUNT.value:
            if not isinstance(envelope.get("count"), int):
                return False
            self.user_count = envelope["count"]
            return True
        if kind == protocol.EnvelopeType.MESSAGE.value:
            msg = ChatMessage.from_wire(envelope)
            if msg is None:
                return False
            self._history.append(msg)
            if self.cache is not None:
                _fire_and_forget(self.cache.add_message, msg)
            return True
        return False

    def clear_messages(self) -> None:
        self._history.clear()
        if self.cache is not None:
            _fire_and_forget(self.cache.clear_messages)

    async def load_cached(self, limit: int = LOCAL_REPLAY_LIMIT) -> int:
        """Replace messages with the newest ``limit`` from the local cache."""
        if self.cache is None:
            return 0
        try:
            cached = await asyncio.get_running_loop().run_in_executor(None, self.cache.get_messages, limit)
        except Exception as exc:
            logger.error("failed to load cached messages", error=repr(exc))
            return 0
        self._history.replace(list(reversed(cached)))
        return len(cached)


def _fire_and_forget(fn: Callable, *args) -> None:
    # cache writes never hold up or break the relay path
    def _report(fut):
        if not fut.cancelled() and fut.exception() is not None:
            logger.error("message cache operation failed", op=fn.__name__, error=repr(fut.exception()))

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop is None:
        try:
            fn(*args)
        except Exception as exc:
            logger.error("message cache operation failed", op=fn.__name__, error=repr(exc))
        return
    loop.run_in_executor(None, fn, *args).add_done_callback(_report)


class ReconnectionController:
    def __init__(
        self,
        url: str,
        *,
        base_delay: float = RECONNECT_BASE_DELAY,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        state: Optional[ClientState] = None,
        connector: Optional[Callable[[str], Any]] = None,
        on_exhausted: Optional[Callable[[], None]] = None,
    ):
        self.url = url
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.state = state or ClientState()
        self.on_exhausted = on_exhausted
        self._connector = connector or websockets.connect

        self.status = ConnectionState.DISCONNECTED
        self.attempt = 0  # retries scheduled since the last successful connect
        self.exhausted = False
        self.last_pong: Optional[float] = None

        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {}
        self._connection_listeners: List[Callable[[bool], None]] = []

    # -- public API ---------------------------------------------------------

    def on(self, kind: str, handler: Callable[[Dict[str, Any]], None]) -> None:
        """Register the handler for one envelope type (replaces any previous one)."""
        self._handlers[kind] = handler

    def on_connection_change(self, listener: Callable[[bool], None]) -> None:
        self._connection_listeners.append(listener)

    def remove_connection_listener(self, listener: Callable[[bool], None]) -> None:
        if listener in self._connection_listeners:
            self._connection_listeners.remove(listener)

    @property
    def connected(self) -> bool:
        return self.status is ConnectionState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._timer is not None

    def connect(self) -> None:
        """Start a connection attempt. No-op while one is in flight or already open."""
        if self.status is not ConnectionState.DISCONNECTED:
            return
        if self.exhausted:
            self.exhausted = False
            self.attempt = 0
        self._cancel_timer()
        self._set_status(ConnectionState.CONNECTING)
        self._task = asyncio.get_running_loop().create_task(self._run())

    def disconnect(self) -> None:
        """Close the socket and cancel any pending retry; nothing is rescheduled afterwards.

        The underlying transport is closed before this returns. The cancelled read task
        finishes its own cleanup on the next loop iteration; ``aclose()`` waits for that.
        """
        self._cancel_timer()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        ws, self._ws = self._ws, None
        transport = getattr(ws, "transport", None)
        if transport is not None:
            transport.close()
        self.attempt = 0
        self._set_status(ConnectionState.DISCONNECTED)

    async def aclose(self) -> None:
        task = self._task
        self.disconnect()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def send(self, content: str) -> None:
        """Send a chat message. Raises NotConnectedError unless the socket is open."""
        await self._send_envelope(protocol.outbound_message(content))

    async def ping(self) -> None:
        await self._send_envelope(protocol.ping())

    def clear_messages(self) -> None:
        self.state.clear_messages()

    # -- internals ----------------------------------------------------------

    async def _send_envelope(self, envelope: Dict[str, Any]) -> None:
        ws = self._ws
        if self.status is not ConnectionState.CONNECTED or ws is None:
            raise NotConnectedError("not connected")
        try:
            await ws.send(protocol.encode(envelope))
        except ConnectionClosed as exc:
            raise NotConnectedError("connection closed while sending") from exc

    async def _run(self) -> None:
        try:
            ws = await self._connector(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("connection attempt failed", url=self.url, attempt=self.attempt, error=repr(exc))
            self._connection_lost()
            return

        self._ws = ws
        self.attempt = 0
        self._set_status(ConnectionState.CONNECTED)
        logger.info("connected", url=self.url)
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as exc:
            logger.warning("connection dropped", url=self.url, error=repr(exc))
        except Exception:
            logger.exception("read loop failed", url=self.url)
        finally:
            self._ws = None
            await ws.close()
        logger.info("disconnected", url=self.url)
        self._connection_lost()

    def _dispatch(self, raw: Any) -> None:
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            envelope = json.loads(raw)
        except ValueError as exc:
            logger.warning("failed to parse envelope", error=repr(exc))
            return
        if not isinstance(envelope, dict):
            logger.warning("envelope is not an object")
            return

        kind = envelope.get("type")
        if kind == protocol.EnvelopeType.PONG.value:
            self.last_pong = time.time()
        # a failing state update or UI handler must not take the connection down
        try:
            self.state.apply(envelope)
        except Exception:
            logger.exception("failed to apply envelope", type=kind)
        handler = self._handlers.get(kind)
        if handler is not None:
            try:
                handler(envelope)
            except Exception:
                logger.exception("envelope handler failed", type=kind)

    def _connection_lost(self) -> None:
        self._task = None
        self._ws = None
        self._set_status(ConnectionState.DISCONNECTED)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.attempt >= self.max_attempts:
            self.exhausted = True
            logger.error("max reconnection attempts reached", attempts=self.attempt, url=self.url)
            if self.on_exhausted is not None:
                self.on_exhausted()
            return
        self._cancel_timer()
        self.attempt += 1
        delay = backoff_delay(self.attempt, self.base_delay)
        logger.info("reconnect scheduled", attempt=self.attempt, delay=delay)
        self._timer = asyncio.get_running_loop().call_later(delay, self._reconnect_due)

    def _reconnect_due(self) -> None:
        self._timer = None
        self.connect()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set_status(self, status: ConnectionState) -> None:
        if status is self.status:
            return
        was_connected = self.connected
        self.status = status
        self.state.connecting = status is ConnectionState.CONNECTING
        self.state.connected = status is ConnectionState.CONNECTED
        if was_connected != self.connected:
            for listener in list(self._connection_listeners):
                listener(self.connected)
