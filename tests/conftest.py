"""Shared fakes for relay tests."""

import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosed


class FakeTransport:
    """Stands in for a server-side WebSocket in registry and broadcast tests."""

    def __init__(self, fail=False, delay=0.0):
        self.sent = []
        self.closed_with = None
        self.fail = fail
        self.delay = delay

    async def send_text(self, text):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(text)

    async def close(self, code=1000):
        self.closed_with = code

    @property
    def envelopes(self):
        return [json.loads(t) for t in self.sent]


class FakeWebSocket(FakeTransport):
    """Enough of starlette's WebSocket for RelaySession."""

    def __init__(self, frames=(), user_agent="pytest-client", **kwargs):
        super().__init__(**kwargs)
        self.accepted = False
        self.headers = {"user-agent": user_agent}
        self.client = None
        self._events = asyncio.Queue()
        for frame in frames:
            self.push(frame)

    def push(self, text):
        self._events.put_nowait({"type": "websocket.receive", "text": text})

    def push_bytes(self, data):
        self._events.put_nowait({"type": "websocket.receive", "bytes": data})

    def hang_up(self):
        self._events.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def accept(self):
        self.accepted = True

    async def receive(self):
        return await self._events.get()


class FakeClientConnection:
    """Client-side connection as returned by websockets.connect."""

    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    def feed(self, envelope):
        self.incoming.put_nowait(json.dumps(envelope))

    def drop(self):
        self.incoming.put_nowait(None)

    async def send(self, data):
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def transport_factory():
    return FakeTransport


@pytest.fixture
def websocket_factory():
    return FakeWebSocket


@pytest.fixture
def client_connection_factory():
    return FakeClientConnection


@pytest.fixture
def until():
    return wait_until
