"""Per-connection relay protocol: welcome, inbound frames, teardown."""

import uuid
from enum import Enum
from typing import Optional, Union

from fastapi import WebSocket

from . import protocol
from .broadcast import BroadcastEngine
from .config import MAX_MESSAGES, RECENT_ON_CONNECT, SEND_TIMEOUT
from .history import ChatMessage, HistoryBuffer, utc_timestamp
from .logging_config import get_logger
from .registry import Connection, ConnectionRegistry

logger = get_logger(__name__)


class SessionState(str, Enum):
    ACCEPTED = "accepted"
    ACTIVE = "active"
    CLOSED = "closed"


class RelayHub:
    """Owns the registry, history and broadcaster shared by every session."""

    def __init__(self, max_messages: int = MAX_MESSAGES, send_timeout: float = SEND_TIMEOUT,
                 recent_on_connect: int = RECENT_ON_CONNECT):
        self.registry = ConnectionRegistry()
        self.history = HistoryBuffer(max_messages)
        self.broadcaster = BroadcastEngine(self.registry, send_timeout=send_timeout)
        self.send_timeout = send_timeout
        self.recent_on_connect = recent_on_connect

    def session(self, ws: WebSocket) -> "RelaySession":
        return RelaySession(self, ws)

    async def shutdown(self) -> int:
        closed = await self.registry.close_all(code=1001)
        logger.info("hub shut down", closed=closed)
        return closed


class RelaySession:
    def __init__(self, hub: RelayHub, ws: WebSocket):
        self.hub = hub
        self.ws = ws
        self.identity = str(uuid.uuid4())
        self.state = SessionState.ACCEPTED

    async def run(self) -> None:
        """Drive the connection until the peer goes away or the transport fails."""
        await self.ws.accept()
        try:
            await self._open()
            while self.state is SessionState.ACTIVE:
                event = await self.ws.receive()
                if event["type"] == "websocket.disconnect":
                    break
                raw = event.get("text")
                if raw is None:
                    raw = event.get("bytes")
                if raw is not None:
                    await self.handle_frame(raw)
        except Exception as exc:
            # receive on a socket the broadcaster already evicted, or a peer reset
            logger.warning("session transport error", client_id=self.identity, error=repr(exc))
        finally:
            await self.close()

    async def _open(self) -> None:
        descriptor = self.ws.headers.get("user-agent", "Unknown")
        conn = Connection(identity=self.identity, transport=self.ws, client_descriptor=descriptor)
        recent = self.hub.history.recent(self.hub.recent_on_connect)

        def welcome(count: int) -> str:
            return protocol.encode(protocol.connected(self.identity, count, recent))

        count = await self.hub.registry.admit(conn, welcome, timeout=self.hub.send_timeout)
        self.state = SessionState.ACTIVE
        client = getattr(self.ws, "client", None)
        logger.info("client connected", client_id=self.identity, count=count,
                    remote=f"{client.host}:{client.port}" if client else None, client=descriptor)
        await self.hub.broadcaster.broadcast_presence(exclude=self.identity)

    async def handle_frame(self, raw: Union[str, bytes]) -> Optional[ChatMessage]:
        """Apply one inbound frame. Returns the stored message, if the frame produced one."""
        parsed = protocol.parse_frame(raw)
        if not parsed.ok:
            logger.warning("discarding malformed frame", client_id=self.identity, reason=parsed.error.reason)
            return None
        frame = parsed.frame
        logger.debug("frame received", client_id=self.identity, type=frame.type)

        if frame.type == protocol.EnvelopeType.MESSAGE.value:
            content = frame.content or ""
            if not content.strip():
                return None
            # sender and time always come from the hub, whatever the client sent
            msg = ChatMessage(content=content, client_id=self.identity, timestamp=utc_timestamp())
            self.hub.history.append(msg)
            await self.hub.broadcaster.broadcast(protocol.message(msg), exclude=self.identity)
            return msg
        if frame.type == protocol.EnvelopeType.PING.value:
            await self.hub.broadcaster.send_to(self.identity, protocol.pong())
            return None

        logger.debug("ignoring frame type", client_id=self.identity, type=frame.type)
        return None

    async def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        was_active = self.state is SessionState.ACTIVE
        self.state = SessionState.CLOSED
        removed = await self.hub.registry.remove(self.identity)
        if was_active:
            logger.info("client disconnected", client_id=self.identity, count=self.hub.registry.size())
        # an evicted connection already had its departure announced by the broadcaster
        if removed:
            await self.hub.broadcaster.broadcast_presence(exclude=self.identity)
