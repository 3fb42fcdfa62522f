"""Connection registry: the hub's only shared mutable state.

Each entry owns its transport; all writes to a socket go through ``send`` so that
the rest of the hub only ever handles client identities.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Connection:
    identity: str
    transport: Any  # anything with async send_text(str) and close(code=...)
    connected_at: float = field(default_factory=time.time)
    client_descriptor: str = "Unknown"
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class ConnectionRegistry:
    def __init__(self):
        self._entries: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def add(self, conn: Connection) -> int:
        """Register ``conn`` and return the registry size after insertion."""
        async with self._lock:
            self._entries[conn.identity] = conn
            return len(self._entries)

    async def admit(self, conn: Connection, welcome: Callable[[int], str], timeout: Optional[float] = None) -> int:
        """Register ``conn`` and send it ``welcome(count)`` before anything else can reach it."""
        async with conn.send_lock:
            count = await self.add(conn)
            await _send_with_timeout(conn.transport, welcome(count), timeout)
            return count

    async def remove(self, identity: str) -> bool:
        """Drop ``identity``; absent identities are a no-op. Returns whether an entry was removed."""
        async with self._lock:
            return self._entries.pop(identity, None) is not None

    async def evict(self, identity: str) -> bool:
        """Remove ``identity`` and close its transport without waiting on the peer."""
        async with self._lock:
            conn = self._entries.pop(identity, None)
        if conn is None:
            return False
        try:
            await asyncio.wait_for(conn.transport.close(code=1011), timeout=1.0)
        except Exception as exc:
            logger.debug("close after eviction failed", client_id=identity, error=repr(exc))
        return True

    def size(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: str) -> bool:
        return identity in self._entries

    async def snapshot(self) -> List[str]:
        """Identities registered right now; later mutation does not affect the returned list."""
        async with self._lock:
            return list(self._entries)

    async def for_each(self, fn: Callable[[str], Awaitable[None]]) -> None:
        for identity in await self.snapshot():
            await fn(identity)

    async def info(self, identity: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            conn = self._entries.get(identity)
            if conn is None:
                return None
            return {"clientId": conn.identity, "connectedAt": conn.connected_at, "client": conn.client_descriptor}

    async def send(self, identity: str, text: str, timeout: Optional[float] = None) -> None:
        """Write ``text`` to one connection.

        Raises KeyError when the identity is not registered; transport errors and
        timeouts propagate to the caller.
        """
        async with self._lock:
            conn = self._entries[identity]
        async with conn.send_lock:
            await _send_with_timeout(conn.transport, text, timeout)

    async def close_all(self, code: int = 1001) -> int:
        """Close every live transport and empty the registry. Returns how many were closed."""
        async with self._lock:
            conns = list(self._entries.values())
            self._entries.clear()
        for conn in conns:
            try:
                await asyncio.wait_for(conn.transport.close(code=code), timeout=1.0)
            except Exception as exc:
                logger.debug("close during shutdown failed", client_id=conn.identity, error=repr(exc))
        return len(conns)


async def _send_with_timeout(transport: Any, text: str, timeout: Optional[float]) -> None:
    if timeout is None:
        await transport.send_text(text)
    else:
        await asyncio.wait_for(transport.send_text(text), timeout=timeout)
