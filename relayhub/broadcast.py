"""Fan-out of envelopes to registered connections."""

import asyncio
from typing import Any, Dict, List, Optional, Set

from . import protocol
from .config import SEND_TIMEOUT
from .logging_config import get_logger
from .registry import ConnectionRegistry

logger = get_logger(__name__)


class BroadcastEngine:
    def __init__(self, registry: ConnectionRegistry, send_timeout: float = SEND_TIMEOUT):
        self.registry = registry
        self.send_timeout = send_timeout
        # one fan-out at a time so every recipient sees hub receipt order
        self._fanout_lock = asyncio.Lock()

    async def broadcast(self, envelope: Dict[str, Any], exclude: Optional[str] = None) -> List[str]:
        """Deliver ``envelope`` to every registered connection except ``exclude``.

        Returns the identities that received it. Failed recipients are evicted and,
        since that changes presence, the remaining clients get a fresh ``userCount``.
        """
        async with self._fanout_lock:
            delivered, failed = await self._fanout(protocol.encode(envelope), exclude)
            if failed:
                await self._presence_rounds(None)
        return delivered

    async def broadcast_presence(self, exclude: Optional[str] = None) -> int:
        """Send the current registry size to everyone but ``exclude``; returns the count sent."""
        async with self._fanout_lock:
            return await self._presence_rounds(exclude)

    async def _presence_rounds(self, exclude: Optional[str]) -> int:
        # evictions change the count again, so repeat (to everyone left) until a round is clean
        while True:
            count = self.registry.size()
            _, failed = await self._fanout(protocol.encode(protocol.user_count(count)), exclude)
            if not failed:
                return count
            exclude = None

    async def send_to(self, identity: str, envelope: Dict[str, Any]) -> bool:
        """Deliver to a single connection, evicting it on failure."""
        try:
            await self.registry.send(identity, protocol.encode(envelope), timeout=self.send_timeout)
            return True
        except KeyError:
            return False
        except Exception as exc:
            logger.warning("send failed, evicting", client_id=identity, error=repr(exc))
            await self.registry.evict(identity)
            await self.broadcast_presence(exclude=identity)
            return False

    async def _fanout(self, data: str, exclude: Optional[str]):
        targets = [cid for cid in await self.registry.snapshot() if cid != exclude]
        if not targets:
            return [], set()

        results = await asyncio.gather(
            *(self.registry.send(cid, data, timeout=self.send_timeout) for cid in targets),
            return_exceptions=True,
        )
        delivered: List[str] = []
        failed: Set[str] = set()
        for cid, result in zip(targets, results):
            if isinstance(result, KeyError):
                # removed between snapshot and send; already gone
                continue
            if isinstance(result, BaseException):
                logger.warning("broadcast send failed, evicting", client_id=cid, error=repr(result))
                failed.add(cid)
            else:
                delivered.append(cid)
        for cid in failed:
            await self.registry.evict(cid)
        return delivered, failed
