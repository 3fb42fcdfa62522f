"""Chat message record and the bounded in-memory history kept by the hub."""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class ChatMessage:
    content: str
    client_id: str
    timestamp: str
    type: str = "message"

    def to_wire(self) -> Dict[str, Any]:
        return {"type": self.type, "content": self.content, "clientId": self.client_id, "timestamp": self.timestamp}

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> Optional["ChatMessage"]:
        """Build a message from a wire dict; None if any required field is missing."""
        content = data.get("content")
        client_id = data.get("clientId")
        timestamp = data.get("timestamp")
        if not content or not client_id or not timestamp:
            return None
        return cls(content=str(content), client_id=str(client_id), timestamp=str(timestamp))


class HistoryBuffer:
    """FIFO of the most recent messages, evicting the oldest once capacity is reached."""

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: Deque[ChatMessage] = deque()

    def append(self, msg: ChatMessage) -> None:
        self._items.append(msg)
        if len(self._items) > self.capacity:
            self._items.popleft()

    def replace(self, messages: List[ChatMessage]) -> None:
        """Replace contents with ``messages`` (oldest first), keeping only what fits."""
        self._items = deque(messages[-self.capacity:])

    def recent(self, k: int, newest_first: bool = False) -> List[ChatMessage]:
        if k <= 0:
            return []
        items = list(self._items)[-k:]
        if newest_first:
            items.reverse()
        return items

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
