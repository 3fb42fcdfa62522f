"""Local message cache used by the client for offline display."""

import os
import sqlite3
import threading
from typing import List, Protocol

from .history import ChatMessage


class MessageCache(Protocol):
    def add_message(self, msg: ChatMessage) -> None: ...

    def get_messages(self, limit: int = 50) -> List[ChatMessage]: ...

    def clear_messages(self) -> None: ...


class SQLiteMessageCache:
    """SQLite-backed cache. Messages are keyed on ``clientId-timestamp``; re-adding one overwrites it."""

    def __init__(self, path: str = ":memory:"):
        if path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        with self._lock, self._conn:
            self._conn.execute(
                """CREATE TABLE IF NOT EXISTS messages (
                       id TEXT PRIMARY KEY,
                       client_id TEXT NOT NULL,
                       content TEXT NOT NULL,
                       timestamp TEXT NOT NULL
                   )"""
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_client ON messages(client_id)")

    def add_message(self, msg: ChatMessage) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO messages (id, client_id, content, timestamp) VALUES (?, ?, ?, ?)",
                (f"{msg.client_id}-{msg.timestamp}", msg.client_id, msg.content, msg.timestamp),
            )

    def get_messages(self, limit: int = 50) -> List[ChatMessage]:
        """Most recent ``limit`` messages, newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT content, client_id, timestamp FROM messages ORDER BY timestamp DESC LIMIT ?", (limit,)
            ).fetchall()
        return [ChatMessage(content=c, client_id=cid, timestamp=ts) for c, cid, ts in rows]

    def get_messages_by_client(self, client_id: str) -> List[ChatMessage]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT content, client_id, timestamp FROM messages WHERE client_id = ? ORDER BY timestamp DESC",
                (client_id,),
            ).fetchall()
        return [ChatMessage(content=c, client_id=cid, timestamp=ts) for c, cid, ts in rows]

    def clear_messages(self) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM messages")

    def close(self) -> None:
        with self._lock:
            self._conn.close()
