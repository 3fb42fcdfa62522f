"""Wire envelopes exchanged between the hub and its clients.

Every frame is a JSON object tagged by ``type``:

- ``connected``: ``clientId``, ``userCount``, ``recentMessages``
- ``userCount``: ``count``
- ``message``: ``clientId``, ``content``, ``timestamp``
- ``ping`` / ``pong``: no payload

Unknown types are ignored by both sides rather than treated as errors.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import FrameError
from .history import ChatMessage


class EnvelopeType(str, Enum):
    CONNECTED = "connected"
    USER_COUNT = "userCount"
    MESSAGE = "message"
    PING = "ping"
    PONG = "pong"


class InboundFrame(BaseModel):
    """Frame sent by a client. Anything besides ``type`` and ``content`` is ignored."""

    model_config = ConfigDict(extra="ignore")

    type: str
    content: Optional[str] = None


@dataclass
class ParsedFrame:
    frame: Optional[InboundFrame] = None
    error: Optional[FrameError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_frame(raw: Union[str, bytes]) -> ParsedFrame:
    """Parse a raw client frame into an InboundFrame; failures come back as a value.

    Binary frames must be valid UTF-8; anything else is rejected rather than repaired.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            return ParsedFrame(error=FrameError(f"invalid utf-8: {exc.reason}", repr(raw)))
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        return ParsedFrame(error=FrameError(f"invalid json: {exc}", raw))
    if not isinstance(data, dict):
        return ParsedFrame(error=FrameError("frame is not an object", raw))
    try:
        return ParsedFrame(frame=InboundFrame.model_validate(data))
    except ValidationError as exc:
        return ParsedFrame(error=FrameError(f"schema violation: {exc.errors()[0]['msg']}", raw))


def connected(client_id: str, user_count: int, recent: Iterable[ChatMessage]) -> Dict[str, Any]:
    return {
        "type": EnvelopeType.CONNECTED.value,
        "clientId": client_id,
        "userCount": user_count,
        "recentMessages": [m.to_wire() for m in recent],
    }


def user_count(count: int) -> Dict[str, Any]:
    return {"type": EnvelopeType.USER_COUNT.value, "count": count}


def message(msg: ChatMessage) -> Dict[str, Any]:
    return msg.to_wire()


def outbound_message(content: str) -> Dict[str, Any]:
    """Client-side envelope for a chat message; the hub fills in sender and time."""
    return {"type": EnvelopeType.MESSAGE.value, "content": content}


def ping() -> Dict[str, Any]:
    return {"type": EnvelopeType.PING.value}


def pong() -> Dict[str, Any]:
    return {"type": EnvelopeType.PONG.value}


def encode(envelope: Dict[str, Any]) -> str:
    return json.dumps(envelope)
