"""
Types for the session supervisor.
"""

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import Any, Optional
import json

# ─── Bridge frame layout ─────────────────────────────────────────────────────
#
# Every WebSocket text frame exchanged with the protocol bridge is a JSON object:
#
#   { "event": "<frame name>", "id": "<request id, optional>", "data": { ... } }
#
# Bridge -> client: creds.update, connection.update, messages.upsert,
#                   keys.get, keys.set
# Client -> bridge: session.open, session.close, message.send, keys.result
#
# keys.get / keys.set carry an "id"; the client answers with keys.result
# using the same id.

Credentials = dict[str, Any]


class SessionEvent(StrEnum):
    """
    Events a session handle emits to its subscribers:
    - CREDENTIALS_UPDATED: credentials changed and must be persisted.
    - CONNECTION_STATE_CHANGED: connection state, QR challenge or disconnect.
    - MESSAGES_RECEIVED: one or more inbound messages.
    """

    CREDENTIALS_UPDATED = "creds.update"
    CONNECTION_STATE_CHANGED = "connection.update"
    MESSAGES_RECEIVED = "messages.upsert"


class ConnectionState(StrEnum):
    """Connection values reported by the session engine."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class DisconnectReason(IntEnum):
    """Status codes the session engine attaches to a closed connection."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


@dataclass(frozen=True)
class VersionDescriptor:
    """Protocol version handed to the session engine when opening a session."""

    version: tuple[int, ...]
    is_latest: bool = True
    error: Optional[str] = None


@dataclass(frozen=True)
class DisconnectInfo:
    """Transport error attached to a close update."""

    status_code: Optional[int] = None
    message: str = ""

    @property
    def reason(self) -> int:
        """Status code of the disconnect; errors without one count as 500."""
        if self.status_code is None:
            return int(DisconnectReason.BAD_SESSION)
        return self.status_code

    @classmethod
    def model_validate(cls, data: Optional[dict]) -> Optional["DisconnectInfo"]:
        """Build from the bridge's last_disconnect object."""
        if not data:
            return None
        code = data.get("status_code")
        return cls(
            status_code=int(code) if code is not None else None,
            message=str(data.get("message", "") or ""),
        )


@dataclass(frozen=True)
class ConnectionUpdate:
    """One connection-state-changed event."""

    connection: Optional[ConnectionState] = None
    qr: Optional[str] = None
    last_disconnect: Optional[DisconnectInfo] = None

    @classmethod
    def model_validate(cls, data: dict) -> "ConnectionUpdate":
        """Validate a connection.update frame body."""
        connection = data.get("connection")
        return cls(
            connection=ConnectionState(connection) if connection else None,
            qr=data.get("qr") or None,
            last_disconnect=DisconnectInfo.model_validate(data.get("last_disconnect")),
        )


@dataclass
class Message:
    """Inbound chat message relayed by the session engine."""

    id: str
    chat: str
    sender: str = ""
    text: str = ""
    timestamp: int = 0
    from_me: bool = False
    raw: dict = field(default_factory=dict)

    @classmethod
    def model_validate(cls, data: dict) -> "Message":
        """Validate one entry of a messages.upsert frame."""
        if not data.get("id") or not data.get("chat"):
            raise ValueError("message requires id and chat")
        return cls(
            id=str(data["id"]),
            chat=str(data["chat"]),
            sender=str(data.get("sender", "") or ""),
            text=str(data.get("text", "") or ""),
            timestamp=int(data.get("timestamp", 0) or 0),
            from_me=bool(data.get("from_me", False)),
            raw=data,
        )


@dataclass
class Frame:
    """JSON frame exchanged with the protocol bridge."""

    event: str
    data: dict = field(default_factory=dict)
    id: Optional[str] = None

    def model_dump(self) -> dict:
        """Dump the frame for sending over the wire."""
        result = {"event": self.event, "data": self.data}
        if self.id is not None:
            result["id"] = self.id
        return result

    def serialize(self) -> str:
        """Serialize the frame to a JSON string."""
        return json.dumps(self.model_dump(), ensure_ascii=False)

    @classmethod
    def deserialize(cls, raw: str) -> "Frame":
        """Deserialize a frame received from the bridge."""
        data = json.loads(raw)
        if not isinstance(data, dict) or not isinstance(data.get("event"), str):
            raise ValueError("frame requires an event name")
        body = data.get("data") or {}
        if not isinstance(body, dict):
            raise ValueError("frame data must be an object")
        return cls(event=data["event"], data=body, id=data.get("id"))
