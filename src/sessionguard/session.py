"""
Session layer for the supervisor.

Provides:
- SessionEngine / SessionHandle: the narrow interface the supervisor needs
  from a messaging session engine.
- EventEmitter: per-event handler registration shared by handle implementations.
- WebSocketSessionEngine / WebSocketSession: an engine that drives an
  out-of-process protocol bridge over one WebSocket per session.

Bridge protocol (JSON text frames, see sessionguard.types):
  -> session.open   { version, credentials, browser, sync_full_history }
  <- creds.update   { partial credentials }           merged, then emitted
  <- connection.update { connection?, qr?, last_disconnect? }
  <- messages.upsert { messages: [ ... ] }
  <- keys.get  (id) { category, ids }                 -> keys.result (id) { values }
  <- keys.set  (id) { data: {category: {id: value}} } -> keys.result (id) { ok }
  -> message.send   { chat, text }
  -> session.close  {}
A transport drop that was not preceded by a close update is reported as a
close update with status 428.
"""

import asyncio
import json
import logging
import ssl
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from sessionguard.auth import KeyStore
from sessionguard.types import (
    ConnectionState,
    ConnectionUpdate,
    Credentials,
    DisconnectInfo,
    DisconnectReason,
    Frame,
    Message,
    SessionEvent,
    VersionDescriptor,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]

# Generic WebSocket type.
WS = Any

DEFAULT_BROWSER = ("Ubuntu", "Chrome", "20.0.04")


@dataclass
class SessionConfig:
    """Everything a session engine needs to open one session."""

    version: VersionDescriptor
    credentials: Credentials
    keys: KeyStore
    browser: Tuple[str, str, str] = DEFAULT_BROWSER
    sync_full_history: bool = False


class SessionHandle(Protocol):
    """One connection attempt. Never reused after it closes."""

    @property
    def credentials(self) -> Credentials:
        """Current credentials, including updates received so far."""

    @property
    def registered(self) -> bool:
        """True once the session is paired."""

    def on(self, event: SessionEvent, handler: Handler) -> None:
        """Subscribe handler to event."""

    async def start(self) -> None:
        """Begin connecting; events flow to subscribers from here on."""

    async def send_message(self, chat: str, text: str) -> None:
        """Send an outbound text message."""

    async def close(self) -> None:
        """Release the transport."""


class SessionEngine(Protocol):
    """Factory for session handles."""

    async def open(self, config: SessionConfig) -> SessionHandle:
        """Create a new, not yet started, session handle."""


class EventEmitter:
    """
    Handler registry keyed by SessionEvent.

    Handlers run in registration order; a failing handler is logged and does
    not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: Dict[SessionEvent, List[Handler]] = defaultdict(list)

    def on(self, event: SessionEvent, handler: Handler) -> None:
        """Subscribe handler to event."""
        self._handlers[SessionEvent(event)].append(handler)

    def off(self, event: SessionEvent, handler: Handler) -> None:
        """Remove a previously registered handler."""
        handlers = self._handlers.get(SessionEvent(event))
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: SessionEvent, data: Any) -> None:
        """Call every handler for event with data."""
        for handler in list(self._handlers.get(event, ())):
            try:
                await handler(data)
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.warning("session handler for %s failed: %s", event, e)


# pylint: disable=too-many-instance-attributes
class WebSocketSession(EventEmitter):
    """
    Session handle backed by one WebSocket to the protocol bridge.

    Call on() for the events you need, then start(). The handle emits at most
    one close update; after that it must be closed and replaced.
    """

    def __init__(
        self,
        url: str,
        config: SessionConfig,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.config = config
        self._ssl_context = ssl_context
        self._credentials: Credentials = dict(config.credentials)
        self._ws: Optional[WS] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closed = False
        self._close_emitted = False

    @property
    def credentials(self) -> Credentials:
        """Current credentials, including updates received so far."""
        return self._credentials

    @property
    def registered(self) -> bool:
        """True once the bridge reported the session as paired."""
        return bool(self._credentials.get("registered"))

    def is_connected(self) -> bool:
        """Check if the transport is still open."""
        return not self._closed and self._ws is not None

    async def start(self) -> None:
        """Connect to the bridge, send session.open and start receiving.

        A failed connect is reported to subscribers as a close update.
        """
        if self._closed:
            raise RuntimeError("WebSocketSession already closed")
        use_ssl = (
            self._ssl_context
            if self._ssl_context is not None
            else (True if self.url.startswith("wss") else None)
        )
        kwargs = {"ping_interval": 20, "ping_timeout": 20}
        if use_ssl is not None:
            kwargs["ssl"] = use_ssl
        try:
            ws = await websockets.connect(self.url, **kwargs)
        except (OSError, ConnectionError, InvalidHandshake) as e:
            logger.warning("WebSocketSession connect to %s failed: %s", self.url, e)
            await self._emit_close(
                DisconnectInfo(int(DisconnectReason.CONNECTION_CLOSED), str(e))
            )
            return
        if self._closed:
            # close() ran while the handshake was in flight.
            logger.debug("WebSocketSession closed during connect to %s", self.url)
            await ws.close()
            return
        self._ws = ws
        logger.info("WebSocketSession connected to %s", self.url)
        await self._send(
            Frame(
                "session.open",
                {
                    "version": list(self.config.version.version),
                    "credentials": self._credentials,
                    "browser": list(self.config.browser),
                    "sync_full_history": self.config.sync_full_history,
                },
            )
        )
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def _receive_loop(self) -> None:
        """Read frames from the bridge and dispatch them."""
        info = DisconnectInfo(int(DisconnectReason.CONNECTION_CLOSED), "connection closed")
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    logger.warning("Bridge protocol: unexpected binary frame, skipping")
                    continue
                try:
                    frame = Frame.deserialize(raw)
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning("Bridge protocol: invalid frame %s", e)
                    continue
                await self._handle_frame(frame)
                if self._close_emitted:
                    return
        except asyncio.CancelledError:
            return
        except ConnectionClosed as e:
            info = DisconnectInfo(int(DisconnectReason.CONNECTION_CLOSED), str(e))
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("WebSocketSession receive_loop: %s", e)
            info = DisconnectInfo(int(DisconnectReason.CONNECTION_LOST), str(e))
        if not self._closed:
            self._ws = None
            await self._emit_close(info)

    async def _handle_frame(self, frame: Frame) -> None:
        if frame.event == SessionEvent.CREDENTIALS_UPDATED:
            self._credentials.update(frame.data)
            await self.emit(SessionEvent.CREDENTIALS_UPDATED, self._credentials)
        elif frame.event == SessionEvent.CONNECTION_STATE_CHANGED:
            try:
                update = ConnectionUpdate.model_validate(frame.data)
            except ValueError as e:
                logger.warning("Bridge protocol: invalid connection update %s", e)
                return
            if update.connection == ConnectionState.CLOSE:
                if self._close_emitted:
                    return
                self._close_emitted = True
            await self.emit(SessionEvent.CONNECTION_STATE_CHANGED, update)
        elif frame.event == SessionEvent.MESSAGES_RECEIVED:
            entries = frame.data.get("messages") or []
            if not isinstance(entries, list):
                logger.warning("Bridge protocol: messages must be a list")
                return
            messages = []
            for entry in entries:
                try:
                    messages.append(Message.model_validate(entry))
                except (ValueError, TypeError, AttributeError) as e:
                    logger.warning("Bridge protocol: invalid message %s", e)
            if messages:
                await self.emit(SessionEvent.MESSAGES_RECEIVED, messages)
        elif frame.event in ("keys.get", "keys.set"):
            await self._handle_keys(frame)
        else:
            logger.debug("Bridge protocol: ignoring frame %s", frame.event)

    async def _handle_keys(self, frame: Frame) -> None:
        """Answer a key-store request from the bridge."""
        keys = self.config.keys
        try:
            if frame.event == "keys.get":
                values = await keys.get(frame.data["category"], frame.data["ids"])
                body: dict = {"values": values}
            else:
                await keys.set(frame.data["data"])
                body = {"ok": True}
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("WebSocketSession %s failed: %s", frame.event, e)
            body = {"error": str(e)}
        await self._send(Frame("keys.result", body, id=frame.id))

    async def _emit_close(self, info: DisconnectInfo) -> None:
        if self._close_emitted:
            return
        self._close_emitted = True
        await self.emit(
            SessionEvent.CONNECTION_STATE_CHANGED,
            ConnectionUpdate(connection=ConnectionState.CLOSE, last_disconnect=info),
        )

    async def _send(self, frame: Frame) -> None:
        if not self._ws or self._closed:
            raise RuntimeError("WebSocketSession not connected")
        await self._ws.send(frame.serialize())

    async def send_message(self, chat: str, text: str) -> None:
        """Ask the bridge to send a text message to chat."""
        await self._send(Frame("message.send", {"chat": chat, "text": text}))

    async def close(self) -> None:
        """Close the WebSocket and cancel the receive task."""
        if self._closed:
            return
        self._closed = True
        if self._ws:
            try:
                await self._ws.send(Frame("session.close").serialize())
                await self._ws.close()
            except Exception:  # pylint: disable=broad-exception-caught
                pass
            self._ws = None
        if self._receive_task:
            if self._receive_task is not asyncio.current_task():
                self._receive_task.cancel()
                try:
                    await self._receive_task
                except asyncio.CancelledError:
                    pass
            self._receive_task = None


class WebSocketSessionEngine:
    """Opens WebSocketSessions against one bridge URL."""

    def __init__(
        self, url: str, *, ssl_context: Optional[ssl.SSLContext] = None
    ) -> None:
        self.url = url
        self._ssl_context = ssl_context

    async def open(self, config: SessionConfig) -> WebSocketSession:
        """Create a new session handle; call start() after subscribing."""
        return WebSocketSession(self.url, config, ssl_context=self._ssl_context)
