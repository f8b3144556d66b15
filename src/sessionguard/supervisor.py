"""
ConnectionSupervisor: keeps one logical messaging session alive.

Each connection attempt loads auth state, looks up the protocol version and
opens a fresh session handle. Every close, whatever its reason, tears the
handle down and opens a new one. The retry cadence comes from a
ReconnectPolicy; the default reconnects immediately and forever.

States: DISCONNECTED -> CONNECTING -> OPEN -> DISCONNECTED -> CONNECTING ...
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Awaitable, Callable, List, Optional, Tuple

from sessionguard.auth import AuthStateStore, CachedKeyStore
from sessionguard.qr import QrArtifactSink
from sessionguard.session import (
    DEFAULT_BROWSER,
    SessionConfig,
    SessionEngine,
    SessionHandle,
)
from sessionguard.types import (
    ConnectionState,
    ConnectionUpdate,
    Credentials,
    DisconnectReason,
    Message,
    SessionEvent,
)
from sessionguard.version import VersionCache

logger = logging.getLogger(__name__)

OnMessages = Callable[[List[Message]], Awaitable[None]]


class SupervisorState(StrEnum):
    """Lifecycle state of the supervised session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"


class ReconnectAbandoned(RuntimeError):
    """Raised when a ReconnectPolicy runs out of attempts."""


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    When to reconnect after a close.

    delay is the wait before the first reconnect, multiplied by backoff for
    each further consecutive close and capped at max_delay. max_attempts
    counts consecutive closes without reaching OPEN; None means unlimited.
    """

    delay: float = 0.0
    backoff: float = 1.0
    max_delay: float = 60.0
    max_attempts: Optional[int] = None

    def should_retry(self, attempt: int) -> bool:
        """True if the attempt-th consecutive reconnect is allowed."""
        return self.max_attempts is None or attempt <= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before the attempt-th consecutive reconnect."""
        if self.delay <= 0:
            return 0.0
        return min(self.delay * self.backoff ** max(0, attempt - 1), self.max_delay)


# pylint: disable=too-many-instance-attributes,too-many-arguments
class ConnectionSupervisor:
    """
    Owns the session: opens it, watches it and reopens it on every close.

    Usage:
        supervisor = ConnectionSupervisor(engine, MultiFileAuthStore(auth_dir), VersionCache())
        await supervisor.run()   # returns only after stop()
    """

    def __init__(
        self,
        engine: SessionEngine,
        auth_store: AuthStateStore,
        version_cache: VersionCache,
        *,
        qr_sink: Optional[QrArtifactSink] = None,
        code_mode: bool = False,
        browser: Tuple[str, str, str] = DEFAULT_BROWSER,
        sync_full_history: bool = False,
        policy: Optional[ReconnectPolicy] = None,
        on_messages: Optional[OnMessages] = None,
    ) -> None:
        self._engine = engine
        self._auth_store = auth_store
        self._version_cache = version_cache
        self._qr_sink = qr_sink
        self.code_mode = code_mode
        self.browser = browser
        self.sync_full_history = sync_full_history
        self.policy = policy or ReconnectPolicy()
        self._on_messages = on_messages
        self._state = SupervisorState.DISCONNECTED
        self._handle: Optional[SessionHandle] = None
        self._ended: Optional[asyncio.Future] = None
        self._stopping = False
        self._reached_open = False
        self.sessions_opened = 0

    @property
    def state(self) -> SupervisorState:
        """Current lifecycle state."""
        return self._state

    @property
    def handle(self) -> Optional[SessionHandle]:
        """Live session handle, if any."""
        return self._handle

    def _set_state(self, state: SupervisorState) -> None:
        if state != self._state:
            logger.debug("supervisor: %s -> %s", self._state, state)
            self._state = state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Keep a session open until stop() is called.

        Auth-store and session-open errors are not handled here and
        propagate to the caller.
        """
        self._stopping = False
        attempt = 0
        while not self._stopping:
            update = await self._run_session()
            if self._stopping:
                break
            if self._reached_open:
                attempt = 0
            attempt += 1
            reason = (
                update.last_disconnect.reason
                if update and update.last_disconnect
                else int(DisconnectReason.BAD_SESSION)
            )
            if not self.policy.should_retry(attempt):
                raise ReconnectAbandoned(
                    f"gave up after {attempt - 1} reconnect attempt(s), last reason {reason}"
                )
            delay = self.policy.delay_for(attempt)
            logger.warning(
                "connection closed (reason=%s), reconnecting in %.1fs", reason, delay
            )
            if delay > 0:
                await asyncio.sleep(delay)
        self._set_state(SupervisorState.DISCONNECTED)

    async def _run_session(self) -> Optional[ConnectionUpdate]:
        """Open one session and wait for it to close; returns the close update."""
        loop = asyncio.get_running_loop()
        self._ended = loop.create_future()
        self._reached_open = False
        handle = await self.connect()
        try:
            return await self._ended
        finally:
            self._handle = None
            self._set_state(SupervisorState.DISCONNECTED)
            await handle.close()

    async def connect(self) -> SessionHandle:
        """CONNECTING: build and start a new session handle."""
        self._set_state(SupervisorState.CONNECTING)
        auth = await self._auth_store.load()
        descriptor = await self._version_cache.get_version()
        handle = await self._engine.open(
            SessionConfig(
                version=descriptor,
                credentials=auth.credentials,
                keys=CachedKeyStore(auth.keys),
                browser=self.browser,
                sync_full_history=self.sync_full_history,
            )
        )
        self.sessions_opened += 1
        handle.on(SessionEvent.CREDENTIALS_UPDATED, self._on_credentials)
        handle.on(SessionEvent.CONNECTION_STATE_CHANGED, self._make_update_handler(handle))
        if self._on_messages is not None:
            handle.on(SessionEvent.MESSAGES_RECEIVED, self._on_messages)
        self._handle = handle
        logger.info(
            "opening session (version %s, registered=%s)",
            ".".join(str(p) for p in descriptor.version),
            handle.registered,
        )
        await handle.start()
        return handle

    async def stop(self) -> None:
        """Stop reconnecting and close the current session."""
        self._stopping = True
        if self._ended is not None and not self._ended.done():
            self._ended.set_result(None)
        handle = self._handle
        if handle is not None:
            await handle.close()

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    async def _on_credentials(self, credentials: Credentials) -> None:
        try:
            await self._auth_store.save(credentials)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("saving credentials failed: %s", e)
            self._fail(e)

    def _make_update_handler(self, handle: SessionHandle):
        async def on_update(update: ConnectionUpdate) -> None:
            await self._on_connection_update(handle, update)

        return on_update

    async def _on_connection_update(
        self, handle: SessionHandle, update: ConnectionUpdate
    ) -> None:
        if handle is not self._handle:
            logger.debug("ignoring connection update from a retired session")
            return

        if update.qr and not handle.registered and not self.code_mode:
            await self._save_qr(update.qr)

        if update.connection == ConnectionState.OPEN:
            self._reached_open = True
            self._set_state(SupervisorState.OPEN)
            logger.info("session connected")

        if update.connection == ConnectionState.CLOSE:
            self._set_state(SupervisorState.DISCONNECTED)
            if self._ended is not None and not self._ended.done():
                self._ended.set_result(update)

    async def _save_qr(self, qr: str) -> None:
        if self._qr_sink is None:
            logger.info("QR challenge received, no artifact sink configured")
            return
        try:
            path = await self._qr_sink.write(qr)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("saving QR code failed: %s", e)
            return
        logger.info("QR code saved to %s; pair with it out of band", path)

    def _fail(self, exc: BaseException) -> None:
        """End the current session with an error that run() re-raises."""
        if self._ended is not None and not self._ended.done():
            self._ended.set_exception(exc)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_message(self, chat: str, text: str) -> None:
        """Send a text message over the live session."""
        if self._handle is None or self._state != SupervisorState.OPEN:
            raise RuntimeError("session not open")
        await self._handle.send_message(chat, text)
