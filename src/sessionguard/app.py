"""
Application wiring: one supervisor, one version cache, one batch queue.

Inbound messages reported by the session are queued on the BatchQueue and
handled by the message handler with the queue's concurrency limits.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from sessionguard.auth import AuthStateStore, MultiFileAuthStore
from sessionguard.config import AppConfig
from sessionguard.qr import QrArtifactSink
from sessionguard.queue import BatchQueue
from sessionguard.session import SessionEngine, WebSocketSessionEngine
from sessionguard.supervisor import ConnectionSupervisor
from sessionguard.types import Message
from sessionguard.version import VersionCache

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Message], Awaitable[Any]]


async def log_message(message: Message) -> None:
    """Default handler: log the message."""
    logger.info("message %s from %s in %s: %r", message.id, message.sender, message.chat, message.text)


def _report_failure(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("message handler failed: %s", exc)


class Application:
    """
    Builds the collaborators from an AppConfig and runs the supervisor.

    engine, auth_store and version_cache can be passed in to replace the
    defaults (WebSocket bridge, directory store, remote version lookup).
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        handler: Optional[MessageHandler] = None,
        engine: Optional[SessionEngine] = None,
        auth_store: Optional[AuthStateStore] = None,
        version_cache: Optional[VersionCache] = None,
    ) -> None:
        self.config = config
        self.handler = handler or log_message
        self.queue = BatchQueue(
            max_workers=config.queue.max_workers,
            batch_size=config.queue.batch_size,
            messages_per_batch=config.queue.messages_per_batch,
        )
        self.version_cache = version_cache or VersionCache(
            config.version_url, config.version_ttl
        )
        self.supervisor = ConnectionSupervisor(
            engine or WebSocketSessionEngine(config.bridge_url),
            auth_store or MultiFileAuthStore(config.auth_dir),
            self.version_cache,
            qr_sink=QrArtifactSink(config.qr_path),
            code_mode=config.code_mode,
            browser=config.browser,
            sync_full_history=config.sync_full_history,
            policy=config.reconnect,
            on_messages=self.on_messages,
        )

    async def on_messages(self, messages: List[Message]) -> None:
        """Queue every inbound message for the handler."""
        for message in messages:
            future = self.queue.enqueue(message, self.handler)
            future.add_done_callback(_report_failure)

    async def run(self) -> None:
        """Run the supervisor until stop()."""
        await self.supervisor.run()

    async def stop(self) -> None:
        """Stop the supervisor, then let queued messages finish."""
        await self.supervisor.stop()
        await self.queue.join()
        logger.info("queue drained: %s", self.queue.stats())

    async def __aenter__(self) -> "Application":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
