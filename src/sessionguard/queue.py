"""
BatchQueue: in-memory work queue drained in fixed-size micro-batches.

Items are admitted in FIFO order. A single drain loop takes up to
messages_per_batch items from the head, runs their processors concurrently,
waits for all of them to settle and only then takes the next micro-batch.
Each enqueue returns a future that settles exactly once with the processor's
result or exception. A processor that raises CancelledError cancels its
future; only cancelling the drain loop itself stops draining.

The pending buffer is unbounded.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)

Processor = Callable[[Any], Awaitable[Any]]


@dataclass
class QueueItem:
    """One unit of pending work."""

    payload: Any
    processor: Processor
    completion: asyncio.Future


# pylint: disable=too-many-instance-attributes
class BatchQueue:
    """
    Concurrency-throttled queue for async work.

    messages_per_batch bounds how many processors run per drain cycle;
    max_workers caps in-flight processors overall. batch_size is kept as a
    tuning knob and is not enforced.
    """

    def __init__(
        self,
        max_workers: int = 8,
        batch_size: int = 10,
        messages_per_batch: int = 2,
    ) -> None:
        self.max_workers = max(1, max_workers)
        self.batch_size = max(1, batch_size)
        self.messages_per_batch = max(1, messages_per_batch)
        self.active_workers = 0
        self.is_processing = False
        self.total_processed = 0
        self.total_errors = 0
        self.start_time = time.time()
        self._pending: Deque[QueueItem] = deque()
        self._slots = asyncio.Semaphore(self.max_workers)
        self._drain_task: Optional[asyncio.Task] = None
        self._idle: Optional[asyncio.Event] = None

    def __len__(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def enqueue(self, payload: Any, processor: Processor) -> asyncio.Future:
        """Queue payload for processing; returns a future for its result.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        item = QueueItem(payload, processor, loop.create_future())
        self._pending.append(item)
        if not self.is_processing:
            self._start_processing(loop)
        return item.completion

    async def submit(self, payload: Any, processor: Processor) -> Any:
        """Queue payload and wait for its result."""
        return await self.enqueue(payload, processor)

    def _start_processing(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.is_processing:
            return
        self.is_processing = True
        if self._idle is not None:
            self._idle.clear()
        self._drain_task = loop.create_task(self._process_queue())

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    async def _process_queue(self) -> None:
        try:
            while self._pending:
                count = min(self.messages_per_batch, len(self._pending))
                batch = [self._pending.popleft() for _ in range(count)]
                logger.debug(
                    "BatchQueue: dispatching %d item(s), %d pending",
                    len(batch),
                    len(self._pending),
                )
                await asyncio.gather(*(self._run(item) for item in batch))
        finally:
            self.is_processing = False
            self._drain_task = None
            if self._idle is not None:
                self._idle.set()

    async def _run(self, item: QueueItem) -> None:
        """Run one processor and settle its completion."""
        async with self._slots:
            self.active_workers += 1
            try:
                result = await item.processor(item.payload)
            except asyncio.CancelledError:
                self.total_errors += 1
                if not item.completion.done():
                    item.completion.cancel()
                task = asyncio.current_task()
                if task is not None and task.cancelling():
                    raise
                logger.debug("BatchQueue: processor was cancelled")
            except Exception as e:  # pylint: disable=broad-exception-caught
                self.total_errors += 1
                logger.debug("BatchQueue: processor failed: %s", e)
                if not item.completion.done():
                    item.completion.set_exception(e)
            else:
                self.total_processed += 1
                if not item.completion.done():
                    item.completion.set_result(result)
            finally:
                self.active_workers -= 1

    async def join(self) -> None:
        """Wait until the pending buffer is empty and no drain loop runs."""
        if not self.is_processing:
            return
        if self._idle is None:
            self._idle = asyncio.Event()
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Snapshot of queue counters."""
        return {
            "total_processed": self.total_processed,
            "total_errors": self.total_errors,
            "start_time": self.start_time,
            "uptime": time.time() - self.start_time,
            "pending": len(self._pending),
            "active_workers": self.active_workers,
            "is_processing": self.is_processing,
        }
