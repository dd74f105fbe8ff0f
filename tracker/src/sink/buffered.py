from __future__ import annotations

import asyncio
import contextlib
import uuid

import structlog

from tracker.src.contracts.models import Alert
from tracker.src.sink.registry import ChannelRegistry

logger = structlog.get_logger(__name__)


class BufferedAlertSink:
    """Non-blocking front of the delivery channels.

    ``deliver`` only enqueues; a background task drains the bounded queue into
    the channel registry. When the queue is full the alert is dropped and
    logged, and the poll cycle carries on.
    """

    def __init__(self, channels: ChannelRegistry, max_pending: int = 100) -> None:
        self._channels = channels
        self._queue: asyncio.Queue[Alert] = asyncio.Queue(maxsize=max_pending)
        self._drain_task: asyncio.Task[None] | None = None
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def deliver(self, alert: Alert) -> bool:
        try:
            self._queue.put_nowait(alert)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "alert_dropped",
                alert_id=str(alert.id),
                product_id=alert.product_id,
                kind=alert.kind.value,
                reason="queue_full",
                max_pending=self._queue.maxsize,
                dropped_total=self.dropped,
            )
            return False
        return True

    async def mark_read(self, alert_id: uuid.UUID) -> bool:
        results = await self._channels.mark_read(alert_id)
        return any(results.values())

    async def delete(self, alert_id: uuid.UUID) -> bool:
        results = await self._channels.delete(alert_id)
        return any(results.values())

    def start(self) -> None:
        if self._drain_task is None:
            self._drain_task = asyncio.create_task(self._drain_forever())
            logger.info("alert_sink_started")

    async def stop(self) -> None:
        if self._drain_task is None:
            await self.flush()
            return
        await self._queue.join()
        if self._drain_task is not None:
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None
            logger.info("alert_sink_stopped")

    async def flush(self) -> None:
        """Deliver everything currently queued."""
        while not self._queue.empty():
            alert = self._queue.get_nowait()
            try:
                await self._channels.send(alert)
            finally:
                self._queue.task_done()

    async def _drain_forever(self) -> None:
        while True:
            alert = await self._queue.get()
            try:
                await self._channels.send(alert)
            except Exception:
                logger.error("alert_delivery_error", alert_id=str(alert.id), exc_info=True)
            finally:
                self._queue.task_done()
