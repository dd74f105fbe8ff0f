from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable

import structlog

from tracker.src.contracts.interfaces import IAlertChannel
from tracker.src.contracts.models import Alert

logger = structlog.get_logger(__name__)


class ChannelRegistry:
    """Dispatches alerts and read-state changes to every delivery channel.

    Channels implement ``IAlertChannel``; results are reported per channel
    name. A failing channel never affects the others.
    """

    def __init__(self, channels: list[IAlertChannel] | None = None) -> None:
        self._channels: list[IAlertChannel] = list(channels or [])

    def register(self, channel: IAlertChannel) -> None:
        self._channels.append(channel)

    @property
    def channel_names(self) -> list[str]:
        return [c.name for c in self._channels]

    async def send(self, alert: Alert) -> dict[str, bool]:
        log = logger.bind(alert_id=str(alert.id), kind=alert.kind.value)
        results = await self._fan_out(lambda c: c.send(alert), log, "send")
        log.info("deliver_complete", results=results)
        return results

    async def mark_read(self, alert_id: uuid.UUID) -> dict[str, bool]:
        log = logger.bind(alert_id=str(alert_id))
        return await self._fan_out(lambda c: c.mark_read(alert_id), log, "mark_read")

    async def delete(self, alert_id: uuid.UUID) -> dict[str, bool]:
        log = logger.bind(alert_id=str(alert_id))
        return await self._fan_out(lambda c: c.delete(alert_id), log, "delete")

    async def _fan_out(
        self,
        call: Callable[[IAlertChannel], Awaitable[bool]],
        log: structlog.stdlib.BoundLogger,
        operation: str,
    ) -> dict[str, bool]:
        tasks: dict[str, asyncio.Task[bool]] = {
            channel.name: asyncio.create_task(call(channel)) for channel in self._channels
        }

        results: dict[str, bool] = {}
        for name, task in tasks.items():
            try:
                results[name] = await task
            except Exception as exc:  # noqa: BLE001
                log.error("channel_error", channel=name, operation=operation, error=str(exc))
                results[name] = False
        return results
