from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable

import structlog

from tracker.src.contracts.models import Alert

logger = structlog.get_logger(__name__)


class AlertInbox:
    """In-app alert list with read state.

    Holds at most ``retention_count`` alerts. When full, the oldest read alert
    is evicted first, then the oldest unread one, and ``on_evict`` is called
    with its id.
    """

    name = "inbox"

    def __init__(
        self,
        retention_count: int = 200,
        on_evict: Callable[[uuid.UUID], object] | None = None,
    ) -> None:
        self._retention_count = retention_count
        self._on_evict = on_evict
        self._alerts: dict[uuid.UUID, Alert] = {}

    async def send(self, alert: Alert) -> bool:
        self._alerts[alert.id] = alert
        self._enforce_retention()
        return True

    async def mark_read(self, alert_id: uuid.UUID) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return False
        self._alerts[alert_id] = alert.model_copy(update={"is_read": True})
        return True

    async def delete(self, alert_id: uuid.UUID) -> bool:
        return self._alerts.pop(alert_id, None) is not None

    def load(self, alerts: Iterable[Alert]) -> None:
        for alert in alerts:
            self._alerts[alert.id] = alert
        self._enforce_retention()

    def get(self, alert_id: uuid.UUID) -> Alert | None:
        return self._alerts.get(alert_id)

    def list(self, unread_only: bool = False, product_id: str | None = None) -> list[Alert]:
        alerts = sorted(self._alerts.values(), key=lambda a: a.created_at, reverse=True)
        if unread_only:
            alerts = [a for a in alerts if not a.is_read]
        if product_id is not None:
            alerts = [a for a in alerts if a.product_id == product_id]
        return alerts

    def unread_count(self) -> int:
        return sum(1 for a in self._alerts.values() if not a.is_read)

    def _enforce_retention(self) -> None:
        overflow = len(self._alerts) - self._retention_count
        if overflow <= 0:
            return

        oldest_first = sorted(self._alerts.values(), key=lambda a: (not a.is_read, a.created_at))
        for alert in oldest_first[:overflow]:
            del self._alerts[alert.id]
            if self._on_evict is not None:
                self._on_evict(alert.id)
        logger.info("inbox_retention_evicted", count=overflow)
