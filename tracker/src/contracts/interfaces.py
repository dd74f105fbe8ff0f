from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Protocol

from tracker.src.contracts.models import Alert, HistoryPoint, Snapshot, TrackedProduct


class ISnapshotFetcher(Protocol):
    """Raises ``FetchFailure`` when the retailer cannot produce a snapshot."""

    source: str

    async def fetch(self, product: TrackedProduct) -> Snapshot: ...


class IAlertSink(Protocol):
    def deliver(self, alert: Alert) -> bool: ...

    async def mark_read(self, alert_id: uuid.UUID) -> bool: ...


class IAlertChannel(Protocol):
    name: str

    async def send(self, alert: Alert) -> bool: ...

    async def mark_read(self, alert_id: uuid.UUID) -> bool: ...

    async def delete(self, alert_id: uuid.UUID) -> bool: ...


class IStateStore(Protocol):
    async def save_product(self, product: TrackedProduct, history: Sequence[HistoryPoint]) -> None: ...

    async def delete_product(self, product_id: str) -> None: ...
