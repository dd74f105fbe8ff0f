from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from tracker.src.contracts.models import (
    AUCTION_KINDS,
    PRICE_KINDS,
    STOCK_KINDS,
    Alert,
    AlertPreferences,
    ChangeEvent,
    ChangeKind,
    TrackedProduct,
)
from tracker.src.dedup.messages import build_payload, render_message, template_name

logger = structlog.get_logger(__name__)

DedupKey = tuple[str, ChangeKind]


@dataclass(slots=True)
class _Entry:
    alert: Alert
    window_started_at: datetime
    detached: bool = False


class AlertDeduplicator:
    """Turn change events into alerts without notification fatigue.

    Rules per ``(product_id, kind)``:
    - back_in_stock / sold_out: suppressed within ``cooldown`` of the last alert
    - price_dropped / price_increased: within ``cooldown`` an unread alert is
      updated in place (same id, newest value); a read one is not touched and a
      fresh alert is created
    - an alert that was deleted or evicted from the sink is never updated again;
      its cool-down window still applies
    - ending_soon / item_sold: once per auction end time, cool-down ignored
    - price_dropped on a product with thresholds is wanted when the new price
      is at or below ``threshold_price`` or the drop reaches
      ``threshold_percent``; otherwise the global minimums apply

    Callers must serialise ``process`` per product; it never suspends.
    """

    def __init__(
        self,
        cooldown: timedelta,
        preferences: AlertPreferences | None = None,
    ) -> None:
        self._cooldown = cooldown
        self._preferences = preferences or AlertPreferences()
        self._entries: dict[DedupKey, _Entry] = {}

    @property
    def preferences(self) -> AlertPreferences:
        return self._preferences

    def process(
        self,
        events: Iterable[ChangeEvent],
        product: TrackedProduct | None = None,
    ) -> list[Alert]:
        """Return the alerts to deliver: newly created or updated in place.

        ``product`` supplies per-product price thresholds when it has any.
        """
        alerts: list[Alert] = []
        for event in events:
            if not self._wanted(event, product):
                logger.debug(
                    "event_filtered_by_preferences",
                    product_id=event.product_id,
                    kind=event.kind.value,
                )
                continue

            alert = self._apply(event, _threshold_hit(event, product))
            if alert is not None:
                alerts.append(alert)
        return alerts

    def mark_read(self, alert_id: uuid.UUID) -> bool:
        for entry in self._entries.values():
            if entry.alert.id == alert_id:
                entry.alert = entry.alert.model_copy(update={"is_read": True})
                return True
        return False

    def discard(self, alert_id: uuid.UUID) -> bool:
        """Stop updating ``alert_id`` in place; returns False when unknown."""
        for entry in self._entries.values():
            if entry.alert.id == alert_id:
                entry.detached = True
                logger.debug("alert_detached", alert_id=str(alert_id))
                return True
        return False

    def forget(self, product_id: str) -> None:
        for key in [k for k in self._entries if k[0] == product_id]:
            del self._entries[key]

    def restore(self, alerts: Iterable[Alert]) -> None:
        """Rebuild the key table from persisted alerts, newest per key wins."""
        for alert in sorted(alerts, key=lambda a: a.created_at):
            self._entries[(alert.product_id, alert.kind)] = _Entry(
                alert=alert, window_started_at=alert.window_started_at or alert.created_at
            )

    def _apply(self, event: ChangeEvent, threshold_price: float | None = None) -> Alert | None:
        key: DedupKey = (event.product_id, event.kind)
        entry = self._entries.get(key)
        log = logger.bind(product_id=event.product_id, kind=event.kind.value)

        if event.kind in AUCTION_KINDS:
            if entry is not None and entry.alert.auction_end_time == event.auction_end_time:
                log.info("auction_alert_already_sent")
                return None
            return self._create(key, event)

        in_window = entry is not None and event.timestamp - entry.window_started_at < self._cooldown

        coalesce = entry is not None and in_window and not entry.detached and not entry.alert.is_read
        if event.kind in PRICE_KINDS and coalesce:
            original_previous = entry.alert.payload.get("previous_value")
            payload = build_payload(
                event, previous_value=original_previous, threshold_price=threshold_price
            )
            entry.alert = entry.alert.model_copy(
                update={
                    "message": render_message(event, payload),
                    "payload": payload,
                    "created_at": event.timestamp,
                }
            )
            log.info("price_alert_coalesced", alert_id=str(entry.alert.id))
            return entry.alert

        if event.kind in STOCK_KINDS and in_window:
            log.info("alert_suppressed_cooldown")
            return None

        return self._create(key, event, threshold_price)

    def _create(
        self, key: DedupKey, event: ChangeEvent, threshold_price: float | None = None
    ) -> Alert:
        payload = build_payload(event, threshold_price=threshold_price)
        alert = Alert(
            product_id=event.product_id,
            kind=event.kind,
            template=template_name(event.kind),
            message=render_message(event, payload),
            payload=payload,
            created_at=event.timestamp,
            auction_end_time=event.auction_end_time,
            current_bid=event.current_bid,
            window_started_at=event.timestamp,
        )
        self._entries[key] = _Entry(alert=alert, window_started_at=event.timestamp)
        logger.info(
            "alert_created",
            product_id=event.product_id,
            kind=event.kind.value,
            alert_id=str(alert.id),
        )
        return alert

    def _wanted(self, event: ChangeEvent, product: TrackedProduct | None = None) -> bool:
        prefs = self._preferences
        if event.kind == ChangeKind.PRICE_DROPPED:
            if not prefs.notify_price_drops:
                return False
            previous, new = event.previous_value, event.new_value
            if not (isinstance(previous, float) and isinstance(new, float)):
                return True
            drop = previous - new
            drop_percent = (drop / previous) * 100.0 if previous > 0 else 0.0
            if product is not None and _has_thresholds(product):
                price_hit = product.threshold_price is not None and new <= product.threshold_price
                percent_hit = (
                    product.threshold_percent is not None
                    and drop_percent >= product.threshold_percent
                )
                return price_hit or percent_hit
            return drop >= prefs.min_price_drop_amount and drop_percent >= prefs.min_price_drop_percent
        if event.kind == ChangeKind.PRICE_INCREASED:
            return prefs.notify_price_increases
        if event.kind in STOCK_KINDS:
            return prefs.notify_stock_changes
        return prefs.notify_auction_updates


def _has_thresholds(product: TrackedProduct) -> bool:
    return product.threshold_price is not None or product.threshold_percent is not None


def _threshold_hit(event: ChangeEvent, product: TrackedProduct | None) -> float | None:
    """The product's target price when this drop reached it."""
    if product is None or product.threshold_price is None:
        return None
    if event.kind != ChangeKind.PRICE_DROPPED or not isinstance(event.new_value, float):
        return None
    if event.new_value > product.threshold_price:
        return None
    return product.threshold_price
