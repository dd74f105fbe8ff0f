from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, Field

from tracker.src.contracts.models import (
    AuctionFlags,
    ChangeEvent,
    ChangeKind,
    DataInconsistency,
    Snapshot,
)

logger = structlog.get_logger(__name__)

DEFAULT_PRICE_EPSILON = 0.01


class DetectionResult(BaseModel):
    events: list[ChangeEvent] = Field(default_factory=list)
    flags: AuctionFlags
    inconsistencies: list[DataInconsistency] = Field(default_factory=list)


class ChangeDetector:
    """Compare the previous and newly fetched snapshot of one product.

    Detects, in this order:
    - Stock: back in stock, sold out (non-auction listings only)
    - Price: dropped or increased beyond ``price_epsilon``, same currency only
    - Auction: ending soon (one-shot per end time), item sold (exactly once)

    The reference time is the new snapshot's timestamp, so the comparison is a
    pure function of its inputs. Auction one-shot state travels in
    ``AuctionFlags`` and the updated flags are part of the result.
    """

    def __init__(
        self,
        ending_soon_threshold: timedelta,
        price_epsilon: float = DEFAULT_PRICE_EPSILON,
    ) -> None:
        self._threshold = ending_soon_threshold
        self._epsilon = price_epsilon

    def detect(
        self,
        product_id: str,
        previous: Snapshot | None,
        new: Snapshot,
        flags: AuctionFlags | None = None,
    ) -> DetectionResult:
        flags = self._reconcile_flags(flags or AuctionFlags(), new)
        events: list[ChangeEvent] = []
        inconsistencies: list[DataInconsistency] = []

        if previous is not None:
            events.extend(self._stock_events(product_id, previous, new))
            price_event, inconsistency = self._price_event(product_id, previous, new)
            if price_event is not None:
                events.append(price_event)
            if inconsistency is not None:
                inconsistencies.append(inconsistency)

        auction_events, flags = self._auction_events(product_id, previous, new, flags)
        events.extend(auction_events)

        if events:
            logger.info(
                "changes_detected",
                product_id=product_id,
                kinds=[e.kind.value for e in events],
            )

        return DetectionResult(events=events, flags=flags, inconsistencies=inconsistencies)

    @staticmethod
    def _reconcile_flags(flags: AuctionFlags, new: Snapshot) -> AuctionFlags:
        if new.auction_end_time == flags.auction_end_time:
            return flags
        if flags.auction_end_time is not None:
            logger.info(
                "auction_end_time_changed",
                previous_end=flags.auction_end_time.isoformat(),
                new_end=new.auction_end_time.isoformat() if new.auction_end_time else None,
            )
        return AuctionFlags(auction_end_time=new.auction_end_time)

    def _stock_events(
        self, product_id: str, previous: Snapshot, new: Snapshot
    ) -> list[ChangeEvent]:
        if not previous.in_stock and new.in_stock:
            return [
                ChangeEvent(
                    product_id=product_id,
                    kind=ChangeKind.BACK_IN_STOCK,
                    previous_value=False,
                    new_value=True,
                    timestamp=new.timestamp,
                )
            ]

        # Auction listings report ending soon / item sold instead.
        if previous.in_stock and not new.in_stock and not previous.is_auction and not new.is_auction:
            return [
                ChangeEvent(
                    product_id=product_id,
                    kind=ChangeKind.SOLD_OUT,
                    previous_value=True,
                    new_value=False,
                    timestamp=new.timestamp,
                )
            ]
        return []

    def _price_event(
        self, product_id: str, previous: Snapshot, new: Snapshot
    ) -> tuple[ChangeEvent | None, DataInconsistency | None]:
        if previous.price is None or new.price is None:
            return None, None

        if previous.currency != new.currency:
            logger.warning(
                "currency_mismatch",
                product_id=product_id,
                previous_currency=previous.currency,
                new_currency=new.currency,
            )
            return None, DataInconsistency(
                product_id=product_id,
                reason="currency_mismatch",
                detail=f"{previous.currency} -> {new.currency}",
                timestamp=new.timestamp,
            )

        delta = new.price - previous.price
        if abs(delta) <= self._epsilon:
            return None, None

        kind = ChangeKind.PRICE_DROPPED if delta < 0 else ChangeKind.PRICE_INCREASED
        return (
            ChangeEvent(
                product_id=product_id,
                kind=kind,
                previous_value=previous.price,
                new_value=new.price,
                timestamp=new.timestamp,
                currency=new.currency,
            ),
            None,
        )

    def _auction_events(
        self,
        product_id: str,
        previous: Snapshot | None,
        new: Snapshot,
        flags: AuctionFlags,
    ) -> tuple[list[ChangeEvent], AuctionFlags]:
        end = new.auction_end_time
        if end is None:
            return [], flags

        now = new.timestamp
        remaining = end - now
        events: list[ChangeEvent] = []

        if (
            not flags.ending_soon_fired
            and timedelta(0) < remaining <= self._threshold
            and self._crossed_threshold(previous, end)
        ):
            events.append(
                ChangeEvent(
                    product_id=product_id,
                    kind=ChangeKind.ENDING_SOON,
                    previous_value=None,
                    new_value=end,
                    timestamp=now,
                    currency=new.currency,
                    auction_end_time=end,
                    current_bid=new.current_bid,
                )
            )
            flags = flags.model_copy(update={"ending_soon_fired": True})

        if (
            not flags.item_sold_fired
            and remaining <= timedelta(0)
            and previous is not None
            and _pending_at(previous)
        ):
            events.append(
                ChangeEvent(
                    product_id=product_id,
                    kind=ChangeKind.ITEM_SOLD,
                    previous_value=previous.current_bid,
                    new_value=new.current_bid,
                    timestamp=now,
                    currency=new.currency,
                    auction_end_time=end,
                    current_bid=new.current_bid,
                )
            )
            flags = flags.model_copy(update={"item_sold_fired": True})

        return events, flags

    def _crossed_threshold(self, previous: Snapshot | None, end: datetime) -> bool:
        if previous is None or previous.auction_end_time != end:
            return True
        return end - previous.timestamp > self._threshold


def _pending_at(snapshot: Snapshot) -> bool:
    return snapshot.auction_end_time is not None and snapshot.auction_end_time > snapshot.timestamp
