from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from tracker.src.contracts.models import AlertPreferences, ChangeEvent, ChangeKind, TrackedProduct
from tracker.src.dedup.deduplicator import AlertDeduplicator
from tracker.src.dedup.messages import build_payload, render_message

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
COOLDOWN = timedelta(hours=6)


def _make_event(
    kind: ChangeKind = ChangeKind.PRICE_DROPPED,
    previous_value: float | bool | None = 100.0,
    new_value: float | bool | datetime | None = 80.0,
    timestamp: datetime = NOW,
    product_id: str = "p1",
    auction_end_time: datetime | None = None,
) -> ChangeEvent:
    return ChangeEvent(
        product_id=product_id,
        kind=kind,
        previous_value=previous_value,
        new_value=new_value,
        timestamp=timestamp,
        currency="USD",
        auction_end_time=auction_end_time,
    )


class TestPriceCoalescing:
    def test_two_drops_within_cooldown_give_one_alert(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)

        first = dedup.process([_make_event(previous_value=100.0, new_value=80.0)])
        second = dedup.process(
            [_make_event(previous_value=80.0, new_value=70.0, timestamp=NOW + timedelta(hours=1))]
        )

        assert len(first) == 1
        assert len(second) == 1
        assert second[0].id == first[0].id
        assert second[0].is_read is False
        assert second[0].payload["new_value"] == 70.0
        assert second[0].payload["previous_value"] == 100.0
        assert second[0].payload["percent_change"] == -30.0
        assert second[0].created_at == NOW + timedelta(hours=1)
        assert "70.00" in second[0].message

    def test_read_alert_not_mutated(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        first = dedup.process([_make_event()])[0]

        assert dedup.mark_read(first.id) is True
        second = dedup.process(
            [_make_event(previous_value=80.0, new_value=70.0, timestamp=NOW + timedelta(hours=1))]
        )

        assert len(second) == 1
        assert second[0].id != first.id
        assert second[0].is_read is False
        assert second[0].payload["previous_value"] == 80.0

    def test_drop_after_cooldown_creates_new_alert(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        first = dedup.process([_make_event()])[0]

        later = dedup.process(
            [_make_event(previous_value=80.0, new_value=60.0, timestamp=NOW + timedelta(hours=7))]
        )

        assert later[0].id != first.id

    def test_drop_and_increase_keyed_separately(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        drop = dedup.process([_make_event()])[0]

        rise = dedup.process(
            [
                _make_event(
                    kind=ChangeKind.PRICE_INCREASED,
                    previous_value=80.0,
                    new_value=90.0,
                    timestamp=NOW + timedelta(minutes=30),
                )
            ]
        )[0]

        assert rise.id != drop.id
        assert rise.kind == ChangeKind.PRICE_INCREASED


class TestStockCooldown:
    def test_suppressed_within_cooldown(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        event = _make_event(kind=ChangeKind.BACK_IN_STOCK, previous_value=False, new_value=True)

        first = dedup.process([event])
        second = dedup.process(
            [
                _make_event(
                    kind=ChangeKind.BACK_IN_STOCK,
                    previous_value=False,
                    new_value=True,
                    timestamp=NOW + timedelta(hours=2),
                )
            ]
        )

        assert len(first) == 1
        assert second == []

    def test_allowed_after_cooldown(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        dedup.process([_make_event(kind=ChangeKind.SOLD_OUT, previous_value=True, new_value=False)])

        later = dedup.process(
            [
                _make_event(
                    kind=ChangeKind.SOLD_OUT,
                    previous_value=True,
                    new_value=False,
                    timestamp=NOW + COOLDOWN,
                )
            ]
        )

        assert len(later) == 1

    def test_other_products_unaffected(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        dedup.process([_make_event(kind=ChangeKind.BACK_IN_STOCK, previous_value=False, new_value=True)])

        other = dedup.process(
            [
                _make_event(
                    kind=ChangeKind.BACK_IN_STOCK,
                    previous_value=False,
                    new_value=True,
                    product_id="p2",
                )
            ]
        )

        assert len(other) == 1


class TestAuctionOneShot:
    def test_ending_soon_once_per_end_time(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        end = NOW + timedelta(minutes=30)
        event = _make_event(
            kind=ChangeKind.ENDING_SOON,
            previous_value=None,
            new_value=end,
            auction_end_time=end,
        )

        first = dedup.process([event])
        second = dedup.process([event])

        assert len(first) == 1
        assert first[0].auction_end_time == end
        assert first[0].payload["auction_end_time"] == end.isoformat()
        assert second == []

    def test_new_end_time_fires_again_ignoring_cooldown(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        end = NOW + timedelta(minutes=30)
        relisted = end + timedelta(hours=1)
        dedup.process(
            [_make_event(kind=ChangeKind.ENDING_SOON, previous_value=None, new_value=end, auction_end_time=end)]
        )

        again = dedup.process(
            [
                _make_event(
                    kind=ChangeKind.ENDING_SOON,
                    previous_value=None,
                    new_value=relisted,
                    auction_end_time=relisted,
                    timestamp=NOW + timedelta(minutes=40),
                )
            ]
        )

        assert len(again) == 1


class TestPreferences:
    def test_disabled_kind_filtered(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN, AlertPreferences(notify_stock_changes=False))

        alerts = dedup.process(
            [_make_event(kind=ChangeKind.BACK_IN_STOCK, previous_value=False, new_value=True)]
        )

        assert alerts == []

    def test_small_drop_below_percent_filtered(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN, AlertPreferences(min_price_drop_percent=10.0))

        small = dedup.process([_make_event(previous_value=100.0, new_value=95.0)])
        large = dedup.process([_make_event(previous_value=100.0, new_value=85.0)])

        assert small == []
        assert len(large) == 1

    def test_small_drop_below_amount_filtered(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN, AlertPreferences(min_price_drop_amount=5.0))

        assert dedup.process([_make_event(previous_value=100.0, new_value=98.0)]) == []


class TestProductThresholds:
    def test_target_price_reached(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        product = TrackedProduct(id="p1", source="shop", source_id="sku-1", threshold_price=85.0)

        above = dedup.process([_make_event(previous_value=100.0, new_value=90.0)], product)
        below = dedup.process(
            [_make_event(previous_value=90.0, new_value=80.0, timestamp=NOW + timedelta(hours=1))],
            product,
        )

        assert above == []
        assert len(below) == 1
        assert below[0].payload["threshold_price"] == 85.0
        assert below[0].message.endswith("(below your 85.00 threshold)")

    def test_target_percent_reached(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        product = TrackedProduct(id="p1", source="shop", source_id="sku-1", threshold_percent=15.0)

        small = dedup.process([_make_event(previous_value=100.0, new_value=90.0)], product)
        large = dedup.process([_make_event(previous_value=100.0, new_value=80.0)], product)

        assert small == []
        assert len(large) == 1
        assert "threshold_price" not in large[0].payload

    def test_thresholds_replace_global_minimums(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN, AlertPreferences(min_price_drop_percent=50.0))
        product = TrackedProduct(id="p1", source="shop", source_id="sku-1", threshold_price=95.0)

        alerts = dedup.process([_make_event(previous_value=100.0, new_value=94.0)], product)

        assert len(alerts) == 1

    def test_product_without_thresholds_uses_preferences(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN, AlertPreferences(min_price_drop_percent=10.0))
        product = TrackedProduct(id="p1", source="shop", source_id="sku-1")

        assert dedup.process([_make_event(previous_value=100.0, new_value=95.0)], product) == []

    def test_increase_ignores_thresholds(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        product = TrackedProduct(id="p1", source="shop", source_id="sku-1", threshold_price=50.0)

        alerts = dedup.process(
            [_make_event(kind=ChangeKind.PRICE_INCREASED, previous_value=80.0, new_value=90.0)],
            product,
        )

        assert len(alerts) == 1


class TestStateManagement:
    def test_mark_read_unknown_alert(self) -> None:
        assert AlertDeduplicator(COOLDOWN).mark_read(uuid.uuid4()) is False

    def test_forget_clears_product(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        dedup.process([_make_event(kind=ChangeKind.BACK_IN_STOCK, previous_value=False, new_value=True)])

        dedup.forget("p1")
        again = dedup.process(
            [_make_event(kind=ChangeKind.BACK_IN_STOCK, previous_value=False, new_value=True)]
        )

        assert len(again) == 1

    def test_restore_rebuilds_windows(self) -> None:
        source = AlertDeduplicator(COOLDOWN)
        alert = source.process([_make_event()])[0]

        restored = AlertDeduplicator(COOLDOWN)
        restored.restore([alert])
        coalesced = restored.process(
            [_make_event(previous_value=80.0, new_value=75.0, timestamp=NOW + timedelta(hours=1))]
        )

        assert coalesced[0].id == alert.id

    def test_restore_keeps_original_window_start(self) -> None:
        source = AlertDeduplicator(COOLDOWN)
        first = source.process([_make_event()])[0]
        coalesced = source.process(
            [_make_event(previous_value=80.0, new_value=70.0, timestamp=NOW + timedelta(hours=5))]
        )[0]
        assert coalesced.id == first.id
        assert coalesced.window_started_at == NOW

        restored = AlertDeduplicator(COOLDOWN)
        restored.restore([coalesced])
        after_window = restored.process(
            [_make_event(previous_value=70.0, new_value=65.0, timestamp=NOW + timedelta(hours=7))]
        )

        assert after_window[0].id != first.id

    def test_discarded_alert_not_updated_again(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        first = dedup.process([_make_event()])[0]

        assert dedup.discard(first.id) is True
        second = dedup.process(
            [_make_event(previous_value=80.0, new_value=70.0, timestamp=NOW + timedelta(hours=1))]
        )

        assert len(second) == 1
        assert second[0].id != first.id
        assert second[0].payload["previous_value"] == 80.0

    def test_discard_keeps_stock_cooldown(self) -> None:
        dedup = AlertDeduplicator(COOLDOWN)
        first = dedup.process(
            [_make_event(kind=ChangeKind.BACK_IN_STOCK, previous_value=False, new_value=True)]
        )[0]

        dedup.discard(first.id)
        again = dedup.process(
            [
                _make_event(
                    kind=ChangeKind.BACK_IN_STOCK,
                    previous_value=False,
                    new_value=True,
                    timestamp=NOW + timedelta(hours=1),
                )
            ]
        )

        assert again == []

    def test_discard_unknown_alert(self) -> None:
        assert AlertDeduplicator(COOLDOWN).discard(uuid.uuid4()) is False


class TestMessages:
    def test_price_message_rendering(self) -> None:
        event = _make_event(previous_value=100.0, new_value=80.0)

        payload = build_payload(event)

        assert render_message(event, payload) == "Price dropped from 100.00 to 80.00 USD"

    def test_stock_message_rendering(self) -> None:
        event = _make_event(kind=ChangeKind.SOLD_OUT, previous_value=True, new_value=False)

        assert render_message(event, build_payload(event)) == "Sold out"
