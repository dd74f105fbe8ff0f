from __future__ import annotations

import asyncio
import random
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from tracker.src.config import Settings, load_settings
from tracker.src.contracts.errors import FetchFailure
from tracker.src.contracts.models import (
    Alert,
    ChangeKind,
    FetchErrorKind,
    HistoryPoint,
    Snapshot,
    TrackedProduct,
)
from tracker.src.dedup.deduplicator import AlertDeduplicator
from tracker.src.detector.detector import ChangeDetector
from tracker.src.fetcher.registry import FetcherRegistry
from tracker.src.history.store import HistoryStore
from tracker.src.products.registry import ProductRegistry
from tracker.src.scheduler.scheduler import CycleOutcome, PollScheduler

START = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class _ScriptedFetcher:
    """Returns queued snapshots or raises queued exceptions, in order."""

    def __init__(self, results: Sequence[Snapshot | Exception] = (), source: str = "shop") -> None:
        self.source = source
        self.results = list(results)
        self.calls = 0

    async def fetch(self, product: TrackedProduct) -> Snapshot:
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class _RecordingSink:
    def __init__(self) -> None:
        self.delivered: list[Alert] = []

    def deliver(self, alert: Alert) -> bool:
        self.delivered.append(alert)
        return True

    async def mark_read(self, alert_id: Any) -> bool:
        return False


class _RecordingStore:
    def __init__(self) -> None:
        self.saved: list[tuple[str, int]] = []

    async def save_product(self, product: TrackedProduct, history: Sequence[HistoryPoint]) -> None:
        self.saved.append((product.id, len(history)))

    async def delete_product(self, product_id: str) -> None:
        pass


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {"max_concurrent_fetches": 2, "fetch_timeout_seconds": 1.0}
    values.update(overrides)
    return load_settings(**values)


def _build(
    fetcher: Any,
    settings: Settings | None = None,
    clock: _Clock | None = None,
    store: _RecordingStore | None = None,
) -> tuple[PollScheduler, ProductRegistry, _RecordingSink]:
    settings = settings or _settings()
    registry = ProductRegistry()
    sink = _RecordingSink()
    scheduler = PollScheduler(
        settings=settings,
        registry=registry,
        fetchers=FetcherRegistry([fetcher]),
        detector=ChangeDetector(settings.auction_urgent_threshold, settings.price_epsilon),
        history=HistoryStore(settings.history_retention_window, settings.history_point_cap),
        deduplicator=AlertDeduplicator(settings.dedup_cooldown),
        sink=sink,
        state_store=store,
        clock=clock or _Clock(),
        rng=random.Random(3),
    )
    return scheduler, registry, sink


def _make_product(product_id: str = "p1", source: str = "shop", next_poll_at: datetime = START) -> TrackedProduct:
    return TrackedProduct(id=product_id, source=source, source_id=f"sku-{product_id}", next_poll_at=next_poll_at)


def _make_snapshot(price: float, timestamp: datetime, in_stock: bool = True) -> Snapshot:
    return Snapshot(timestamp=timestamp, price=price, currency="USD", in_stock=in_stock)


class TestSuccessfulCycle:
    @pytest.mark.asyncio
    async def test_updates_snapshot_and_schedules_regular_poll(self) -> None:
        clock = _Clock()
        fetcher = _ScriptedFetcher([_make_snapshot(100.0, START)])
        scheduler, registry, _ = _build(fetcher, clock=clock)
        product = registry.add(_make_product())

        outcome = await scheduler.poll_product(product.id)

        assert outcome == CycleOutcome.UPDATED
        assert product.snapshot is not None
        assert product.snapshot.price == 100.0
        assert product.last_polled_at == START
        assert product.next_poll_at == START + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_price_drop_delivered_to_sink(self) -> None:
        clock = _Clock()
        later = START + timedelta(hours=1)
        fetcher = _ScriptedFetcher([_make_snapshot(100.0, START), _make_snapshot(80.0, later)])
        scheduler, registry, sink = _build(fetcher, clock=clock)
        registry.add(_make_product())

        await scheduler.poll_product("p1")
        clock.advance(timedelta(hours=1))
        await scheduler.poll_product("p1")

        assert len(sink.delivered) == 1
        assert sink.delivered[0].kind == ChangeKind.PRICE_DROPPED
        assert sink.delivered[0].payload["new_value"] == 80.0

    @pytest.mark.asyncio
    async def test_history_appended_and_persisted(self) -> None:
        store = _RecordingStore()
        fetcher = _ScriptedFetcher([_make_snapshot(100.0, START)])
        scheduler, registry, _ = _build(fetcher, store=store)
        registry.add(_make_product())

        await scheduler.poll_product("p1")

        assert store.saved == [("p1", 1)]

    @pytest.mark.asyncio
    async def test_auction_inside_window_polled_urgently(self) -> None:
        snapshot = Snapshot(
            timestamp=START,
            price=50.0,
            auction_end_time=START + timedelta(minutes=30),
            current_bid=50.0,
        )
        scheduler, registry, sink = _build(_ScriptedFetcher([snapshot]))
        product = registry.add(_make_product())

        await scheduler.poll_product("p1")

        assert product.next_poll_at == START + timedelta(minutes=5)
        assert [a.kind for a in sink.delivered] == [ChangeKind.ENDING_SOON]


class TestFailures:
    @pytest.mark.asyncio
    async def test_timeouts_back_off_exponentially(self) -> None:
        clock = _Clock()
        fetcher = _ScriptedFetcher([FetchFailure(FetchErrorKind.TIMEOUT)] * 3)
        scheduler, registry, _ = _build(fetcher, clock=clock)
        product = registry.add(_make_product())

        offsets = []
        for _ in range(3):
            outcome = await scheduler.poll_product("p1")
            assert outcome == CycleOutcome.FAILED
            offsets.append(product.next_poll_at - clock.now)

        for offset, minutes in zip(offsets, (2, 4, 8)):
            expected = timedelta(minutes=minutes)
            assert expected * 0.8 <= offset <= expected * 1.2
        assert product.consecutive_failures == 3
        assert product.last_error == FetchErrorKind.TIMEOUT
        assert product.snapshot is None

    @pytest.mark.asyncio
    async def test_degraded_after_max_failures_then_recovers(self) -> None:
        clock = _Clock()
        results: list[Snapshot | Exception] = [FetchFailure(FetchErrorKind.RATE_LIMITED)] * 5
        results.append(_make_snapshot(100.0, START))
        scheduler, registry, _ = _build(_ScriptedFetcher(results), clock=clock)
        product = registry.add(_make_product())

        for _ in range(5):
            await scheduler.poll_product("p1")

        assert product.fetch_degraded is True
        cap = timedelta(seconds=1800)
        assert cap * 0.8 <= product.next_poll_at - clock.now <= cap

        outcome = await scheduler.poll_product("p1")

        assert outcome == CycleOutcome.UPDATED
        assert product.fetch_degraded is False
        assert product.consecutive_failures == 0
        assert product.last_error is None

    @pytest.mark.asyncio
    async def test_unknown_source_is_a_failure(self) -> None:
        scheduler, registry, _ = _build(_ScriptedFetcher())
        product = registry.add(_make_product(source="elsewhere"))

        outcome = await scheduler.poll_product(product.id)

        assert outcome == CycleOutcome.FAILED
        assert product.last_error == FetchErrorKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_unexpected_exception_mapped_to_unknown(self) -> None:
        scheduler, registry, _ = _build(_ScriptedFetcher([RuntimeError("boom")]))
        product = registry.add(_make_product())

        outcome = await scheduler.poll_product("p1")

        assert outcome == CycleOutcome.FAILED
        assert product.last_error == FetchErrorKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_slow_fetch_times_out(self) -> None:
        class _SlowFetcher:
            source = "shop"

            async def fetch(self, product: TrackedProduct) -> Snapshot:
                await asyncio.sleep(5)
                return _make_snapshot(1.0, START)

        scheduler, registry, _ = _build(_SlowFetcher(), settings=_settings(fetch_timeout_seconds=0.05))
        product = registry.add(_make_product())

        outcome = await scheduler.poll_product("p1")

        assert outcome == CycleOutcome.FAILED
        assert product.last_error == FetchErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_retry_after_longer_than_backoff_wins(self) -> None:
        clock = _Clock()
        failure = FetchFailure(FetchErrorKind.RATE_LIMITED, "3600", retry_after=timedelta(hours=1))
        scheduler, registry, _ = _build(_ScriptedFetcher([failure]), clock=clock)
        product = registry.add(_make_product())

        await scheduler.poll_product("p1")

        assert product.next_poll_at == START + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_short_retry_after_keeps_backoff(self) -> None:
        clock = _Clock()
        failure = FetchFailure(FetchErrorKind.RATE_LIMITED, "10", retry_after=timedelta(seconds=10))
        scheduler, registry, _ = _build(_ScriptedFetcher([failure]), clock=clock)
        product = registry.add(_make_product())

        await scheduler.poll_product("p1")

        expected = timedelta(minutes=2)
        assert expected * 0.8 <= product.next_poll_at - START <= expected * 1.2


class TestUntrack:
    @pytest.mark.asyncio
    async def test_result_discarded_when_untracked_mid_flight(self) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        class _BlockingFetcher:
            source = "shop"

            async def fetch(self, product: TrackedProduct) -> Snapshot:
                started.set()
                await release.wait()
                return _make_snapshot(80.0, START)

        scheduler, registry, sink = _build(_BlockingFetcher())
        product = registry.add(_make_product())

        task = asyncio.create_task(scheduler.poll_product("p1"))
        await started.wait()
        assert "p1" in scheduler.in_flight
        registry.remove("p1")
        release.set()
        outcome = await task

        assert outcome == CycleOutcome.DISCARDED
        assert product.snapshot is None
        assert sink.delivered == []

    @pytest.mark.asyncio
    async def test_untracked_product_skipped(self) -> None:
        scheduler, _, _ = _build(_ScriptedFetcher())

        assert await scheduler.poll_product("missing") == CycleOutcome.SKIPPED


class TestDispatch:
    @pytest.mark.asyncio
    async def test_only_due_products_enqueued(self) -> None:
        clock = _Clock()
        scheduler, registry, _ = _build(_ScriptedFetcher(), clock=clock)
        registry.add(_make_product("due", next_poll_at=START - timedelta(minutes=1)))
        registry.add(_make_product("later", next_poll_at=START + timedelta(minutes=1)))

        assert scheduler.enqueue_due() == 1
        # Already queued.
        assert scheduler.enqueue_due() == 0

    @pytest.mark.asyncio
    async def test_concurrency_bounded_by_worker_count(self) -> None:
        active = 0
        peak = 0
        polled: list[str] = []

        class _CountingFetcher:
            source = "shop"

            async def fetch(self, product: TrackedProduct) -> Snapshot:
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                polled.append(product.id)
                return _make_snapshot(10.0, START)

        scheduler, registry, _ = _build(_CountingFetcher(), settings=_settings(max_concurrent_fetches=2))
        for i in range(6):
            registry.add(_make_product(f"p{i}"))

        count = await scheduler.trigger_now()

        assert count == 6
        assert peak <= 2
        assert sorted(polled) == [f"p{i}" for i in range(6)]

    @pytest.mark.asyncio
    async def test_same_product_never_fetched_concurrently(self) -> None:
        active: dict[str, int] = {}
        peak: dict[str, int] = {}

        class _OverlapFetcher:
            source = "shop"

            async def fetch(self, product: TrackedProduct) -> Snapshot:
                active[product.id] = active.get(product.id, 0) + 1
                peak[product.id] = max(peak.get(product.id, 0), active[product.id])
                await asyncio.sleep(0.01)
                active[product.id] -= 1
                return _make_snapshot(10.0, START)

        scheduler, registry, _ = _build(_OverlapFetcher(), settings=_settings(max_concurrent_fetches=4))
        registry.add(_make_product("p1"))

        outcomes = await asyncio.gather(
            scheduler.poll_product("p1"),
            scheduler.poll_product("p1"),
            scheduler.poll_product("p1"),
        )

        assert outcomes == [CycleOutcome.UPDATED] * 3
        assert peak == {"p1": 1}

    @pytest.mark.asyncio
    async def test_in_flight_product_not_enqueued(self) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        class _BlockingFetcher:
            source = "shop"

            async def fetch(self, product: TrackedProduct) -> Snapshot:
                started.set()
                await release.wait()
                return _make_snapshot(10.0, START)

        scheduler, registry, _ = _build(_BlockingFetcher())
        registry.add(_make_product("p1"))

        task = asyncio.create_task(scheduler.poll_product("p1"))
        await started.wait()
        enqueued = scheduler.enqueue_due()
        release.set()
        await task

        assert enqueued == 0


class TestSourceCircuit:
    @pytest.mark.asyncio
    async def test_open_source_held_back_until_recovery(self) -> None:
        clock = _Clock()
        fetcher = _ScriptedFetcher([FetchFailure(FetchErrorKind.TIMEOUT)] * 2)
        settings = _settings(circuit_failure_threshold=2, circuit_recovery_seconds=300)
        scheduler, registry, _ = _build(fetcher, settings=settings, clock=clock)
        failing = [registry.add(_make_product("p1")), registry.add(_make_product("p2"))]
        registry.add(_make_product("p3", source="elsewhere"))

        for product in failing:
            await scheduler.poll_product(product.id)
        for product in failing:
            product.next_poll_at = START

        assert scheduler.breaker.open_sources() == ["shop"]
        assert scheduler.enqueue_due() == 1

        clock.advance(timedelta(seconds=300))

        # One trial product for the recovering source.
        assert scheduler.enqueue_due() == 1
        assert scheduler.enqueue_due() == 0

    @pytest.mark.asyncio
    async def test_successful_trial_closes_circuit(self) -> None:
        clock = _Clock()
        fetcher = _ScriptedFetcher(
            [FetchFailure(FetchErrorKind.TIMEOUT), _make_snapshot(10.0, START)]
        )
        settings = _settings(circuit_failure_threshold=1, circuit_recovery_seconds=60)
        scheduler, registry, _ = _build(fetcher, settings=settings, clock=clock)
        product = registry.add(_make_product())

        await scheduler.poll_product("p1")
        assert scheduler.breaker.open_sources() == ["shop"]

        clock.advance(timedelta(minutes=10))
        assert scheduler.enqueue_due() == 1
        assert await scheduler.trigger_now() == 0
        assert product.snapshot is not None
        assert scheduler.breaker.open_sources() == []

    @pytest.mark.asyncio
    async def test_missing_listing_does_not_trip_circuit(self) -> None:
        fetcher = _ScriptedFetcher([FetchFailure(FetchErrorKind.NOT_FOUND)] * 3)
        settings = _settings(circuit_failure_threshold=2)
        scheduler, registry, _ = _build(fetcher, settings=settings)
        registry.add(_make_product())

        for _ in range(3):
            await scheduler.poll_product("p1")

        assert scheduler.breaker.open_sources() == []
