from __future__ import annotations

import asyncio
import enum
import random
from collections.abc import Callable
from datetime import datetime

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tracker.src.config import Settings
from tracker.src.contracts.errors import FetchFailure
from tracker.src.contracts.interfaces import IAlertSink, IStateStore
from tracker.src.contracts.models import FetchErrorKind, HistoryPoint, Snapshot, TrackedProduct, utcnow
from tracker.src.dedup.deduplicator import AlertDeduplicator
from tracker.src.detector.detector import ChangeDetector
from tracker.src.fetcher.registry import FetcherRegistry
from tracker.src.history.store import HistoryStore
from tracker.src.products.registry import ProductRegistry
from tracker.src.scheduler.breaker import SourceCircuitBreaker
from tracker.src.scheduler.policy import backoff_delay, next_poll_interval

logger = structlog.get_logger(__name__)

# Exponent large enough that the backoff always sits at the cap.
_DEGRADED_EXPONENT = 20


class CycleOutcome(str, enum.Enum):
    UPDATED = "updated"
    FAILED = "failed"
    DISCARDED = "discarded"
    SKIPPED = "skipped"


class PollScheduler:
    """Drives fetch -> detect -> history -> dedup -> deliver cycles.

    An APScheduler interval job enqueues every tracked product whose
    ``next_poll_at`` has passed; ``max_concurrent_fetches`` asyncio workers
    drain the queue. A product is never queued twice nor polled concurrently
    with itself, and products whose source circuit is open are left waiting.
    """

    def __init__(
        self,
        settings: Settings,
        registry: ProductRegistry,
        fetchers: FetcherRegistry,
        detector: ChangeDetector,
        history: HistoryStore,
        deduplicator: AlertDeduplicator,
        sink: IAlertSink,
        state_store: IStateStore | None = None,
        breaker: SourceCircuitBreaker | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._fetchers = fetchers
        self._detector = detector
        self._history = history
        self._deduplicator = deduplicator
        self._sink = sink
        self._state_store = state_store
        self._clock = clock
        self._rng = rng or random.Random()
        self.breaker = breaker or SourceCircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_timeout,
        )

        self._scheduler = AsyncIOScheduler()
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: set[str] = set()
        self._in_flight: set[str] = set()
        self._workers: list[asyncio.Task[None]] = []

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def start(self) -> None:
        self._workers = self._spawn_workers()
        self._scheduler.add_job(
            self._dispatch_tick,
            trigger=IntervalTrigger(seconds=self._settings.dispatch_interval_seconds),
            id="dispatch_due",
            name="Enqueue products due for polling",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "scheduler_configured",
            workers=len(self._workers),
            dispatch_interval_seconds=self._settings.dispatch_interval_seconds,
        )

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        await self._cancel_workers(self._workers)
        self._workers = []
        logger.info("scheduler_shutdown")

    async def trigger_now(self) -> int:
        """Enqueue every due product and wait until the queue is drained."""
        count = self.enqueue_due()
        if self._workers:
            await self._queue.join()
            return count

        workers = self._spawn_workers()
        try:
            await self._queue.join()
        finally:
            await self._cancel_workers(workers)
        return count

    def enqueue_due(self) -> int:
        now = self._clock()
        due = [
            p
            for p in self._registry.all()
            if p.is_tracked
            and p.next_poll_at <= now
            and p.id not in self._queued
            and p.id not in self._in_flight
        ]
        due.sort(key=lambda p: p.next_poll_at)
        enqueued = 0
        held: dict[str, int] = {}
        for product in due:
            if not self.breaker.allow(product.source, now):
                held[product.source] = held.get(product.source, 0) + 1
                continue
            self._queued.add(product.id)
            self._queue.put_nowait(product.id)
            enqueued += 1
        if held:
            logger.debug("products_held_circuit_open", held=held)
        if enqueued:
            logger.debug("products_enqueued", count=enqueued, queue_size=self._queue.qsize())
        return enqueued

    async def poll_product(self, product_id: str) -> CycleOutcome:
        """Run one poll cycle for ``product_id``, serialised per product."""
        product = self._registry.get(product_id)
        if product is None or not product.is_tracked:
            return CycleOutcome.SKIPPED

        self._in_flight.add(product_id)
        try:
            async with self._registry.lock(product_id):
                return await self._run_cycle(product)
        finally:
            self._in_flight.discard(product_id)

    async def _dispatch_tick(self) -> None:
        self.enqueue_due()

    def _spawn_workers(self) -> list[asyncio.Task[None]]:
        return [
            asyncio.create_task(self._worker(index), name=f"poll-worker-{index}")
            for index in range(self._settings.max_concurrent_fetches)
        ]

    @staticmethod
    async def _cancel_workers(workers: list[asyncio.Task[None]]) -> None:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def _worker(self, index: int) -> None:
        while True:
            product_id = await self._queue.get()
            self._queued.discard(product_id)
            try:
                await self.poll_product(product_id)
            except Exception:
                logger.error("poll_cycle_error", worker=index, product_id=product_id, exc_info=True)
            finally:
                self._queue.task_done()

    async def _fetch(self, product: TrackedProduct) -> Snapshot:
        fetcher = self._fetchers.get(product.source)
        try:
            return await asyncio.wait_for(
                fetcher.fetch(product),
                timeout=self._settings.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise FetchFailure(
                FetchErrorKind.TIMEOUT,
                f"no snapshot within {self._settings.fetch_timeout_seconds}s",
            ) from exc

    async def _run_cycle(self, product: TrackedProduct) -> CycleOutcome:
        log = logger.bind(product_id=product.id, source=product.source)

        snapshot: Snapshot | None = None
        failure: FetchFailure | None = None
        try:
            snapshot = await self._fetch(product)
        except FetchFailure as exc:
            failure = exc
        except Exception as exc:  # noqa: BLE001
            log.error("fetch_unexpected_error", exc_info=True)
            failure = FetchFailure(FetchErrorKind.UNKNOWN, str(exc))

        if snapshot is None and failure is None:
            failure = FetchFailure(FetchErrorKind.UNKNOWN)

        now = self._clock()
        if failure is not None:
            self.breaker.record_failure(product.source, failure.kind, now)
        else:
            self.breaker.record_success(product.source)

        if not self._registry.is_tracked(product.id):
            log.info("poll_result_discarded_untracked")
            return CycleOutcome.DISCARDED

        product.last_polled_at = now

        if failure is not None or snapshot is None:
            self._record_failure(product, failure or FetchFailure(FetchErrorKind.UNKNOWN), now, log)
            await self._persist(product)
            return CycleOutcome.FAILED

        result = self._detector.detect(product.id, product.snapshot, snapshot, product.flags)
        for inconsistency in result.inconsistencies:
            log.warning(
                "data_inconsistency_recorded",
                reason=inconsistency.reason,
                detail=inconsistency.detail,
            )
            product.last_inconsistency = f"{inconsistency.reason}: {inconsistency.detail}"

        point = HistoryPoint.from_snapshot(snapshot)
        if point is not None:
            self._history.append(product.id, point, now=now)

        if product.fetch_degraded:
            log.info("fetch_recovered", after_failures=product.consecutive_failures)
        product.snapshot = snapshot
        product.flags = result.flags
        product.consecutive_failures = 0
        product.fetch_degraded = False
        product.last_error = None
        product.next_poll_at = now + next_poll_interval(
            snapshot.auction_end_time,
            now,
            product.poll_interval or self._settings.poll_interval,
            self._settings.auction_urgent_interval,
            self._settings.auction_urgent_threshold,
        )

        alerts = self._deduplicator.process(result.events, product)
        for alert in alerts:
            self._sink.deliver(alert)

        await self._persist(product)
        log.info(
            "poll_cycle_complete",
            events=len(result.events),
            alerts=len(alerts),
            next_poll_at=product.next_poll_at.isoformat(),
        )
        return CycleOutcome.UPDATED

    def _record_failure(
        self,
        product: TrackedProduct,
        failure: FetchFailure,
        now: datetime,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        product.consecutive_failures += 1
        product.last_error = failure.kind

        if failure.kind == FetchErrorKind.RETAILER_FORMAT_CHANGED:
            log.error(
                "retailer_format_changed",
                detail=failure.detail,
                consecutive_failures=product.consecutive_failures,
            )
        else:
            log.warning(
                "fetch_failed",
                kind=failure.kind.value,
                detail=failure.detail,
                consecutive_failures=product.consecutive_failures,
            )

        if (
            not product.fetch_degraded
            and product.consecutive_failures >= self._settings.max_consecutive_failures
        ):
            product.fetch_degraded = True
            log.warning("fetch_degraded", consecutive_failures=product.consecutive_failures)

        exponent = _DEGRADED_EXPONENT if product.fetch_degraded else product.consecutive_failures
        delay = backoff_delay(
            exponent,
            self._settings.backoff_base,
            self._settings.backoff_cap,
            jitter=self._settings.backoff_jitter,
            rng=self._rng,
        )
        product.next_poll_at = now + delay
        if failure.retry_after is not None and failure.retry_after > delay:
            product.next_poll_at = now + failure.retry_after
            log.info("retry_after_honoured", retry_after_seconds=failure.retry_after.total_seconds())

    async def _persist(self, product: TrackedProduct) -> None:
        if self._state_store is None:
            return
        try:
            await self._state_store.save_product(product, self._history.read(product.id))
        except Exception:
            logger.error("state_persist_failed", product_id=product.id, exc_info=True)
