from __future__ import annotations

import random
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tracker.src.config import Settings
from tracker.src.contracts.interfaces import IAlertChannel
from tracker.src.contracts.models import (
    Alert,
    AlertPreferences,
    HistoryPoint,
    TrackedProduct,
    utcnow,
)
from tracker.src.dedup.deduplicator import AlertDeduplicator
from tracker.src.detector.detector import ChangeDetector
from tracker.src.fetcher.registry import FetcherRegistry
from tracker.src.history.store import HistoryStore
from tracker.src.products.registry import ProductRegistry
from tracker.src.products.repository import SqlStateStore
from tracker.src.scheduler.scheduler import PollScheduler
from tracker.src.sink import AlertArchive, AlertInbox, BufferedAlertSink, ChannelRegistry, WebhookChannel

logger = structlog.get_logger(__name__)


def preferences_from_settings(settings: Settings) -> AlertPreferences:
    return AlertPreferences(
        notify_price_drops=settings.notify_price_drops,
        notify_price_increases=settings.notify_price_increases,
        notify_stock_changes=settings.notify_stock_changes,
        notify_auction_updates=settings.notify_auction_updates,
        min_price_drop_percent=settings.min_price_drop_percent,
        min_price_drop_amount=settings.min_price_drop_amount,
    )


class TrackingService:
    """Wires the engine together and exposes the operations the API needs."""

    def __init__(
        self,
        settings: Settings,
        fetchers: FetcherRegistry,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        extra_channels: list[IAlertChannel] | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._state_store = SqlStateStore(session_factory) if session_factory is not None else None

        self.registry = ProductRegistry()
        self.history = HistoryStore(
            retention_window=settings.history_retention_window,
            point_cap=settings.history_point_cap,
            bucket=settings.history_bucket,
        )
        self.detector = ChangeDetector(
            ending_soon_threshold=settings.auction_urgent_threshold,
            price_epsilon=settings.price_epsilon,
        )
        self.deduplicator = AlertDeduplicator(
            cooldown=settings.dedup_cooldown,
            preferences=preferences_from_settings(settings),
        )

        self.inbox = AlertInbox(
            retention_count=settings.alert_retention_count,
            on_evict=self.deduplicator.discard,
        )
        channels: list[IAlertChannel] = [self.inbox]
        if session_factory is not None:
            channels.append(AlertArchive(session_factory, retention_count=settings.alert_retention_count))
        if settings.webhook_url:
            channels.append(WebhookChannel(settings.webhook_url, timeout=settings.fetch_timeout_seconds))
        channels.extend(extra_channels or [])
        self.channels = ChannelRegistry(channels)
        self.sink = BufferedAlertSink(self.channels, max_pending=settings.sink_queue_size)

        self.scheduler = PollScheduler(
            settings=settings,
            registry=self.registry,
            fetchers=fetchers,
            detector=self.detector,
            history=self.history,
            deduplicator=self.deduplicator,
            sink=self.sink,
            state_store=self._state_store,
            clock=clock,
            rng=rng,
        )

    async def restore(self) -> None:
        """Reload products, history, and alerts persisted by a previous run."""
        if self._state_store is None:
            return

        for product, points in await self._state_store.load_products():
            if not product.is_tracked:
                continue
            self.registry.add(product)
            self.history.load(product.id, points)

        alerts = await self._state_store.load_alerts()
        self.deduplicator.restore(alerts)
        self.inbox.load(alerts)
        logger.info("state_restored", products=len(self.registry), alerts=len(alerts))

    async def start(self) -> None:
        await self.restore()
        self.sink.start()
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.sink.stop()

    async def track(
        self,
        source: str,
        source_id: str,
        poll_interval: timedelta | None = None,
        product_id: str | None = None,
        threshold_price: float | None = None,
        threshold_percent: float | None = None,
    ) -> TrackedProduct:
        existing = self.registry.find_by_source(source, source_id)
        if existing is not None:
            return existing

        product = TrackedProduct(
            id=product_id or str(uuid.uuid4()),
            source=source,
            source_id=source_id,
            poll_interval=poll_interval,
            threshold_price=threshold_price,
            threshold_percent=threshold_percent,
            next_poll_at=self._clock(),
        )
        self.registry.add(product)
        await self._save(product)
        logger.info("product_tracked", product_id=product.id, source=source, source_id=source_id)
        return product

    async def untrack(self, product_id: str) -> bool:
        product = self.registry.remove(product_id)
        if product is None:
            return False

        self.history.drop(product_id)
        self.deduplicator.forget(product_id)
        # Waits for an in-flight cycle; its result is discarded.
        async with self.registry.lock(product_id):
            if self._state_store is not None:
                await self._state_store.delete_product(product_id)
        self.registry.discard_lock(product_id)
        logger.info("product_untracked", product_id=product_id)
        return True

    def products(self) -> list[TrackedProduct]:
        return self.registry.all()

    def product(self, product_id: str) -> TrackedProduct | None:
        return self.registry.get(product_id)

    def history_for(self, product_id: str) -> tuple[HistoryPoint, ...]:
        return self.history.read(product_id)

    def alerts(self, unread_only: bool = False, product_id: str | None = None) -> list[Alert]:
        return self.inbox.list(unread_only=unread_only, product_id=product_id)

    async def mark_read(self, alert_id: uuid.UUID) -> bool:
        self.deduplicator.mark_read(alert_id)
        return await self.sink.mark_read(alert_id)

    async def delete_alert(self, alert_id: uuid.UUID) -> bool:
        self.deduplicator.discard(alert_id)
        return await self.sink.delete(alert_id)

    async def _save(self, product: TrackedProduct) -> None:
        if self._state_store is None:
            return
        async with self.registry.lock(product.id):
            await self._state_store.save_product(product, self.history.read(product.id))
