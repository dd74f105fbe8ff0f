from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from tracker.src.contracts.models import (
    Alert,
    AlertRow,
    AuctionFlags,
    ChangeKind,
    FetchErrorKind,
    HistoryPoint,
    HistoryPointRow,
    Snapshot,
    TrackedProduct,
    TrackedProductRow,
)

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; every timestamp the engine writes is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ProductRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_all(self) -> list[TrackedProductRow]:
        stmt = select(TrackedProductRow).options(selectinload(TrackedProductRow.history))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_id(self, product_id: str) -> TrackedProductRow | None:
        stmt = (
            select(TrackedProductRow)
            .where(TrackedProductRow.id == product_id)
            .options(selectinload(TrackedProductRow.history))
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, product: TrackedProduct, history: Sequence[HistoryPoint]) -> None:
        row = await self.get_by_id(product.id)
        if row is None:
            row = TrackedProductRow(id=product.id, history=[])
            self._session.add(row)

        row.source = product.source
        row.source_id = product.source_id
        row.snapshot = product.snapshot.model_dump(mode="json") if product.snapshot else None
        row.is_tracked = product.is_tracked
        row.poll_interval_seconds = (
            product.poll_interval.total_seconds() if product.poll_interval is not None else None
        )
        row.flagged_auction_end = product.flags.auction_end_time
        row.ending_soon_fired = product.flags.ending_soon_fired
        row.item_sold_fired = product.flags.item_sold_fired
        row.consecutive_failures = product.consecutive_failures
        row.fetch_degraded = product.fetch_degraded
        row.last_error = product.last_error.value if product.last_error else None
        row.last_inconsistency = product.last_inconsistency
        row.next_poll_at = product.next_poll_at
        row.last_polled_at = product.last_polled_at
        row.threshold_price = product.threshold_price
        row.threshold_percent = product.threshold_percent
        row.history = [
            HistoryPointRow(
                position=position,
                timestamp=point.timestamp,
                price=point.price,
                currency=point.currency,
            )
            for position, point in enumerate(history)
        ]

        await self._session.flush()

    async def delete(self, product_id: str) -> None:
        row = await self.get_by_id(product_id)
        if row is not None:
            await self._session.delete(row)
            await self._session.flush()

    @staticmethod
    def to_domain(row: TrackedProductRow) -> tuple[TrackedProduct, list[HistoryPoint]]:
        product = TrackedProduct(
            id=row.id,
            source=row.source,
            source_id=row.source_id,
            snapshot=Snapshot.model_validate(row.snapshot) if row.snapshot else None,
            is_tracked=row.is_tracked,
            poll_interval=(
                timedelta(seconds=row.poll_interval_seconds)
                if row.poll_interval_seconds is not None
                else None
            ),
            flags=AuctionFlags(
                auction_end_time=_as_utc(row.flagged_auction_end),
                ending_soon_fired=row.ending_soon_fired,
                item_sold_fired=row.item_sold_fired,
            ),
            consecutive_failures=row.consecutive_failures,
            fetch_degraded=row.fetch_degraded,
            last_error=FetchErrorKind(row.last_error) if row.last_error else None,
            last_inconsistency=row.last_inconsistency,
            next_poll_at=_as_utc(row.next_poll_at),
            last_polled_at=_as_utc(row.last_polled_at),
            threshold_price=row.threshold_price,
            threshold_percent=row.threshold_percent,
        )
        history = [
            HistoryPoint(timestamp=_as_utc(p.timestamp), price=p.price, currency=p.currency)
            for p in row.history
        ]
        return product, history


class AlertRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_all(self) -> list[Alert]:
        stmt = select(AlertRow).order_by(AlertRow.created_at)
        result = await self._session.execute(stmt)
        return [self.to_domain(row) for row in result.scalars().all()]

    async def upsert(self, alert: Alert) -> None:
        row = await self._session.get(AlertRow, str(alert.id))
        if row is None:
            row = AlertRow(id=str(alert.id))
            self._session.add(row)

        row.product_id = alert.product_id
        row.kind = alert.kind.value
        row.template = alert.template
        row.message = alert.message
        row.payload = alert.payload
        row.created_at = alert.created_at
        row.is_read = alert.is_read
        row.auction_end_time = alert.auction_end_time
        row.current_bid = alert.current_bid
        row.window_started_at = alert.window_started_at
        await self._session.flush()

    async def mark_read(self, alert_id: uuid.UUID) -> bool:
        row = await self._session.get(AlertRow, str(alert_id))
        if row is None:
            return False
        row.is_read = True
        await self._session.flush()
        return True

    async def delete(self, alert_id: uuid.UUID) -> bool:
        result = await self._session.execute(delete(AlertRow).where(AlertRow.id == str(alert_id)))
        return bool(result.rowcount)

    async def prune(self, keep: int) -> int:
        """Delete alerts beyond ``keep``, oldest read ones first."""
        stmt = select(AlertRow.id).order_by(AlertRow.is_read.desc(), AlertRow.created_at)
        ids = list((await self._session.execute(stmt)).scalars().all())
        overflow = len(ids) - keep
        if overflow <= 0:
            return 0
        await self._session.execute(delete(AlertRow).where(AlertRow.id.in_(ids[:overflow])))
        return overflow

    @staticmethod
    def to_domain(row: AlertRow) -> Alert:
        return Alert(
            id=uuid.UUID(row.id),
            product_id=row.product_id,
            kind=ChangeKind(row.kind),
            template=row.template,
            message=row.message,
            payload=row.payload,
            created_at=_as_utc(row.created_at),
            is_read=row.is_read,
            auction_end_time=_as_utc(row.auction_end_time),
            current_bid=row.current_bid,
            window_started_at=_as_utc(row.window_started_at),
        )


class SqlStateStore:
    """IStateStore backed by an async session factory, one transaction per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save_product(self, product: TrackedProduct, history: Sequence[HistoryPoint]) -> None:
        async with self._session_factory() as session:
            await ProductRepository(session).upsert(product, history)
            await session.commit()

    async def delete_product(self, product_id: str) -> None:
        async with self._session_factory() as session:
            await ProductRepository(session).delete(product_id)
            await session.commit()

    async def load_products(self) -> list[tuple[TrackedProduct, list[HistoryPoint]]]:
        async with self._session_factory() as session:
            rows = await ProductRepository(session).get_all()
            return [ProductRepository.to_domain(row) for row in rows]

    async def load_alerts(self) -> list[Alert]:
        async with self._session_factory() as session:
            return await AlertRepository(session).get_all()
