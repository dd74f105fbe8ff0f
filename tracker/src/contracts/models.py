from __future__ import annotations

import enum
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────────────


class ChangeKind(str, enum.Enum):
    PRICE_DROPPED = "price_dropped"
    PRICE_INCREASED = "price_increased"
    BACK_IN_STOCK = "back_in_stock"
    SOLD_OUT = "sold_out"
    ENDING_SOON = "ending_soon"
    ITEM_SOLD = "item_sold"


STOCK_KINDS = frozenset({ChangeKind.BACK_IN_STOCK, ChangeKind.SOLD_OUT})
PRICE_KINDS = frozenset({ChangeKind.PRICE_DROPPED, ChangeKind.PRICE_INCREASED})
AUCTION_KINDS = frozenset({ChangeKind.ENDING_SOON, ChangeKind.ITEM_SOLD})


class FetchErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    RETAILER_FORMAT_CHANGED = "retailer_format_changed"
    UNKNOWN = "unknown"


# ── Pydantic schemas ──────────────────────────────────────────────────────────


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    price: float | None = None
    currency: str = "USD"
    in_stock: bool = True
    stock_quantity: int | None = None
    availability: str | None = None
    auction_end_time: datetime | None = None
    current_bid: float | None = None

    @field_validator("timestamp", "auction_end_time")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_auction(self) -> bool:
        return self.auction_end_time is not None


class HistoryPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    price: float
    currency: str

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "HistoryPoint | None":
        if snapshot.price is None:
            return None
        return cls(timestamp=snapshot.timestamp, price=snapshot.price, currency=snapshot.currency)


ChangeValue = bool | float | datetime | None


class ChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    kind: ChangeKind
    previous_value: ChangeValue = None
    new_value: ChangeValue = None
    timestamp: datetime
    currency: str | None = None
    auction_end_time: datetime | None = None
    current_bid: float | None = None


class AuctionFlags(BaseModel):
    """One-shot auction state. Reset whenever the tracked end time changes."""

    model_config = ConfigDict(frozen=True)

    auction_end_time: datetime | None = None
    ending_soon_fired: bool = False
    item_sold_fired: bool = False


class DataInconsistency(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    reason: str
    detail: str = ""
    timestamp: datetime


class TrackedProduct(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: str
    source_id: str
    snapshot: Snapshot | None = None
    is_tracked: bool = True
    poll_interval: timedelta | None = None
    flags: AuctionFlags = Field(default_factory=AuctionFlags)
    consecutive_failures: int = 0
    fetch_degraded: bool = False
    last_error: FetchErrorKind | None = None
    last_inconsistency: str | None = None
    next_poll_at: datetime = Field(default_factory=utcnow)
    last_polled_at: datetime | None = None
    # Per-product drop targets; when either is set they replace the global minimums.
    threshold_price: float | None = Field(default=None, gt=0)
    threshold_percent: float | None = Field(default=None, gt=0, le=100)


class Alert(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    product_id: str
    kind: ChangeKind
    template: str
    message: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    is_read: bool = False
    auction_end_time: datetime | None = None
    current_bid: float | None = None
    # Start of the cool-down window; coalescing moves created_at but not this.
    window_started_at: datetime | None = None


class AlertPreferences(BaseModel):
    notify_price_drops: bool = True
    notify_price_increases: bool = True
    notify_stock_changes: bool = True
    notify_auction_updates: bool = True
    min_price_drop_percent: float = 0.0
    min_price_drop_amount: float = 0.0


# ── SQLAlchemy ORM ─────────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    pass


class TrackedProductRow(Base):
    __tablename__ = "tracked_products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    source_id: Mapped[str] = mapped_column(String(200), nullable=False)
    snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    is_tracked: Mapped[bool] = mapped_column(Boolean, default=True)
    poll_interval_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    flagged_auction_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ending_soon_fired: Mapped[bool] = mapped_column(Boolean, default=False)
    item_sold_fired: Mapped[bool] = mapped_column(Boolean, default=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    fetch_degraded: Mapped[bool] = mapped_column(Boolean, default=False)
    last_error: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_inconsistency: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_poll_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_polled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    threshold_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold_percent: Mapped[float | None] = mapped_column(Float, nullable=True)

    history: Mapped[list["HistoryPointRow"]] = relationship(
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="HistoryPointRow.position",
    )

    __table_args__ = (
        Index("ix_tracked_products_source", "source", "source_id"),
    )


class HistoryPointRow(Base):
    __tablename__ = "history_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tracked_products.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)

    product: Mapped["TrackedProductRow"] = relationship(back_populates="history")

    __table_args__ = (
        Index("ix_history_points_product_id", "product_id"),
    )


class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # Weak reference: alerts outlive their product.
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    template: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    auction_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_bid: Mapped[float | None] = mapped_column(Float, nullable=True)
    window_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_alerts_product_kind", "product_id", "kind"),
    )
