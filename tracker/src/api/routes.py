import uuid
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tracker.src.api.database import get_db
from tracker.src.contracts.models import Alert, FetchErrorKind, HistoryPoint, Snapshot, TrackedProduct
from tracker.src.tracking.service import TrackingService

router = APIRouter()


# ── Request / Response schemas ────────────────────────────────────────────────


class TrackRequest(BaseModel):
    source: str = Field(min_length=1, max_length=100)
    source_id: str = Field(min_length=1, max_length=200)
    poll_interval_minutes: float | None = Field(default=None, gt=0)
    threshold_price: float | None = Field(default=None, gt=0)
    threshold_percent: float | None = Field(default=None, gt=0, le=100)


class ProductRead(BaseModel):
    id: str
    source: str
    source_id: str
    snapshot: Snapshot | None
    fetch_degraded: bool
    consecutive_failures: int
    last_error: FetchErrorKind | None
    last_inconsistency: str | None
    next_poll_at: datetime
    last_polled_at: datetime | None
    threshold_price: float | None
    threshold_percent: float | None

    @classmethod
    def from_domain(cls, product: TrackedProduct) -> "ProductRead":
        return cls(
            id=product.id,
            source=product.source,
            source_id=product.source_id,
            snapshot=product.snapshot,
            fetch_degraded=product.fetch_degraded,
            consecutive_failures=product.consecutive_failures,
            last_error=product.last_error,
            last_inconsistency=product.last_inconsistency,
            next_poll_at=product.next_poll_at,
            last_polled_at=product.last_polled_at,
            threshold_price=product.threshold_price,
            threshold_percent=product.threshold_percent,
        )


class HealthResponse(BaseModel):
    status: str
    db: str
    tracked_products: int
    unread_alerts: int
    open_circuits: list[str]


def get_tracking_service(request: Request) -> TrackingService:
    return request.app.state.tracking


# ── Product routes ────────────────────────────────────────────────────────────


@router.post("/products", status_code=status.HTTP_201_CREATED)
async def track_product(
    body: TrackRequest,
    service: TrackingService = Depends(get_tracking_service),
) -> ProductRead:
    interval = (
        timedelta(minutes=body.poll_interval_minutes)
        if body.poll_interval_minutes is not None
        else None
    )
    product = await service.track(
        body.source,
        body.source_id,
        poll_interval=interval,
        threshold_price=body.threshold_price,
        threshold_percent=body.threshold_percent,
    )
    return ProductRead.from_domain(product)


@router.get("/products")
async def list_products(
    service: TrackingService = Depends(get_tracking_service),
) -> list[ProductRead]:
    return [ProductRead.from_domain(p) for p in service.products()]


@router.get("/products/{product_id}")
async def get_product(
    product_id: str,
    service: TrackingService = Depends(get_tracking_service),
) -> ProductRead:
    product = service.product(product_id)
    if product is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not tracked")
    return ProductRead.from_domain(product)


@router.delete("/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
async def untrack_product(
    product_id: str,
    service: TrackingService = Depends(get_tracking_service),
) -> Response:
    removed = await service.untrack(product_id)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not tracked")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/products/{product_id}/history")
async def get_history(
    product_id: str,
    service: TrackingService = Depends(get_tracking_service),
) -> list[HistoryPoint]:
    if service.product(product_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not tracked")
    return list(service.history_for(product_id))


# ── Alert routes ──────────────────────────────────────────────────────────────


@router.get("/alerts")
async def list_alerts(
    unread_only: bool = False,
    product_id: str | None = None,
    service: TrackingService = Depends(get_tracking_service),
) -> list[Alert]:
    return service.alerts(unread_only=unread_only, product_id=product_id)


@router.post("/alerts/{alert_id}/read")
async def mark_alert_read(
    alert_id: uuid.UUID,
    service: TrackingService = Depends(get_tracking_service),
) -> Alert:
    if not await service.mark_read(alert_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    alert = service.inbox.get(alert_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return alert


@router.delete("/alerts/{alert_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_alert(
    alert_id: uuid.UUID,
    service: TrackingService = Depends(get_tracking_service),
) -> Response:
    if not await service.delete_alert(alert_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Health ────────────────────────────────────────────────────────────────────


@router.get("/health")
async def health(
    session: AsyncSession = Depends(get_db),
    service: TrackingService = Depends(get_tracking_service),
) -> HealthResponse:
    db_status = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except Exception:  # noqa: BLE001
        db_status = "error"

    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        db=db_status,
        tracked_products=len(service.products()),
        unread_alerts=service.inbox.unread_count(),
        open_circuits=service.scheduler.breaker.open_sources(),
    )
