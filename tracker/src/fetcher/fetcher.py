from __future__ import annotations

import abc
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from tracker.src.contracts.errors import FetchFailure
from tracker.src.contracts.models import FetchErrorKind, Snapshot, TrackedProduct

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_USER_AGENT = "tracker-engine/0.1 (+price tracking)"


def parse_retry_after(value: str, now: datetime) -> timedelta | None:
    """Read a ``Retry-After`` header given as delta-seconds or an HTTP date."""
    value = value.strip()
    if not value:
        return None
    if value.isdigit():
        return timedelta(seconds=int(value))
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("retry_after_unparseable", value=value)
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(retry_at - now, timedelta(0))


class BaseFetcher(abc.ABC):
    """Common HTTP plumbing for retailer snapshot strategies.

    Subclasses supply the product URL and turn the decoded response body into a
    ``Snapshot``. Transport, status, and parse problems are mapped onto
    ``FetchFailure`` kinds so the scheduler can back off uniformly.
    """

    def __init__(self, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self._timeout = timeout
        self._client = client

    @property
    @abc.abstractmethod
    def source(self) -> str:
        ...

    @abc.abstractmethod
    def product_url(self, product: TrackedProduct) -> str:
        ...

    @abc.abstractmethod
    def parse_snapshot(self, payload: Any, fetched_at: datetime) -> Snapshot:
        ...

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={
                "User-Agent": _USER_AGENT,
                "Accept": "application/json",
            },
            follow_redirects=True,
            timeout=httpx.Timeout(self._timeout),
        )

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url)
        async with self._build_client() as client:
            return await client.get(url)

    async def fetch(self, product: TrackedProduct) -> Snapshot:
        url = self.product_url(product)
        log = logger.bind(source=self.source, product_id=product.id, url=url)

        try:
            response = await self._get(url)
        except httpx.TimeoutException as exc:
            raise FetchFailure(FetchErrorKind.TIMEOUT, str(exc)) from exc
        except httpx.RequestError as exc:
            raise FetchFailure(FetchErrorKind.UNKNOWN, str(exc)) from exc

        if response.status_code in (404, 410):
            raise FetchFailure(FetchErrorKind.NOT_FOUND, f"HTTP {response.status_code}")
        if response.status_code == 429:
            header = response.headers.get("Retry-After", "")
            raise FetchFailure(
                FetchErrorKind.RATE_LIMITED,
                header,
                retry_after=parse_retry_after(header, datetime.now(tz=timezone.utc)),
            )
        if response.status_code >= 400:
            raise FetchFailure(FetchErrorKind.UNKNOWN, f"HTTP {response.status_code}")

        fetched_at = datetime.now(tz=timezone.utc)
        try:
            snapshot = self.parse_snapshot(response.json(), fetched_at)
        except (ValueError, KeyError, TypeError, ValidationError) as exc:
            raise FetchFailure(FetchErrorKind.RETAILER_FORMAT_CHANGED, str(exc)) from exc

        log.debug("snapshot_fetched", price=snapshot.price, in_stock=snapshot.in_stock)
        return snapshot


class JsonApiFetcher(BaseFetcher):
    """Strategy for retailers exposed through a normalized JSON product endpoint.

    ``GET {base_url}/products/{source_id}`` must return an object carrying at
    least ``price`` (or ``current_bid``) and ``in_stock``. ``field_map`` renames
    retailer keys onto ``Snapshot`` fields.
    """

    def __init__(
        self,
        source: str,
        base_url: str,
        field_map: dict[str, str] | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self._source = source
        self._base_url = base_url.rstrip("/")
        self._field_map = field_map or {}

    @property
    def source(self) -> str:
        return self._source

    def product_url(self, product: TrackedProduct) -> str:
        return f"{self._base_url}/products/{product.source_id}"

    def parse_snapshot(self, payload: Any, fetched_at: datetime) -> Snapshot:
        if not isinstance(payload, dict):
            raise TypeError(f"expected JSON object, got {type(payload).__name__}")

        data = {self._field_map.get(key, key): value for key, value in payload.items()}
        if "in_stock" not in data:
            raise KeyError("in_stock")
        if data.get("price") is None and data.get("current_bid") is None:
            raise KeyError("price")

        return Snapshot(
            timestamp=fetched_at,
            price=data.get("price"),
            currency=data.get("currency") or "USD",
            in_stock=data["in_stock"],
            stock_quantity=data.get("stock_quantity"),
            availability=data.get("availability"),
            auction_end_time=data.get("auction_end_time"),
            current_bid=data.get("current_bid"),
        )
