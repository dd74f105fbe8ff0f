from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

import structlog

from tracker.src.contracts.models import HistoryPoint, utcnow

logger = structlog.get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class HistoryStore:
    """Bounded per-product price history.

    Retention rules:
    - Consecutive points with the same (price, currency) are collapsed on append
    - Points younger than ``retention_window`` are kept as-is
    - Older points are thinned to the min and max of each ``bucket``
    - The first and last point of a series survive thinning; when dropping
      the points between them leaves equal neighbours, the run collapses to
      its earliest point, or to the last point when the run ends the series
    - ``point_cap`` bounds the series; old non-extrema go first, then old
      extrema, then the oldest recent points
    """

    def __init__(
        self,
        retention_window: timedelta,
        point_cap: int,
        bucket: timedelta = timedelta(days=1),
    ) -> None:
        if point_cap < 2:
            raise ValueError("point_cap must be at least 2")
        self._retention_window = retention_window
        self._point_cap = point_cap
        self._bucket = bucket
        self._series: dict[str, list[HistoryPoint]] = {}

    def append(self, product_id: str, point: HistoryPoint, now: datetime | None = None) -> bool:
        """Store ``point`` if it differs from the last one. Returns True when stored."""
        series = self._series.setdefault(product_id, [])

        if series:
            last = series[-1]
            if point.timestamp < last.timestamp:
                logger.warning(
                    "history_point_out_of_order",
                    product_id=product_id,
                    last_timestamp=last.timestamp.isoformat(),
                    point_timestamp=point.timestamp.isoformat(),
                )
                return False
            if point.price == last.price and point.currency == last.currency:
                return False

        series.append(point)
        self._compact(product_id, series, now or utcnow())
        return True

    def read(self, product_id: str) -> tuple[HistoryPoint, ...]:
        return tuple(self._series.get(product_id, ()))

    def load(self, product_id: str, points: Iterable[HistoryPoint]) -> None:
        self._series[product_id] = sorted(points, key=lambda p: p.timestamp)

    def drop(self, product_id: str) -> None:
        self._series.pop(product_id, None)

    def product_ids(self) -> list[str]:
        return list(self._series)

    def _compact(self, product_id: str, series: list[HistoryPoint], now: datetime) -> None:
        cutoff = now - self._retention_window
        if len(series) <= self._point_cap and series[0].timestamp >= cutoff:
            return

        before = len(series)
        last_index = len(series) - 1
        old_indices = [i for i, p in enumerate(series) if p.timestamp < cutoff and 0 < i < last_index]
        old_set = set(old_indices)
        recent_indices = [i for i in range(1, last_index) if i not in old_set]

        extrema = self._bucket_extrema(series, old_indices)
        old_plain = [i for i in old_indices if i not in extrema]
        old_extrema = [i for i in old_indices if i in extrema]

        keep = set(range(len(series)))
        keep.difference_update(old_plain)

        # Oldest first within each tier.
        for index in old_extrema + recent_indices:
            if len(keep) <= self._point_cap:
                break
            keep.discard(index)

        series[:] = _collapse_repeats([series[i] for i in sorted(keep)])

        if len(series) != before:
            logger.debug(
                "history_compacted",
                product_id=product_id,
                before=before,
                after=len(series),
            )

    def _bucket_extrema(self, series: list[HistoryPoint], indices: list[int]) -> set[int]:
        buckets: dict[int, list[int]] = {}
        for i in indices:
            key = int((series[i].timestamp - _EPOCH) // self._bucket)
            buckets.setdefault(key, []).append(i)

        extrema: set[int] = set()
        for members in buckets.values():
            extrema.add(min(members, key=lambda i: series[i].price))
            extrema.add(max(members, key=lambda i: series[i].price))
        return extrema


def _collapse_repeats(points: list[HistoryPoint]) -> list[HistoryPoint]:
    collapsed: list[HistoryPoint] = []
    for index, point in enumerate(points):
        if collapsed and _same_value(collapsed[-1], point):
            if index == len(points) - 1:
                collapsed[-1] = point
            continue
        collapsed.append(point)
    return collapsed


def _same_value(a: HistoryPoint, b: HistoryPoint) -> bool:
    return a.price == b.price and a.currency == b.currency
