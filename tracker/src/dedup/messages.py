from __future__ import annotations

from datetime import datetime
from typing import Any

from tracker.src.contracts.models import ChangeEvent, ChangeKind

# Template names are stable identifiers for presentation layers; the English
# strings are only a fallback rendering.
TEMPLATES: dict[ChangeKind, str] = {
    ChangeKind.PRICE_DROPPED: "Price dropped from {previous} to {new} {currency}",
    ChangeKind.PRICE_INCREASED: "Price increased from {previous} to {new} {currency}",
    ChangeKind.BACK_IN_STOCK: "Back in stock",
    ChangeKind.SOLD_OUT: "Sold out",
    ChangeKind.ENDING_SOON: "Auction ending soon at {end}",
    ChangeKind.ITEM_SOLD: "Auction ended",
}


def template_name(kind: ChangeKind) -> str:
    return kind.value


def percent_change(previous: float, new: float) -> float:
    if previous == 0:
        return 0.0
    return round(((new - previous) / previous) * 100.0, 1)


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def build_payload(
    event: ChangeEvent,
    previous_value: Any | None = None,
    threshold_price: float | None = None,
) -> dict[str, Any]:
    """Structured values for an alert. ``previous_value`` overrides the event's."""
    previous = event.previous_value if previous_value is None else previous_value
    payload: dict[str, Any] = {
        "previous_value": _json_value(previous),
        "new_value": _json_value(event.new_value),
    }
    if event.currency is not None:
        payload["currency"] = event.currency
    if event.kind in (ChangeKind.PRICE_DROPPED, ChangeKind.PRICE_INCREASED):
        if isinstance(previous, float) and isinstance(event.new_value, float):
            payload["percent_change"] = percent_change(previous, event.new_value)
    if event.auction_end_time is not None:
        payload["auction_end_time"] = event.auction_end_time.isoformat()
    if event.current_bid is not None:
        payload["current_bid"] = event.current_bid
    if threshold_price is not None:
        payload["threshold_price"] = threshold_price
    return payload


def render_message(event: ChangeEvent, payload: dict[str, Any]) -> str:
    template = TEMPLATES[event.kind]
    previous = payload.get("previous_value")
    new = payload.get("new_value")
    message = template.format(
        previous=f"{previous:.2f}" if isinstance(previous, float) else previous,
        new=f"{new:.2f}" if isinstance(new, float) else new,
        currency=payload.get("currency", ""),
        end=payload.get("auction_end_time", ""),
    ).strip()
    threshold = payload.get("threshold_price")
    if threshold is not None:
        message += f" (below your {threshold:.2f} threshold)"
    return message
