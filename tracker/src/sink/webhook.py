from __future__ import annotations

import asyncio
import json
import uuid

import httpx
import structlog

from tracker.src.contracts.models import Alert

logger = structlog.get_logger(__name__)

_MAX_RETRIES = 3
_BASE_DELAY = 1.0


def build_webhook_payload(alert: Alert) -> str:
    """Build the JSON body posted for an alert event."""
    return json.dumps(
        {
            "event": "alert",
            "alert": alert.model_dump(mode="json"),
        },
        ensure_ascii=False,
    )


class WebhookChannel:
    """IAlertChannel that posts alerts to an external HTTP endpoint."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    async def send(self, alert: Alert) -> bool:
        return await self._post(build_webhook_payload(alert), alert_id=alert.id)

    async def mark_read(self, alert_id: uuid.UUID) -> bool:
        body = json.dumps({"event": "alert_read", "alert_id": str(alert_id)})
        return await self._post(body, alert_id=alert_id)

    async def delete(self, alert_id: uuid.UUID) -> bool:
        body = json.dumps({"event": "alert_deleted", "alert_id": str(alert_id)})
        return await self._post(body, alert_id=alert_id)

    async def _post(self, body: str, alert_id: uuid.UUID) -> bool:
        log = logger.bind(alert_id=str(alert_id), channel=self.name)

        last_exc: Exception | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                response = await self._request(body)
                response.raise_for_status()
                log.info("webhook_sent", attempt=attempt + 1)
                return True
            except httpx.HTTPError as exc:
                last_exc = exc
                delay = _BASE_DELAY * (2**attempt)
                log.warning(
                    "webhook_send_failed",
                    attempt=attempt + 1,
                    error=str(exc),
                    retry_in=delay,
                )
                if attempt < _MAX_RETRIES - 1:
                    await asyncio.sleep(delay)

        log.error("webhook_send_exhausted", error=str(last_exc))
        return False

    async def _request(self, body: str) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self._client is not None:
            return await self._client.post(self._url, content=body, headers=headers)
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as client:
            return await client.post(self._url, content=body, headers=headers)
