from __future__ import annotations

import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tracker.src.contracts.models import Alert
from tracker.src.products.repository import AlertRepository


class AlertArchive:
    """Persists alerts and their read state so they survive restarts."""

    name = "archive"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retention_count: int = 200,
    ) -> None:
        self._session_factory = session_factory
        self._retention_count = retention_count

    async def send(self, alert: Alert) -> bool:
        async with self._session_factory() as session:
            repo = AlertRepository(session)
            await repo.upsert(alert)
            await repo.prune(self._retention_count)
            await session.commit()
        return True

    async def mark_read(self, alert_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            found = await AlertRepository(session).mark_read(alert_id)
            await session.commit()
        return found

    async def delete(self, alert_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            deleted = await AlertRepository(session).delete(alert_id)
            await session.commit()
        return deleted
