from __future__ import annotations

import structlog

from tracker.src.contracts.errors import FetchFailure
from tracker.src.contracts.interfaces import ISnapshotFetcher
from tracker.src.contracts.models import FetchErrorKind
from tracker.src.fetcher.fetcher import JsonApiFetcher

logger = structlog.get_logger(__name__)


class FetcherRegistry:
    """Selects the snapshot strategy for a product by its ``source`` retailer key.

    Adding a retailer requires only registering a new fetcher; the detection
    core stays retailer-agnostic.
    """

    def __init__(self, fetchers: list[ISnapshotFetcher] | None = None) -> None:
        self._fetchers: dict[str, ISnapshotFetcher] = {}
        for fetcher in fetchers or []:
            self.register(fetcher)

    @classmethod
    def from_endpoints(cls, endpoints: dict[str, str], timeout: float = 10.0) -> "FetcherRegistry":
        return cls(
            [JsonApiFetcher(source=source, base_url=url, timeout=timeout) for source, url in endpoints.items()]
        )

    def register(self, fetcher: ISnapshotFetcher) -> None:
        self._fetchers[fetcher.source] = fetcher
        logger.info("fetcher_registered", source=fetcher.source)

    def sources(self) -> list[str]:
        return sorted(self._fetchers)

    def get(self, source: str) -> ISnapshotFetcher:
        fetcher = self._fetchers.get(source)
        if fetcher is None:
            raise FetchFailure(FetchErrorKind.UNKNOWN, f"no fetcher registered for source {source!r}")
        return fetcher
