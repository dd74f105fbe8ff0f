from __future__ import annotations

from datetime import timedelta

from tracker.src.contracts.models import FetchErrorKind


class TrackerError(Exception):
    """Base class for engine errors."""


class FetchFailure(TrackerError):
    """A snapshot could not be fetched. Always retryable with backoff."""

    def __init__(
        self,
        kind: FetchErrorKind,
        detail: str = "",
        retry_after: timedelta | None = None,
    ) -> None:
        self.kind = kind
        self.detail = detail
        self.retry_after = retry_after
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)


class ConfigurationError(TrackerError):
    """Invalid settings. Only raised at startup."""
