from __future__ import annotations

import enum
from datetime import datetime, timedelta

import structlog

from tracker.src.contracts.models import FetchErrorKind

logger = structlog.get_logger(__name__)

# A missing listing says nothing about the retailer's health.
_IGNORED_KINDS = frozenset({FetchErrorKind.NOT_FOUND})


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class SourceCircuitBreaker:
    """Per-source circuit breaker.

    After ``failure_threshold`` consecutive failures on a source the circuit
    opens and none of that source's products are dispatched. Once
    ``recovery_timeout`` has passed a single trial poll is let through: a
    success closes the circuit, a failure opens it for another timeout.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: timedelta = timedelta(minutes=5),
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._failures: dict[str, int] = {}
        self._opened_at: dict[str, datetime] = {}
        self._trial_started_at: dict[str, datetime] = {}

    def state(self, source: str, now: datetime) -> CircuitState:
        opened_at = self._opened_at.get(source)
        if opened_at is None:
            return CircuitState.CLOSED
        if now - opened_at < self._recovery_timeout:
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN

    def open_sources(self) -> list[str]:
        return sorted(self._opened_at)

    def allow(self, source: str, now: datetime) -> bool:
        """Whether a poll for ``source`` may be dispatched at ``now``."""
        state = self.state(source, now)
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.OPEN:
            return False

        trial = self._trial_started_at.get(source)
        # A trial whose result never arrived is retried after another timeout.
        if trial is not None and now - trial < self._recovery_timeout:
            return False
        self._trial_started_at[source] = now
        logger.info("circuit_half_open", source=source)
        return True

    def record_success(self, source: str) -> None:
        self._failures.pop(source, None)
        self._trial_started_at.pop(source, None)
        if self._opened_at.pop(source, None) is not None:
            logger.info("circuit_closed", source=source)

    def record_failure(self, source: str, kind: FetchErrorKind, now: datetime) -> None:
        if kind in _IGNORED_KINDS:
            return

        was_trial = self._trial_started_at.pop(source, None) is not None
        if source in self._opened_at:
            if was_trial:
                self._opened_at[source] = now
                logger.warning("circuit_reopened", source=source, kind=kind.value)
            return

        failures = self._failures.get(source, 0) + 1
        self._failures[source] = failures
        if failures >= self._failure_threshold:
            self._opened_at[source] = now
            logger.error(
                "circuit_opened",
                source=source,
                consecutive_failures=failures,
                recovery_seconds=self._recovery_timeout.total_seconds(),
                last_error=kind.value,
            )
