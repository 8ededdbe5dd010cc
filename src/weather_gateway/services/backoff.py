"""Suspends upstream calls after repeated consecutive failures."""

from __future__ import annotations

import math
import time
from collections.abc import Callable

import structlog

from weather_gateway.config import Settings

logger = structlog.get_logger()


class FailureBackoff:
    """Exponential backoff driven by consecutive upstream failures.

    Once ``threshold`` failures happen in a row, upstream calls are suspended
    for ``base`` seconds; every further failure multiplies the period, up to
    ``maximum``. One success clears the state.
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.threshold = settings.backoff_failure_threshold
        self.base = settings.backoff_base_seconds
        self.multiplier = settings.backoff_multiplier
        self.maximum = settings.backoff_max_seconds

        self.consecutive_failures = 0
        self.total_failures = 0
        self.last_failure_at: float | None = None
        self.current_period = self.base
        self._suspended = False

    def is_active(self) -> bool:
        if not self._suspended:
            return False
        if self.remaining() <= 0:
            self._suspended = False
            logger.info("Upstream backoff period ended")
            return False
        return True

    def remaining(self) -> float:
        """Seconds left in the current suspension, 0 when not suspended."""
        if not self._suspended or self.last_failure_at is None:
            return 0.0
        return max(self.current_period - (self._clock() - self.last_failure_at), 0.0)

    def retry_after(self) -> int:
        return max(math.ceil(self.remaining()), 1)

    def record_failure(self, kind: str) -> None:
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_failure_at = self._clock()

        if self.consecutive_failures < self.threshold:
            return

        if self.consecutive_failures > self.threshold:
            self.current_period = min(self.current_period * self.multiplier, self.maximum)
        self._suspended = True
        logger.warning(
            "Upstream failure threshold reached, suspending calls",
            consecutive_failures=self.consecutive_failures,
            backoff_seconds=self.current_period,
            error_kind=kind,
        )

    def record_success(self) -> None:
        if self.consecutive_failures:
            logger.info(
                "Upstream call succeeded after failures",
                consecutive_failures=self.consecutive_failures,
            )
        self.consecutive_failures = 0
        self.current_period = self.base
        self._suspended = False

    @property
    def healthy(self) -> bool:
        return not self.is_active() and self.consecutive_failures < 3
