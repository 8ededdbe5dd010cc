"""Request counters and the derived diagnostics report."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from weather_gateway.services.backoff import FailureBackoff
    from weather_gateway.services.geo_cache import GeoCache
    from weather_gateway.services.key_pool import KeyPool

# Requests a typical user makes per day
REQUESTS_PER_USER = 10

DAY_SECONDS = 86400.0


def _percent(part: int, whole: int) -> str:
    if whole <= 0:
        return "0.0%"
    return f"{part / whole * 100:.1f}%"


@dataclass
class StatsCollector:
    """Monotonic counters for the process lifetime.

    Counters only move forward; ``reset()`` is the explicit external action
    that zeroes them. ``calls_today`` also rolls over lazily once its 24-hour
    window has elapsed, like the key pool quotas.
    """

    clock: Callable[[], float] = time.time
    started_at: float = field(default=0.0)
    requests: int = 0
    cache_hits: int = 0
    api_calls: int = 0
    api_failures: int = 0
    fallback_hits: int = 0
    tier_hits: dict[str, int] = field(default_factory=dict)
    calls_today: int = 0
    day_started_at: float = 0.0

    def __post_init__(self) -> None:
        if not self.started_at:
            self.started_at = self.clock()
        if not self.day_started_at:
            self.day_started_at = self.started_at

    def _roll_day(self) -> None:
        now = self.clock()
        if now - self.day_started_at >= DAY_SECONDS:
            self.calls_today = 0
            self.day_started_at = now

    def record_request(self) -> None:
        self.requests += 1

    def record_cache_hit(self, tier: str) -> None:
        self.cache_hits += 1
        self.tier_hits[tier] = self.tier_hits.get(tier, 0) + 1

    def record_api_call(self) -> None:
        self._roll_day()
        self.api_calls += 1
        self.calls_today += 1

    def record_failure(self) -> None:
        self.api_failures += 1

    def record_fallback(self) -> None:
        self.fallback_hits += 1

    def reset(self) -> None:
        self.requests = 0
        self.cache_hits = 0
        self.api_calls = 0
        self.api_failures = 0
        self.fallback_hits = 0
        self.tier_hits.clear()
        self.calls_today = 0
        self.day_started_at = self.clock()

    @property
    def api_calls_today(self) -> int:
        """Successful upstream calls in the current 24-hour window."""
        self._roll_day()
        return self.calls_today

    @property
    def hit_ratio(self) -> float:
        return self.cache_hits / self.requests if self.requests else 0.0

    @property
    def cache_hit_rate(self) -> str:
        return _percent(self.cache_hits, self.requests)

    @property
    def savings_rate(self) -> str:
        return _percent(self.cache_hits, self.cache_hits + self.api_calls)

    def snapshot(
        self,
        key_pool: KeyPool,
        cache: GeoCache,
        backoff: FailureBackoff,
    ) -> dict[str, Any]:
        """Build the diagnostics report from the live components."""
        uptime = int(self.clock() - self.started_at)
        attempts = self.api_calls + self.api_failures
        max_capacity = int(key_pool.total_daily_capacity / max(1 - self.hit_ratio, 0.01))

        return {
            "uptime": f"{uptime // 60} minutes",
            "uptimeSeconds": uptime,
            "stats": {
                "totalRequests": self.requests,
                "cacheHits": self.cache_hits,
                "apiCalls": self.api_calls,
                "apiCallsToday": self.api_calls_today,
                "apiFailures": self.api_failures,
                "fallbackHits": self.fallback_hits,
                "consecutiveFailures": backoff.consecutive_failures,
                "cacheHitRate": self.cache_hit_rate,
                "savingsRate": self.savings_rate,
                "apiSuccessRate": _percent(self.api_calls, attempts) if attempts else "100.0%",
                "tierHits": dict(self.tier_hits),
            },
            "apiStatus": {
                "isInBackoff": backoff.is_active(),
                "backoffTimeRemaining": int(backoff.remaining()),
                "currentBackoffTime": int(backoff.current_period),
            },
            "apiKeys": key_pool.usage(),
            "cache": cache.counts(),
            "estimatedUsers": self.requests // REQUESTS_PER_USER,
            "maxCapacity": max_capacity,
        }
