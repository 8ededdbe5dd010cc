"""Upstream credential pool with rolling hourly and daily quotas."""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import structlog
from prometheus_client import Counter, Gauge

logger = structlog.get_logger()

HOUR_SECONDS = 3600.0
DAY_SECONDS = 86400.0

# Metrics
key_remaining_hourly = Gauge(
    "api_key_remaining_hourly",
    "Remaining hourly calls per credential",
    ["provider", "key_id"],
)
key_remaining_daily = Gauge(
    "api_key_remaining_daily",
    "Remaining daily calls per credential",
    ["provider", "key_id"],
)
key_penalties = Counter(
    "api_key_penalties_total",
    "Credentials benched after a provider rejection",
    ["provider", "window"],
)


def mask_secret(secret: str) -> str:
    """Render a secret for logs, keeping only its last four characters."""
    if len(secret) <= 4:
        return "****"
    return f"...{secret[-4:]}"


@dataclass
class Credential:
    """One upstream API key and its usage counters."""

    identifier: str
    secret: str
    daily_count: int
    hourly_count: int
    daily_reset_at: float
    hourly_reset_at: float

    @property
    def masked(self) -> str:
        return mask_secret(self.secret)


class KeyPool:
    """Tracks a fixed, ordered set of credentials and their quota.

    ``acquire()`` returns the first registered credential that is under both
    its hourly and daily limit. Counters roll over lazily on every
    acquisition attempt, for every credential.

    All mutations run under a lock, so ``reserve()`` (acquire and record use
    in one step) is safe from both the event loop and worker threads.
    """

    def __init__(
        self,
        secrets: Sequence[str],
        hourly_limit: int,
        daily_limit: int,
        provider: str = "tomorrow.io",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self.provider = provider
        self.hourly_limit = hourly_limit
        self.daily_limit = daily_limit

        now = clock()
        self._credentials = [
            Credential(
                identifier=str(index),
                secret=secret,
                daily_count=0,
                hourly_count=0,
                daily_reset_at=now,
                hourly_reset_at=now,
            )
            for index, secret in enumerate(secrets, start=1)
        ]
        for credential in self._credentials:
            self._publish(credential)

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    def _rollover(self, now: float) -> None:
        for credential in self._credentials:
            if now - credential.daily_reset_at >= DAY_SECONDS:
                credential.daily_count = 0
                credential.daily_reset_at = now
            if now - credential.hourly_reset_at >= HOUR_SECONDS:
                credential.hourly_count = 0
                credential.hourly_reset_at = now

    def _is_usable(self, credential: Credential) -> bool:
        return (
            credential.hourly_count < self.hourly_limit
            and credential.daily_count < self.daily_limit
        )

    def _publish(self, credential: Credential) -> None:
        key_remaining_hourly.labels(
            provider=self.provider, key_id=credential.identifier
        ).set(max(self.hourly_limit - credential.hourly_count, 0))
        key_remaining_daily.labels(
            provider=self.provider, key_id=credential.identifier
        ).set(max(self.daily_limit - credential.daily_count, 0))

    def _acquire_locked(self) -> Credential | None:
        self._rollover(self._clock())
        for credential in self._credentials:
            if self._is_usable(credential):
                return credential
        return None

    def acquire(self) -> Credential | None:
        """Return the first credential with quota left, or None if all are exhausted."""
        with self._lock:
            return self._acquire_locked()

    def record_use(self, credential: Credential) -> None:
        """Count one upstream call attempt against ``credential``."""
        with self._lock:
            credential.hourly_count += 1
            credential.daily_count += 1
            self._publish(credential)

    def reserve(self) -> Credential | None:
        """Acquire a credential and count the upcoming call in one step."""
        with self._lock:
            credential = self._acquire_locked()
            if credential is None:
                return None
            credential.hourly_count += 1
            credential.daily_count += 1
            self._publish(credential)
            return credential

    def bench(self, credential: Credential, window: str) -> None:
        """Mark a credential exhausted until its hourly or daily window rolls over."""
        with self._lock:
            if window == "daily":
                credential.daily_count = max(credential.daily_count, self.daily_limit)
            else:
                credential.hourly_count = max(credential.hourly_count, self.hourly_limit)
            self._publish(credential)
        key_penalties.labels(provider=self.provider, window=window).inc()
        logger.warning(
            "Credential benched",
            provider=self.provider,
            key_id=credential.identifier,
            key=credential.masked,
            window=window,
        )

    def seconds_until_available(self) -> int:
        """Seconds until the earliest exhausted credential rolls over."""
        with self._lock:
            now = self._clock()
            self._rollover(now)
            waits: list[float] = []
            for credential in self._credentials:
                if self._is_usable(credential):
                    return 0
                wait = 0.0
                if credential.daily_count >= self.daily_limit:
                    wait = max(wait, credential.daily_reset_at + DAY_SECONDS - now)
                if credential.hourly_count >= self.hourly_limit:
                    wait = max(wait, credential.hourly_reset_at + HOUR_SECONDS - now)
                waits.append(wait)
        if not waits:
            return int(HOUR_SECONDS)
        return max(math.ceil(min(waits)), 1)

    def usage(self) -> list[dict[str, int | str]]:
        """Per-credential counters for diagnostics."""
        with self._lock:
            self._rollover(self._clock())
            return [
                {
                    "id": int(credential.identifier),
                    "daily": f"{credential.daily_count}/{self.daily_limit}",
                    "hourly": f"{credential.hourly_count}/{self.hourly_limit}",
                    "dailyRemaining": max(self.daily_limit - credential.daily_count, 0),
                    "hourlyRemaining": max(self.hourly_limit - credential.hourly_count, 0),
                }
                for credential in self._credentials
            ]

    @property
    def total_daily_capacity(self) -> int:
        return self.daily_limit * len(self._credentials)
