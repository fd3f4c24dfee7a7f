"""
Rate Limiting

In-process fixed-window counters guarding the passkey endpoints against brute
force. Buckets live in this process only: with several instances behind a load
balancer every instance enforces its own limits.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from fastapi import Request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int


@dataclass
class _Bucket:
    count: int
    reset_at: float


def rate_limit_key(scope: str, qualifier: str, identifier: str) -> str:
    return f"{scope}:{qualifier}:{identifier}"


class RateLimiter:
    """
    Fixed-window request counter keyed by an arbitrary string.

    The first request for a key opens a window of ``window_seconds``; further
    requests inside the window increment the count, and once the window has
    elapsed the count starts over at 1. Expired buckets are swept lazily.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: float = 60.0,
    ):
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + sweep_interval_seconds

    def check(self, key: str, max_requests: int, window_seconds: int) -> RateLimitDecision:
        """
        Count one request against ``key``.

        Args:
            key: Composite bucket key (see ``rate_limit_key``)
            max_requests: Requests allowed per window
            window_seconds: Window length

        Returns:
            Decision; ``allowed`` is False once the window holds more than
            ``max_requests`` requests.
        """
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)

            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket.reset_at:
                self._buckets[key] = _Bucket(count=1, reset_at=now + window_seconds)
                return RateLimitDecision(
                    allowed=True,
                    remaining=max_requests - 1,
                    retry_after=window_seconds,
                )

            bucket.count += 1
            if bucket.count > max_requests:
                logger.warning(
                    "Rate limit exceeded",
                    extra={"key": key, "requests": bucket.count, "limit": max_requests},
                )
                return RateLimitDecision(allowed=False, remaining=0, retry_after=window_seconds)

            return RateLimitDecision(
                allowed=True,
                remaining=max_requests - bucket.count,
                retry_after=window_seconds,
            )

    def __len__(self) -> int:
        return len(self._buckets)

    def _maybe_sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        expired = [key for key, bucket in self._buckets.items() if bucket.reset_at <= now]
        for key in expired:
            del self._buckets[key]
        self._next_sweep = now + self._sweep_interval


def get_client_ip(request: Request) -> str:
    """
    Get client IP address from request.

    Handles X-Forwarded-For / X-Real-IP for requests behind a proxy.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"
