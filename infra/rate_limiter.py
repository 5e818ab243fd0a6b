"""
Fixed-window call limiter for ledger reads.

The exit monitor wraps every oracle read with ``RateLimiter.schedule`` so
scanning many open positions cannot overwhelm the upstream read endpoint.

At most ``calls_per_second + burst`` calls start inside any one window; the
counter resets when the window rolls over. Callers that would exceed the
budget block (sleep outside the lock) until the next window opens.
"""
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RateLimitStats:
    """Statistics for rate limit monitoring"""
    total_requests: int = 0
    blocked_requests: int = 0
    total_wait_time_ms: float = 0.0
    max_wait_time_ms: float = 0.0

    def record_wait(self, wait_time_seconds: float) -> None:
        self.total_requests += 1
        if wait_time_seconds > 0:
            self.blocked_requests += 1
            wait_ms = wait_time_seconds * 1000.0
            self.total_wait_time_ms += wait_ms
            self.max_wait_time_ms = max(self.max_wait_time_ms, wait_ms)

    def utilization_pct(self) -> float:
        """Calculate blocked request percentage"""
        if self.total_requests == 0:
            return 0.0
        return (self.blocked_requests / self.total_requests) * 100.0


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(calls_per_second=10)
        snapshot = limiter.schedule(oracle.get_price_with_fallback, asset)
    """

    def __init__(
        self,
        calls_per_second: int = 10,
        burst: int = 0,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        metrics=None,
    ):
        if calls_per_second < 1:
            raise ValueError("calls_per_second must be >= 1")
        if burst < 0:
            raise ValueError("burst must be >= 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self.max_calls = int(calls_per_second) + int(burst)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics

        self._window_start = clock()
        self._window_count = 0
        self._stats = RateLimitStats()
        self._lock = Lock()

        logger.info(
            "Initialized RateLimiter: %d calls per %.2fs window (burst=%d)",
            self.max_calls, self.window_seconds, burst,
        )

    def acquire(self) -> float:
        """
        Reserve one call slot, blocking until a window has room.

        Returns:
            Total seconds spent waiting
        """
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                if now - self._window_start >= self.window_seconds:
                    self._window_start = now
                    self._window_count = 0

                if self._window_count < self.max_calls:
                    self._window_count += 1
                    self._stats.record_wait(waited)
                    break

                wait_time = max(0.0, self._window_start + self.window_seconds - now)

            if wait_time > 0.1:
                logger.debug("Rate limit pause: waiting %.3fs for next window", wait_time)
            # Wait outside lock to avoid blocking other threads
            self._sleep(wait_time)
            waited += wait_time

        if waited > 0 and self._metrics is not None:
            self._metrics.record_rate_limiter_wait(waited)
        return waited

    def schedule(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` once a call slot is available and return its result."""
        self.acquire()
        return fn(*args, **kwargs)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = self._stats
            return {
                "total_requests": stats.total_requests,
                "blocked_requests": stats.blocked_requests,
                "utilization_pct": stats.utilization_pct(),
                "total_wait_time_ms": stats.total_wait_time_ms,
                "max_wait_time_ms": stats.max_wait_time_ms,
                "avg_wait_time_ms": (
                    stats.total_wait_time_ms / stats.blocked_requests
                    if stats.blocked_requests > 0
                    else 0.0
                ),
                "window_count": self._window_count,
                "max_calls": self.max_calls,
            }

    def reset_stats(self) -> None:
        """Reset statistics (useful for testing)"""
        with self._lock:
            self._stats = RateLimitStats()

    @classmethod
    def from_config(
        cls,
        cfg: Optional[Dict[str, Any]],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        metrics=None,
    ) -> "RateLimiter":
        cfg = cfg or {}
        return cls(
            calls_per_second=int(cfg.get("calls_per_second", 10)),
            burst=int(cfg.get("burst", 0)),
            window_seconds=float(cfg.get("window_seconds", 1.0)),
            clock=clock,
            sleep=sleep,
            metrics=metrics,
        )
