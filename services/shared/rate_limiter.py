"""
Sliding-window rate limiter for the public API.

The limiter itself holds no counters: request timestamps live in a
RateLimitStore passed in by the application, so a shared backend can replace
the in-process store without touching the route handlers.
"""
import logging
import os
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Allowance of `requests` per `window_seconds`."""
    requests: int
    window_seconds: float


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at + 0.999)),
        }


def default_presets() -> Dict[str, RateLimitConfig]:
    return {
        "standard": RateLimitConfig(
            requests=int(os.getenv("RATE_LIMIT_STANDARD_REQUESTS", "100")),
            window_seconds=float(os.getenv("RATE_LIMIT_STANDARD_WINDOW", "60")),
        ),
        "auth": RateLimitConfig(
            requests=int(os.getenv("RATE_LIMIT_AUTH_REQUESTS", "10")),
            window_seconds=float(os.getenv("RATE_LIMIT_AUTH_WINDOW", "60")),
        ),
        "strict": RateLimitConfig(
            requests=int(os.getenv("RATE_LIMIT_STRICT_REQUESTS", "5")),
            window_seconds=float(os.getenv("RATE_LIMIT_STRICT_WINDOW", "60")),
        ),
        "telemetry": RateLimitConfig(
            requests=int(os.getenv("RATE_LIMIT_TELEMETRY_REQUESTS", "1000")),
            window_seconds=float(os.getenv("RATE_LIMIT_TELEMETRY_WINDOW", "60")),
        ),
    }


class RateLimitStore(Protocol):
    def hit(
        self, key: str, now: float, window_seconds: float, max_requests: int
    ) -> Tuple[bool, int, float]:
        """
        Record a request for `key` if within the limit.
        Returns (allowed, current_count, oldest_timestamp_in_window).
        """
        ...


@dataclass
class SlidingWindow:
    """Request timestamps for a single key."""
    timestamps: list = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def add_request(
        self, now: float, window_seconds: float, max_requests: int
    ) -> Tuple[bool, int, float]:
        with self.lock:
            cutoff = now - window_seconds
            self.timestamps = [ts for ts in self.timestamps if ts > cutoff]
            current_count = len(self.timestamps)
            if current_count >= max_requests:
                return False, current_count, self.timestamps[0]
            self.timestamps.append(now)
            return True, current_count + 1, self.timestamps[0]


class InMemoryRateLimitStore:
    """Process-local store. Fine for a single instance."""

    def __init__(self, cleanup_interval: float = 300.0):
        self._windows: Dict[str, SlidingWindow] = defaultdict(SlidingWindow)
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = time.time()
        self._cleanup_lock = threading.Lock()

    def hit(
        self, key: str, now: float, window_seconds: float, max_requests: int
    ) -> Tuple[bool, int, float]:
        self._maybe_cleanup(now)
        return self._windows[key].add_request(now, window_seconds, max_requests)

    def __len__(self) -> int:
        return len(self._windows)

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < self._cleanup_interval:
            return
        with self._cleanup_lock:
            if now - self._last_cleanup < self._cleanup_interval:
                return
            self._last_cleanup = now
            cutoff = now - self._cleanup_interval
            stale = [
                k
                for k, w in list(self._windows.items())
                if not w.timestamps or w.timestamps[-1] < cutoff
            ]
            for k in stale:
                del self._windows[k]
            logger.debug("Rate limiter cleanup removed %s keys", len(stale))


class RateLimiter:
    """Applies named presets on top of a RateLimitStore."""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        presets: Optional[Dict[str, RateLimitConfig]] = None,
    ):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.presets = presets if presets is not None else default_presets()
        self._stats: Dict[str, int] = defaultdict(int)
        self._stats_lock = threading.Lock()

    def check(
        self, identifier: str, preset: str = "standard", now: Optional[float] = None
    ) -> RateLimitResult:
        cfg = self.presets.get(preset)
        if cfg is None:
            raise KeyError(f"Unknown rate limit preset: {preset}")
        ts = time.time() if now is None else now
        allowed, count, oldest = self.store.hit(
            f"{preset}:{identifier}", ts, cfg.window_seconds, cfg.requests
        )
        self._increment_stat("allowed" if allowed else f"{preset}_limited")
        return RateLimitResult(
            allowed=allowed,
            limit=cfg.requests,
            remaining=max(0, cfg.requests - count),
            reset_at=oldest + cfg.window_seconds,
        )

    def get_stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    def _increment_stat(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1
