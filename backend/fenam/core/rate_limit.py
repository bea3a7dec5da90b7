"""
In-memory fixed-window rate limiting.

Counters are a bounded-lifetime cache, not authoritative state: a restart
resets them. The registry lives on ``app.state`` so tests can swap it and
drive the clock.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 5 * 60


@dataclass
class WindowCounter:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0


class RateLimiter:
    """Fixed window counter keyed by client identity."""

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.counters: dict[str, WindowCounter] = {}

    def check(self, key: str) -> RateLimitDecision:
        now = self.clock()
        record = self.counters.get(key)

        if record is None or now >= record.reset_at:
            self.counters[key] = WindowCounter(count=1, reset_at=now + self.window_seconds)
            return RateLimitDecision(True)

        record.count += 1
        if record.count > self.max_requests:
            return RateLimitDecision(False, retry_after=max(1, math.ceil(record.reset_at - now)))
        return RateLimitDecision(True)

    def sweep(self) -> int:
        """Drop expired windows. Returns the number of removed keys."""
        now = self.clock()
        expired = [key for key, record in self.counters.items() if now >= record.reset_at]
        for key in expired:
            del self.counters[key]
        return len(expired)


class RateLimiterRegistry:
    """One limiter per (max_requests, window) pair, sharing a clock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._limiters: dict[tuple[int, float], RateLimiter] = {}

    def get(self, max_requests: int, window_seconds: float) -> RateLimiter:
        key = (max_requests, window_seconds)
        if key not in self._limiters:
            self._limiters[key] = RateLimiter(max_requests, window_seconds, clock=self.clock)
        return self._limiters[key]

    def sweep(self) -> int:
        return sum(limiter.sweep() for limiter in self._limiters.values())


async def run_periodic_sweep(
    registry: RateLimiterRegistry,
    interval: float = SWEEP_INTERVAL_SECONDS,
) -> None:
    """Sweep forever; cancelled by the application lifespan."""
    while True:
        await asyncio.sleep(interval)
        removed = registry.sweep()
        if removed:
            logger.debug(f"Rate limit sweep removed {removed} expired windows")


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def rate_limit(max_requests: int = 10, window_seconds: float = 60, registry: Optional[RateLimiterRegistry] = None):
    """
    Build a FastAPI dependency enforcing a per-IP limit.

    Usage:
        @router.post("", dependencies=[Depends(rate_limit(5, 3600))])
    """
    async def dependency(request: Request) -> None:
        limiter_registry = registry or request.app.state.rate_limiters
        limiter = limiter_registry.get(max_requests, window_seconds)
        decision = limiter.check(get_client_ip(request))
        if not decision.allowed:
            logger.warning(
                f"Request rate limited: path={request.url.path} "
                f"max={max_requests} window={window_seconds}s retry_after={decision.retry_after}s"
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "too_many_requests",
                    "message": f"Rate limit of {max_requests} requests exceeded. "
                               f"Retry in {decision.retry_after} seconds.",
                    "retryAfter": decision.retry_after,
                },
                headers={"Retry-After": str(decision.retry_after)},
            )

    return dependency
