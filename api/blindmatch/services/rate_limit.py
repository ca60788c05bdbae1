from dataclasses import dataclass

from fastapi import HTTPException


@dataclass
class RateDecision:
    allowed: bool
    count: int
    retry_after_seconds: int


class FixedWindowRateLimiter:
    """Fixed-window counter per identity.

    The window starts at the first increment and is never extended by later
    ones; a request is allowed while the counter is at or below ``limit``.
    """

    def __init__(self, counters, limit: int, window_seconds: int, prefix: str = "sms_rate") -> None:
        self._counters = counters
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    def check(self, identity: str) -> RateDecision:
        count, ttl = self._counters.incr_window(f"{self.prefix}:{identity}", self.window_seconds)
        if count <= self.limit:
            return RateDecision(allowed=True, count=count, retry_after_seconds=0)
        return RateDecision(allowed=False, count=count, retry_after_seconds=max(1, ttl))


def enforce_rate_limit(limiter: FixedWindowRateLimiter, identity: str) -> None:
    decision = limiter.check(identity)
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail=f"Too many messages. Retry in {decision.retry_after_seconds}s",
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )
