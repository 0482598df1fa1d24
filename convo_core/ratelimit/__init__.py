"""Rate budget and request admission."""

from convo_core.ratelimit.limiter import (
    RateBudget,
    RateLimitConfig,
    RateLimiter,
    RateLimitUsage,
    Reservation,
    estimate_tokens,
)
from convo_core.ratelimit.queue import QueueConfig, RequestQueue

__all__ = [
    "RateBudget",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitUsage",
    "Reservation",
    "estimate_tokens",
    "QueueConfig",
    "RequestQueue",
]
