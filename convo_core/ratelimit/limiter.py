"""
Rate Limiter
============

Process-wide token and request budget for the completion endpoint.

The budget refills on a fixed window cadence. Callers reserve an estimate
before each request, then reconcile it against the usage the endpoint
reports. A 429 answer extends a penalty window during which every caller
waits regardless of remaining budget.

Author: Platform Engineering Team
Version: 2.0.0
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

# Shortest sleep between capacity checks.
MIN_WAIT_SECONDS = 0.05


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return int(math.ceil(len(text or "") / 4))


@dataclass
class RateLimitConfig:
    """Configuration for the shared rate budget"""

    max_tokens_per_minute: int = 20000
    max_requests_per_minute: int = 300
    window_seconds: float = 60.0


@dataclass
class RateBudget:
    """Remaining budget in the current window"""

    tokens_remaining: int
    requests_remaining: int
    window_reset_at: float
    penalty_until: float = 0.0


@dataclass(eq=False)
class Reservation:
    """Tokens debited for one request, reconciled once usage is known"""

    tokens: int
    window_started_at: float
    created_at: float


@dataclass
class RateLimitUsage:
    """Snapshot of recent consumption"""

    tokens_used_last_minute: int = 0
    requests_last_minute: int = 0
    token_usage_percent: float = 0.0
    penalty_remaining_seconds: float = 0.0
    limits: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens_used_last_minute": self.tokens_used_last_minute,
            "requests_last_minute": self.requests_last_minute,
            "token_usage_percent": self.token_usage_percent,
            "penalty_remaining_seconds": self.penalty_remaining_seconds,
            "limits": dict(self.limits),
        }


class RateLimiter:
    """
    Fixed-window token and request budget.

    Usage:
        limiter = RateLimiter(RateLimitConfig(max_tokens_per_minute=30000))

        reservation = await limiter.wait_for_capacity(estimate_tokens(prompt))
        response = await send(prompt)
        limiter.record_tokens_used(response.usage.total_tokens, reservation)

    No method raises: a malformed hint is ignored rather than surfaced.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        now = self._clock()
        self._window_started_at = now
        self._budget = RateBudget(
            tokens_remaining=self.config.max_tokens_per_minute,
            requests_remaining=self.config.max_requests_per_minute,
            window_reset_at=now + self.config.window_seconds,
        )
        self._history: Deque[Reservation] = deque()
        self._last_reservation: Optional[Reservation] = None
        self._logger = structlog.get_logger(self.__class__.__name__)

    # =========================================================================
    # Budget
    # =========================================================================

    @property
    def budget(self) -> RateBudget:
        """Copy of the current budget"""
        with self._lock:
            self._maybe_reset_window(self._clock())
            return RateBudget(
                tokens_remaining=self._budget.tokens_remaining,
                requests_remaining=self._budget.requests_remaining,
                window_reset_at=self._budget.window_reset_at,
                penalty_until=self._budget.penalty_until,
            )

    def _maybe_reset_window(self, now: float) -> bool:
        """Start a fresh window when the current one has elapsed"""
        if now < self._budget.window_reset_at:
            return False

        window = self.config.window_seconds
        elapsed_windows = int((now - self._window_started_at) // window)
        self._window_started_at += max(elapsed_windows, 1) * window
        self._budget.window_reset_at = self._window_started_at + window
        self._budget.tokens_remaining = self.config.max_tokens_per_minute
        self._budget.requests_remaining = self.config.max_requests_per_minute
        return True

    def _window_is_fresh(self) -> bool:
        return (
            self._budget.tokens_remaining == self.config.max_tokens_per_minute
            and self._budget.requests_remaining == self.config.max_requests_per_minute
        )

    def _try_reserve(self, tokens: int, now: float) -> Union[Reservation, float]:
        """Debit the budget, or return how long to wait before retrying"""
        if now < self._budget.penalty_until:
            return self._budget.penalty_until - now

        self._maybe_reset_window(now)

        fits = (
            self._budget.tokens_remaining >= tokens
            and self._budget.requests_remaining >= 1
        )
        oversized = (
            tokens > self.config.max_tokens_per_minute and self._window_is_fresh()
        )
        if not fits and not oversized:
            return self._budget.window_reset_at - now

        granted = min(tokens, self._budget.tokens_remaining)
        self._budget.tokens_remaining -= granted
        self._budget.requests_remaining -= 1
        reservation = Reservation(
            tokens=granted,
            window_started_at=self._window_started_at,
            created_at=now,
        )
        self._history.append(reservation)
        self._last_reservation = reservation
        return reservation

    async def wait_for_capacity(self, estimated_tokens: int) -> Reservation:
        """Suspend until the budget covers the estimate, then debit it.

        Returns the reservation to pass back to ``record_tokens_used``.
        """
        tokens = max(int(estimated_tokens or 0), 0)
        waited = 0.0

        while True:
            with self._lock:
                outcome = self._try_reserve(tokens, self._clock())

            if isinstance(outcome, Reservation):
                if waited:
                    self._logger.info(
                        "rate_limit_capacity_granted",
                        tokens=tokens,
                        waited_seconds=round(waited, 3),
                    )
                return outcome

            wait = max(outcome, MIN_WAIT_SECONDS)
            self._logger.debug(
                "rate_limit_waiting",
                tokens=tokens,
                wait_seconds=round(wait, 3),
            )
            waited += wait
            await self._sleep(wait)

    def record_tokens_used(
        self,
        actual_tokens: int,
        reservation: Optional[Reservation] = None,
    ) -> None:
        """Reconcile a reservation with real consumption.

        Without an explicit ``reservation`` the most recent one is used,
        which is only correct when requests do not overlap.
        """
        try:
            actual = max(int(actual_tokens), 0)
        except (TypeError, ValueError):
            return

        with self._lock:
            if reservation is None:
                reservation = self._last_reservation
            if reservation is None:
                return

            delta = actual - reservation.tokens
            reservation.tokens = actual

            self._maybe_reset_window(self._clock())
            if reservation.window_started_at != self._window_started_at:
                return

            ceiling = self.config.max_tokens_per_minute
            self._budget.tokens_remaining = min(
                max(self._budget.tokens_remaining - delta, 0), ceiling
            )

    def penalize(self, seconds: float) -> None:
        """Block all callers for at least ``seconds`` from now."""
        try:
            seconds = float(seconds)
        except (TypeError, ValueError):
            return
        if seconds <= 0 or math.isnan(seconds):
            return

        with self._lock:
            until = self._clock() + seconds
            if until > self._budget.penalty_until:
                self._budget.penalty_until = until
                self._logger.warning("rate_limit_penalized", seconds=seconds)

    def update_limits(
        self,
        tokens_per_minute: Optional[int] = None,
        requests_per_minute: Optional[int] = None,
    ) -> None:
        """Adopt ceilings advertised by the endpoint.

        Only positive values are applied. Remaining counters are clamped to
        the new ceilings.
        """
        with self._lock:
            changed = {}
            if tokens_per_minute and tokens_per_minute > 0:
                if tokens_per_minute != self.config.max_tokens_per_minute:
                    changed["tokens_per_minute"] = tokens_per_minute
                self.config.max_tokens_per_minute = int(tokens_per_minute)
                self._budget.tokens_remaining = min(
                    self._budget.tokens_remaining, self.config.max_tokens_per_minute
                )
            if requests_per_minute and requests_per_minute > 0:
                if requests_per_minute != self.config.max_requests_per_minute:
                    changed["requests_per_minute"] = requests_per_minute
                self.config.max_requests_per_minute = int(requests_per_minute)
                self._budget.requests_remaining = min(
                    self._budget.requests_remaining,
                    self.config.max_requests_per_minute,
                )

        if changed:
            self._logger.info("rate_limit_limits_updated", **changed)

    def get_usage_stats(self) -> RateLimitUsage:
        """Consumption over the trailing window"""
        with self._lock:
            now = self._clock()
            cutoff = now - self.config.window_seconds
            while self._history and self._history[0].created_at <= cutoff:
                self._history.popleft()

            tokens_used = sum(entry.tokens for entry in self._history)
            ceiling = self.config.max_tokens_per_minute
            return RateLimitUsage(
                tokens_used_last_minute=tokens_used,
                requests_last_minute=len(self._history),
                token_usage_percent=round(tokens_used / ceiling * 100, 2),
                penalty_remaining_seconds=max(self._budget.penalty_until - now, 0.0),
                limits={
                    "tokens_per_minute": ceiling,
                    "requests_per_minute": self.config.max_requests_per_minute,
                },
            )


__all__ = [
    "RateLimiter",
    "RateLimitConfig",
    "RateBudget",
    "RateLimitUsage",
    "Reservation",
    "estimate_tokens",
]
