"""
Request Queue
=============

Bounded FIFO admission for outbound completion requests, with a global
pause window that grows while the endpoint keeps answering 429.

Author: Platform Engineering Team
Version: 2.0.0
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

import structlog

from convo_core.errors import is_rate_limit_error

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class QueueConfig:
    """Request queue configuration"""

    max_concurrent: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0


class RequestQueue:
    """
    Bulkhead with FIFO ordering and rate-limit backoff.

    At most ``max_concurrent`` tasks run at once. Further tasks wait in
    submission order. When a task fails with a rate-limit error every
    admission pauses for ``min(base * 2^(n-1), max)`` seconds, where n is
    the number of consecutive rate-limit failures. Any success resets n.

    Usage:
        queue = RequestQueue(QueueConfig(max_concurrent=3))
        result = await queue.execute(lambda: client.complete(turns))
    """

    def __init__(self, config: Optional[QueueConfig] = None):
        self.config = config or QueueConfig()
        self._limit = max(int(self.config.max_concurrent), 1)
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._consecutive_rate_limits = 0
        self._pause_until = 0.0
        self._resume_handle: Optional[asyncio.TimerHandle] = None
        self._logger = structlog.get_logger(self.__class__.__name__)

    # =========================================================================
    # State
    # =========================================================================

    @property
    def concurrency_limit(self) -> int:
        return self._limit

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queued_count(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def pause_remaining(self) -> float:
        remaining = self._pause_until - self._now()
        return remaining if remaining > 0 else 0.0

    @property
    def consecutive_rate_limits(self) -> int:
        return self._consecutive_rate_limits

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "concurrency_limit": self._limit,
            "active": self._active,
            "queued": self.queued_count,
            "pause_remaining_seconds": round(self.pause_remaining, 3),
            "consecutive_rate_limits": self._consecutive_rate_limits,
        }

    def set_concurrency_limit(self, limit: int) -> None:
        """Change the number of concurrent tasks (minimum 1)."""
        self._limit = max(int(limit), 1)
        self._logger.info("request_queue_limit_changed", limit=self._limit)
        self._drain()

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task`` once a slot is free and no pause is active."""
        await self._acquire()
        try:
            result = await task()
        except Exception as e:
            if is_rate_limit_error(e):
                self._register_rate_limit()
            raise
        else:
            self._consecutive_rate_limits = 0
            return result
        finally:
            self._release()

    async def _acquire(self) -> None:
        if not self._waiters and self._active < self._limit and not self._paused():
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._logger.debug(
            "request_queued",
            queued=len(self._waiters),
            active=self._active,
        )
        self._drain()

        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was granted just before cancellation.
                self._release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _release(self) -> None:
        self._active -= 1
        self._drain()

    def _drain(self) -> None:
        """Admit queued tasks while capacity allows"""
        if self._paused():
            if self._waiters:
                self._schedule_resume()
            return

        while self._waiters and self._active < self._limit:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._active += 1
            waiter.set_result(None)

    # =========================================================================
    # Backoff
    # =========================================================================

    def _now(self) -> float:
        return time.monotonic()

    def _paused(self) -> bool:
        return self._now() < self._pause_until

    def _register_rate_limit(self) -> None:
        self._consecutive_rate_limits += 1
        delay = min(
            self.config.base_delay_seconds
            * (2 ** (self._consecutive_rate_limits - 1)),
            self.config.max_delay_seconds,
        )
        self._pause_until = max(self._pause_until, self._now() + delay)
        self._logger.warning(
            "request_queue_backoff",
            delay_seconds=delay,
            consecutive=self._consecutive_rate_limits,
        )

    def _schedule_resume(self) -> None:
        if self._resume_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._resume_handle = loop.call_later(self.pause_remaining, self._on_resume)

    def _on_resume(self) -> None:
        self._resume_handle = None
        self._drain()


__all__ = ["RequestQueue", "QueueConfig"]
