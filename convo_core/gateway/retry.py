"""
Retry Executor
==============

Exponential backoff with jitter around queued network rounds. Server
retry-after hints take precedence over the computed delay and also
penalize the shared rate budget.

Author: Platform Engineering Team
Version: 2.0.0
"""

from __future__ import annotations

import asyncio
import inspect
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from convo_core.errors import ConvoError, RateLimitError, is_rate_limit_error
from convo_core.ratelimit.limiter import RateLimiter
from convo_core.ratelimit.queue import RequestQueue

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException], Any]


@dataclass
class RetryPolicy:
    """Backoff configuration.

    ``max_retries`` counts retries after the first attempt, so an operation
    runs at most ``max_retries + 1`` times.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: float = 0.5

    def base_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (0-based), without jitter"""
        return min(self.initial_delay * (self.backoff_factor ** attempt), self.max_delay)

    def compute_delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        return self.base_delay(attempt) + rand() * self.jitter


class RetryExecutor:
    """
    Runs operations through the request queue, retrying transient failures.

    Usage:
        executor = RetryExecutor(queue, limiter)
        response = await executor.execute_with_retry(
            lambda: client.complete(turns),
            on_retry=lambda attempt, error: print(attempt, error),
        )
    """

    def __init__(
        self,
        queue: RequestQueue,
        rate_limiter: RateLimiter,
        default_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.default_policy = default_policy or RetryPolicy()
        self._sleep = sleep
        self._rand = rand
        self._logger = structlog.get_logger(self.__class__.__name__)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        """
        Execute ``operation`` with retries.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt
            policy: Backoff policy, defaults to the executor's policy
            on_retry: Called with (attempt, error) before each wait

        Returns:
            The operation's result

        Raises:
            The last error once it is non-retryable or retries are exhausted
        """
        policy = policy or self.default_policy
        attempt = 0

        while True:
            try:
                return await self.queue.execute(operation)
            except Exception as e:
                if isinstance(e, ConvoError) and not e.retryable:
                    self._logger.warning(
                        "retry_skipped_non_retryable",
                        error=str(e),
                        code=e.code.value,
                    )
                    raise

                if attempt >= policy.max_retries:
                    self._logger.error(
                        "retry_exhausted",
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise

                delay = policy.compute_delay(attempt, self._rand)
                retry_after = self._retry_after_hint(e)
                if retry_after is not None:
                    delay = retry_after
                    self.rate_limiter.penalize(retry_after)

                attempt += 1
                self._logger.warning(
                    "retry_scheduled",
                    attempt=attempt,
                    max_retries=policy.max_retries,
                    delay_seconds=round(delay, 3),
                    rate_limited=is_rate_limit_error(e),
                    error=str(e),
                )

                if on_retry is not None:
                    outcome = on_retry(attempt, e)
                    if inspect.isawaitable(outcome):
                        await outcome

                await self._sleep(delay)

    @staticmethod
    def _retry_after_hint(error: Exception) -> Optional[float]:
        if isinstance(error, RateLimitError) and error.retry_after:
            if error.retry_after > 0:
                return float(error.retry_after)
        return None


__all__ = ["RetryExecutor", "RetryPolicy", "RetryCallback"]
