"""Unit tests for the request queue."""

import asyncio

import pytest

from convo_core.errors import APIError, RateLimitError
from convo_core.ratelimit.queue import QueueConfig, RequestQueue


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestRequestQueueAdmission:
    """Tests for bounded FIFO admission."""

    @pytest.mark.asyncio
    async def test_runs_immediately_below_limit(self):
        """Test a task runs at once when a slot is free."""
        queue = RequestQueue(QueueConfig(max_concurrent=2))

        async def task():
            return "done"

        assert await queue.execute(task) == "done"
        assert queue.active_count == 0

    @pytest.mark.asyncio
    async def test_never_exceeds_limit_and_keeps_order(self):
        """Test N+K tasks run N at a time, the rest in submission order."""
        queue = RequestQueue(QueueConfig(max_concurrent=2))
        gates = [asyncio.Event() for _ in range(5)]
        started = []
        running = {"now": 0, "peak": 0}

        def make(i):
            async def task():
                running["now"] += 1
                running["peak"] = max(running["peak"], running["now"])
                started.append(i)
                await gates[i].wait()
                running["now"] -= 1
                return i
            return task

        tasks = [asyncio.create_task(queue.execute(make(i))) for i in range(5)]
        await settle()

        assert started == [0, 1]
        assert queue.active_count == 2
        assert queue.queued_count == 3

        for gate in reversed(gates[:2]):
            gate.set()
        await settle()
        assert started == [0, 1, 2, 3]

        for gate in gates[2:]:
            gate.set()
        results = await asyncio.gather(*tasks)

        assert results == [0, 1, 2, 3, 4]
        assert started == [0, 1, 2, 3, 4]
        assert running["peak"] == 2
        assert queue.active_count == 0

    @pytest.mark.asyncio
    async def test_failure_releases_slot(self):
        """Test a failing task frees its slot and propagates the error."""
        queue = RequestQueue(QueueConfig(max_concurrent=1))

        async def failing():
            raise APIError("boom", status_code=500)

        async def ok():
            return 1

        with pytest.raises(APIError):
            await queue.execute(failing)

        assert queue.active_count == 0
        assert await queue.execute(ok) == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        """Test cancelling a queued task does not consume a slot."""
        queue = RequestQueue(QueueConfig(max_concurrent=1))
        gate = asyncio.Event()

        async def blocker():
            await gate.wait()

        async def quick():
            return "quick"

        first = asyncio.create_task(queue.execute(blocker))
        second = asyncio.create_task(queue.execute(quick))
        await settle()
        assert queue.queued_count == 1

        second.cancel()
        await settle()
        assert queue.queued_count == 0

        gate.set()
        await first
        assert queue.active_count == 0
        assert await queue.execute(quick) == "quick"

    @pytest.mark.asyncio
    async def test_raising_limit_admits_waiting_tasks(self):
        """Test set_concurrency_limit admits queued tasks right away."""
        queue = RequestQueue(QueueConfig(max_concurrent=1))
        gate = asyncio.Event()
        started = []

        def make(i):
            async def task():
                started.append(i)
                await gate.wait()
            return task

        tasks = [asyncio.create_task(queue.execute(make(i))) for i in range(3)]
        await settle()
        assert started == [0]

        queue.set_concurrency_limit(3)
        await settle()
        assert started == [0, 1, 2]

        gate.set()
        await asyncio.gather(*tasks)

    def test_limit_has_minimum_of_one(self):
        """Test the concurrency limit never drops below one."""
        queue = RequestQueue(QueueConfig(max_concurrent=0))
        assert queue.concurrency_limit == 1

        queue.set_concurrency_limit(-5)
        assert queue.concurrency_limit == 1


class TestRequestQueueBackoff:
    """Tests for the global rate-limit pause."""

    @pytest.mark.asyncio
    async def test_rate_limit_pauses_admission(self):
        """Test a rate-limit failure holds back the next task."""
        queue = RequestQueue(QueueConfig(max_concurrent=2, base_delay_seconds=0.05))
        loop = asyncio.get_running_loop()

        async def limited():
            raise RateLimitError(retry_after=1)

        async def ok():
            return loop.time()

        with pytest.raises(RateLimitError):
            await queue.execute(limited)

        assert queue.pause_remaining > 0
        start = loop.time()
        finished_at = await queue.execute(ok)

        assert finished_at - start >= 0.04

    @pytest.mark.asyncio
    async def test_backoff_doubles_and_resets_on_success(self):
        """Test consecutive rate limits grow the pause; success resets it."""
        queue = RequestQueue(QueueConfig(max_concurrent=1, base_delay_seconds=0.01, max_delay_seconds=0.02))

        async def limited():
            raise RateLimitError()

        async def ok():
            return True

        for _ in range(3):
            with pytest.raises(RateLimitError):
                await queue.execute(limited)

        assert queue.consecutive_rate_limits == 3
        assert queue.pause_remaining <= 0.02

        assert await queue.execute(ok) is True
        assert queue.consecutive_rate_limits == 0

    @pytest.mark.asyncio
    async def test_other_errors_do_not_pause(self):
        """Test non rate-limit failures leave admission open."""
        queue = RequestQueue(QueueConfig(max_concurrent=1, base_delay_seconds=10))

        async def failing():
            raise APIError("bad request", status_code=400)

        with pytest.raises(APIError):
            await queue.execute(failing)

        assert queue.pause_remaining == 0.0
        assert queue.consecutive_rate_limits == 0
