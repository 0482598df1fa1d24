"""
Circuit Breaker
===============

Per-tool circuit breaker. A tool that fails repeatedly within the
cool-down window is short-circuited until the window elapses since its
last failure.

Author: Platform Engineering Team
Version: 2.0.0
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class CircuitStatus(str, Enum):
    """Circuit breaker states"""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting calls until cool-down elapses


@dataclass
class CircuitConfig:
    """Circuit breaker configuration"""

    failure_threshold: int = 3  # Consecutive failures before opening
    cooldown_seconds: float = 60.0  # Time since last failure before closing


@dataclass
class CircuitState:
    """Failure bookkeeping for one tool"""

    failure_count: int = 0
    last_failure_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failure_count": self.failure_count,
            "last_failure_at": self.last_failure_at,
        }


class ToolCircuitBreaker:
    """
    Circuit breaker keyed by tool name.

    Usage:
        breaker = ToolCircuitBreaker()

        if breaker.is_open("search"):
            return fallback_result
        try:
            result = await run_search()
            breaker.record_success("search")
        except Exception:
            breaker.record_failure("search")

    A tool with no entry is closed. Success removes the entry; so does
    the cool-down elapsing since the last failure.
    """

    def __init__(
        self,
        config: Optional[CircuitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitConfig()
        self._clock = clock
        self._states: Dict[str, CircuitState] = {}
        self._lock = threading.RLock()
        self._logger = structlog.get_logger("circuit.tools")

    def _expired(self, state: CircuitState, now: float) -> bool:
        return (
            state.last_failure_at is not None
            and now - state.last_failure_at >= self.config.cooldown_seconds
        )

    def is_open(self, tool_name: str) -> bool:
        """Check whether calls to ``tool_name`` should be rejected"""
        with self._lock:
            state = self._states.get(tool_name)
            if state is None:
                return False

            if self._expired(state, self._clock()):
                del self._states[tool_name]
                self._logger.info("circuit_closed", tool=tool_name, reason="cooldown")
                return False

            return state.failure_count >= self.config.failure_threshold

    def status(self, tool_name: str) -> CircuitStatus:
        return CircuitStatus.OPEN if self.is_open(tool_name) else CircuitStatus.CLOSED

    def record_success(self, tool_name: str) -> None:
        with self._lock:
            if self._states.pop(tool_name, None) is not None:
                self._logger.debug("circuit_reset", tool=tool_name)

    def record_failure(self, tool_name: str) -> None:
        with self._lock:
            now = self._clock()
            state = self._states.get(tool_name)

            if state is None or self._expired(state, now):
                state = CircuitState()
                self._states[tool_name] = state

            state.failure_count += 1
            state.last_failure_at = now

            if state.failure_count == self.config.failure_threshold:
                self._logger.warning(
                    "circuit_opened",
                    tool=tool_name,
                    failures=state.failure_count,
                    cooldown_seconds=self.config.cooldown_seconds,
                )
            else:
                self._logger.debug(
                    "circuit_failure_recorded",
                    tool=tool_name,
                    failures=state.failure_count,
                )

    def retry_after(self, tool_name: str) -> float:
        """Seconds until an open circuit closes, 0 when closed"""
        with self._lock:
            state = self._states.get(tool_name)
            if state is None or state.last_failure_at is None:
                return 0.0
            if state.failure_count < self.config.failure_threshold:
                return 0.0
            remaining = state.last_failure_at + self.config.cooldown_seconds - self._clock()
            return max(remaining, 0.0)

    def get_state(self, tool_name: str) -> Optional[CircuitState]:
        with self._lock:
            state = self._states.get(tool_name)
            if state is None:
                return None
            return CircuitState(state.failure_count, state.last_failure_at)

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every tracked tool"""
        with self._lock:
            return {
                name: {
                    **state.to_dict(),
                    "status": (
                        CircuitStatus.OPEN.value
                        if state.failure_count >= self.config.failure_threshold
                        and not self._expired(state, self._clock())
                        else CircuitStatus.CLOSED.value
                    ),
                }
                for name, state in self._states.items()
            }


__all__ = [
    "ToolCircuitBreaker",
    "CircuitConfig",
    "CircuitState",
    "CircuitStatus",
]
