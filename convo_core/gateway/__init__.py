"""Resilience primitives: circuit breaking and retries."""

from convo_core.gateway.circuit import (
    CircuitConfig,
    CircuitState,
    CircuitStatus,
    ToolCircuitBreaker,
)
from convo_core.gateway.retry import RetryCallback, RetryExecutor, RetryPolicy

__all__ = [
    "CircuitConfig",
    "CircuitState",
    "CircuitStatus",
    "ToolCircuitBreaker",
    "RetryCallback",
    "RetryExecutor",
    "RetryPolicy",
]
