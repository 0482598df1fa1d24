"""Shared pytest fixtures for testing."""

import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from convo_core.config import Settings
from convo_core.gateway.circuit import CircuitConfig, ToolCircuitBreaker
from convo_core.gateway.retry import RetryExecutor, RetryPolicy
from convo_core.llm.client import CompletionClient
from convo_core.llm.orchestrator import ConversationOrchestrator, OrchestratorConfig
from convo_core.llm.tools import ToolExecutor, ToolExecutorConfig, ToolRegistry
from convo_core.ratelimit.limiter import RateLimitConfig, RateLimiter
from convo_core.ratelimit.queue import QueueConfig, RequestQueue


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Deterministic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Fake monotonic clock."""
    return FakeClock()


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at a fake endpoint."""
    return Settings(
        _env_file=None,
        endpoint="https://llm.test",
        api_key="test-key",
        deployment="test-deployment",
        api_version="2025-01-01",
        max_output_tokens=100,
        retry_jitter_seconds=0.0,
        queue_base_delay_seconds=0.01,
        queue_max_delay_seconds=0.05,
    )


# =============================================================================
# Wire payloads
# =============================================================================


def make_tool_call(name: str, arguments: Any, call_id: str = "call_1") -> Dict[str, Any]:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def make_completion(
    content: Optional[str] = None,
    tool_calls: Optional[List[Dict[str, Any]]] = None,
    total_tokens: int = 50,
) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-test",
        "choices": [{
            "index": 0,
            "message": message,
            "finish_reason": "tool_calls" if tool_calls else "stop",
        }],
        "usage": {
            "prompt_tokens": total_tokens - 10,
            "completion_tokens": 10,
            "total_tokens": total_tokens,
        },
    }


def sse(*payloads: Any, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def content_frame(text: str) -> Dict[str, Any]:
    return {"id": "chatcmpl-test", "choices": [{"index": 0, "delta": {"content": text}}]}


def tool_frame(
    index: int,
    arguments: Optional[str] = None,
    name: Optional[str] = None,
    call_id: Optional[str] = None,
) -> Dict[str, Any]:
    tool_call: Dict[str, Any] = {"index": index, "function": {}}
    if call_id:
        tool_call["id"] = call_id
    if name:
        tool_call["function"]["name"] = name
    if arguments is not None:
        tool_call["function"]["arguments"] = arguments
    return {"choices": [{"index": 0, "delta": {"tool_calls": [tool_call]}}]}


@pytest.fixture
def wire() -> Any:
    """Builders for completion bodies and stream frames."""

    class Wire:
        tool_call = staticmethod(make_tool_call)
        completion = staticmethod(make_completion)
        sse = staticmethod(sse)
        content = staticmethod(content_frame)
        tool = staticmethod(tool_frame)

    return Wire


# =============================================================================
# Transport
# =============================================================================


class ScriptedTransport(httpx.MockTransport):
    """Mock transport that answers with queued responses and records requests."""

    def __init__(self, responses: Optional[List[Any]] = None, repeat_last: bool = False):
        self.responses = list(responses or [])
        self.repeat_last = repeat_last
        self.requests: List[httpx.Request] = []
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("No scripted response left")
        item = self.responses[0] if self.repeat_last and len(self.responses) == 1 else self.responses.pop(0)
        if callable(item):
            return item(request)
        return item

    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def scripted() -> Callable[..., ScriptedTransport]:
    """Factory for scripted transports."""
    return ScriptedTransport


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(RateLimitConfig(), clock=clock, sleep=clock.sleep)


@pytest.fixture
def queue() -> RequestQueue:
    return RequestQueue(QueueConfig(max_concurrent=3, base_delay_seconds=0.01, max_delay_seconds=0.05))


@pytest.fixture
def retry_executor(queue: RequestQueue, limiter: RateLimiter, clock: FakeClock) -> RetryExecutor:
    return RetryExecutor(
        queue,
        limiter,
        default_policy=RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=30.0, jitter=0.0),
        sleep=clock.sleep,
    )


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture
def build_orchestrator(
    settings: Settings,
    limiter: RateLimiter,
    retry_executor: RetryExecutor,
    registry: ToolRegistry,
    clock: FakeClock,
) -> Callable[..., ConversationOrchestrator]:
    """Factory wiring an orchestrator to a scripted transport."""

    def build(transport: httpx.AsyncBaseTransport, max_iterations: int = 5) -> ConversationOrchestrator:
        client = CompletionClient(
            settings,
            limiter,
            transport=transport,
            sleep=clock.sleep,
            clock=clock,
        )
        tool_executor = ToolExecutor(
            registry,
            circuit_breaker=ToolCircuitBreaker(CircuitConfig(), clock=clock),
            config=ToolExecutorConfig(default_timeout=5.0),
        )
        return ConversationOrchestrator(
            client,
            retry_executor,
            tool_executor,
            OrchestratorConfig(max_iterations=max_iterations, system_prompt="You are a test assistant."),
        )

    return build
