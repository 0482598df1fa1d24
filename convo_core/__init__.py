"""
convo-core
==========

Resilient LLM conversation orchestration with tool calling.

Example:
    from convo_core import ToolRegistry, create_orchestrator, tool

    @tool(description="Search the web")
    async def search(query: str) -> list:
        ...

    registry = ToolRegistry()
    registry.register(search)

    async with create_orchestrator(registry=registry) as orchestrator:
        result = await orchestrator.run("What is new in Python 3.13?")
"""

__version__ = "2.0.0"

from convo_core.config import Settings, get_settings
from convo_core.errors import ConvoError, ErrorCode
from convo_core.gateway import RetryExecutor, RetryPolicy, ToolCircuitBreaker
from convo_core.llm import (
    CompletionClient,
    ConversationOrchestrator,
    ConversationResult,
    EffortLevel,
    TextGenerator,
    Tool,
    ToolRegistry,
    create_orchestrator,
    tool,
)
from convo_core.ratelimit import RateLimiter, RequestQueue

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "ConvoError",
    "ErrorCode",
    "RetryExecutor",
    "RetryPolicy",
    "ToolCircuitBreaker",
    "CompletionClient",
    "ConversationOrchestrator",
    "ConversationResult",
    "EffortLevel",
    "TextGenerator",
    "Tool",
    "ToolRegistry",
    "create_orchestrator",
    "tool",
    "RateLimiter",
    "RequestQueue",
]
