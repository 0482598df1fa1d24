"""
Conversation layer: data model, transport, streaming, tools and the
orchestrator loop.
"""

from convo_core.llm.base import (
    CompletionResult,
    ConversationState,
    EffortLevel,
    GenerationResult,
    Role,
    ToolCallRequest,
    Turn,
    Usage,
)
from convo_core.llm.client import CompletionClient
from convo_core.llm.generation import TextGenerator
from convo_core.llm.orchestrator import (
    ConversationOrchestrator,
    ConversationPhase,
    ConversationResult,
    OrchestratorConfig,
    create_orchestrator,
)
from convo_core.llm.streaming import StreamAssembler, parse_stream_line
from convo_core.llm.tools import (
    Tool,
    ToolContext,
    ToolExecutionResult,
    ToolExecutor,
    ToolExecutorConfig,
    ToolParameters,
    ToolRegistry,
    tool,
)

__all__ = [
    "CompletionResult",
    "ConversationState",
    "EffortLevel",
    "GenerationResult",
    "Role",
    "ToolCallRequest",
    "Turn",
    "Usage",
    "CompletionClient",
    "TextGenerator",
    "ConversationOrchestrator",
    "ConversationPhase",
    "ConversationResult",
    "OrchestratorConfig",
    "create_orchestrator",
    "StreamAssembler",
    "parse_stream_line",
    "Tool",
    "ToolContext",
    "ToolExecutionResult",
    "ToolExecutor",
    "ToolExecutorConfig",
    "ToolParameters",
    "ToolRegistry",
    "tool",
]
