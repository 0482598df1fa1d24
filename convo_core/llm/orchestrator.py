"""
Conversation Orchestrator

Drives one conversation with the completion endpoint:
- Sends the full turn history through the retry executor
- Executes requested tool calls in order, one tool turn per call
- Loops until the model answers without tools or the iteration cap is hit
- Works in non-streaming and streaming mode
"""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Union,
)

import httpx
import structlog

from convo_core.config import DEFAULT_SYSTEM_PROMPT, Settings, get_settings
from convo_core.errors import ConvoError
from convo_core.gateway.circuit import CircuitConfig, ToolCircuitBreaker
from convo_core.gateway.retry import RetryExecutor, RetryPolicy
from convo_core.llm.base import (
    CompletionResult,
    ConversationState,
    EffortLevel,
    ToolCallRequest,
    Turn,
    Usage,
)
from convo_core.llm.client import CompletionClient
from convo_core.llm.tools import (
    ToolContext,
    ToolExecutionResult,
    ToolExecutor,
    ToolExecutorConfig,
    ToolRegistry,
)
from convo_core.ratelimit.limiter import RateLimitConfig, RateLimiter
from convo_core.ratelimit.queue import QueueConfig, RequestQueue


logger = structlog.get_logger(__name__)

MAX_ITERATIONS_MESSAGE = "Maximum iterations reached without completion."

ToolCallObserver = Callable[[ToolCallRequest, Optional[ToolExecutionResult]], Any]
ChunkObserver = Callable[[str, Dict[str, Any]], Any]


class ConversationPhase(str, Enum):
    """Orchestrator state machine."""

    INIT = "init"
    AWAITING_RESPONSE = "awaiting_response"
    TOOL_EXECUTION = "tool_execution"
    DONE = "done"
    FAILED = "failed"


@dataclass
class OrchestratorConfig:
    """Configuration for the conversation orchestrator."""

    max_iterations: int = 5
    system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT
    retry_policy: Optional[RetryPolicy] = None


@dataclass
class ConversationResult:
    """Outcome of one conversation."""

    text: str
    tool_calls: List[Dict[str, str]] = field(default_factory=list)
    iteration_count: int = 0
    phase: ConversationPhase = ConversationPhase.DONE
    turns: List[Turn] = field(default_factory=list)
    max_iterations_reached: bool = False
    usage: Usage = field(default_factory=Usage)
    error: Optional[ConvoError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "tool_calls": list(self.tool_calls),
            "iteration_count": self.iteration_count,
        }


async def _notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


class ConversationOrchestrator:
    """
    Bounded tool-calling conversation loop.

    Usage:
        orchestrator = create_orchestrator(registry=registry)
        result = await orchestrator.run("What changed in the 2024 report?")
        print(result.text, result.tool_calls, result.iteration_count)
    """

    def __init__(
        self,
        client: CompletionClient,
        retry_executor: RetryExecutor,
        tool_executor: ToolExecutor,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.client = client
        self.retry_executor = retry_executor
        self.tool_executor = tool_executor
        self.config = config or OrchestratorConfig()

    @property
    def registry(self) -> ToolRegistry:
        return self.tool_executor.registry

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.client.close()

    # =========================================================================
    # Public API
    # =========================================================================

    async def run(
        self,
        prompt: str,
        persona: Optional[str] = None,
        model_hint: Optional[str] = None,
        effort_hint: Optional[Union[EffortLevel, str]] = None,
        on_tool_call: Optional[ToolCallObserver] = None,
        max_iterations: Optional[int] = None,
    ) -> ConversationResult:
        """
        Run a non-streaming conversation.

        Raises:
            ConvoError: When a round fails beyond retry
        """
        state = ConversationState()
        try:
            return await self._converse(
                state,
                prompt,
                persona=persona,
                model_hint=model_hint,
                effort_hint=effort_hint,
                on_tool_call=on_tool_call,
                on_chunk=None,
                max_iterations=max_iterations,
            )
        except ConvoError as e:
            self._log_failure(state, e)
            raise

    async def run_streaming(
        self,
        prompt: str,
        on_chunk: ChunkObserver,
        persona: Optional[str] = None,
        model_hint: Optional[str] = None,
        effort_hint: Optional[Union[EffortLevel, str]] = None,
        on_tool_call: Optional[ToolCallObserver] = None,
        on_complete: Optional[Callable[[ConversationResult], Any]] = None,
        on_error: Optional[Callable[[ConvoError], Any]] = None,
        max_iterations: Optional[int] = None,
    ) -> ConversationResult:
        """
        Run a conversation, forwarding content fragments as they arrive.

        ``on_chunk(text, metadata)`` receives fragments in arrival order;
        metadata carries the iteration. Failures go to ``on_error`` when
        given (the returned result is then in the FAILED phase), otherwise
        they are raised.
        """
        state = ConversationState()
        try:
            result = await self._converse(
                state,
                prompt,
                persona=persona,
                model_hint=model_hint,
                effort_hint=effort_hint,
                on_tool_call=on_tool_call,
                on_chunk=on_chunk,
                max_iterations=max_iterations,
            )
        except ConvoError as e:
            self._log_failure(state, e)
            if on_error is None:
                raise
            await _notify(on_error, e)
            return ConversationResult(
                text="",
                tool_calls=[{"name": name} for name in state.tools_used],
                iteration_count=state.iteration,
                phase=ConversationPhase.FAILED,
                turns=list(state.turns),
                error=e,
            )

        await _notify(on_complete, result)
        return result

    # =========================================================================
    # Loop
    # =========================================================================

    async def _converse(
        self,
        state: ConversationState,
        prompt: str,
        persona: Optional[str],
        model_hint: Optional[str],
        effort_hint: Optional[Union[EffortLevel, str]],
        on_tool_call: Optional[ToolCallObserver],
        on_chunk: Optional[ChunkObserver],
        max_iterations: Optional[int],
    ) -> ConversationResult:
        cap = max(max_iterations or self.config.max_iterations, 1)
        phase = ConversationPhase.INIT
        usage = Usage()

        if self.config.system_prompt:
            state.append(Turn.system(self.config.system_prompt))
        state.append(Turn.user(prompt))
        tools = self.registry.to_openai_format() or None

        log = logger.bind(persona=persona, streaming=on_chunk is not None, max_iterations=cap)
        log.info("conversation_started", tools=len(self.registry))

        while True:
            phase = ConversationPhase.AWAITING_RESPONSE
            state.iteration += 1

            response = await self._request_round(
                state, tools, model_hint, effort_hint, on_chunk
            )
            if response.usage:
                usage = usage + response.usage
            state.append(response.to_turn())

            if not response.tool_calls:
                phase = ConversationPhase.DONE
                log.info(
                    "conversation_completed",
                    iterations=state.iteration,
                    tools_used=state.tools_used,
                )
                return self._result(state, response.content, phase, usage)

            phase = ConversationPhase.TOOL_EXECUTION
            log.info(
                "tool_calls_requested",
                iteration=state.iteration,
                tools=[call.name for call in response.tool_calls],
            )
            for call in response.tool_calls:
                await self._execute_call(call, state, persona, on_tool_call)

            if state.iteration >= cap:
                phase = ConversationPhase.DONE
                log.warning("conversation_max_iterations", iterations=state.iteration)
                last = state.last_assistant_content()
                text = f"{last}\n\n{MAX_ITERATIONS_MESSAGE}" if last else MAX_ITERATIONS_MESSAGE
                result = self._result(state, text, phase, usage)
                result.max_iterations_reached = True
                return result

    async def _request_round(
        self,
        state: ConversationState,
        tools: Optional[List[Dict[str, Any]]],
        model_hint: Optional[str],
        effort_hint: Optional[Union[EffortLevel, str]],
        on_chunk: Optional[ChunkObserver],
    ) -> CompletionResult:
        turns = list(state.turns)

        if on_chunk is None:
            operation = lambda: self.client.complete(
                turns, tools, model_hint=model_hint, effort_hint=effort_hint
            )
        else:
            iteration = state.iteration

            async def forward(text: str) -> None:
                await _notify(on_chunk, text, {"iteration": iteration, "type": "content"})

            operation = lambda: self.client.stream(
                turns,
                tools,
                on_content=forward,
                model_hint=model_hint,
                effort_hint=effort_hint,
            )

        return await self.retry_executor.execute_with_retry(
            operation,
            policy=self.config.retry_policy,
            on_retry=lambda attempt, error: logger.info(
                "conversation_round_retry",
                iteration=state.iteration,
                attempt=attempt,
                error=str(error),
            ),
        )

    async def _execute_call(
        self,
        call: ToolCallRequest,
        state: ConversationState,
        persona: Optional[str],
        on_tool_call: Optional[ToolCallObserver],
    ) -> ToolExecutionResult:
        await _notify(on_tool_call, call, None)

        try:
            arguments = call.arguments
        except ValueError as e:
            logger.warning("tool_arguments_malformed", tool=call.name, error=str(e))
            result = ToolExecutionResult(
                tool_name=call.name,
                success=False,
                error=f"Invalid tool arguments: {e}",
                retryable=False,
            )
        else:
            context = ToolContext(
                persona=persona,
                iteration=state.iteration,
                previous_tools=list(state.tools_used),
            )
            result = await self.tool_executor.execute_tool_with_context(
                call.name, arguments, context
            )

        if result.success:
            state.tools_used.append(call.name)
        state.append(Turn.tool(result.to_turn_content(), tool_call_id=call.id, name=call.name))

        await _notify(on_tool_call, call, result)
        return result

    def _result(
        self,
        state: ConversationState,
        text: str,
        phase: ConversationPhase,
        usage: Usage,
    ) -> ConversationResult:
        return ConversationResult(
            text=text,
            tool_calls=[{"name": name} for name in state.tools_used],
            iteration_count=state.iteration,
            phase=phase,
            turns=list(state.turns),
            usage=usage,
        )

    def _log_failure(self, state: ConversationState, error: ConvoError) -> None:
        logger.error(
            "conversation_failed",
            phase=ConversationPhase.FAILED.value,
            iteration=state.iteration,
            error=str(error),
            code=error.code.value,
            retryable=error.retryable,
        )


def create_orchestrator(
    settings: Optional[Settings] = None,
    registry: Optional[ToolRegistry] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConversationOrchestrator:
    """
    Create an orchestrator with process-wide services built from settings.
    """
    settings = settings or get_settings()

    rate_limiter = RateLimiter(RateLimitConfig(
        max_tokens_per_minute=settings.max_tokens_per_minute,
        max_requests_per_minute=settings.max_requests_per_minute,
        window_seconds=settings.rate_window_seconds,
    ))
    queue = RequestQueue(QueueConfig(
        max_concurrent=settings.max_concurrent_requests,
        base_delay_seconds=settings.queue_base_delay_seconds,
        max_delay_seconds=settings.queue_max_delay_seconds,
    ))
    retry_executor = RetryExecutor(
        queue,
        rate_limiter,
        default_policy=settings.retry_policy(),
    )
    tool_executor = ToolExecutor(
        registry or ToolRegistry(),
        circuit_breaker=ToolCircuitBreaker(CircuitConfig(
            failure_threshold=settings.circuit_failure_threshold,
            cooldown_seconds=settings.circuit_cooldown_seconds,
        )),
        config=ToolExecutorConfig(
            default_timeout=settings.tool_default_timeout_seconds,
            tool_timeouts=dict(settings.tool_timeouts),
            persona_multipliers=dict(settings.persona_timeout_multipliers),
        ),
    )
    client = CompletionClient(settings, rate_limiter, transport=transport)

    return ConversationOrchestrator(
        client,
        retry_executor,
        tool_executor,
        OrchestratorConfig(
            max_iterations=settings.max_iterations,
            system_prompt=settings.system_prompt,
        ),
    )


__all__ = [
    "ConversationPhase",
    "OrchestratorConfig",
    "ConversationResult",
    "ConversationOrchestrator",
    "create_orchestrator",
    "MAX_ITERATIONS_MESSAGE",
]
