"""
Tool Calling Framework

This module provides the tool definitions the model can call, the
registry that renders them for the completion endpoint, and the
executor that runs them under a deadline behind a per-tool circuit
breaker.
"""

import asyncio
import inspect
import json
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Type,
    Union,
    get_type_hints,
)

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from convo_core.errors import ToolExecutionError, is_transient_message
from convo_core.gateway.circuit import ToolCircuitBreaker


logger = structlog.get_logger(__name__)


# =============================================================================
# Schema
# =============================================================================


class ParameterType(str, Enum):
    """JSON Schema parameter types."""
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


_TYPE_CHECKS: Dict[ParameterType, Callable[[Any], bool]] = {
    ParameterType.STRING: lambda v: isinstance(v, str),
    ParameterType.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    ParameterType.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    ParameterType.BOOLEAN: lambda v: isinstance(v, bool),
    ParameterType.ARRAY: lambda v: isinstance(v, list),
    ParameterType.OBJECT: lambda v: isinstance(v, dict),
}


class ParameterSchema(BaseModel):
    """Schema of a single tool parameter."""

    model_config = ConfigDict(extra="allow", use_enum_values=False)

    type: ParameterType
    description: str = ""
    enum: Optional[List[Any]] = None
    items: Optional[Dict[str, Any]] = None
    default: Optional[Any] = None

    def to_json_schema(self) -> Dict[str, Any]:
        schema = self.model_dump(exclude_none=True)
        schema["type"] = self.type.value
        if not self.description:
            schema.pop("description", None)
        return schema


class ToolParameters(BaseModel):
    """JSON-schema object describing a tool's arguments."""

    type: Literal["object"] = "object"
    properties: Dict[str, ParameterSchema] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _required_are_declared(self) -> "ToolParameters":
        missing = [name for name in self.required if name not in self.properties]
        if missing:
            raise ValueError(f"Required parameters not declared: {', '.join(missing)}")
        return self

    def to_json_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                name: param.to_json_schema() for name, param in self.properties.items()
            },
            "required": list(self.required),
        }

    def validate_arguments(self, arguments: Dict[str, Any]) -> Optional[str]:
        """Return an error message when arguments do not fit the schema."""
        for name in self.required:
            if name not in arguments:
                return f"Missing required parameter: {name}"

        for name, value in arguments.items():
            param = self.properties.get(name)
            if param is None or value is None:
                continue
            if not _TYPE_CHECKS[param.type](value):
                return f"Parameter '{name}' must be of type {param.type.value}"
            if param.enum and value not in param.enum:
                return f"Parameter '{name}' must be one of {param.enum}"

        return None


# =============================================================================
# Tools
# =============================================================================


@dataclass
class ToolContext:
    """Per-call context handed to the executor and context-aware tools."""

    persona: Optional[str] = None
    iteration: int = 0
    phase: str = "execution"
    previous_tools: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "persona": self.persona,
            "iteration": self.iteration,
            "phase": self.phase,
            "previous_tools": list(self.previous_tools),
        }


class Tool(BaseModel):
    """A function the model can call."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., pattern=r"^[a-zA-Z0-9_-]{1,64}$")
    description: str
    parameters: ToolParameters = Field(default_factory=ToolParameters)
    handler: Callable[..., Any] = Field(..., exclude=True)
    timeout_seconds: Optional[float] = Field(None, gt=0)

    def to_openai_format(self) -> Dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters.to_json_schema(),
            },
        }

    @property
    def accepts_context(self) -> bool:
        try:
            return "_context" in inspect.signature(self.handler).parameters
        except (TypeError, ValueError):
            return False

    async def execute(
        self,
        arguments: Dict[str, Any],
        context: Optional[ToolContext] = None,
    ) -> Any:
        """Run the handler; sync handlers run in a worker thread."""
        kwargs = dict(arguments)
        if self.accepts_context:
            kwargs["_context"] = context

        if inspect.iscoroutinefunction(self.handler):
            return await self.handler(**kwargs)

        result = await asyncio.to_thread(self.handler, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


def _python_type_to_parameter_type(python_type: Type) -> ParameterType:
    """Convert Python type to ParameterType."""
    type_mapping = {
        str: ParameterType.STRING,
        int: ParameterType.INTEGER,
        float: ParameterType.NUMBER,
        bool: ParameterType.BOOLEAN,
        list: ParameterType.ARRAY,
        dict: ParameterType.OBJECT,
    }

    origin = getattr(python_type, "__origin__", None)
    if origin is Union:
        non_none_args = [a for a in python_type.__args__ if a is not type(None)]
        if len(non_none_args) == 1:
            return _python_type_to_parameter_type(non_none_args[0])
    if origin in (list, List):
        return ParameterType.ARRAY
    if origin in (dict, Dict):
        return ParameterType.OBJECT

    return type_mapping.get(python_type, ParameterType.STRING)


def tool(
    name: Optional[str] = None,
    description: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
):
    """
    Decorator to create a Tool from a function.

    Example:
        @tool(description="Search the web")
        async def search(query: str, max_results: int = 5) -> list:
            ...
    """
    def decorator(func: Callable) -> Tool:
        hints = get_type_hints(func)
        properties: Dict[str, ParameterSchema] = {}
        required: List[str] = []

        for param_name, param in inspect.signature(func).parameters.items():
            if param_name in ("self", "cls", "_context"):
                continue
            if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
                continue

            has_default = param.default is not inspect.Parameter.empty
            properties[param_name] = ParameterSchema(
                type=_python_type_to_parameter_type(hints.get(param_name, str)),
                default=param.default if has_default else None,
            )
            if not has_default:
                required.append(param_name)

        return Tool(
            name=name or func.__name__,
            description=(description or func.__doc__ or "").strip(),
            parameters=ToolParameters(properties=properties, required=required),
            handler=func,
            timeout_seconds=timeout_seconds,
        )

    return decorator


class ToolRegistry:
    """Registry for managing tools."""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> Tool:
        self._tools[tool.name] = tool
        logger.debug("tool_registered", tool=tool.name)
        return tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list_tools(self) -> List[Tool]:
        return list(self._tools.values())

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def to_openai_format(self) -> List[Dict[str, Any]]:
        return [t.to_openai_format() for t in self._tools.values()]


# =============================================================================
# Execution
# =============================================================================


@dataclass
class ToolExecutionResult:
    """Result of a single tool execution."""

    tool_name: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0
    retryable: bool = False

    def to_turn_content(self) -> str:
        """Serialize for the tool-role turn."""
        if self.success:
            if isinstance(self.result, str):
                return self.result
            return json.dumps(self.result, default=str)
        return json.dumps({
            "error": self.error,
            "success": False,
            "retryable": self.retryable,
        })


@dataclass
class ToolExecutorConfig:
    """Deadline configuration for tool execution."""

    default_timeout: float = 30.0
    tool_timeouts: Dict[str, float] = field(default_factory=dict)
    persona_multipliers: Dict[str, float] = field(default_factory=dict)

    def timeout_for(self, tool: Tool, persona: Optional[str]) -> float:
        base = self.tool_timeouts.get(tool.name) or tool.timeout_seconds or self.default_timeout
        multiplier = self.persona_multipliers.get((persona or "").lower(), 1.0)
        return base * multiplier


class ToolExecutor:
    """
    Executes model-requested tool calls.

    Features:
    - Per-tool circuit breaker, checked before every call
    - Deadline per call: base timeout scaled by the persona multiplier
    - Argument validation against the tool's schema
    - Failures returned as results, never raised
    """

    def __init__(
        self,
        registry: ToolRegistry,
        circuit_breaker: Optional[ToolCircuitBreaker] = None,
        config: Optional[ToolExecutorConfig] = None,
    ):
        self.registry = registry
        self.circuit_breaker = circuit_breaker or ToolCircuitBreaker()
        self.config = config or ToolExecutorConfig()

        self._total_executions = 0
        self._successful_executions = 0
        self._failed_executions = 0
        self._rejected_executions = 0
        self._total_execution_time = 0.0

    async def execute_tool_with_context(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        context: Optional[ToolContext] = None,
    ) -> ToolExecutionResult:
        """
        Execute one tool call.

        Args:
            tool_name: Registered tool name
            arguments: Parsed JSON arguments
            context: Persona and conversation context

        Returns:
            Tool execution result
        """
        context = context or ToolContext()
        start_time = time.perf_counter()

        if self.circuit_breaker.is_open(tool_name):
            self._rejected_executions += 1
            logger.warning(
                "tool_circuit_open",
                tool=tool_name,
                retry_after=round(self.circuit_breaker.retry_after(tool_name), 2),
            )
            return ToolExecutionResult(
                tool_name=tool_name,
                success=False,
                error=f"Tool {tool_name} is temporarily unavailable due to repeated failures",
                retryable=False,
            )

        registered = self.registry.get(tool_name)
        if registered is None:
            return self._rejected(tool_name, f"Unknown tool: {tool_name}")

        validation_error = registered.parameters.validate_arguments(arguments)
        if validation_error:
            return self._rejected(tool_name, validation_error)

        timeout = self.config.timeout_for(registered, context.persona)
        self._total_executions += 1

        logger.info(
            "tool_execute_start",
            tool=tool_name,
            persona=context.persona,
            iteration=context.iteration,
            timeout_seconds=timeout,
        )

        try:
            result = await asyncio.wait_for(
                registered.execute(arguments, context),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = ToolExecutionError(
                f"Tool execution timeout after {timeout:g}s",
                tool_name=tool_name,
                retryable=True,
            )
            return self._failed(tool_name, error, start_time)
        except Exception as e:
            logger.error(
                "tool_execute_error",
                tool=tool_name,
                error=str(e),
                traceback=traceback.format_exc(),
            )
            error = ToolExecutionError(
                str(e) or e.__class__.__name__,
                tool_name=tool_name,
                retryable=is_transient_message(str(e)),
            )
            return self._failed(tool_name, error, start_time)

        duration_ms = (time.perf_counter() - start_time) * 1000
        self.circuit_breaker.record_success(tool_name)
        self._successful_executions += 1
        self._total_execution_time += duration_ms

        logger.info(
            "tool_execute_success",
            tool=tool_name,
            duration_ms=round(duration_ms, 2),
        )

        return ToolExecutionResult(
            tool_name=tool_name,
            success=True,
            result=result,
            execution_time_ms=duration_ms,
        )

    def _rejected(self, tool_name: str, message: str) -> ToolExecutionResult:
        self._rejected_executions += 1
        logger.warning("tool_call_rejected", tool=tool_name, error=message)
        return ToolExecutionResult(
            tool_name=tool_name,
            success=False,
            error=message,
            retryable=False,
        )

    def _failed(
        self,
        tool_name: str,
        error: ToolExecutionError,
        start_time: float,
    ) -> ToolExecutionResult:
        duration_ms = (time.perf_counter() - start_time) * 1000
        self.circuit_breaker.record_failure(tool_name)
        self._failed_executions += 1
        self._total_execution_time += duration_ms

        logger.warning(
            "tool_execute_failed",
            tool=tool_name,
            error=error.message,
            retryable=error.retryable,
            duration_ms=round(duration_ms, 2),
        )

        return ToolExecutionResult(
            tool_name=tool_name,
            success=False,
            error=error.message,
            execution_time_ms=duration_ms,
            retryable=error.retryable,
        )

    def get_statistics(self) -> Dict[str, Any]:
        """Get executor statistics."""
        avg_time = (
            self._total_execution_time / self._total_executions
            if self._total_executions > 0
            else 0
        )

        return {
            "total_executions": self._total_executions,
            "successful_executions": self._successful_executions,
            "failed_executions": self._failed_executions,
            "rejected_executions": self._rejected_executions,
            "success_rate": round(
                self._successful_executions / max(1, self._total_executions), 3
            ),
            "average_execution_ms": round(avg_time, 2),
            "circuits": self.circuit_breaker.get_all_states(),
        }


__all__ = [
    "ParameterType",
    "ParameterSchema",
    "ToolParameters",
    "ToolContext",
    "Tool",
    "tool",
    "ToolRegistry",
    "ToolExecutionResult",
    "ToolExecutorConfig",
    "ToolExecutor",
]
