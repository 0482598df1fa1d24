"""
Conversation Base Types

This module defines the data structures shared by the transport,
the stream assembler, the tool executor and the orchestrator.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple


class Role(str, Enum):
    """Turn role in a conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class EffortLevel(str, Enum):
    """Reasoning effort hint passed to the model."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ToolCallRequest:
    """A complete tool call requested by the model."""

    id: str
    name: str
    arguments_json: str = "{}"

    @property
    def arguments(self) -> Dict[str, Any]:
        """Parsed arguments; raises ValueError when malformed."""
        parsed = json.loads(self.arguments_json or "{}")
        if not isinstance(parsed, dict):
            raise ValueError("Tool arguments must be a JSON object")
        return parsed

    @property
    def is_complete(self) -> bool:
        try:
            self.arguments
        except ValueError:
            return False
        return bool(self.name)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "ToolCallRequest":
        """Build from a response entry; raises ValueError on a bad shape."""
        if not isinstance(data, dict):
            raise ValueError("Tool call entry must be an object")
        function = data.get("function") or {}
        if not isinstance(function, dict):
            raise ValueError("Tool call function must be an object")
        arguments = function.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=data.get("id") or "",
            name=function.get("name") or "",
            arguments_json=arguments or "{}",
        )


@dataclass(frozen=True)
class Turn:
    """One immutable entry in the conversation history."""

    role: Role
    content: Optional[str] = None
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        """Convert to a chat-completions message."""
        msg: Dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
        }

        if self.tool_calls:
            msg["tool_calls"] = [call.to_wire() for call in self.tool_calls]

        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id

        if self.name:
            msg["name"] = self.name

        return msg

    @classmethod
    def system(cls, content: str) -> "Turn":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: Optional[str],
        tool_calls: Optional[List[ToolCallRequest]] = None,
    ) -> "Turn":
        return cls(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=tuple(tool_calls or ()),
        )

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: Optional[str] = None) -> "Turn":
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id, name=name)


@dataclass
class Usage:
    """Token usage information."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_wire(cls, data: Optional[Dict[str, Any]]) -> Optional["Usage"]:
        """Parse a usage block; anything that is not an object yields None."""
        if not data or not isinstance(data, dict):
            return None
        prompt = _count(data.get("prompt_tokens") or data.get("input_tokens"))
        completion = _count(data.get("completion_tokens") or data.get("output_tokens"))
        total = _count(data.get("total_tokens")) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _count(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class CompletionResult:
    """One assistant reply, streamed or not."""

    content: str = ""
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    response_id: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_turn(self) -> Turn:
        return Turn.assistant(self.content or None, self.tool_calls)


@dataclass
class GenerationResult:
    """Output of the text-generation capability."""

    text: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[Usage] = None


@dataclass
class ConversationState:
    """Mutable state of one conversation, owned by a single orchestrator run."""

    turns: List[Turn] = field(default_factory=list)
    iteration: int = 0
    tools_used: List[str] = field(default_factory=list)

    def append(self, turn: Turn) -> None:
        self.turns.append(turn)

    @property
    def tool_names(self) -> Set[str]:
        return set(self.tools_used)

    def wire_messages(self) -> List[Dict[str, Any]]:
        return [turn.to_wire() for turn in self.turns]

    def last_assistant_content(self) -> Optional[str]:
        for turn in reversed(self.turns):
            if turn.role == Role.ASSISTANT and turn.content:
                return turn.content
        return None


__all__ = [
    "Role",
    "EffortLevel",
    "ToolCallRequest",
    "Turn",
    "Usage",
    "CompletionResult",
    "GenerationResult",
    "ConversationState",
]
