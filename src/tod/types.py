"""
Core types for the agent system.

These types represent the data that flows through the agent loop: the
persisted conversation, the streamed model output, and the chunks handed
to whoever is presenting the turn.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ToolCall:
    """
    A request from the model to execute a tool.

    arguments is the parsed JSON object; it is never None; a call whose
    argument string could not be parsed carries an empty dict.
    """
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_request(self) -> dict[str, Any]:
        """Convert to the OpenAI assistant tool_calls entry format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments),
            },
        }


@dataclass
class Message:
    """
    A single message in the conversation history.

    content is None only for assistant messages that carry nothing but
    tool calls. Tool messages always reference the call they answer.
    """
    role: Role
    content: str | None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        result: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
        }
        if self.name is not None:
            result["name"] = self.name
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.tool_calls is not None:
            result["tool_calls"] = [tc.to_request() for tc in self.tool_calls]
        return result


@dataclass
class ToolResult:
    """
    The result of executing a tool.

    This becomes a tool message in the conversation history. Failures are
    results too: content then starts with "Error: " so the model can react.
    """
    tool_call_id: str
    content: str
    success: bool = True
    error: str | None = None


@dataclass
class ToolCallFragment:
    """
    One streamed piece of a tool call.

    index identifies the slot the fragment belongs to; name and arguments
    are substrings to be concatenated onto whatever the slot already holds.
    """
    index: int
    id: str | None = None
    name: str = ""
    arguments: str = ""


@dataclass
class StreamChunk:
    """One increment of model output."""
    content: str = ""
    thinking: str = ""
    tool_calls: list[ToolCallFragment] = field(default_factory=list)


class ChunkKind(str, Enum):
    """Tags for chunks delivered to the presentation layer."""
    THINKING = "thinking"
    ASSISTANT = "assistant"
    TOOL = "tool"
    ERROR = "error"


@dataclass
class AgentChunk:
    """A piece of a turn as seen by the caller of process_message."""
    kind: ChunkKind
    content: str
    tool_name: str | None = None
    tool_call_id: str | None = None

    @property
    def is_thinking(self) -> bool:
        return self.kind == ChunkKind.THINKING
