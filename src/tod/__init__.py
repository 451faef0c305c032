"""
tod - a terminal-resident conversational coding agent.

The agent keeps a message history with a language model, exposes a fixed
set of tools (file I/O, shell, directory listing, skills, background
sub-agents) and runs a tool-call loop until the model gives a final
answer:

1. Message Store: the conversation plus ephemeral context that is sent
   with every request but never persisted
2. Agent Loop: streams completions, accumulates tool-call fragments and
   executes tools one at a time, with cooperative cancellation
3. Background Task Manager: parallel sub-agents under a concurrency ceiling
"""

__version__ = "0.1.0"

from tod.background import (
    BackgroundTaskError,
    BackgroundTaskManager,
    TaskCancelledError,
    TaskLimitError,
    TaskNotFoundError,
    TaskSnapshot,
    TaskStateError,
    TaskStatus,
)
from tod.config import AgentConfig, BackgroundConfig, ContextConfig, LLMConfig, LoopConfig, SkillsConfig
from tod.context import CompactionResult, ContextManager
from tod.llm import LLMClient, LLMError
from tod.local_tools import create_local_tools
from tod.loop import Agent, AgentBusyError, AgentCallbacks, AgentCancelledError, TurnResult
from tod.message_store import MessageStore
from tod.skills import Skill, SkillsManager
from tod.tools import Tool, ToolProvider, ToolRegistry, format_tool_call
from tod.types import AgentChunk, ChunkKind, Message, Role, StreamChunk, ToolCall, ToolResult

__all__ = [
    "Agent",
    "AgentBusyError",
    "AgentCallbacks",
    "AgentCancelledError",
    "AgentChunk",
    "AgentConfig",
    "BackgroundConfig",
    "BackgroundTaskError",
    "BackgroundTaskManager",
    "ChunkKind",
    "CompactionResult",
    "ContextConfig",
    "ContextManager",
    "LLMClient",
    "LLMConfig",
    "LLMError",
    "LoopConfig",
    "Message",
    "MessageStore",
    "Role",
    "Skill",
    "SkillsConfig",
    "SkillsManager",
    "StreamChunk",
    "TaskCancelledError",
    "TaskLimitError",
    "TaskNotFoundError",
    "TaskSnapshot",
    "TaskStateError",
    "TaskStatus",
    "Tool",
    "ToolCall",
    "ToolProvider",
    "ToolRegistry",
    "ToolResult",
    "TurnResult",
    "create_local_tools",
    "format_tool_call",
]
