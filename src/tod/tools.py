"""
Tool System - the only way the agent affects the world.

A ToolRegistry maps tool names to handlers. Handlers may be plain
functions or coroutines; execute() hands back a ToolResult right away for
the former and an awaitable for the latter, so the agent loop only
suspends when a tool actually waits on something.

execute() never raises. Any failure, including an unknown tool name,
becomes a ToolResult whose content starts with "Error: " so the model
can read it and correct itself.

External tools (MCP servers, anything discovered at runtime) plug in
through the ToolProvider protocol; their schemas are merged into the
request and calls for names they own are routed to them.
"""

import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from tod.types import ToolCall, ToolResult

logger = logging.getLogger(__name__)

MCP_PREFIX = "mcp__"
_MCP_NAME_RE = re.compile(r"^mcp__([^_]+)__(.+)$")

ToolHandler = Callable[..., str | Awaitable[str]]


class ToolProvider(Protocol):
    """A source of externally defined tools, e.g. a set of MCP servers."""

    def get_tools(self) -> list[dict[str, Any]]:
        """OpenAI-format schemas for every tool this provider serves."""
        ...

    def handles(self, tool_name: str) -> bool: ...

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> str: ...

    def get_tool_descriptions(self) -> str:
        """Plain-text listing for the system prompt."""
        ...


def make_mcp_tool_name(server: str, tool: str) -> str:
    return f"{MCP_PREFIX}{server}__{tool}"


def parse_mcp_tool_name(name: str) -> tuple[str, str] | None:
    """Split mcp__<server>__<tool> into (server, tool), or None."""
    match = _MCP_NAME_RE.match(name)
    if not match:
        return None
    return match.group(1), match.group(2)


# =============================================================================
# Tool arguments
# =============================================================================
# Arguments arrive as untyped JSON objects. parse_tool_args narrows them to
# one of the known shapes below; anything else (external tools, or calls
# with missing fields) stays an OpaqueArgs.


@dataclass(frozen=True)
class PathArgs:
    path: str


@dataclass(frozen=True)
class WriteFileArgs:
    path: str
    content: str


@dataclass(frozen=True)
class ShellArgs:
    command: str


@dataclass(frozen=True)
class BackgroundTaskArgs:
    name: str
    description: str
    task: str
    wait: bool = False


@dataclass(frozen=True)
class WaitForTaskArgs:
    task_id: str


@dataclass(frozen=True)
class SkillArgs:
    name: str


@dataclass(frozen=True)
class NoArgs:
    pass


@dataclass(frozen=True)
class OpaqueArgs:
    values: dict[str, Any] = field(default_factory=dict)


ToolArgs = (
    PathArgs | WriteFileArgs | ShellArgs | BackgroundTaskArgs
    | WaitForTaskArgs | SkillArgs | NoArgs | OpaqueArgs
)

_PATH_TOOLS = {"read_file", "list_directory", "create_directory"}
_NO_ARG_TOOLS = {"get_background_tasks", "list_skills"}


def parse_tool_args(tool_name: str, arguments: dict[str, Any]) -> ToolArgs:
    """Narrow a raw argument object to the shape its tool expects."""
    def text(key: str) -> str | None:
        value = arguments.get(key)
        return value if isinstance(value, str) else None

    if tool_name in _PATH_TOOLS and text("path") is not None:
        return PathArgs(path=text("path"))
    if tool_name == "write_file" and text("path") is not None and text("content") is not None:
        return WriteFileArgs(path=text("path"), content=text("content"))
    if tool_name == "execute_shell" and text("command") is not None:
        return ShellArgs(command=text("command"))
    if tool_name == "background_task" and all(text(k) for k in ("name", "description", "task")):
        return BackgroundTaskArgs(
            name=text("name"),
            description=text("description"),
            task=text("task"),
            wait=arguments.get("wait") is True,
        )
    if tool_name == "wait_for_task" and text("task_id") is not None:
        return WaitForTaskArgs(task_id=text("task_id"))
    if tool_name == "read_skill" and text("name") is not None:
        return SkillArgs(name=text("name"))
    if tool_name in _NO_ARG_TOOLS:
        return NoArgs()
    return OpaqueArgs(values=dict(arguments))


def format_tool_call(tool_name: str, arguments: dict[str, Any]) -> str:
    """Human-readable label for a tool call, used in transcripts and status lines."""
    args = parse_tool_args(tool_name, arguments)
    match args:
        case PathArgs(path=path) if tool_name == "read_file":
            return f'Read a file "{path}"'
        case PathArgs(path=path) if tool_name == "list_directory":
            return f'List directory "{path}"'
        case PathArgs(path=path):
            return f'Create directory "{path}"'
        case WriteFileArgs(path=path):
            return f'Write a file "{path}"'
        case ShellArgs(command=command):
            return f'Execute shell command "{command}"'
        case BackgroundTaskArgs(name=name, wait=wait):
            return f'Background task: "{name}"' + (" (waiting for completion)" if wait else "")
        case WaitForTaskArgs(task_id=task_id):
            return f'Waiting for task: "{task_id}"'
        case SkillArgs(name=name):
            return f'Read skill "{name}"'
        case NoArgs() if tool_name == "get_background_tasks":
            return "Check background tasks status"
        case NoArgs():
            return "List skills"
    parsed = parse_mcp_tool_name(tool_name)
    if parsed:
        return f"MCP: {parsed[0]} -> {parsed[1]}"
    return tool_name


# =============================================================================
# Registry
# =============================================================================


def _error_result(tool_call_id: str, error: Exception | str) -> ToolResult:
    message = str(error) or type(error).__name__
    return ToolResult(
        tool_call_id=tool_call_id,
        content=f"Error: {message}",
        success=False,
        error=message,
    )


async def _settle(tool_name: str, tool_call_id: str, pending: Awaitable[Any]) -> ToolResult:
    try:
        result = await pending
    except Exception as e:
        logger.error(f"Tool {tool_name} failed: {e}")
        return _error_result(tool_call_id, e)
    return ToolResult(tool_call_id=tool_call_id, content=str(result), success=True)


@dataclass
class Tool:
    """
    Definition of a tool that the agent can use.

    A tool has:
    - name: Unique identifier
    - description: What the tool does (shown to the model)
    - parameters: JSON Schema for the tool's parameters
    - handler: Function or coroutine function that executes the tool
    """
    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def execute(
        self,
        arguments: dict[str, Any],
        tool_call_id: str = "",
    ) -> ToolResult | Awaitable[ToolResult]:
        """
        Run the handler.

        Returns a ToolResult when the handler finished synchronously, or an
        awaitable that resolves to one. Neither path raises.
        """
        try:
            result = self.handler(**arguments)
        except Exception as e:
            logger.error(f"Tool {self.name} failed: {e}")
            return _error_result(tool_call_id, e)

        if inspect.isawaitable(result):
            return _settle(self.name, tool_call_id, result)
        return ToolResult(tool_call_id=tool_call_id, content=str(result), success=True)


@dataclass
class ToolRegistry:
    """
    Registry of available tools.

    Shared read-only once built: executing a tool does not touch registry
    state, so several agents may use one registry at the same time.
    """

    _tools: dict[str, Tool] = field(default_factory=dict)
    _providers: list[ToolProvider] = field(default_factory=list)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self._tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def register_function(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: ToolHandler,
    ) -> Tool:
        """Convenience method to register a function as a tool."""
        tool = Tool(
            name=name,
            description=description,
            parameters=parameters,
            handler=handler,
        )
        self.register(tool)
        return tool

    def add_provider(self, provider: ToolProvider) -> None:
        """Attach a source of external tools."""
        self._providers.append(provider)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def _provider_for(self, name: str) -> ToolProvider | None:
        for provider in self._providers:
            if provider.handles(name):
                return provider
        return None

    def execute(self, tool_call: ToolCall) -> ToolResult | Awaitable[ToolResult]:
        """
        Execute a tool call.

        This is the controlled entry point for all side effects. The
        result is immediate for synchronous tools and awaitable otherwise.
        """
        tool = self._tools.get(tool_call.name)
        if tool is not None:
            logger.info(f"Executing tool: {tool_call.name}")
            return tool.execute(tool_call.arguments, tool_call.id)

        try:
            provider = self._provider_for(tool_call.name)
        except Exception as e:
            logger.error(f"Tool provider lookup failed for {tool_call.name}: {e}")
            return _error_result(tool_call.id, e)
        if provider is not None:
            logger.info(f"Executing external tool: {tool_call.name}")
            return _settle(
                tool_call.name,
                tool_call.id,
                provider.call_tool(tool_call.name, tool_call.arguments),
            )

        logger.warning(f"Unknown tool requested: {tool_call.name}")
        return _error_result(tool_call.id, f"Unknown tool: {tool_call.name}")

    def get_schemas(self) -> list[dict[str, Any]]:
        """Built-in schemas followed by every provider's schemas."""
        schemas = [tool.to_openai_schema() for tool in self._tools.values()]
        for provider in self._providers:
            try:
                schemas.extend(provider.get_tools())
            except Exception as e:
                logger.error(f"Skipping tools from provider {provider!r}: {e}")
        return schemas

    def get_tool_descriptions(self) -> str | None:
        """Combined provider descriptions for the system prompt, if any."""
        parts = [p.get_tool_descriptions() for p in self._providers]
        text = "\n".join(part for part in parts if part)
        return text or None

    @property
    def tool_names(self) -> list[str]:
        """List of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
