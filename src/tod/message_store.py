"""
Message Store - the single source of truth for what the model sees.

The store owns two things:
- The persisted conversation. The first message is always the system
  prompt; it is replaced on reset() or rewritten in place when the
  external tool descriptions change, but never removed.
- Ephemeral context: keyed text (active skill, background task status,
  background results) that is injected right after the system prompt in
  every outbound request but never written into the history.

All operations are plain in-memory mutations. Nothing here does I/O.
"""

import logging
from collections.abc import Callable
from typing import Any

from tod.types import Message, Role, ToolCall

logger = logging.getLogger(__name__)

PromptFactory = Callable[[str | None], str]

SUMMARY_PREFIX = "Previous conversation summary:\n"


class MessageStore:
    """
    Ordered conversation plus keyed ephemeral context.

    The system prompt either comes from a fixed string or from a
    prompt_factory that is called with the current external tool
    descriptions whenever the prompt has to be (re)built.
    """

    def __init__(
        self,
        system_prompt: str = "",
        prompt_factory: PromptFactory | None = None,
        tool_descriptions: str | None = None,
        chars_per_token: float = 4.0,
        log: logging.Logger | None = None,
    ) -> None:
        self._fixed_prompt = system_prompt
        self._prompt_factory = prompt_factory
        self._tool_descriptions = tool_descriptions
        self.chars_per_token = chars_per_token
        self.log = log or logger
        self._messages: list[Message] = []
        self._ephemeral: dict[str, str] = {}
        self.reset()

    def _build_system_message(self) -> Message:
        if self._prompt_factory is not None:
            content = self._prompt_factory(self._tool_descriptions)
        else:
            content = self._fixed_prompt
        return Message(role=Role.SYSTEM, content=content)

    def reset(self) -> None:
        """Start over with only a fresh system prompt and no ephemeral context."""
        self._messages = [self._build_system_message()]
        self._ephemeral.clear()
        self.log.debug("Messages reset")

    def set_tool_descriptions(self, descriptions: str | None) -> None:
        """Rewrite the system prompt in place for new external tool descriptions."""
        self._tool_descriptions = descriptions
        self._messages[0] = self._build_system_message()
        self.log.debug("System prompt rebuilt for tool descriptions")

    @property
    def system_message(self) -> Message:
        return self._messages[0]

    # -- history ---------------------------------------------------------

    def add_message(
        self,
        role: Role | str,
        content: str | None,
        tool_call_id: str | None = None,
        tool_calls: list[ToolCall] | None = None,
        name: str | None = None,
    ) -> Message:
        """
        Append a user, assistant or tool message.

        Tool messages must reference the call they answer. User and tool
        content may be empty but not None. Empty assistant content is
        stored as None.
        """
        role = Role(role)
        if role == Role.SYSTEM:
            raise ValueError("Only the system prompt may have the system role")
        if role == Role.TOOL and not tool_call_id:
            raise ValueError("Tool messages require a tool_call_id")
        if role in (Role.USER, Role.TOOL) and content is None:
            raise ValueError(f"{role.value} messages require content")
        if tool_calls is not None and role != Role.ASSISTANT:
            raise ValueError("Only assistant messages can carry tool calls")

        message = Message(
            role=role,
            content=content if role != Role.ASSISTANT else (content or None),
            name=name,
            tool_call_id=tool_call_id if role == Role.TOOL else None,
            tool_calls=list(tool_calls) if tool_calls else None,
        )
        self._messages.append(message)
        self.log.debug(
            "Message added: role=%s content_length=%d",
            role.value, len(content or ""),
        )
        return message

    def add_tool_call_request(self, calls: list[ToolCall]) -> Message:
        """Record the model's intent to call tools, before they run."""
        message = Message(role=Role.ASSISTANT, content=None, tool_calls=list(calls))
        self._messages.append(message)
        self.log.debug("Tool calls added: count=%d", len(calls))
        return message

    def get_messages(self) -> list[Message]:
        """The persisted history, system prompt first."""
        return list(self._messages)

    def get_conversation_messages(self) -> list[Message]:
        """The persisted history without the system prompt."""
        return self._messages[1:]

    def __len__(self) -> int:
        return len(self._messages)

    # -- ephemeral context -------------------------------------------------

    def set_ephemeral_context(self, key: str, text: str) -> None:
        """Set ephemeral context by key. The same key overwrites, never appends."""
        self._ephemeral[key] = text

    def remove_ephemeral_context(self, key: str) -> None:
        self._ephemeral.pop(key, None)

    def get_ephemeral_context(self, key: str) -> str | None:
        return self._ephemeral.get(key)

    @property
    def ephemeral_keys(self) -> list[str]:
        return list(self._ephemeral)

    # -- outbound ----------------------------------------------------------

    def get_outbound_messages(self) -> list[dict[str, Any]]:
        """
        Build the request message list.

        Order: system prompt, then ephemeral entries as system messages in
        insertion order (re-setting a key keeps its position), then the
        rest of the history.
        """
        outbound = [self._messages[0].to_dict()]
        for text in self._ephemeral.values():
            outbound.append({"role": Role.SYSTEM.value, "content": text})
        outbound.extend(m.to_dict() for m in self._messages[1:])
        return outbound

    # -- compaction ----------------------------------------------------------

    def compact(self, summary: str) -> None:
        """Collapse the history to the system prompt plus one summary message."""
        system_message = self._messages[0]
        self._messages = [
            system_message,
            Message(role=Role.SYSTEM, content=f"{SUMMARY_PREFIX}{summary}"),
        ]
        self.log.debug("Messages compacted: summary_length=%d", len(summary))

    def estimate_size(self) -> int:
        """
        Rough token estimate for the persisted history (chars / chars_per_token).

        Feeds the status display and the compaction hint, never a hard
        limit.
        """
        text = " ".join(m.content or "" for m in self._messages)
        return round(len(text) / self.chars_per_token)
