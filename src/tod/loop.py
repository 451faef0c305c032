"""
Agent Loop - drives one user turn to completion.

A turn may take several model round-trips (iterations):

1. Build the outbound messages (system prompt, ephemeral context, history)
   and the merged tool schemas
2. Stream a completion, surfacing thinking as it arrives, buffering the
   answer text and accumulating tool-call fragments by slot
3. Persist the answer (if any) as one assistant message
4. No runnable tool calls: the turn is done
5. Otherwise persist the tool-call request, run the calls one at a time in
   the order the model emitted them, persist each result, and go back to 1

Iterations are capped so the model cannot request tools forever. Hitting
the cap ends the turn with the history intact: every tool call that was
issued has its result recorded.

Cancellation is cooperative. abort() stops the active stream and prevents
further tool calls; a tool that is already running is allowed to finish.
"""

import asyncio
import inspect
import itertools
import logging
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

from tod.config import AgentConfig, LoopConfig
from tod.context import CompactionResult, ContextManager
from tod.llm import LLMClient, ModelClient
from tod.message_store import MessageStore
from tod.prompts import get_system_prompt
from tod.streaming import ToolCallAccumulator, finalize_tool_calls, iterate_until_cancelled
from tod.tools import ToolRegistry, format_tool_call
from tod.types import AgentChunk, ChunkKind, Role, ToolCall

logger = logging.getLogger(__name__)

SKILL_CONTEXT_KEY = "skill"
BACKGROUND_TASKS_CONTEXT_KEY = "background_tasks"
CANCELLED_TOOL_RESULT = "Error: Cancelled by user before execution"


def background_result_key(task_id: str) -> str:
    return f"bg_result_{task_id}"


def _ignore_chunk(chunk: AgentChunk) -> None:
    pass


def _ignore_tool_call(tool_name: str, arguments: dict[str, Any]) -> None:
    pass


@dataclass
class AgentCallbacks:
    """
    Where a turn's output goes.

    on_chunk receives thinking text as it streams, each final assistant
    answer once, each tool result, and one error chunk if the turn fails.
    on_tool_call fires just before a tool runs, with its parsed arguments.
    """
    on_chunk: Callable[[AgentChunk], None] = _ignore_chunk
    on_tool_call: Callable[[str, dict[str, Any]], None] = _ignore_tool_call


@dataclass
class TurnResult:
    """How a completed turn ended."""
    iterations: int
    stopped_reason: str = "completed"
    response: str | None = None


class Agent:
    """
    A conversational agent: one message store, one model client, one tool set.

    Only one process_message() may run at a time per instance. Separate
    instances share nothing but whatever tools they were given.
    """

    def __init__(
        self,
        llm: ModelClient,
        tools: ToolRegistry,
        messages: MessageStore,
        config: LoopConfig | None = None,
        context_manager: ContextManager | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.llm = llm
        self.tools = tools
        self.messages = messages
        self.config = config or LoopConfig()
        self.context_manager = context_manager or ContextManager()
        self.log = log or logger
        self._processing = False
        self._cancel_event: asyncio.Event | None = None
        self._call_ids = itertools.count(1)

    # -- state -------------------------------------------------------------

    @property
    def is_busy(self) -> bool:
        return self._processing

    def abort(self) -> None:
        """Stop the in-flight turn, if any. Safe to call when idle."""
        if self._cancel_event is not None and not self._cancel_event.is_set():
            self._cancel_event.set()
            self.log.info("Abort requested")

    def reset(self) -> None:
        """Abort any turn and clear history and ephemeral context."""
        self.abort()
        self.messages.reset()
        self.log.info("Agent reset")

    # -- ephemeral context -------------------------------------------------

    def set_active_skill(self, instructions: str | None) -> None:
        """Activate skill instructions for upcoming turns, or clear them with None."""
        if instructions:
            self.messages.set_ephemeral_context(
                SKILL_CONTEXT_KEY, f"Active skill instructions:\n{instructions}"
            )
            self.log.info(f"Skill activated ({len(instructions)} chars)")
        else:
            self.messages.remove_ephemeral_context(SKILL_CONTEXT_KEY)

    def handle_background_task_result(self, task_id: str, result: str) -> None:
        """Make a finished background task's result visible on the next model call."""
        self.log.info(f"Received background task result {task_id} ({len(result)} chars)")
        truncated = self.context_manager.truncate_result(result)
        self.messages.set_ephemeral_context(
            background_result_key(task_id),
            f"Background task {task_id} completed:\n{truncated}",
        )

    def update_background_tasks_context(self, summary: str) -> None:
        self.messages.set_ephemeral_context(
            BACKGROUND_TASKS_CONTEXT_KEY, f"Background Tasks Status:\n{summary}"
        )
        self.log.debug("Background tasks context updated")

    # -- turns ---------------------------------------------------------------

    async def process_message(
        self,
        user_message: str,
        callbacks: AgentCallbacks | None = None,
    ) -> TurnResult:
        """
        Run one user turn to completion.

        Raises:
            AgentBusyError: Another turn is already in flight
            AgentCancelledError: abort() was called during the turn
            LLMError: The model stream failed (after one ERROR chunk is emitted)
        """
        if self._processing:
            raise AgentBusyError("Agent is already processing a message")

        callbacks = callbacks or AgentCallbacks()
        self._processing = True
        self._cancel_event = cancel_event = asyncio.Event()
        self.log.info(f"Processing user message ({len(user_message)} chars)")

        try:
            self.messages.add_message(Role.USER, user_message)
            return await self._run_loop(callbacks, cancel_event)
        except AgentCancelledError:
            self.log.info("Turn cancelled")
            raise
        except Exception as e:
            self.log.error(f"Turn failed: {e}")
            callbacks.on_chunk(AgentChunk(kind=ChunkKind.ERROR, content=f"Error: {e}"))
            raise
        finally:
            self._processing = False
            self._cancel_event = None
            self.log.debug("Message processing finished")

    async def _run_loop(
        self,
        callbacks: AgentCallbacks,
        cancel_event: asyncio.Event,
    ) -> TurnResult:
        response: str | None = None

        for iteration in range(1, self.config.max_iterations + 1):
            if cancel_event.is_set():
                raise AgentCancelledError("Cancelled by user")
            self.log.info(f"Agent iteration {iteration}/{self.config.max_iterations}")

            answer_parts: list[str] = []
            accumulator = ToolCallAccumulator()
            stream = self.llm.stream_completion(
                self.messages.get_outbound_messages(),
                self.tools.get_schemas(),
            )

            async with aclosing(iterate_until_cancelled(stream, cancel_event)) as chunks:
                async for chunk in chunks:
                    if cancel_event.is_set():
                        break
                    if chunk.thinking:
                        callbacks.on_chunk(AgentChunk(kind=ChunkKind.THINKING, content=chunk.thinking))
                    if chunk.content:
                        answer_parts.append(chunk.content)
                    accumulator.add_chunk(chunk)

            if cancel_event.is_set():
                raise AgentCancelledError("Cancelled by user")

            answer = "".join(answer_parts)
            if answer:
                response = answer
                self.messages.add_message(Role.ASSISTANT, answer)
                callbacks.on_chunk(AgentChunk(kind=ChunkKind.ASSISTANT, content=answer))

            runnable = accumulator.runnable()
            if not runnable:
                return TurnResult(iterations=iteration, stopped_reason="completed", response=response)

            calls = finalize_tool_calls(runnable, self._call_ids, self.log)
            self.messages.add_tool_call_request(calls)
            await self._execute_tool_calls(calls, callbacks, cancel_event)

        self.log.warning(f"Agent loop hit max_iterations limit ({self.config.max_iterations})")
        return TurnResult(
            iterations=self.config.max_iterations,
            stopped_reason="max_iterations",
            response=response,
        )

    async def _execute_tool_calls(
        self,
        calls: list[ToolCall],
        callbacks: AgentCallbacks,
        cancel_event: asyncio.Event,
    ) -> None:
        """Run calls strictly in order, persisting each result before the next."""
        for position, call in enumerate(calls):
            if cancel_event.is_set():
                # The request is already in history; answer the calls that
                # will not run so the conversation stays well-formed.
                for skipped in calls[position:]:
                    self.messages.add_message(
                        Role.TOOL, CANCELLED_TOOL_RESULT, tool_call_id=skipped.id
                    )
                raise AgentCancelledError("Cancelled by user")

            callbacks.on_tool_call(call.name, call.arguments)

            result = self.tools.execute(call)
            if inspect.isawaitable(result):
                self.log.info(f"Waiting for async tool result: {call.name}")
                result = await result
                self.log.info(f"Async tool completed: {call.name} ({len(result.content)} chars)")

            self.messages.add_message(Role.TOOL, result.content, tool_call_id=call.id)
            callbacks.on_chunk(AgentChunk(
                kind=ChunkKind.TOOL,
                content=result.content,
                tool_name=format_tool_call(call.name, call.arguments),
                tool_call_id=call.id,
            ))

    # -- compaction ----------------------------------------------------------

    async def compact_context(self) -> CompactionResult:
        """Replace the conversation with a model-written summary."""
        if self._processing:
            raise AgentBusyError("Cannot compact while a message is being processed")

        conversation = self.messages.get_conversation_messages()
        if not conversation:
            return CompactionResult(old_tokens=0, new_tokens=0, summary="No messages to compact")

        self.log.info("Compacting context")
        old_tokens = self.messages.estimate_size()
        transcript = self.context_manager.render_transcript(conversation)
        summary = await self.llm.create_summary(transcript)
        new_tokens = self.context_manager.estimate_tokens(summary)

        self.messages.compact(summary)
        self.log.info(
            f"Context compacted: {old_tokens} -> {new_tokens} tokens "
            f"(saved {old_tokens - new_tokens})"
        )
        return CompactionResult(old_tokens=old_tokens, new_tokens=new_tokens, summary=summary)

    # -- construction ----------------------------------------------------------

    @classmethod
    def create(
        cls,
        config: AgentConfig,
        tools: ToolRegistry,
        cwd: str,
        llm: ModelClient | None = None,
        worker: bool = False,
    ) -> "Agent":
        """
        Build an Agent with all of its dependencies.

        worker=True builds the constrained prompt used by background
        sub-agents.
        """
        background_enabled = config.background.enabled and not worker

        def prompt_factory(tool_descriptions: str | None) -> str:
            return get_system_prompt(
                cwd=cwd,
                tool_descriptions=tool_descriptions,
                background_tasks=background_enabled,
                max_background_tasks=config.background.max_concurrent_tasks,
                worker=worker,
            )

        messages = MessageStore(
            prompt_factory=prompt_factory,
            tool_descriptions=tools.get_tool_descriptions(),
            chars_per_token=config.context.chars_per_token,
        )
        return cls(
            llm=llm or LLMClient(config.llm),
            tools=tools,
            messages=messages,
            config=config.loop,
            context_manager=ContextManager(config.context),
        )


class AgentBusyError(RuntimeError):
    """process_message was called while another turn was in flight."""
    pass


class AgentCancelledError(Exception):
    """The turn was stopped by abort(). Not a failure."""
    pass
