"""
Tool-call accumulation for streamed model output.

OpenAI-compatible streams deliver a tool call in fragments: the first
fragment for a slot usually carries the id and the start of the name,
later ones carry pieces of the JSON argument string. Fragments are keyed
by a stable slot index and may be split at any character boundary, so a
call is only usable once the stream has ended.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable, Iterator
from dataclasses import dataclass
from typing import Any, TypeVar

from tod.types import StreamChunk, ToolCall, ToolCallFragment

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iterate_until_cancelled(
    stream: AsyncIterator[T],
    cancel_event: asyncio.Event,
) -> AsyncIterator[T]:
    """
    Yield items from stream until it ends or cancel_event is set.

    Each read races against the event, so a stalled stream is abandoned
    as soon as cancellation is requested. The source stream is always
    closed on the way out.
    """
    iterator = stream.__aiter__()
    cancel_wait = asyncio.ensure_future(cancel_event.wait())
    try:
        while not cancel_event.is_set():
            next_item = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait(
                {next_item, cancel_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if next_item not in done:
                next_item.cancel()
                try:
                    await next_item
                except (asyncio.CancelledError, StopAsyncIteration):
                    pass
                break
            try:
                item = next_item.result()
            except StopAsyncIteration:
                break
            yield item
    finally:
        cancel_wait.cancel()
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


@dataclass
class AccumulatedToolCall:
    """Everything received so far for one tool-call slot."""
    index: int
    id: str | None = None
    name: str = ""
    arguments: str = ""

    @property
    def is_runnable(self) -> bool:
        return bool(self.name)


class ToolCallAccumulator:
    """Merges tool-call fragments by slot index, preserving first-seen order."""

    def __init__(self) -> None:
        self._slots: dict[int, AccumulatedToolCall] = {}

    def add(self, fragment: ToolCallFragment) -> AccumulatedToolCall:
        slot = self._slots.get(fragment.index)
        if slot is None:
            slot = AccumulatedToolCall(index=fragment.index)
            self._slots[fragment.index] = slot
        if fragment.id and not slot.id:
            slot.id = fragment.id
        slot.name += fragment.name
        slot.arguments += fragment.arguments
        return slot

    def add_chunk(self, chunk: StreamChunk) -> None:
        for fragment in chunk.tool_calls:
            self.add(fragment)

    def runnable(self) -> list[AccumulatedToolCall]:
        """Slots whose name resolved to something non-empty, in emission order."""
        return [slot for slot in self._slots.values() if slot.is_runnable]

    def __len__(self) -> int:
        return len(self._slots)

    def __iter__(self) -> Iterator[AccumulatedToolCall]:
        return iter(self._slots.values())


def parse_arguments(raw: str) -> tuple[dict[str, Any], str | None]:
    """
    Parse a tool-call argument string.

    Returns (arguments, error). An empty string is an empty object.
    Anything that is not a JSON object yields ({}, error message).
    """
    if not raw or not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        return {}, str(e)
    if not isinstance(parsed, dict):
        return {}, f"expected a JSON object, got {type(parsed).__name__}"
    return parsed, None


def finalize_tool_calls(
    slots: Iterable[AccumulatedToolCall],
    id_source: Iterator[int],
    log: logging.Logger | None = None,
) -> list[ToolCall]:
    """
    Turn accumulated slots into executable tool calls.

    Calls without a model-supplied id get call_<n> from id_source.
    Unparseable arguments degrade to {} and are logged.
    """
    log = log or logger
    calls = []
    for slot in slots:
        arguments, error = parse_arguments(slot.arguments)
        if error is not None:
            log.error(
                "Failed to parse tool arguments for %s: %s (arguments=%r)",
                slot.name, error, slot.arguments,
            )
        calls.append(ToolCall(
            id=slot.id or f"call_{next(id_source)}",
            name=slot.name,
            arguments=arguments,
        ))
    return calls
