"""
Context Manager - size estimates and compaction support.

The model's context window is finite. Rather than silently dropping old
turns, the agent compacts: the conversation is rendered to plain text,
summarized by the model, and the history is replaced by that summary.
This module owns the heuristics around that; the summary call itself
belongs to the model client.
"""

import logging
from dataclasses import dataclass

from tod.config import ContextConfig
from tod.message_store import MessageStore
from tod.types import Message, Role

logger = logging.getLogger(__name__)


@dataclass
class ContextBudget:
    """Estimated usage against the compaction threshold."""
    threshold: int
    used: int

    @property
    def utilization(self) -> float:
        """Fraction of the threshold used."""
        return self.used / self.threshold if self.threshold > 0 else 0.0

    @property
    def exceeded(self) -> bool:
        return self.used > self.threshold


@dataclass
class CompactionResult:
    """Outcome of compacting a conversation."""
    old_tokens: int
    new_tokens: int
    summary: str

    @property
    def saved(self) -> int:
        return self.old_tokens - self.new_tokens


class ContextManager:
    """
    Estimates context size and prepares conversations for summarization.

    Estimates are chars / chars_per_token. They are only good enough to
    tell the user roughly how full the context is and when to compact.
    """

    def __init__(self, config: ContextConfig | None = None) -> None:
        self.config = config or ContextConfig()

    def estimate_tokens(self, text: str) -> int:
        return round(len(text) / self.config.chars_per_token)

    def calculate_budget(self, store: MessageStore) -> ContextBudget:
        return ContextBudget(
            threshold=self.config.compact_threshold_tokens,
            used=store.estimate_size(),
        )

    def should_compact(self, store: MessageStore) -> bool:
        """True once the history has grown past the compaction threshold."""
        budget = self.calculate_budget(store)
        if budget.exceeded:
            logger.info(
                f"Context estimate {budget.used} tokens exceeds threshold {budget.threshold}"
            )
        return budget.exceeded

    def render_transcript(self, messages: list[Message]) -> str:
        """Render conversation messages as the plain text sent for summarization."""
        lines = []
        for msg in messages:
            content = msg.content or ""
            if msg.role == Role.USER:
                lines.append(f"User: {content}")
            elif msg.role == Role.ASSISTANT:
                if not content and msg.tool_calls:
                    names = ", ".join(tc.name for tc in msg.tool_calls)
                    content = f"[called tools: {names}]"
                lines.append(f"Assistant: {content}")
            elif msg.role == Role.TOOL:
                lines.append(f"Tool ({msg.tool_call_id}): {content}")
            else:
                lines.append(f"System: {content}")
        return "\n\n".join(lines)

    def truncate_result(self, result: str) -> str:
        """Cap a background task result before it goes into ephemeral context."""
        limit = self.config.max_background_result_chars
        if len(result) <= limit:
            return result
        return result[:limit] + f"\n... (truncated, {len(result)} chars total)"
