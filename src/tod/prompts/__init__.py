"""Prompt templates for TOD agents."""

from tod.prompts.assembly import (
    PROMPT_DIR,
    get_compact_prompt,
    get_system_prompt,
    load_module,
)

__all__ = [
    "PROMPT_DIR",
    "get_compact_prompt",
    "get_system_prompt",
    "load_module",
]
