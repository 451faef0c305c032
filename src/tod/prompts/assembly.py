"""
System prompt assembly.

The prompt is built from markdown modules in this directory:
identity and tool rules first (stable across a session), then the
optional sections that depend on what the agent is allowed to do.
"""

from datetime import date
from pathlib import Path

PROMPT_DIR = Path(__file__).parent


def load_module(name: str) -> str:
    """
    Load a prompt module by name.

    Args:
        name: Module path relative to prompts directory (e.g., "core/identity")

    Returns:
        Contents of the markdown file
    """
    path = PROMPT_DIR / f"{name}.md"
    if not path.exists():
        raise FileNotFoundError(f"Prompt module not found: {path}")
    return path.read_text(encoding="utf-8").strip()


def get_system_prompt(
    cwd: str,
    tool_descriptions: str | None = None,
    background_tasks: bool = False,
    max_background_tasks: int = 2,
    worker: bool = False,
    today: date | None = None,
) -> str:
    """
    Assemble the full system prompt.

    Args:
        cwd: Working directory shown to the model
        tool_descriptions: Text listing external (MCP) tools, if any
        background_tasks: Whether the background task tools are available
        max_background_tasks: Concurrency ceiling quoted in the prompt
        worker: Build the prompt for a background sub-agent
        today: Date shown to the model (defaults to today)

    Returns:
        Complete assembled system prompt
    """
    today = today or date.today()
    sections = [
        load_module("core/identity").format(
            cwd=cwd,
            date=today.strftime("%B %d, %Y"),
        ),
        load_module("core/tools"),
    ]

    if worker:
        sections.append(load_module("sections/worker"))
    elif background_tasks:
        sections.append(
            load_module("sections/background").format(max_tasks=max_background_tasks)
        )

    if tool_descriptions:
        sections.append(
            load_module("sections/mcp").format(descriptions=tool_descriptions)
        )

    return "\n\n".join(sections)


def get_compact_prompt() -> str:
    """Instructions for the summarization call used by compaction."""
    return load_module("core/compact")
