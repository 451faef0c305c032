"""
Tests for system prompt assembly.
"""

from datetime import date

import pytest

from tod.prompts import get_compact_prompt, get_system_prompt, load_module


class TestSystemPrompt:
    """Test prompt sections."""

    def test_identity_fields(self) -> None:
        prompt = get_system_prompt(cwd="/work/project", today=date(2025, 3, 14))

        assert "/work/project" in prompt
        assert "March 14, 2025" in prompt
        assert "BACKGROUND TASKS" not in prompt
        assert "MCP TOOLS" not in prompt

    def test_background_section(self) -> None:
        prompt = get_system_prompt(cwd="/w", background_tasks=True, max_background_tasks=3)

        assert "BACKGROUND TASKS" in prompt
        assert "at most 3 at once" in prompt

    def test_worker_replaces_background_section(self) -> None:
        """Workers never see the background task instructions."""
        prompt = get_system_prompt(cwd="/w", background_tasks=True, worker=True)

        assert "BACKGROUND WORKER MODE" in prompt
        assert "BACKGROUND TASKS:" not in prompt

    def test_mcp_section(self) -> None:
        prompt = get_system_prompt(cwd="/w", tool_descriptions="github: search(q)")

        assert "MCP TOOLS" in prompt
        assert "github: search(q)" in prompt


class TestModules:
    def test_compact_prompt(self) -> None:
        assert "Summarize this conversation" in get_compact_prompt()

    def test_missing_module(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_module("core/nonexistent")
