"""
Tests for the built-in local tools.
"""

import inspect
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from tod.background import TaskLimitError
from tod.config import SkillsConfig
from tod.local_tools import create_local_tools
from tod.skills import SkillsManager
from tod.types import ToolCall

CORE_TOOLS = {"read_file", "write_file", "execute_shell", "list_directory", "create_directory"}
BACKGROUND_TOOLS = {"background_task", "wait_for_task", "get_background_tasks"}


async def run(registry, name: str, /, **arguments) -> str:
    result = registry.execute(ToolCall(id="c1", name=name, arguments=arguments))
    if inspect.isawaitable(result):
        result = await result
    return result.content


def make_manager() -> MagicMock:
    manager = MagicMock()
    manager.max_concurrent_tasks = 2
    manager.create_task.return_value = "bg-1"
    manager.wait_for_task = AsyncMock(return_value="task output")
    manager.get_tasks_summary.return_value = "No background tasks running."
    return manager


class TestRegistration:
    """Test which tools get registered."""

    def test_core_only(self, tmp_path: Path) -> None:
        registry = create_local_tools(tmp_path)
        assert set(registry.tool_names) == CORE_TOOLS

    def test_background_tools_need_manager(self, tmp_path: Path) -> None:
        """Without a manager (sub-agents) the background tools are absent."""
        skills = SkillsManager(SkillsConfig(global_dir=tmp_path / "g", project_dir=tmp_path / "p"))

        worker = create_local_tools(tmp_path, skills)
        main = create_local_tools(tmp_path, skills, make_manager())

        assert not BACKGROUND_TOOLS & set(worker.tool_names)
        assert BACKGROUND_TOOLS <= set(main.tool_names)
        assert {"list_skills", "read_skill"} <= set(worker.tool_names)


class TestFileTools:
    """Test filesystem tools."""

    @pytest.mark.asyncio
    async def test_write_then_read_relative(self, tmp_path: Path) -> None:
        """Relative paths resolve against the working directory."""
        registry = create_local_tools(tmp_path)

        written = await run(registry, "write_file", path="notes/a.txt", content="hello")
        content = await run(registry, "read_file", path="notes/a.txt")

        assert written == "File written successfully: notes/a.txt"
        assert (tmp_path / "notes" / "a.txt").read_text() == "hello"
        assert content == "hello"

    @pytest.mark.asyncio
    async def test_read_missing_file(self, tmp_path: Path) -> None:
        content = await run(create_local_tools(tmp_path), "read_file", path="missing.txt")
        assert content == "Error: File not found: missing.txt"

    @pytest.mark.asyncio
    async def test_missing_path_argument(self, tmp_path: Path) -> None:
        content = await run(create_local_tools(tmp_path), "read_file")
        assert content == "Error: Path is required"

    @pytest.mark.asyncio
    async def test_list_directory(self, tmp_path: Path) -> None:
        (tmp_path / "src").mkdir()
        (tmp_path / "README.md").write_text("x")

        listing = await run(create_local_tools(tmp_path), "list_directory", path=".")

        assert listing.splitlines() == ["[FILE] README.md", "[DIR] src"]

    @pytest.mark.asyncio
    async def test_create_directory(self, tmp_path: Path) -> None:
        registry = create_local_tools(tmp_path)

        first = await run(registry, "create_directory", path="build/out")
        second = await run(registry, "create_directory", path="build/out")

        assert first == "Directory created: build/out"
        assert second == "Directory already exists: build/out"
        assert (tmp_path / "build" / "out").is_dir()


class TestShellTool:
    """Test shell execution."""

    @pytest.mark.asyncio
    async def test_runs_in_working_dir(self, tmp_path: Path) -> None:
        (tmp_path / "marker.txt").write_text("x")

        output = await run(create_local_tools(tmp_path), "execute_shell", command="ls")

        assert "marker.txt" in output

    @pytest.mark.asyncio
    async def test_silent_command(self, tmp_path: Path) -> None:
        output = await run(create_local_tools(tmp_path), "execute_shell", command="true")
        assert output == "Command executed successfully"

    @pytest.mark.asyncio
    async def test_failing_command(self, tmp_path: Path) -> None:
        output = await run(
            create_local_tools(tmp_path), "execute_shell", command="echo oops >&2; exit 3"
        )
        assert output.startswith("Error: Command failed with exit code 3")
        assert "oops" in output


class TestSkillTools:
    """Test skill tools."""

    @pytest.mark.asyncio
    async def test_list_and_read(self, tmp_path: Path) -> None:
        skills = SkillsManager(SkillsConfig(global_dir=tmp_path / "g", project_dir=tmp_path / "p"))
        skills.create_skill("deploy", "---\ndescription: Ship it\n---\nRun make deploy")
        registry = create_local_tools(tmp_path, skills)

        listing = await run(registry, "list_skills")
        content = await run(registry, "read_skill", name="deploy")
        missing = await run(registry, "read_skill", name="nope")

        assert listing == "- deploy: Ship it (project)"
        assert "Run make deploy" in content
        assert missing.startswith('Error: Skill "nope" not found')


class TestBackgroundTools:
    """Test the background task tool surface."""

    @pytest.mark.asyncio
    async def test_start_without_wait(self, tmp_path: Path) -> None:
        manager = make_manager()
        registry = create_local_tools(tmp_path, background=manager)

        output = await run(registry, "background_task", name="Scan", description="d", task="t")

        assert output.startswith("Started: bg-1.")
        manager.create_task.assert_called_once_with("Scan", "d", "t")
        manager.wait_for_task.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_with_wait(self, tmp_path: Path) -> None:
        manager = make_manager()
        registry = create_local_tools(tmp_path, background=manager)

        output = await run(
            registry, "background_task", name="Scan", description="d", task="t", wait=True
        )

        assert output == "task output"
        manager.wait_for_task.assert_awaited_once_with("bg-1")

    @pytest.mark.asyncio
    async def test_limit_reported_as_error(self, tmp_path: Path) -> None:
        manager = make_manager()
        manager.create_task.side_effect = TaskLimitError("Maximum concurrent tasks (2) reached")
        registry = create_local_tools(tmp_path, background=manager)

        output = await run(registry, "background_task", name="Scan", description="d", task="t")

        assert output == "Error: Maximum concurrent tasks (2) reached"

    @pytest.mark.asyncio
    async def test_missing_fields(self, tmp_path: Path) -> None:
        registry = create_local_tools(tmp_path, background=make_manager())

        output = await run(registry, "background_task", name="Scan")

        assert output == "Error: Name, description and task are required"

    @pytest.mark.asyncio
    async def test_wait_and_status(self, tmp_path: Path) -> None:
        manager = make_manager()
        registry = create_local_tools(tmp_path, background=manager)

        assert await run(registry, "wait_for_task", task_id="bg-1") == "task output"
        assert await run(registry, "get_background_tasks") == "No background tasks running."
