"""
Tests for BackgroundTaskManager - parallel sub-agents under a ceiling.
"""

import asyncio

import pytest

from tod.background import (
    BackgroundTaskError,
    BackgroundTaskManager,
    TaskCancelledError,
    TaskLimitError,
    TaskNotFoundError,
    TaskStateError,
    TaskStatus,
    activity_for_tool,
    attach_to_agent,
)
from tod.config import BackgroundConfig
from tod.llm import LLMError
from tod.loop import Agent
from tod.message_store import MessageStore
from tod.tools import ToolRegistry
from tod.types import StreamChunk, ToolCallFragment


class ScriptedLLM:
    """Replays one list of chunks per model call."""

    def __init__(self, turns: list[list[StreamChunk]] | None = None) -> None:
        self.turns = list(turns or [])

    async def stream_completion(self, messages, tools):
        chunks = self.turns.pop(0) if self.turns else [StreamChunk(content="Task done")]
        for chunk in chunks:
            yield chunk

    async def create_summary(self, conversation: str) -> str:
        return "summary"


class GatedLLM(ScriptedLLM):
    """Waits for a gate before answering."""

    def __init__(self, answer: str = "Gated result") -> None:
        super().__init__()
        self.answer = answer
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def stream_completion(self, messages, tools):
        self.started.set()
        await self.gate.wait()
        yield StreamChunk(content=self.answer)


class BrokenLLM(ScriptedLLM):
    async def stream_completion(self, messages, tools):
        raise LLMError("HTTP 500: internal error", status_code=500)
        yield  # pragma: no cover


def make_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_function(
        "list_directory", "List", {"type": "object"}, lambda path=".": "[FILE] a.txt"
    )
    return registry


class AgentFactory:
    """Builds worker agents around the given model clients, in order."""

    def __init__(self, *llms) -> None:
        self.llms = list(llms)
        self.working_dirs: list[str] = []

    def __call__(self, working_dir: str) -> Agent:
        self.working_dirs.append(working_dir)
        llm = self.llms.pop(0) if self.llms else ScriptedLLM()
        return Agent(
            llm=llm,
            tools=make_registry(),
            messages=MessageStore(system_prompt="You are a background worker."),
        )


def make_manager(*llms, max_tasks: int = 2, cleanup_delay: float = 10.0) -> BackgroundTaskManager:
    config = BackgroundConfig(enabled=True, max_concurrent_tasks=max_tasks, cleanup_delay=cleanup_delay)
    return BackgroundTaskManager(AgentFactory(*llms), config)


class TestLifecycle:
    """Test task creation and completion."""

    @pytest.mark.asyncio
    async def test_create_and_wait(self) -> None:
        manager = make_manager(ScriptedLLM([[StreamChunk(content="Found 3 TODOs")]]))

        task_id = manager.create_task("Scan", "Find TODOs", "grep for TODO")

        assert task_id == "bg-1"
        assert manager.get_task(task_id).status == TaskStatus.PENDING
        result = await asyncio.wait_for(manager.wait_for_task(task_id), timeout=1.0)

        assert result == "Found 3 TODOs"
        task = manager.get_task(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.start_time is not None
        assert task.end_time >= task.start_time
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_ids_increase(self) -> None:
        manager = make_manager(max_tasks=5)

        ids = [manager.create_task(f"t{i}", "d", "do it") for i in range(3)]

        assert ids == ["bg-1", "bg-2", "bg-3"]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_wait_on_finished_task_is_immediate(self) -> None:
        manager = make_manager(ScriptedLLM([[StreamChunk(content="done")]]))
        task_id = manager.create_task("Quick", "d", "do it")
        await manager.wait_for_task(task_id)

        result = await asyncio.wait_for(manager.wait_for_task(task_id), timeout=0.1)

        assert result == "done"
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_tool_activity_tracked(self) -> None:
        llm = ScriptedLLM([
            [StreamChunk(tool_calls=[ToolCallFragment(index=0, id="c1", name="list_directory", arguments="{}")])],
            [StreamChunk(content="Listed")],
        ])
        manager = make_manager(llm)
        activities: list[str] = []
        manager.on_task_update(lambda snapshot: activities.append(snapshot.activity))

        task_id = manager.create_task("Explore", "d", "look around")
        await manager.wait_for_task(task_id)

        assert "Exploring" in activities
        assert activities[-1] == "Completed"
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_failed_task(self) -> None:
        manager = make_manager(BrokenLLM())
        task_id = manager.create_task("Broken", "d", "fail")

        with pytest.raises(BackgroundTaskError, match="internal error"):
            await asyncio.wait_for(manager.wait_for_task(task_id), timeout=1.0)

        task = manager.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert "internal error" in task.error
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_working_dir_captured(self, tmp_path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        factory = AgentFactory()
        manager = BackgroundTaskManager(factory, BackgroundConfig())

        task_id = manager.create_task("Here", "d", "do it")

        assert factory.working_dirs == [str(tmp_path)]
        assert manager.get_task(task_id).working_dir == str(tmp_path)
        await manager.shutdown()


class TestCeiling:
    """Test the concurrency ceiling."""

    @pytest.mark.asyncio
    async def test_limit_raises_without_creating_record(self) -> None:
        manager = make_manager(GatedLLM(), max_tasks=1)
        manager.create_task("First", "d", "do it")

        assert not manager.can_start_task()
        with pytest.raises(TaskLimitError, match="Maximum concurrent tasks"):
            manager.create_task("Second", "d", "do it")

        assert [t.name for t in manager.get_all_tasks()] == ["First"]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_finished_tasks_free_capacity(self) -> None:
        manager = make_manager(max_tasks=1)
        first = manager.create_task("First", "d", "do it")
        await manager.wait_for_task(first)

        second = manager.create_task("Second", "d", "do it")

        assert second == "bg-2"
        await manager.shutdown()


class TestCancellation:
    """Test cancel_task."""

    @pytest.mark.asyncio
    async def test_cancel_running_task(self) -> None:
        llm = GatedLLM()
        manager = make_manager(llm)
        results: list = []
        manager.on_task_result(lambda *args: results.append(args))
        task_id = manager.create_task("Slow", "d", "take forever")
        await asyncio.wait_for(llm.started.wait(), timeout=1.0)
        waiter = asyncio.create_task(manager.wait_for_task(task_id))
        await asyncio.sleep(0)

        manager.cancel_task(task_id)

        with pytest.raises(TaskCancelledError):
            await asyncio.wait_for(waiter, timeout=1.0)
        task = manager.get_task(task_id)
        assert task.status == TaskStatus.CANCELLED
        assert task.end_time is not None

        llm.gate.set()
        await asyncio.sleep(0.01)
        assert results == []
        assert manager.get_task(task_id).status == TaskStatus.CANCELLED
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_pending_task(self) -> None:
        """A task cancelled before it starts never runs."""
        llm = GatedLLM()
        manager = make_manager(llm)
        task_id = manager.create_task("Never", "d", "do it")

        manager.cancel_task(task_id)
        await asyncio.sleep(0.01)

        assert not llm.started.is_set()
        assert manager.get_task(task_id).status == TaskStatus.CANCELLED
        with pytest.raises(TaskCancelledError):
            await manager.wait_for_task(task_id)
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_finished_task(self) -> None:
        manager = make_manager()
        task_id = manager.create_task("Quick", "d", "do it")
        await manager.wait_for_task(task_id)

        with pytest.raises(TaskStateError):
            manager.cancel_task(task_id)
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_task(self) -> None:
        manager = make_manager()

        with pytest.raises(TaskNotFoundError):
            manager.cancel_task("bg-99")
        with pytest.raises(TaskNotFoundError):
            await manager.wait_for_task("bg-99")

    @pytest.mark.asyncio
    async def test_shutdown_cancels_active(self) -> None:
        manager = make_manager(GatedLLM(), GatedLLM())
        first = manager.create_task("A", "d", "do it")
        second = manager.create_task("B", "d", "do it")

        await asyncio.wait_for(manager.shutdown(), timeout=1.0)

        assert manager.get_task(first).status == TaskStatus.CANCELLED
        assert manager.get_task(second).status == TaskStatus.CANCELLED
        assert manager.get_active_tasks() == []


class TestNotifications:
    """Test update and result subscriptions."""

    @pytest.mark.asyncio
    async def test_result_listener(self) -> None:
        manager = make_manager(ScriptedLLM([[StreamChunk(content="Report")]]))
        results: list = []
        manager.on_task_result(lambda task_id, result, snapshot: results.append((task_id, result, snapshot.status)))

        task_id = manager.create_task("Review", "d", "review code")
        await manager.wait_for_task(task_id)

        assert results == [(task_id, "Report", TaskStatus.COMPLETED)]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        manager = make_manager()
        updates: list = []
        unsubscribe = manager.on_task_update(updates.append)
        unsubscribe()

        task_id = manager.create_task("Quiet", "d", "do it")
        await manager.wait_for_task(task_id)

        assert updates == []
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_progress_callback(self) -> None:
        llm = GatedLLM()
        manager = make_manager(llm)
        task_id = manager.create_task("Slow", "d", "do it")
        seen: list[TaskStatus] = []
        waiter = asyncio.create_task(manager.wait_for_task(task_id, on_progress=lambda s: seen.append(s.status)))
        await asyncio.wait_for(llm.started.wait(), timeout=1.0)

        llm.gate.set()
        await asyncio.wait_for(waiter, timeout=1.0)

        assert seen[-1] == TaskStatus.COMPLETED
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_task(self) -> None:
        manager = make_manager()

        def broken(snapshot) -> None:
            raise RuntimeError("listener bug")

        manager.on_task_update(broken)
        task_id = manager.create_task("Robust", "d", "do it")

        assert await manager.wait_for_task(task_id) == "Task done"
        await manager.shutdown()


class TestCleanup:
    """Test removal of finished tasks."""

    @pytest.mark.asyncio
    async def test_removed_after_delay(self) -> None:
        manager = make_manager(cleanup_delay=0.01)
        task_id = manager.create_task("Quick", "d", "do it")
        await manager.wait_for_task(task_id)

        assert manager.get_task(task_id) is not None
        await asyncio.sleep(0.05)

        assert manager.get_task(task_id) is None
        with pytest.raises(TaskNotFoundError):
            await manager.wait_for_task(task_id)

    @pytest.mark.asyncio
    async def test_clear_completed(self) -> None:
        manager = make_manager(GatedLLM(), max_tasks=3)
        running = manager.create_task("Running", "d", "do it")
        done = manager.create_task("Done", "d", "do it")
        await manager.wait_for_task(done)

        manager.clear_completed_tasks()

        assert [t.id for t in manager.get_all_tasks()] == [running]
        await manager.shutdown()


class TestSummary:
    """Test the status report."""

    def test_empty(self) -> None:
        assert make_manager().get_tasks_summary() == "No background tasks running."

    @pytest.mark.asyncio
    async def test_report(self) -> None:
        manager = make_manager(ScriptedLLM([[StreamChunk(content="x" * 150)]]), GatedLLM())
        done = manager.create_task("Review", "Review code", "do it")
        await manager.wait_for_task(done)
        manager.create_task("Build", "Run build", "do it")
        await asyncio.sleep(0.01)

        summary = manager.get_tasks_summary()

        assert summary.startswith("Background Tasks (2 total, 1 active, 1 completed, 0 failed, 0 cancelled):")
        assert "bg-1 [completed] Review (Review code)" in summary
        assert "Result: " + "x" * 100 + "..." in summary
        assert "bg-2 [running] Build (Run build)" in summary
        assert summary.endswith("Available capacity: 1/2 tasks")
        await manager.shutdown()


class TestAgentIntegration:
    """Test feeding background results into the main agent."""

    @pytest.mark.asyncio
    async def test_attach_to_agent(self) -> None:
        main = Agent(llm=ScriptedLLM(), tools=ToolRegistry(), messages=MessageStore(system_prompt="Main"))
        manager = make_manager(ScriptedLLM([[StreamChunk(content="All tests pass")]]))
        detach = attach_to_agent(manager, main)

        task_id = manager.create_task("Test", "Run tests", "run pytest")
        await manager.wait_for_task(task_id)

        assert main.messages.get_ephemeral_context(f"bg_result_{task_id}") == (
            f"Background task {task_id} completed:\nAll tests pass"
        )
        status = main.messages.get_ephemeral_context("background_tasks")
        assert status.startswith("Background Tasks Status:\nBackground Tasks (1 total")

        detach()
        await manager.shutdown()


class TestActivityLabels:
    @pytest.mark.parametrize("tool,label", [
        ("read_file", "Reading"),
        ("write_file", "Writing"),
        ("execute_shell", "Executing"),
        ("list_directory", "Exploring"),
        ("create_directory", "Creating"),
        ("read_skill", "Reading skill"),
        ("mcp__github__search", "Calling mcp__github__search"),
    ])
    def test_labels(self, tool: str, label: str) -> None:
        assert activity_for_tool(tool) == label
