"""
Background Task Manager - parallel sub-agents under a concurrency ceiling.

Each background task owns a fresh Agent with its own message store and
history, seeded with the worker prompt and a tool set that does not
include the background task tools. Tasks run as asyncio tasks on the
same event loop as the main agent; they interleave at I/O boundaries and
never run CPU work in parallel.

Lifecycle:

    pending -> running -> completed | failed | cancelled

The three right-hand states are terminal. Finished tasks stay queryable
for cleanup_delay seconds and are then dropped.

The ceiling check and task registration happen in one synchronous step
with no await in between, so concurrent create_task() calls on the event
loop cannot overshoot the ceiling.
"""

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from tod.config import BackgroundConfig
from tod.loop import Agent, AgentCallbacks, AgentCancelledError
from tod.types import AgentChunk, ChunkKind

logger = logging.getLogger(__name__)

RESULT_PREVIEW_CHARS = 100


class TaskStatus(str, Enum):
    """States of a background task."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


_STATUS_ICONS = {
    TaskStatus.PENDING: "o",
    TaskStatus.RUNNING: "*",
    TaskStatus.COMPLETED: "+",
    TaskStatus.FAILED: "x",
    TaskStatus.CANCELLED: "-",
}

_TOOL_ACTIVITIES = {
    "read_file": "Reading",
    "write_file": "Writing",
    "execute_shell": "Executing",
    "list_directory": "Exploring",
    "create_directory": "Creating",
    "list_skills": "Reading skill",
    "read_skill": "Reading skill",
}


def activity_for_tool(tool_name: str) -> str:
    """Human-readable label for what a task is doing while a tool runs."""
    return _TOOL_ACTIVITIES.get(tool_name, f"Calling {tool_name}")


@dataclass(frozen=True)
class TaskSnapshot:
    """A point-in-time copy of a task, safe to hand to observers."""
    id: str
    name: str
    description: str
    status: TaskStatus
    activity: str
    working_dir: str
    result: str | None = None
    error: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration(self) -> float | None:
        """Seconds spent running, up to now for a running task."""
        if self.start_time is None:
            return None
        end = self.end_time or datetime.now(UTC)
        return (end - self.start_time).total_seconds()


@dataclass
class BackgroundTask:
    """A task record. Owned by the manager; observers only see snapshots."""
    id: str
    name: str
    description: str
    instructions: str
    agent: Agent
    working_dir: str
    status: TaskStatus = TaskStatus.PENDING
    activity: str = "Queued"
    result: str | None = None
    error: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    runner: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            id=self.id,
            name=self.name,
            description=self.description,
            status=self.status,
            activity=self.activity,
            working_dir=self.working_dir,
            result=self.result,
            error=self.error,
            start_time=self.start_time,
            end_time=self.end_time,
        )


AgentFactory = Callable[[str], Agent]
TaskUpdateCallback = Callable[[TaskSnapshot], None]
TaskResultCallback = Callable[[str, str, TaskSnapshot], None]
ProgressCallback = Callable[[TaskSnapshot], None]


@dataclass
class _Waiter:
    future: asyncio.Future
    on_progress: ProgressCallback | None = None


class BackgroundTaskManager:
    """
    Creates, tracks and cancels background sub-agents.

    agent_factory receives the working directory captured at task
    creation and must return a new, fully independent Agent.
    """

    def __init__(
        self,
        agent_factory: AgentFactory,
        config: BackgroundConfig | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.agent_factory = agent_factory
        self.config = config or BackgroundConfig()
        self.log = log or logger
        self._tasks: dict[str, BackgroundTask] = {}
        self._waiters: dict[str, list[_Waiter]] = {}
        self._update_callbacks: list[TaskUpdateCallback] = []
        self._result_callbacks: list[TaskResultCallback] = []
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}
        self._next_task_id = 1

    # -- configuration ---------------------------------------------------------

    @property
    def max_concurrent_tasks(self) -> int:
        return self.config.max_concurrent_tasks

    @max_concurrent_tasks.setter
    def max_concurrent_tasks(self, value: int) -> None:
        self.config.max_concurrent_tasks = value

    # -- queries ---------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskSnapshot | None:
        task = self._tasks.get(task_id)
        return task.snapshot() if task else None

    def get_all_tasks(self) -> list[TaskSnapshot]:
        return [task.snapshot() for task in self._tasks.values()]

    def get_active_tasks(self) -> list[TaskSnapshot]:
        return [task.snapshot() for task in self._tasks.values() if not task.is_terminal]

    def can_start_task(self) -> bool:
        return len(self.get_active_tasks()) < self.max_concurrent_tasks

    # -- subscriptions -----------------------------------------------------------

    def on_task_update(self, callback: TaskUpdateCallback) -> Callable[[], None]:
        """Subscribe to every task state change. Returns an unsubscribe function."""
        self._update_callbacks.append(callback)
        return lambda: self._unsubscribe(self._update_callbacks, callback)

    def on_task_result(self, callback: TaskResultCallback) -> Callable[[], None]:
        """Subscribe to successful completions. Returns an unsubscribe function."""
        self._result_callbacks.append(callback)
        return lambda: self._unsubscribe(self._result_callbacks, callback)

    @staticmethod
    def _unsubscribe(callbacks: list, callback: Callable) -> None:
        if callback in callbacks:
            callbacks.remove(callback)

    def _notify(self, task: BackgroundTask) -> None:
        snapshot = task.snapshot()
        for callback in list(self._update_callbacks):
            try:
                callback(snapshot)
            except Exception:
                self.log.exception(f"Task update callback failed for {task.id}")
        for waiter in self._waiters.get(task.id, []):
            if waiter.on_progress is not None:
                try:
                    waiter.on_progress(snapshot)
                except Exception:
                    self.log.exception(f"Progress callback failed for {task.id}")

    # -- lifecycle ---------------------------------------------------------------

    def create_task(self, name: str, description: str, instructions: str) -> str:
        """
        Start a background task and return its id immediately.

        Must be called from a running event loop.

        Raises:
            TaskLimitError: The ceiling is reached; no task record is created
        """
        active = [task for task in self._tasks.values() if not task.is_terminal]
        if len(active) >= self.max_concurrent_tasks:
            running = ", ".join(f"{t.name} ({t.id})" for t in active) or "none"
            raise TaskLimitError(
                f"Cannot start new task. Maximum concurrent tasks "
                f"({self.max_concurrent_tasks}) reached. Active tasks: {running}. "
                f"Wait for a task to complete or use wait_for_task."
            )

        task_id = f"bg-{self._next_task_id}"
        working_dir = os.getcwd()
        task = BackgroundTask(
            id=task_id,
            name=name,
            description=description,
            instructions=instructions,
            agent=self.agent_factory(working_dir),
            working_dir=working_dir,
        )
        self._next_task_id += 1
        self._tasks[task_id] = task
        self.log.info(f"Created background task {task_id}: {name}")
        self._notify(task)

        task.runner = asyncio.get_running_loop().create_task(
            self._run_task(task), name=f"background-{task_id}"
        )
        return task_id

    async def _run_task(self, task: BackgroundTask) -> None:
        if task.status != TaskStatus.PENDING:
            return

        task.status = TaskStatus.RUNNING
        task.activity = "Starting"
        task.start_time = datetime.now(UTC)
        self._notify(task)

        answer_parts: list[str] = []

        def on_chunk(chunk: AgentChunk) -> None:
            if chunk.kind == ChunkKind.ASSISTANT:
                answer_parts.append(chunk.content)
            elif chunk.kind == ChunkKind.THINKING and task.activity != "Thinking":
                task.activity = "Thinking"
                self._notify(task)

        def on_tool_call(tool_name: str, arguments: dict) -> None:
            task.activity = activity_for_tool(tool_name)
            self._notify(task)

        try:
            await task.agent.process_message(
                task.instructions,
                AgentCallbacks(on_chunk=on_chunk, on_tool_call=on_tool_call),
            )
        except AgentCancelledError:
            return
        except Exception as e:
            if task.is_terminal:
                return
            self.log.error(f"Background task {task.id} failed: {e}")
            self._finish(task, TaskStatus.FAILED, error=str(e) or type(e).__name__)
            return

        if task.is_terminal:
            # Cancelled after the final model call had already returned.
            return

        final_result = "".join(answer_parts)
        self._finish(task, TaskStatus.COMPLETED, result=final_result or "Task completed")
        if final_result:
            snapshot = task.snapshot()
            for callback in list(self._result_callbacks):
                try:
                    callback(task.id, final_result, snapshot)
                except Exception:
                    self.log.exception(f"Task result callback failed for {task.id}")

    def _finish(
        self,
        task: BackgroundTask,
        status: TaskStatus,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        task.status = status
        task.result = result
        task.error = error
        task.activity = status.value.capitalize()
        task.end_time = datetime.now(UTC)
        self.log.info(f"Background task {task.id} {status.value}")
        self._notify(task)
        self._settle_waiters(task)
        self._schedule_cleanup(task.id)

    def _settle_waiters(self, task: BackgroundTask) -> None:
        for waiter in self._waiters.pop(task.id, []):
            if waiter.future.done():
                continue
            if task.status == TaskStatus.COMPLETED:
                waiter.future.set_result(task.result)
            else:
                waiter.future.set_exception(_terminal_error(task))

    def _schedule_cleanup(self, task_id: str) -> None:
        loop = asyncio.get_running_loop()
        previous = self._cleanup_handles.pop(task_id, None)
        if previous is not None:
            previous.cancel()
        self._cleanup_handles[task_id] = loop.call_later(
            self.config.cleanup_delay, self._cleanup, task_id
        )

    def _cleanup(self, task_id: str) -> None:
        self._cleanup_handles.pop(task_id, None)
        task = self._tasks.get(task_id)
        if task is None or not task.is_terminal:
            return
        del self._tasks[task_id]
        self._waiters.pop(task_id, None)
        self.log.debug(f"Removed finished background task {task_id}")
        self._notify(task)

    def cancel_task(self, task_id: str) -> None:
        """
        Cancel a pending or running task.

        The sub-agent is aborted cooperatively; a tool it is running may
        still finish, but its result is discarded.

        Raises:
            TaskNotFoundError: No such task
            TaskStateError: The task already finished
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.is_terminal:
            raise TaskStateError(f"Task {task_id} is already {task.status.value}")

        task.agent.abort()
        self._finish(task, TaskStatus.CANCELLED, error="Task was cancelled")

    async def wait_for_task(
        self,
        task_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """
        Wait for a task to finish and return its result.

        A task that has already finished settles immediately from its
        stored state.

        Raises:
            TaskNotFoundError: No such task
            TaskCancelledError: The task was cancelled
            BackgroundTaskError: The task failed
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.status == TaskStatus.COMPLETED:
            return task.result or "Task completed"
        if task.is_terminal:
            raise _terminal_error(task)

        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(task_id, []).append(_Waiter(future, on_progress))
        return await future

    def clear_completed_tasks(self) -> None:
        """Drop every finished task now instead of waiting for cleanup."""
        for task_id in [tid for tid, task in self._tasks.items() if task.is_terminal]:
            handle = self._cleanup_handles.pop(task_id, None)
            if handle is not None:
                handle.cancel()
            del self._tasks[task_id]
            self._waiters.pop(task_id, None)

    async def shutdown(self) -> None:
        """Cancel every active task and wait for their runners to unwind."""
        runners = []
        for task in list(self._tasks.values()):
            if not task.is_terminal:
                self.cancel_task(task.id)
            if task.runner is not None:
                runners.append(task.runner)
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()

    # -- reporting ---------------------------------------------------------------

    def get_tasks_summary(self) -> str:
        """Compact status report for the main agent's ephemeral context."""
        tasks = self.get_all_tasks()
        if not tasks:
            return "No background tasks running."

        counts = {status: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status] += 1
        active = counts[TaskStatus.PENDING] + counts[TaskStatus.RUNNING]

        lines = [
            f"Background Tasks ({len(tasks)} total, {active} active, "
            f"{counts[TaskStatus.COMPLETED]} completed, {counts[TaskStatus.FAILED]} failed, "
            f"{counts[TaskStatus.CANCELLED]} cancelled):"
        ]
        for task in tasks:
            duration = f"{task.duration:.1f}s" if task.duration is not None else "-"
            line = (
                f"  {_STATUS_ICONS[task.status]} {task.id} [{task.status.value}] "
                f"{task.name} ({task.description}) - Duration: {duration}"
            )
            if task.status == TaskStatus.RUNNING:
                line += f" - {task.activity}"
            lines.append(line)
            if task.status == TaskStatus.COMPLETED and task.result:
                preview = task.result[:RESULT_PREVIEW_CHARS]
                if len(task.result) > RESULT_PREVIEW_CHARS:
                    preview += "..."
                lines.append(f"     Result: {preview}")
            if task.status == TaskStatus.FAILED and task.error:
                lines.append(f"     Error: {task.error}")

        lines.append("")
        lines.append(
            f"Available capacity: {self.max_concurrent_tasks - active}/{self.max_concurrent_tasks} tasks"
        )
        return "\n".join(lines)


def attach_to_agent(manager: BackgroundTaskManager, agent: Agent) -> Callable[[], None]:
    """
    Feed background progress into an agent's ephemeral context.

    Completed results go in under bg_result_<id> and the status summary
    under background_tasks, so the agent sees them on its next model call
    without polling. Returns a function that detaches both subscriptions.
    """
    def on_result(task_id: str, result: str, snapshot: TaskSnapshot) -> None:
        agent.handle_background_task_result(task_id, result)

    def on_update(snapshot: TaskSnapshot) -> None:
        agent.update_background_tasks_context(manager.get_tasks_summary())

    unsubscribe_result = manager.on_task_result(on_result)
    unsubscribe_update = manager.on_task_update(on_update)

    def detach() -> None:
        unsubscribe_result()
        unsubscribe_update()

    return detach


def _terminal_error(task: BackgroundTask) -> "BackgroundTaskError":
    if task.status == TaskStatus.CANCELLED:
        return TaskCancelledError(f"Task {task.id} was cancelled")
    return BackgroundTaskError(task.error or "Task failed")


class BackgroundTaskError(Exception):
    """Base error for background task operations; also raised for failed tasks."""
    pass


class TaskLimitError(BackgroundTaskError):
    """The concurrency ceiling is reached."""
    pass


class TaskNotFoundError(BackgroundTaskError):
    """No task with the given id (it may have been cleaned up)."""
    pass


class TaskStateError(BackgroundTaskError):
    """The operation is not valid in the task's current state."""
    pass


class TaskCancelledError(BackgroundTaskError):
    """The task was cancelled before it finished."""
    pass
