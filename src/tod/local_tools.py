"""
Built-in tools that act on the local machine.

Relative paths are resolved against the working directory the registry
was built for, never the process cwd at call time, so a background
sub-agent keeps working where it was started.

The background task tools are only registered when a manager is given.
Sub-agents are built without one and therefore cannot start tasks of
their own.
"""

import asyncio
import logging
from pathlib import Path

from tod.background import BackgroundTaskManager
from tod.skills import SkillsManager
from tod.tools import ToolRegistry

logger = logging.getLogger(__name__)

SHELL_TIMEOUT = 120.0


class LocalTools:
    """Handlers for the built-in tools, bound to one working directory."""

    def __init__(
        self,
        working_dir: str | Path,
        skills: SkillsManager | None = None,
        background: BackgroundTaskManager | None = None,
        shell_timeout: float = SHELL_TIMEOUT,
    ) -> None:
        self.working_dir = Path(working_dir)
        self.skills = skills
        self.background = background
        self.shell_timeout = shell_timeout

    def _resolve(self, path: str | None) -> Path:
        if not path:
            raise ValueError("Path is required")
        resolved = Path(path).expanduser()
        if not resolved.is_absolute():
            resolved = self.working_dir / resolved
        return resolved

    # -- filesystem ------------------------------------------------------------

    def read_file(self, path: str | None = None) -> str:
        """Read a file as UTF-8 text."""
        target = self._resolve(path)
        if not target.exists():
            raise FileNotFoundError(f"File not found: {path}")
        return target.read_text(encoding="utf-8")

    def write_file(self, path: str | None = None, content: str | None = None) -> str:
        """Write content to a file, creating parent directories."""
        if not path or content is None:
            raise ValueError("Path and content are required")
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return f"File written successfully: {path}"

    def list_directory(self, path: str | None = None) -> str:
        target = self._resolve(path)
        entries = sorted(target.iterdir(), key=lambda entry: entry.name)
        return "\n".join(
            f"{'[DIR]' if entry.is_dir() else '[FILE]'} {entry.name}" for entry in entries
        )

    def create_directory(self, path: str | None = None) -> str:
        target = self._resolve(path)
        if target.exists():
            return f"Directory already exists: {path}"
        target.mkdir(parents=True)
        return f"Directory created: {path}"

    # -- shell -----------------------------------------------------------------

    async def execute_shell(self, command: str | None = None) -> str:
        """
        Run a shell command in the working directory.

        Returns stdout, or stderr when stdout is empty. A non-zero exit
        status or a timeout is an error.
        """
        if not command:
            raise ValueError("Command is required")

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=self.working_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.shell_timeout
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            raise TimeoutError(f"Command timed out after {self.shell_timeout:g} seconds")

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if process.returncode != 0:
            logger.info(f"Shell command exited with {process.returncode}: {command}")
            raise RuntimeError(
                f"Command failed with exit code {process.returncode}: {(err or out).strip()}"
            )
        return out or err or "Command executed successfully"

    # -- skills ----------------------------------------------------------------

    def list_skills(self) -> str:
        return self._require_skills().describe()

    def read_skill(self, name: str | None = None) -> str:
        if not name:
            raise ValueError("Skill name is required")
        skill = self._require_skills().load_skill(name)
        if skill is None or not skill.model_invocable:
            raise LookupError(f'Skill "{name}" not found. Use list_skills to see available skills.')
        return skill.content

    def _require_skills(self) -> SkillsManager:
        if self.skills is None:
            raise RuntimeError("Skills are not configured")
        return self.skills

    # -- background tasks --------------------------------------------------------

    def get_background_tasks(self) -> str:
        return self._require_background().get_tasks_summary()

    async def background_task(
        self,
        name: str | None = None,
        description: str | None = None,
        task: str | None = None,
        wait: bool = False,
    ) -> str:
        """Start a sub-agent; with wait=True, return its result instead of its id."""
        manager = self._require_background()
        if not name or not description or not task:
            raise ValueError("Name, description and task are required")

        task_id = manager.create_task(name, description, task)
        if wait is True:
            logger.info(f"Waiting for background task completion: {task_id}")
            return await manager.wait_for_task(task_id)
        return f"Started: {task_id}. Result will appear when done. Continue with your response to the user."

    async def wait_for_task(self, task_id: str | None = None) -> str:
        manager = self._require_background()
        if not task_id:
            raise ValueError("Task ID is required")
        return await manager.wait_for_task(task_id)

    def _require_background(self) -> BackgroundTaskManager:
        if self.background is None:
            raise RuntimeError("Background task manager is not initialized")
        return self.background


def _path_schema(description: str) -> dict:
    return {
        "type": "object",
        "properties": {"path": {"type": "string", "description": description}},
        "required": ["path"],
    }


_NO_PARAMS = {"type": "object", "properties": {}}


def create_local_tools(
    working_dir: str | Path,
    skills: SkillsManager | None = None,
    background: BackgroundTaskManager | None = None,
) -> ToolRegistry:
    """
    Build a registry with the built-in tools.

    Skill tools need a SkillsManager; the background task tools are only
    added when a BackgroundTaskManager is given.
    """
    local = LocalTools(working_dir, skills=skills, background=background)
    registry = ToolRegistry()

    registry.register_function(
        name="read_file",
        description="Read a file from the filesystem",
        parameters=_path_schema("Path to the file to read"),
        handler=local.read_file,
    )
    registry.register_function(
        name="write_file",
        description="Write content to a file",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to write"},
                "content": {"type": "string", "description": "Content to write to the file"},
            },
            "required": ["path", "content"],
        },
        handler=local.write_file,
    )
    registry.register_function(
        name="execute_shell",
        description="Execute a shell command and return the output",
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command to execute"},
            },
            "required": ["command"],
        },
        handler=local.execute_shell,
    )
    registry.register_function(
        name="list_directory",
        description="List files and directories in a given path",
        parameters=_path_schema("Path to the directory to list"),
        handler=local.list_directory,
    )
    registry.register_function(
        name="create_directory",
        description="Create a new directory",
        parameters=_path_schema("Path to the directory to create"),
        handler=local.create_directory,
    )

    if skills is not None:
        registry.register_function(
            name="list_skills",
            description=(
                "List the available skills. Use when the user wants to create a "
                "new skill or asks which skills exist."
            ),
            parameters=_NO_PARAMS,
            handler=local.list_skills,
        )
        registry.register_function(
            name="read_skill",
            description="Read a skill's instructions. Use when a task calls for a specific skill.",
            parameters={
                "type": "object",
                "properties": {
                    "name": {
                        "type": "string",
                        "description": "Skill name (for example: skill-creator, web-search)",
                    },
                },
                "required": ["name"],
            },
            handler=local.read_skill,
        )

    if background is not None:
        max_tasks = background.max_concurrent_tasks
        registry.register_function(
            name="get_background_tasks",
            description=(
                "Show background task status: which are running, which finished "
                "and what they are doing. Check before starting a new task."
            ),
            parameters=_NO_PARAMS,
            handler=local.get_background_tasks,
        )
        registry.register_function(
            name="background_task",
            description=(
                "Run a task in a parallel background agent. Use for long operations: "
                "searching another directory, code review, building and analysing "
                f"errors. At most {max_tasks} tasks run at once. If the limit is "
                "reached, wait or use wait=true. With wait=true the result is "
                "returned as soon as the task finishes."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "name": {
                        "type": "string",
                        "description": 'Short task name (for example: "Code Review", "Build Analysis")',
                    },
                    "description": {"type": "string", "description": "Task description"},
                    "task": {
                        "type": "string",
                        "description": "Detailed instructions for the background agent",
                    },
                    "wait": {
                        "type": "boolean",
                        "description": "Wait for the task to finish before continuing. Defaults to false.",
                    },
                },
                "required": ["name", "description", "task"],
            },
            handler=local.background_task,
        )
        registry.register_function(
            name="wait_for_task",
            description=(
                "Wait for a background task to finish and return its result. "
                "Use the task id returned by background_task (for example: bg-1)."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "task_id": {"type": "string", "description": "Background task id (for example: bg-1)"},
                },
                "required": ["task_id"],
            },
            handler=local.wait_for_task,
        )

    logger.debug(f"Created local tools for {working_dir}: {registry.tool_names}")
    return registry
