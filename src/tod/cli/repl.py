"""
Repl - line-oriented terminal driver for the agent.

Reads a line, runs it as a turn and prints the output as it arrives.
Lines starting with / are commands:

    /clear              Clear the conversation
    /compact            Summarize the conversation to free context
    /tasks              Show background task status
    /skills             List skills that can be activated
    /skill <name> [args]  Activate a skill for the following turns
    /skill off          Deactivate the current skill
    /help               Show this help
    /exit               Quit

Ctrl-C during a turn aborts it; at the prompt it quits.

Output is plain text on purpose: no TUI, no colors.
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import TextIO

from tod.background import BackgroundTaskManager, TaskSnapshot, attach_to_agent
from tod.config import AgentConfig
from tod.llm import LLMClient, LLMError
from tod.local_tools import create_local_tools
from tod.loop import Agent, AgentBusyError, AgentCallbacks, AgentCancelledError
from tod.skills import SkillsManager
from tod.types import AgentChunk, ChunkKind

logger = logging.getLogger(__name__)

PROMPT = "> "
PREVIEW_CHARS = 200

HELP_TEXT = """Commands:
  /clear                Clear the conversation
  /compact              Summarize the conversation to free context
  /tasks                Show background task status
  /skills               List skills that can be activated
  /skill <name> [args]  Activate a skill for the following turns
  /skill off            Deactivate the current skill
  /help                 Show this help
  /exit                 Quit

Ctrl-C aborts the current turn."""


@dataclass
class Runtime:
    """Everything one interactive session owns."""
    agent: Agent
    llm: LLMClient
    skills: SkillsManager
    background: BackgroundTaskManager | None = None

    async def aclose(self) -> None:
        if self.background is not None:
            await self.background.shutdown()
        await self.llm.aclose()


def build_runtime(config: AgentConfig, cwd: str) -> Runtime:
    """
    Wire up the main agent, its tools and (optionally) background tasks.

    Sub-agents share the model client and skills but get their own
    message store and a registry without the background task tools.
    """
    llm = LLMClient(config.llm)
    skills = SkillsManager(config.skills)

    background = None
    if config.background.enabled:
        def make_worker(working_dir: str) -> Agent:
            return Agent.create(
                config,
                create_local_tools(working_dir, skills),
                cwd=working_dir,
                llm=llm,
                worker=True,
            )

        background = BackgroundTaskManager(make_worker, config.background)

    agent = Agent.create(
        config,
        create_local_tools(cwd, skills, background),
        cwd=cwd,
        llm=llm,
    )
    if background is not None:
        attach_to_agent(background, agent)

    return Runtime(agent=agent, llm=llm, skills=skills, background=background)


class Repl:
    """Interactive loop around one Agent."""

    def __init__(
        self,
        agent: Agent,
        skills: SkillsManager,
        background: BackgroundTaskManager | None = None,
        out: TextIO | None = None,
    ) -> None:
        self.agent = agent
        self.skills = skills
        self.background = background
        self.out = out or sys.stdout
        self.running = True
        self.active_skill: str | None = None
        self._in_thinking = False
        self._detach_background = None
        if background is not None:
            self._detach_background = background.on_task_result(self.on_task_result)

    def _write(self, text: str = "", end: str = "\n") -> None:
        self.out.write(text + end)
        self.out.flush()

    # -- output ----------------------------------------------------------------

    def on_chunk(self, chunk: AgentChunk) -> None:
        if chunk.kind == ChunkKind.THINKING:
            if not self._in_thinking:
                self._write("(thinking) ", end="")
                self._in_thinking = True
            self._write(chunk.content, end="")
            return

        if self._in_thinking:
            self._write()
            self._in_thinking = False

        if chunk.kind == ChunkKind.ASSISTANT:
            self._write(chunk.content)
        elif chunk.kind == ChunkKind.TOOL:
            self._write(f"  [{chunk.tool_name}] {_preview(chunk.content)}")
        elif chunk.kind == ChunkKind.ERROR:
            self._write(chunk.content)

    def on_task_result(self, task_id: str, result: str, snapshot: TaskSnapshot) -> None:
        self._write(f'Background task "{snapshot.name}" ({task_id}) completed: {_preview(result)}')

    def close(self) -> None:
        if self._detach_background is not None:
            self._detach_background()
            self._detach_background = None

    # -- commands --------------------------------------------------------------

    async def handle_command(self, line: str) -> str:
        """Run a slash command and return the text to show."""
        command, _, rest = line.strip().partition(" ")
        rest = rest.strip()

        if command in ("/exit", "/quit"):
            self.running = False
            return "Bye."
        if command == "/help":
            return HELP_TEXT
        if command == "/clear":
            self.agent.reset()
            self.active_skill = None
            return "Conversation cleared."
        if command == "/compact":
            try:
                result = await self.agent.compact_context()
            except (LLMError, AgentBusyError) as e:
                logger.warning(f"Compaction failed: {e}")
                return f"Compaction failed: {e}"
            if result.old_tokens == 0:
                return result.summary
            return (
                f"Context compacted: {result.old_tokens} -> {result.new_tokens} tokens "
                f"(saved {result.saved})"
            )
        if command == "/tasks":
            if self.background is None:
                return "Background tasks are disabled. Set TOD_BACKGROUND_TASKS=1 to enable them."
            return self.background.get_tasks_summary()
        if command == "/skills":
            return self._list_skills()
        if command == "/skill":
            return self._activate_skill(rest)
        return f"Unknown command: {command}. Type /help for commands."

    def _list_skills(self) -> str:
        skills = self.skills.list_invocable_skills()
        if not skills:
            return "No skills available. Put skills in ~/.tod/skills/<name>/SKILL.md or .tod/skills/<name>/SKILL.md."
        lines = ["Skills:"]
        for skill in skills:
            marker = "*" if skill.name == self.active_skill else " "
            lines.append(f" {marker} {skill.name}: {skill.description}")
        return "\n".join(lines)

    def _activate_skill(self, rest: str) -> str:
        name, _, arguments = rest.partition(" ")
        if not name:
            return "Usage: /skill <name> [args] or /skill off"
        if name == "off":
            self.agent.set_active_skill(None)
            previous, self.active_skill = self.active_skill, None
            return f"Skill {previous} deactivated." if previous else "No skill is active."

        skill = self.skills.load_skill(name)
        if skill is None or not skill.user_invocable:
            return f"Skill not found: {name}"
        self.agent.set_active_skill(self.skills.render_instructions(skill, arguments))
        self.active_skill = skill.name
        return f"Skill {skill.name} activated."

    # -- turns -----------------------------------------------------------------

    async def run_turn(self, text: str) -> None:
        if self.agent.context_manager.should_compact(self.agent.messages):
            self._write("Context is large, compacting...")
            self._write(await self.handle_command("/compact"))

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.agent.abort)
            restore_sigint = True
        except (NotImplementedError, RuntimeError):
            restore_sigint = False

        try:
            await self.agent.process_message(text, AgentCallbacks(on_chunk=self.on_chunk))
        except AgentCancelledError:
            self._write("\n[cancelled]")
        except Exception as e:
            # Already reported through the error chunk; keep the session alive.
            logger.debug(f"Turn ended with error: {e}")
        finally:
            if restore_sigint:
                loop.remove_signal_handler(signal.SIGINT)
            if self._in_thinking:
                self._write()
                self._in_thinking = False

    async def run(self) -> None:
        self._write("tod - type /help for commands, /exit to quit.")
        while self.running:
            try:
                line = await asyncio.to_thread(input, PROMPT)
            except EOFError:
                self._write()
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                self._write(await self.handle_command(line))
            else:
                await self.run_turn(line)


def _preview(text: str) -> str:
    preview = text.strip().replace("\n", " ")
    if len(preview) > PREVIEW_CHARS:
        preview = preview[:PREVIEW_CHARS] + "..."
    return preview


async def _run(config: AgentConfig, cwd: str) -> None:
    runtime = build_runtime(config, cwd)
    try:
        repl = Repl(runtime.agent, runtime.skills, runtime.background)
        try:
            await repl.run()
        finally:
            repl.close()
    finally:
        await runtime.aclose()


def main():
    """CLI entry point for the interactive agent."""
    import argparse

    parser = argparse.ArgumentParser(description="tod - terminal coding agent")
    parser.add_argument("--model", help="Model name (overrides TOD_MODEL)")
    parser.add_argument("--base-url", help="API base URL (overrides TOD_BASE_URL)")
    parser.add_argument("--cwd", default=None, help="Working directory (default: current)")
    parser.add_argument("--background", action="store_true",
                        help="Enable background tasks (same as TOD_BACKGROUND_TASKS=1)")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")
    parser.add_argument("--log-file", help="Write logs to this file instead of stderr")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        filename=args.log_file,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cwd = os.path.abspath(args.cwd) if args.cwd else os.getcwd()
    if args.cwd:
        os.chdir(cwd)

    config = AgentConfig.from_env()
    if args.model:
        config.llm.model = args.model
    if args.base_url:
        config.llm.base_url = args.base_url
    if args.background:
        config.background.enabled = True

    try:
        config.llm.validate()
    except ValueError as e:
        parser.error(str(e))
    if not config.llm.api_key:
        print("Warning: TOD_API_KEY is not set", file=sys.stderr)

    try:
        asyncio.run(_run(config, cwd))
    except KeyboardInterrupt:
        print()


if __name__ == "__main__":
    main()
