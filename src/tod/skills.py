"""
Skills - reusable instruction sets stored as markdown.

A skill lives in <skills dir>/<name>/SKILL.md. Skills are looked up in
the project directory first and the global directory second, so a
project can override a global skill of the same name.

SKILL.md may start with a YAML frontmatter block:

    ---
    name: deploy
    description: Deploy the app safely
    user-invocable: true
    disable-model-invocation: false
    ---
    Deploy $1 to $2

Without a description in the frontmatter, the first non-heading line of
the body is used.
"""

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tod.config import SkillsConfig

logger = logging.getLogger(__name__)

SKILL_FILE = "SKILL.md"
DESCRIPTION_LIMIT = 100
_FRONTMATTER_RE = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
_POSITIONAL_RE = re.compile(r"\$([1-9])")


@dataclass
class Skill:
    """A loaded skill."""
    name: str
    description: str
    content: str
    body: str
    path: Path
    is_global: bool
    frontmatter: dict[str, Any] = field(default_factory=dict)

    @property
    def user_invocable(self) -> bool:
        return self.frontmatter.get("user-invocable", True) is not False

    @property
    def model_invocable(self) -> bool:
        return self.frontmatter.get("disable-model-invocation", False) is not True


def split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split SKILL.md text into (frontmatter mapping, body)."""
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return {}, content
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Ignoring invalid skill frontmatter: {e}")
        return {}, content[match.end():]
    if not isinstance(data, dict):
        return {}, content[match.end():]
    return data, content[match.end():]


def _first_description_line(body: str) -> str:
    for line in body.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            return line[:DESCRIPTION_LIMIT]
    return "No description"


def _is_valid_name(name: str) -> bool:
    return bool(name) and "/" not in name and "\\" not in name and name not in (".", "..")


class SkillsManager:
    """Looks up, lists, creates and deletes skills on disk."""

    def __init__(self, config: SkillsConfig | None = None) -> None:
        self.config = config or SkillsConfig()

    @property
    def global_dir(self) -> Path:
        return self.config.global_dir

    @property
    def project_dir(self) -> Path:
        return self.config.project_dir

    def _skill_path(self, name: str, is_global: bool) -> Path:
        base = self.global_dir if is_global else self.project_dir
        return base / name / SKILL_FILE

    def _parse(self, content: str, path: Path, is_global: bool) -> Skill:
        frontmatter, body = split_frontmatter(content)
        description = frontmatter.get("description")
        if not isinstance(description, str) or not description.strip():
            description = _first_description_line(body)
        return Skill(
            name=path.parent.name,
            description=description.strip(),
            content=content,
            body=body.strip(),
            path=path,
            is_global=is_global,
            frontmatter=frontmatter,
        )

    def load_skill(self, name: str) -> Skill | None:
        """Load a skill by name, project first, then global."""
        if not _is_valid_name(name):
            return None
        for is_global in (False, True):
            path = self._skill_path(name, is_global)
            if not path.is_file():
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except OSError as e:
                logger.error(f"Failed to load skill {name}: {e}")
                continue
            return self._parse(content, path, is_global)
        return None

    def list_skills(self) -> list[Skill]:
        """Every skill, sorted by name, project copies shadowing global ones."""
        names: set[str] = set()
        for base in (self.project_dir, self.global_dir):
            if base.is_dir():
                names.update(
                    entry.name for entry in base.iterdir()
                    if (entry / SKILL_FILE).is_file()
                )
        skills = []
        for name in sorted(names):
            skill = self.load_skill(name)
            if skill is not None:
                skills.append(skill)
        return skills

    def list_invocable_skills(self) -> list[Skill]:
        """Skills a user may invoke as /<name>."""
        return [skill for skill in self.list_skills() if skill.user_invocable]

    def render_instructions(self, skill: Skill, arguments: str = "") -> str:
        """
        Substitute invocation arguments into the skill body.

        $ARGUMENTS becomes the whole argument string; $1..$9 become the
        whitespace-separated positional arguments (empty when missing).
        """
        positional = arguments.split()

        def replace(match: re.Match[str]) -> str:
            index = int(match.group(1)) - 1
            return positional[index] if index < len(positional) else ""

        text = skill.body.replace("$ARGUMENTS", arguments.strip())
        return _POSITIONAL_RE.sub(replace, text)

    def create_skill(self, name: str, content: str, is_global: bool = False) -> Path:
        """Write a skill to disk and return its path."""
        if not _is_valid_name(name):
            raise ValueError(f"Invalid skill name: {name!r}")
        path = self._skill_path(name, is_global)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info(f"Created skill {name} at {path}")
        return path

    def delete_skill(self, name: str) -> bool:
        """Remove a skill directory. Returns False if the skill does not exist."""
        skill = self.load_skill(name)
        if skill is None:
            return False
        shutil.rmtree(skill.path.parent)
        logger.info(f"Deleted skill {name}")
        return True

    def describe(self) -> str:
        """Listing for the list_skills tool."""
        skills = [s for s in self.list_skills() if s.model_invocable]
        if not skills:
            return (
                "No skills available. Skills are stored in ~/.tod/skills/ (global) "
                "or .tod/skills/ (project)."
            )
        lines = []
        for skill in skills:
            location = "(global)" if skill.is_global else "(project)"
            lines.append(f"- {skill.name}: {skill.description} {location}")
        return "\n".join(lines)
