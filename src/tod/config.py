"""
Configuration for the agent system.

All configuration is loaded from environment variables and passed
explicitly into each component. There is no process-wide config object:
whoever builds an Agent decides which config it sees.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class LLMConfig:
    """Configuration for the model streaming client."""
    base_url: str
    api_key: str
    model: str
    temperature: float = 1.0
    max_tokens: int = 16384
    request_timeout: float = 180.0
    summary_max_tokens: int = 1000
    summary_temperature: float = 0.3

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("TOD_BASE_URL", "https://integrate.api.nvidia.com/v1"),
            api_key=os.getenv("TOD_API_KEY", ""),
            model=os.getenv("TOD_MODEL", "z-ai/glm4.7"),
            temperature=float(os.getenv("TOD_TEMPERATURE", "1.0")),
            max_tokens=int(os.getenv("TOD_MAX_TOKENS", "16384")),
            request_timeout=float(os.getenv("TOD_REQUEST_TIMEOUT", "180")),
        )

    def validate(self) -> None:
        """Raise ValueError if the configuration cannot be used."""
        if not self.model:
            raise ValueError("Model is required")
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid base URL: {self.base_url!r}")
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"Temperature must be between 0 and 2, got {self.temperature}")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")


@dataclass
class ContextConfig:
    """
    Configuration for context size estimation.

    Tokens are approximated as chars / chars_per_token. The estimate only
    drives display and the compaction hint, so it does not need a tokenizer.
    """
    chars_per_token: float = 4.0
    compact_threshold_tokens: int = 100000
    max_background_result_chars: int = 5000

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            chars_per_token=float(os.getenv("TOD_CHARS_PER_TOKEN", "4.0")),
            compact_threshold_tokens=int(os.getenv("TOD_COMPACT_THRESHOLD", "100000")),
        )


@dataclass
class LoopConfig:
    """
    Configuration for the agent loop.

    max_iterations bounds the number of model round-trips in one turn so
    the model cannot ping-pong tool calls forever.
    """
    max_iterations: int = 25

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        return cls(
            max_iterations=int(os.getenv("TOD_MAX_ITERATIONS", "25")),
        )


@dataclass
class BackgroundConfig:
    """Configuration for background sub-agents."""
    enabled: bool = False
    max_concurrent_tasks: int = 2
    cleanup_delay: float = 10.0

    @classmethod
    def from_env(cls) -> "BackgroundConfig":
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("TOD_BACKGROUND_TASKS", False),
            max_concurrent_tasks=int(os.getenv("TOD_MAX_BACKGROUND_TASKS", "2")),
            cleanup_delay=float(os.getenv("TOD_BACKGROUND_CLEANUP_DELAY", "10")),
        )


@dataclass
class SkillsConfig:
    """Where skills are looked up. Project skills win over global ones."""
    global_dir: Path = field(default_factory=lambda: Path.home() / ".tod" / "skills")
    project_dir: Path = field(default_factory=lambda: Path.cwd() / ".tod" / "skills")

    @classmethod
    def from_env(cls) -> "SkillsConfig":
        """Load configuration from environment variables."""
        config = cls()
        if os.getenv("TOD_GLOBAL_SKILLS_DIR"):
            config.global_dir = Path(os.environ["TOD_GLOBAL_SKILLS_DIR"]).expanduser()
        if os.getenv("TOD_PROJECT_SKILLS_DIR"):
            config.project_dir = Path(os.environ["TOD_PROJECT_SKILLS_DIR"]).expanduser()
        return config


@dataclass
class AgentConfig:
    """Combined configuration for the entire agent system."""
    llm: LLMConfig
    context: ContextConfig = field(default_factory=ContextConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    background: BackgroundConfig = field(default_factory=BackgroundConfig)
    skills: SkillsConfig = field(default_factory=SkillsConfig)

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Load all configuration from environment variables."""
        return cls(
            llm=LLMConfig.from_env(),
            context=ContextConfig.from_env(),
            loop=LoopConfig.from_env(),
            background=BackgroundConfig.from_env(),
            skills=SkillsConfig.from_env(),
        )
