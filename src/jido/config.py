"""Configuration management for jido."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

PROJECT_CONFIG_FILENAME = ".jido.yaml"

DEFAULT_MAX_FILE_SIZE = 1024 * 1024  # 1MB
DEFAULT_MAX_FILES_MODIFIED = 50

EXTENSION_WILDCARDS = frozenset({"*", ".*"})

DEFAULT_ALLOWED_EXTENSIONS = frozenset({
    ".ts", ".js", ".tsx", ".jsx", ".json", ".md", ".yaml", ".yml",
    ".css", ".scss", ".html", ".py",
})

ENV_FILES = frozenset({".env", ".env.local", ".env.production", ".env.development"})

# Enforced by the validator no matter what the project config says.
BASELINE_FORBIDDEN_PATHS = frozenset({
    "package-lock.json",
    "bun.lockb",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "uv.lock",
    "Pipfile.lock",
    ".git",
    "node_modules",
    ".venv",
    ".ji",
})

BASELINE_FORBIDDEN_PATTERNS = frozenset({
    "**/*.key",
    "**/*.pem",
    "**/*.p12",
    "**/*.pfx",
    "**/id_rsa*",
    "**/id_dsa*",
    "**/id_ecdsa*",
    "**/id_ed25519*",
})

DEFAULT_FORBIDDEN_PATHS = BASELINE_FORBIDDEN_PATHS | ENV_FILES
DEFAULT_FORBIDDEN_PATTERNS = BASELINE_FORBIDDEN_PATTERNS | {
    "**/secrets/**",
    "**/credentials/**",
}

DEFAULT_ALLOWED_TOOLS = ("Read", "Write", "Edit", "Bash", "Grep", "Glob", "Task")

_TRUTHY = ("true", "1", "yes")


def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (snake_case or camelCase)."""
    for key in keys:
        if key in data:
            return data[key]
    return default


def _flag(value: Any) -> bool:
    """Read a boolean setting; quoted YAML strings such as "false" count as false."""
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _string_set(value: Any, name: str) -> frozenset[str]:
    if isinstance(value, str) or not hasattr(value, "__iter__"):
        raise ConfigError(f"{name} must be a list of strings")
    return frozenset(str(item) for item in value)


@dataclass(frozen=True)
class SafetyConfig:
    """Safety policy applied to the files an agent run modified.

    Loaded once per run and never mutated afterwards.
    """

    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_files_modified: int = DEFAULT_MAX_FILES_MODIFIED
    allowed_extensions: frozenset[str] = DEFAULT_ALLOWED_EXTENSIONS
    forbidden_paths: frozenset[str] = DEFAULT_FORBIDDEN_PATHS
    forbidden_patterns: frozenset[str] = DEFAULT_FORBIDDEN_PATTERNS
    require_tests: bool = True
    allow_package_manifest_modification: bool = False
    allow_env_file_modification: bool = False

    def __post_init__(self) -> None:
        if self.max_file_size <= 0:
            raise ConfigError(f"max_file_size must be positive, got {self.max_file_size}")
        if self.max_files_modified <= 0:
            raise ConfigError(
                f"max_files_modified must be positive, got {self.max_files_modified}"
            )

    @property
    def allows_any_extension(self) -> bool:
        return bool(self.allowed_extensions & EXTENSION_WILDCARDS)

    @property
    def effective_forbidden_paths(self) -> frozenset[str]:
        """Configured forbidden paths plus the ones that cannot be switched off."""
        paths = self.forbidden_paths | BASELINE_FORBIDDEN_PATHS
        if not self.allow_env_file_modification:
            paths |= ENV_FILES
        return paths

    @property
    def effective_forbidden_patterns(self) -> frozenset[str]:
        return self.forbidden_patterns | BASELINE_FORBIDDEN_PATTERNS

    @classmethod
    def from_dict(cls, data: dict) -> SafetyConfig:
        """Create SafetyConfig from dictionary.

        Accepts snake_case keys and the camelCase keys used by older
        ``.jiconfig`` files. Missing keys keep their defaults.
        """
        try:
            return cls(
                max_file_size=int(_pick(
                    data, "max_file_size", "maxFileSize", default=DEFAULT_MAX_FILE_SIZE
                )),
                max_files_modified=int(_pick(
                    data, "max_files_modified", "maxFilesModified",
                    default=DEFAULT_MAX_FILES_MODIFIED,
                )),
                allowed_extensions=_string_set(_pick(
                    data, "allowed_extensions", "allowedExtensions",
                    default=DEFAULT_ALLOWED_EXTENSIONS,
                ), "allowed_extensions"),
                forbidden_paths=_string_set(_pick(
                    data, "forbidden_paths", "forbiddenPaths", default=DEFAULT_FORBIDDEN_PATHS
                ), "forbidden_paths"),
                forbidden_patterns=_string_set(_pick(
                    data, "forbidden_patterns", "forbiddenPatterns",
                    default=DEFAULT_FORBIDDEN_PATTERNS,
                ), "forbidden_patterns"),
                require_tests=_flag(_pick(data, "require_tests", "requireTests", default=True)),
                allow_package_manifest_modification=_flag(_pick(
                    data,
                    "allow_package_manifest_modification",
                    "allowPackageManifestModification",
                    "allowPackageJsonModification",
                    default=False,
                )),
                allow_env_file_modification=_flag(_pick(
                    data, "allow_env_file_modification", "allowEnvFileModification", default=False
                )),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid safety configuration: {exc}") from exc


@dataclass(frozen=True)
class AgentSettings:
    """Settings for the external coding-agent process."""

    command: str = "claude"
    model: str = "sonnet"
    max_turns: int = 30
    permission_mode: str = "acceptEdits"
    allowed_tools: tuple[str, ...] = DEFAULT_ALLOWED_TOOLS
    timeout: Optional[int] = None  # seconds; None means no wall-clock limit

    @classmethod
    def from_dict(cls, data: dict) -> AgentSettings:
        """Create AgentSettings from dictionary."""
        timeout = data.get("timeout")
        try:
            return cls(
                command=data.get("command", "claude"),
                model=data.get("model", "sonnet"),
                max_turns=int(_pick(data, "max_turns", "maxTurns", default=30)),
                permission_mode=_pick(
                    data, "permission_mode", "permissionMode", default="acceptEdits"
                ),
                allowed_tools=tuple(_pick(
                    data, "allowed_tools", "allowedTools", default=DEFAULT_ALLOWED_TOOLS
                )),
                timeout=int(timeout) if timeout is not None else None,
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid agent configuration: {exc}") from exc


def load_project_config(repo_path: Path) -> tuple[AgentSettings, SafetyConfig]:
    """Load agent and safety settings from the project's ``.jido.yaml``.

    Args:
        repo_path: Repository root holding the config file.

    Returns:
        Tuple of (AgentSettings, SafetyConfig); defaults if the file is absent.

    Raises:
        ConfigError: If the file is not valid YAML or holds invalid values.
    """
    config_path = repo_path / PROJECT_CONFIG_FILENAME
    if not config_path.exists():
        return AgentSettings(), SafetyConfig()

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top level of {config_path}")

    return (
        AgentSettings.from_dict(data.get("agent") or {}),
        SafetyConfig.from_dict(data.get("safety") or {}),
    )


@dataclass
class Config:
    """Configuration settings for a jido run."""

    repo_path: Path = field(default_factory=Path.cwd)
    iterations: int = 2
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    mock_mode: bool = False
    agent: AgentSettings = field(default_factory=AgentSettings)
    safety: SafetyConfig = field(default_factory=SafetyConfig)

    @classmethod
    def from_env(cls, repo_path: Optional[Path] = None) -> Config:
        """Load configuration from environment variables and ``.jido.yaml``.

        Environment values override the agent section of the project file.

        Args:
            repo_path: Optional path to the repository. Defaults to CWD.

        Returns:
            Config instance populated from environment.
        """
        load_dotenv()

        repo = Path(repo_path) if repo_path else Path.cwd()
        agent, safety = load_project_config(repo)

        timeout_env = os.getenv("JIDO_AGENT_TIMEOUT")
        try:
            agent = AgentSettings(
                command=os.getenv("JIDO_AGENT_COMMAND", agent.command),
                model=os.getenv("JIDO_MODEL", agent.model),
                max_turns=int(os.getenv("JIDO_MAX_TURNS", str(agent.max_turns))),
                permission_mode=agent.permission_mode,
                allowed_tools=agent.allowed_tools,
                timeout=int(timeout_env) if timeout_env else agent.timeout,
            )
            iterations = int(os.getenv("JIDO_ITERATIONS", "2"))
        except ValueError as exc:
            raise ConfigError(f"Invalid JIDO_* environment value: {exc}") from exc

        return cls(
            repo_path=repo,
            iterations=iterations,
            log_level=os.getenv("JIDO_LOG_LEVEL", "INFO"),
            log_dir=repo / ".jido" / "logs",
            mock_mode=os.getenv("JIDO_MOCK_MODE", "").lower() in _TRUTHY,
            agent=agent,
            safety=safety,
        )

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if not self.repo_path.exists():
            errors.append(f"Repository path does not exist: {self.repo_path}")

        if self.iterations < 1:
            errors.append(f"Iterations must be at least 1, got {self.iterations}")

        if self.agent.max_turns < 1:
            errors.append(f"Agent max_turns must be at least 1, got {self.agent.max_turns}")

        if self.agent.timeout is not None and self.agent.timeout <= 0:
            errors.append(f"Agent timeout must be positive, got {self.agent.timeout}")

        return errors

    @property
    def project_config_file(self) -> Path:
        """Path to the project-local ``.jido.yaml`` file."""
        return self.repo_path / PROJECT_CONFIG_FILENAME
