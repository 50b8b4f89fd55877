"""Exception types shared across jido.

Process-level failures are normalized into ``ProcessExecutionError`` or
``AgentProviderError`` at the adapter boundary; policy breaches are usually
returned as verdict values and only raised as ``SafetyViolationError`` by
callers that want to abort.
"""

from __future__ import annotations

from typing import Iterable


class JidoError(Exception):
    """Base class for all jido errors."""

    pass


class ValidationError(JidoError):
    """Raised when a caller supplies malformed input."""

    pass


class ConfigError(JidoError):
    """Raised when configuration values or files are invalid."""

    pass


class WorkspaceError(JidoError):
    """Raised when the working directory is not a usable git repository."""

    pass


class SafetyViolationError(JidoError):
    """Raised when a change set breaks the safety policy."""

    def __init__(self, message: str, violation_type: str):
        super().__init__(message)
        self.violation_type = violation_type


class FileValidationError(JidoError):
    """Raised when a single file cannot be inspected."""

    pass


class ProcessExecutionError(JidoError):
    """Raised when the agent process cannot start or exits non-zero."""

    def __init__(
        self,
        command: str,
        exit_code: int,
        stderr: str,
        message: str | None = None,
        files_modified: Iterable[str] = (),
    ):
        super().__init__(message or f"Command failed: {command} (exit {exit_code})")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        # Edits the agent made before it failed; they still need gating.
        self.files_modified = frozenset(files_modified)


class AgentProviderError(JidoError):
    """Raised when agent output cannot be interpreted as a result."""

    def __init__(self, provider: str, message: str, files_modified: Iterable[str] = ()):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.files_modified = frozenset(files_modified)
