"""Coding-agent CLI integration for one iteration round.

The runner spawns the agent CLI once per prompt in non-interactive
``stream-json`` mode, follows the event stream as it arrives, and folds it
into an ``IterationResult``:

- file edits come from ``Write``/``Edit``/``MultiEdit``/``NotebookEdit`` tool
  calls;
- ``tests_run`` is set when a ``Bash`` call runs a known test runner;
- ``commit_hash`` is taken from the output of ``git commit`` calls;
- resolution status and review notes come from the JSON status block the
  agent prints at the end of its final message.

The process is owned by ``managed_process``: whatever way the call exits,
a live process gets SIGTERM, a short grace period, then SIGKILL.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol, Sequence, Union

from .config import DEFAULT_ALLOWED_TOOLS, AgentSettings
from .errors import AgentProviderError, ProcessExecutionError, ValidationError
from .models import IterationResult

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 3.0

PERMISSION_MODES = ("default", "acceptEdits", "bypassPermissions", "plan")

FILE_EDIT_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})

TEST_COMMAND_RE = re.compile(
    r"\b("
    r"pytest|py\.test|tox|nox|jest|vitest|mocha"
    r"|python3?\s+-m\s+(?:pytest|unittest)"
    r"|(?:npm|pnpm|yarn|bun)\s+(?:run\s+)?test"
    r"|go\s+test|cargo\s+test|make\s+test"
    r")\b"
)

# "[main 1a2b3c4] message" or "[feature/x (root-commit) 1a2b3c4] message"
COMMIT_OUTPUT_RE = re.compile(
    r"^\[[^\]\s]+(?: \([\w-]+\))? ([0-9a-f]{7,40})\]", re.MULTILINE
)


@dataclass(frozen=True)
class AgentOptions:
    """Per-call options for the agent process."""

    working_directory: Path
    max_turns: int = 30
    model: str = "sonnet"
    permission_mode: str = "acceptEdits"
    allowed_tools: tuple[str, ...] = DEFAULT_ALLOWED_TOOLS

    def validate(self) -> None:
        if self.max_turns < 1:
            raise ValidationError(f"max_turns must be positive, got {self.max_turns}")
        if self.permission_mode not in PERMISSION_MODES:
            raise ValidationError(
                f"Unknown permission mode {self.permission_mode!r}; "
                f"expected one of {', '.join(PERMISSION_MODES)}"
            )
        if not self.model:
            raise ValidationError("model must not be empty")


class AgentRunner(Protocol):
    """Anything that can run one agent round."""

    def execute(self, prompt: str, options: AgentOptions) -> IterationResult:
        ...


def extract_json_from_response(content: str) -> tuple[Optional[dict], str]:
    """Extract a JSON object from agent text using multiple strategies.

    Tries, in order: the whole text, the last ```json code block, and the
    last balanced-brace object in the text.

    Args:
        content: Raw text from the agent's final message.

    Returns:
        Tuple of (parsed_dict or None, error_message).
    """
    if not content or not content.strip():
        return None, "Empty response content"

    try:
        data = json.loads(content)
        if isinstance(data, dict):
            return data, ""
    except json.JSONDecodeError:
        pass

    blocks = re.findall(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", content)
    for block in reversed(blocks):
        try:
            return json.loads(block), ""
        except json.JSONDecodeError:
            continue

    # The status block comes last, so scan candidate objects from the end.
    for start in reversed([i for i, ch in enumerate(content) if ch == "{"]):
        end = _balanced_end(content, start)
        if end is None:
            continue
        try:
            data = json.loads(content[start:end + 1])
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data, ""

    return None, "No JSON object found in response"


def _balanced_end(content: str, start: int) -> Optional[int]:
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(content)):
        char = content[i]
        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


@dataclass
class StreamState:
    """Facts collected from the agent's event stream during one call."""

    working_directory: Path
    files_modified: set[str] = field(default_factory=set)
    tests_run: bool = False
    commit_hash: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    commit_tool_ids: set[str] = field(default_factory=set)
    result_event: Optional[dict[str, Any]] = None
    events_seen: int = 0

    def relative_path(self, path: str) -> str:
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                return candidate.resolve().relative_to(
                    self.working_directory.resolve()
                ).as_posix()
            except ValueError:
                return path
        return candidate.as_posix()

    def handle_event(self, event: dict[str, Any]) -> None:
        """Fold one stream-json event into the state."""
        self.events_seen += 1
        event_type = event.get("type")

        if event_type == "assistant":
            for block in _content_blocks(event):
                if block.get("type") == "text":
                    logger.debug(block.get("text", ""))
                elif block.get("type") == "tool_use":
                    self._handle_tool_use(block)
        elif event_type == "user":
            for block in _content_blocks(event):
                if block.get("type") == "tool_result":
                    self._handle_tool_result(block)
        elif event_type == "result":
            self.result_event = event
        elif event_type == "system":
            logger.debug(f"[system] {event.get('subtype', '')}")

    def _handle_tool_use(self, block: dict[str, Any]) -> None:
        name = block.get("name")
        tool_input = block.get("input") or {}

        if name in FILE_EDIT_TOOLS:
            path = tool_input.get("file_path") or tool_input.get("notebook_path")
            if path:
                self.files_modified.add(self.relative_path(path))
                logger.info(f"Agent edited {path}")
        elif name == "Bash":
            command = str(tool_input.get("command", ""))
            logger.debug(f"Agent ran: {command}")
            if TEST_COMMAND_RE.search(command):
                self.tests_run = True
            if "git commit" in command and block.get("id"):
                self.commit_tool_ids.add(block["id"])

    def _handle_tool_result(self, block: dict[str, Any]) -> None:
        if block.get("tool_use_id") not in self.commit_tool_ids:
            return
        matches = COMMIT_OUTPUT_RE.findall(_tool_result_text(block))
        if matches:
            self.commit_hash = matches[-1]
            logger.info(f"Agent committed {self.commit_hash}")


def _content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    message = event.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _tool_result_text(block: dict[str, Any]) -> str:
    content = block.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    return ""


def _first_line(text: str, limit: int = 300) -> str:
    for line in text.splitlines():
        line = line.strip()
        if line:
            return line[:limit]
    return ""


def build_iteration_result(state: StreamState, provider: str = "claude") -> IterationResult:
    """Turn the collected stream state into an IterationResult.

    Raises:
        AgentProviderError: If the stream carried no result event.
    """
    result = state.result_event
    if result is None:
        raise AgentProviderError(
            provider, "No result message found in agent output", files_modified=state.files_modified
        )

    subtype = result.get("subtype")
    is_error = bool(result.get("is_error"))
    text = result.get("result") or ""
    errors = list(state.errors)

    if subtype == "error_max_turns":
        errors.append("Maximum turns exceeded")
    elif subtype == "error_during_execution":
        errors.append("Error during execution")
        errors.extend(str(e) for e in result.get("errors") or [])
    elif is_error:
        errors.append(_first_line(text) or "Agent reported an error")

    success = subtype == "success" and not is_error

    report, _ = extract_json_from_response(text)
    report = report or {}

    summary = str(report.get("summary") or "").strip() or _first_line(text)
    if not summary:
        summary = "Iteration completed successfully" if success else "Iteration failed"

    review_notes = report.get("review_notes")
    num_turns = result.get("num_turns")
    cost = result.get("total_cost_usd")

    return IterationResult(
        success=success,
        summary=summary,
        files_modified=frozenset(state.files_modified),
        commit_hash=state.commit_hash,
        issue_resolved=bool(report.get("issue_resolved", False)),
        errors=tuple(errors) if errors else None,
        review_notes=str(review_notes) if review_notes else None,
        tests_run=state.tests_run,
        cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
        num_turns=int(num_turns) if isinstance(num_turns, int) else None,
    )


def terminate_process(
    process: subprocess.Popen, grace_period: float = TERMINATE_GRACE_SECONDS
) -> None:
    """Stop a process: SIGTERM, wait grace_period, then SIGKILL."""
    if process.poll() is not None:
        return
    logger.warning(f"Terminating agent process {process.pid}")
    try:
        process.terminate()
        process.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        logger.warning(f"Agent process {process.pid} ignored SIGTERM, killing")
        process.kill()
        process.wait()
    except ProcessLookupError:
        pass


@contextmanager
def managed_process(
    argv: Sequence[str],
    cwd: Path,
    display_command: str,
    grace_period: float = TERMINATE_GRACE_SECONDS,
) -> Iterator[subprocess.Popen]:
    """Spawn argv with piped stdio and guarantee it is gone on exit.

    Raises:
        ProcessExecutionError: If the process cannot be spawned.
    """
    try:
        process = subprocess.Popen(
            list(argv),
            cwd=cwd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except OSError as exc:
        raise ProcessExecutionError(display_command, -1, str(exc)) from exc

    try:
        if process.stdin:
            process.stdin.close()
        yield process
    finally:
        terminate_process(process, grace_period)
        for stream in (process.stdout, process.stderr):
            if stream:
                stream.close()


class ClaudeAgentRunner:
    """Runs the Claude Code CLI for one iteration round."""

    provider = "claude"

    def __init__(
        self,
        command: str = "claude",
        timeout: Optional[float] = None,
        grace_period: float = TERMINATE_GRACE_SECONDS,
    ):
        """Initialize the agent runner.

        Args:
            command: Agent executable name or path.
            timeout: Optional wall-clock limit per call, in seconds.
            grace_period: Seconds between SIGTERM and SIGKILL.
        """
        self.command = command
        self.timeout = timeout
        self.grace_period = grace_period

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> ClaudeAgentRunner:
        return cls(command=settings.command, timeout=settings.timeout)

    def check_installed(self) -> bool:
        """Check if the agent CLI is installed and accessible.

        Returns:
            True if the command is available, False otherwise.
        """
        try:
            result = subprocess.run(
                [self.command, "--version"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            return result.returncode == 0
        except (OSError, subprocess.TimeoutExpired):
            return False

    def build_command(self, prompt: str, options: AgentOptions) -> list[str]:
        """Build the argument vector; every value is its own element."""
        return [
            self.command,
            "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--model", options.model,
            "--max-turns", str(options.max_turns),
            "--permission-mode", options.permission_mode,
            "--allowedTools", ",".join(options.allowed_tools),
        ]

    def _display_command(self, argv: list[str]) -> str:
        shown = list(argv)
        prompt = shown[2]
        shown[2] = prompt[:50] + ("..." if len(prompt) > 50 else "")
        return shlex.join(shown)

    def execute(self, prompt: str, options: AgentOptions) -> IterationResult:
        """Run the agent once and normalize its output.

        Args:
            prompt: Prompt for this round.
            options: Working directory, turn budget, model and tool policy.

        Returns:
            IterationResult for the round.

        Raises:
            ValidationError: If prompt or options are malformed.
            ProcessExecutionError: If the process fails to start, exits
                non-zero or exceeds the wall-clock timeout.
            AgentProviderError: If the output holds no result event.
        """
        if not prompt or not prompt.strip():
            raise ValidationError("prompt must not be empty")
        options.validate()

        argv = self.build_command(prompt, options)
        display = self._display_command(argv)
        state = StreamState(working_directory=Path(options.working_directory))
        stderr_lines: deque[str] = deque(maxlen=200)
        timed_out = threading.Event()

        logger.info(f"Invoking agent: {display}")

        cwd = Path(options.working_directory)
        with managed_process(argv, cwd, display, self.grace_period) as process:
            drain = threading.Thread(
                target=lambda: stderr_lines.extend(process.stderr or ()),
                name="jido-agent-stderr",
                daemon=True,
            )
            drain.start()

            timer: Optional[threading.Timer] = None
            if self.timeout:
                def on_timeout() -> None:
                    timed_out.set()
                    terminate_process(process, self.grace_period)

                timer = threading.Timer(self.timeout, on_timeout)
                timer.daemon = True
                timer.start()

            try:
                for line in process.stdout or ():
                    self._handle_line(state, line)
                returncode = process.wait()
            finally:
                if timer:
                    timer.cancel()
            drain.join(timeout=self.grace_period)

        stderr = "".join(stderr_lines).strip()

        if timed_out.is_set():
            raise ProcessExecutionError(
                display,
                returncode,
                stderr,
                message=f"Agent process timed out after {self.timeout} seconds: {display}",
                files_modified=state.files_modified,
            )
        if returncode != 0:
            logger.error(f"Agent exited with code {returncode}: {stderr[:500]}")
            raise ProcessExecutionError(
                display, returncode, stderr, files_modified=state.files_modified
            )
        if state.events_seen == 0:
            raise AgentProviderError(self.provider, "Agent produced no parseable output")

        result = build_iteration_result(state, self.provider)
        logger.info(
            f"Agent finished: success={result.success}, "
            f"files={len(result.files_modified)}, commit={result.commit_hash or '-'}"
        )
        return result

    def _handle_line(self, state: StreamState, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping non-JSON agent output: {line[:200]}")
            return
        if isinstance(event, dict):
            state.handle_event(event)


ScriptedOutcome = Union[IterationResult, BaseException]


class MockAgentRunner(ClaudeAgentRunner):
    """Mock agent runner that replays scripted outcomes."""

    def __init__(self, outcomes: Optional[Sequence[ScriptedOutcome]] = None, **kwargs):
        """Initialize mock runner.

        Args:
            outcomes: Results to return (or exceptions to raise) in order.
                When exhausted, every call returns a successful no-op round.
        """
        super().__init__(**kwargs)
        self.outcomes: deque[ScriptedOutcome] = deque(outcomes or [])
        self.prompts: list[str] = []
        self.options: list[AgentOptions] = []

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    def check_installed(self) -> bool:
        """Always return True for mock."""
        return True

    def execute(self, prompt: str, options: AgentOptions) -> IterationResult:
        """Return the next scripted outcome."""
        self.prompts.append(prompt)
        self.options.append(options)

        if not self.outcomes:
            return IterationResult(success=True, summary="Mock iteration made no changes.")

        outcome = self.outcomes.popleft()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome
