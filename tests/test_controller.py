"""Tests for the iteration controller."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from jido.agent_runner import MockAgentRunner
from jido.config import AgentSettings
from jido.controller import IterationController
from jido.errors import AgentProviderError, ProcessExecutionError, ValidationError
from jido.models import IterationContext, IterationResult, StopReason
from jido.run_log import RunLogger


def changed(summary: str = "changed", *files: str, commit: str = "abc1234") -> IterationResult:
    return IterationResult(
        success=True,
        summary=summary,
        files_modified=frozenset(files or ("src/a.ts",)),
        commit_hash=commit,
    )


NO_CHANGES = IterationResult(success=True, summary="nothing left to do")
RESOLVED = IterationResult(
    success=True, summary="done", files_modified=frozenset({"src/a.ts"}), issue_resolved=True
)


class TestTermination:
    """Tests for the stop rules."""

    def test_resolved_on_first_round(self, context: IterationContext) -> None:
        runner = MockAgentRunner([RESOLVED])

        outcome = IterationController(runner).run(context)

        assert outcome.stop_reason == StopReason.RESOLVED
        assert outcome.results == (RESOLVED,)
        assert runner.call_count == 1

    def test_resolution_ignored_when_round_failed(self, context: IterationContext) -> None:
        failed_but_claims = IterationResult(success=False, summary="x", issue_resolved=True)
        runner = MockAgentRunner([failed_but_claims, changed(), changed()])

        outcome = IterationController(runner).run(context)

        assert outcome.stop_reason == StopReason.BUDGET_EXHAUSTED
        assert outcome.iterations_run == 3

    def test_converges_when_later_round_changes_nothing(self, context: IterationContext) -> None:
        runner = MockAgentRunner([changed(), NO_CHANGES])

        outcome = IterationController(runner).run(context)

        assert outcome.stop_reason == StopReason.CONVERGED
        assert outcome.stop_reason.value == "no-further-changes"
        assert outcome.iterations_run == 2

    def test_first_round_without_changes_does_not_converge(self, context: IterationContext) -> None:
        runner = MockAgentRunner([NO_CHANGES, changed(), changed()])

        outcome = IterationController(runner).run(context)

        assert outcome.stop_reason == StopReason.BUDGET_EXHAUSTED
        assert outcome.iterations_run == 3

    def test_commit_only_round_is_a_change(self, context: IterationContext) -> None:
        commit_only = IterationResult(success=True, summary="squashed", commit_hash="def5678")
        runner = MockAgentRunner([changed(), commit_only, NO_CHANGES])

        outcome = IterationController(runner).run(context)

        assert outcome.stop_reason == StopReason.CONVERGED
        assert outcome.iterations_run == 3

    def test_budget_exhausted(self, context: IterationContext) -> None:
        runner = MockAgentRunner([changed(), changed(), changed()])

        outcome = IterationController(runner).run(context)

        assert outcome.stop_reason == StopReason.BUDGET_EXHAUSTED
        assert outcome.iterations_run == context.total_iterations

    def test_resolution_beats_convergence(self, context: IterationContext) -> None:
        resolved_no_changes = IterationResult(success=True, summary="verified", issue_resolved=True)
        runner = MockAgentRunner([changed(), resolved_no_changes])

        outcome = IterationController(runner).run(context)

        assert outcome.stop_reason == StopReason.RESOLVED

    def test_single_round_budget(self, context: IterationContext) -> None:
        runner = MockAgentRunner([NO_CHANGES])

        outcome = IterationController(runner).run(replace(context, total_iterations=1))

        assert outcome.stop_reason == StopReason.BUDGET_EXHAUSTED
        assert outcome.iterations_run == 1

    def test_too_many_failures_when_enabled(self, context: IterationContext) -> None:
        runner = MockAgentRunner([
            ProcessExecutionError("claude", 1, ""),
            ProcessExecutionError("claude", 1, ""),
            changed(),
        ])

        outcome = IterationController(runner, max_consecutive_failures=2).run(context)

        assert outcome.stop_reason == StopReason.TOO_MANY_FAILURES
        assert outcome.iterations_run == 2

    def test_invalid_failure_limit(self) -> None:
        with pytest.raises(ValidationError):
            IterationController(MockAgentRunner(), max_consecutive_failures=0)


class TestFailures:
    """Tests for failure handling."""

    def test_process_failure_recorded_and_loop_continues(self, context: IterationContext) -> None:
        runner = MockAgentRunner([ProcessExecutionError("claude -p x", 1, "boom"), RESOLVED])

        outcome = IterationController(runner).run(context)

        first = outcome.results[0]
        assert first.success is False
        assert first.errors == ("Command failed: claude -p x (exit 1)", "stderr: boom")
        assert outcome.stop_reason == StopReason.RESOLVED
        assert outcome.iterations_run == 2

    def test_provider_failure_recorded(self, context: IterationContext) -> None:
        runner = MockAgentRunner([AgentProviderError("claude", "No result message"), RESOLVED])

        outcome = IterationController(runner).run(context)

        assert outcome.results[0].errors == ("[claude] No result message",)

    def test_stderr_tail_kept_on_failed_round(self, context: IterationContext) -> None:
        stderr = "x" * 1000 + "API Error: 529 overloaded"
        runner = MockAgentRunner([ProcessExecutionError("claude", 1, stderr), RESOLVED])

        outcome = IterationController(runner).run(context)

        detail = outcome.results[0].errors[1]
        assert detail.endswith("API Error: 529 overloaded")
        assert len(detail) == len("stderr: ") + 500

    def test_no_stderr_entry_when_stderr_empty(self, context: IterationContext) -> None:
        runner = MockAgentRunner([ProcessExecutionError("claude", 1, ""), RESOLVED])

        outcome = IterationController(runner).run(context)

        assert outcome.results[0].errors == ("Command failed: claude (exit 1)",)

    def test_edits_from_failed_round_are_kept(self, context: IterationContext) -> None:
        crashed = ProcessExecutionError("claude", 1, "", files_modified={".env", "src/a.ts"})
        runner = MockAgentRunner([crashed, NO_CHANGES, NO_CHANGES])

        outcome = IterationController(runner).run(context)

        assert outcome.results[0].success is False
        assert outcome.results[0].files_modified == frozenset({".env", "src/a.ts"})
        assert ".env" in outcome.all_files_modified

    def test_edits_kept_when_result_event_missing(self, context: IterationContext) -> None:
        truncated = AgentProviderError("claude", "No result message", files_modified={"dist/app.js"})
        runner = MockAgentRunner([truncated, RESOLVED])

        outcome = IterationController(runner).run(context)

        assert "dist/app.js" in outcome.all_files_modified

    def test_interrupt_propagates_without_partial_result(self, context: IterationContext) -> None:
        run_logger = MagicMock(spec=RunLogger)
        runner = MockAgentRunner([changed(), KeyboardInterrupt()])

        with pytest.raises(KeyboardInterrupt):
            IterationController(runner, run_logger=run_logger).run(context)

        assert run_logger.iteration_finished.call_count == 1
        run_logger.loop_stopped.assert_not_called()

    def test_programmer_errors_propagate(self, context: IterationContext) -> None:
        runner = MockAgentRunner([RuntimeError("bug")])

        with pytest.raises(RuntimeError):
            IterationController(runner).run(context)


class TestValidation:
    """Tests for context validation."""

    def test_empty_issue_identifier(self, context: IterationContext) -> None:
        runner = MockAgentRunner()

        with pytest.raises(ValidationError):
            IterationController(runner).run(replace(context, issue_identifier=""))

        assert runner.call_count == 0

    def test_zero_budget(self, context: IterationContext) -> None:
        with pytest.raises(ValidationError):
            IterationController(MockAgentRunner()).run(replace(context, total_iterations=0))

    def test_start_beyond_budget(self, context: IterationContext) -> None:
        with pytest.raises(ValidationError):
            IterationController(MockAgentRunner()).run(context, start_iteration=4)


class TestRoundContext:
    """Tests for what each round receives."""

    def test_previous_results_passed_forward(self, context: IterationContext) -> None:
        seen: list[IterationContext] = []

        def prompt_builder(ctx: IterationContext) -> str:
            seen.append(ctx)
            return f"round {ctx.iteration}"

        first = changed("first")
        runner = MockAgentRunner([first, changed("second"), changed("third")])

        IterationController(runner, prompt_builder=prompt_builder).run(context)

        assert [c.iteration for c in seen] == [1, 2, 3]
        assert seen[0].previous_results == ()
        assert seen[1].previous_results == (first,)
        assert len(seen[2].previous_results) == 2
        assert runner.prompts == ["round 1", "round 2", "round 3"]

    def test_resume_starts_later(self, context: IterationContext) -> None:
        runner = MockAgentRunner([changed(), changed()])
        seen: list[int] = []

        def prompt_builder(ctx: IterationContext) -> str:
            seen.append(ctx.iteration)
            return "prompt"

        outcome = IterationController(runner, prompt_builder=prompt_builder).run(
            context, start_iteration=2
        )

        assert seen == [2, 3]
        assert outcome.iterations_run == 2

    def test_settings_become_options(self, context: IterationContext) -> None:
        runner = MockAgentRunner([RESOLVED])
        settings = AgentSettings(model="opus", max_turns=12)

        IterationController(runner, settings=settings).run(context)

        options = runner.options[0]
        assert options.model == "opus"
        assert options.max_turns == 12
        assert options.permission_mode == "acceptEdits"
        assert options.working_directory == context.working_directory


class TestRunLoggerIntegration:
    """Tests for the run logger observer."""

    def test_logger_records_rounds(self, context: IterationContext, tmp_path: Path) -> None:
        run_logger = RunLogger(tmp_path / "logs", context.issue_identifier)
        runner = MockAgentRunner([changed(), NO_CHANGES])

        IterationController(runner, run_logger=run_logger).run(context)

        assert [entry["number"] for entry in run_logger.log_data["iterations"]] == [1, 2]
        assert run_logger.log_data["session"]["stop_reason"] == "no-further-changes"
        assert run_logger.stats.iterations == 2
