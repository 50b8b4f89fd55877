"""Iteration controller: runs agent rounds until a stop condition holds.

Rounds run strictly one after another. After each round the stop rules are
checked in order, first match wins:

1. the round succeeded and reports the issue resolved -> ``resolved``
2. a later round succeeded without touching files or committing
   -> ``no-further-changes``
3. optionally, too many failed rounds in a row -> ``too-many-failures``
4. the last round of the budget ran -> ``budget-exhausted``
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Optional

from .agent_runner import AgentOptions, AgentRunner
from .config import AgentSettings
from .errors import AgentProviderError, ProcessExecutionError, ValidationError
from .models import (
    IterationContext,
    IterationOutcome,
    IterationResult,
    StopReason,
)
from .prompts import build_iteration_prompt
from .run_log import RunLogger

logger = logging.getLogger(__name__)

# Characters of agent stderr kept on a failed round.
STDERR_TAIL = 500

PromptBuilder = Callable[[IterationContext], str]


class IterationController:
    """Drives the agent through a bounded number of rounds."""

    def __init__(
        self,
        runner: AgentRunner,
        prompt_builder: PromptBuilder = build_iteration_prompt,
        settings: Optional[AgentSettings] = None,
        run_logger: Optional[RunLogger] = None,
        max_consecutive_failures: Optional[int] = None,
    ):
        """Initialize the controller.

        Args:
            runner: Adapter that executes one agent round.
            prompt_builder: Builds the prompt from a round context.
            settings: Model, turn budget and tool policy for every round.
            run_logger: Optional observer that records each round.
            max_consecutive_failures: Stop after this many failed rounds in
                a row. None disables the rule.
        """
        if max_consecutive_failures is not None and max_consecutive_failures < 1:
            raise ValidationError(
                f"max_consecutive_failures must be positive, got {max_consecutive_failures}"
            )
        self.runner = runner
        self.prompt_builder = prompt_builder
        self.settings = settings or AgentSettings()
        self.run_logger = run_logger
        self.max_consecutive_failures = max_consecutive_failures

    def options_for(self, context: IterationContext) -> AgentOptions:
        return AgentOptions(
            working_directory=context.working_directory,
            max_turns=self.settings.max_turns,
            model=self.settings.model,
            permission_mode=self.settings.permission_mode,
            allowed_tools=self.settings.allowed_tools,
        )

    def run(self, context: IterationContext, start_iteration: int = 1) -> IterationOutcome:
        """Run rounds from start_iteration until a stop rule fires.

        Args:
            context: Base context. Its iteration and previous results are
                replaced per round.
            start_iteration: First round number, above 1 when resuming.

        Returns:
            IterationOutcome with one result per executed round.

        Raises:
            ValidationError: If the context or start_iteration is malformed.
                Raised before any round runs.
        """
        replace(context, iteration=start_iteration).validate()

        results: tuple[IterationResult, ...] = ()
        consecutive_failures = 0

        for iteration in range(start_iteration, context.total_iterations + 1):
            round_context = replace(context, iteration=iteration, previous_results=results)

            if self.run_logger:
                self.run_logger.iteration_started(iteration, context.total_iterations)

            result = self._run_round(round_context)
            results = results + (result,)

            if self.run_logger:
                self.run_logger.iteration_finished(iteration, result)

            consecutive_failures = 0 if result.success else consecutive_failures + 1

            reason = self._stop_reason(iteration, result, consecutive_failures)
            if reason is not None:
                return self._finish(results, reason)

        return self._finish(results, StopReason.BUDGET_EXHAUSTED)

    def _run_round(self, context: IterationContext) -> IterationResult:
        logger.info(
            f"Starting iteration {context.iteration}/{context.total_iterations} "
            f"for {context.issue_identifier}"
        )
        prompt = self.prompt_builder(context)
        try:
            return self.runner.execute(prompt, self.options_for(context))
        except ProcessExecutionError as e:
            logger.error(f"Iteration {context.iteration} failed: {e}")
            errors = [str(e)]
            if e.stderr:
                errors.append(f"stderr: {e.stderr[-STDERR_TAIL:]}")
            return IterationResult.failed(
                f"Iteration {context.iteration} failed", *errors, files_modified=e.files_modified
            )
        except AgentProviderError as e:
            logger.error(f"Iteration {context.iteration} failed: {e}")
            return IterationResult.failed(
                f"Iteration {context.iteration} failed", str(e), files_modified=e.files_modified
            )

    def _stop_reason(
        self, iteration: int, result: IterationResult, consecutive_failures: int
    ) -> Optional[StopReason]:
        if result.success and result.issue_resolved:
            return StopReason.RESOLVED
        if iteration > 1 and result.success and not result.made_changes:
            return StopReason.CONVERGED
        if (
            self.max_consecutive_failures is not None
            and consecutive_failures >= self.max_consecutive_failures
        ):
            return StopReason.TOO_MANY_FAILURES
        return None

    def _finish(
        self, results: tuple[IterationResult, ...], reason: StopReason
    ) -> IterationOutcome:
        logger.info(f"Stopping after {len(results)} iteration(s): {reason.value}")
        if self.run_logger:
            self.run_logger.loop_stopped(reason, len(results))
        return IterationOutcome(results=results, stop_reason=reason)
