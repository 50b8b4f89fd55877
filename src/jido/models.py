"""Data model for iterative issue resolution.

Contexts and results are frozen. Each round receives a fresh context built
from the previous one, and the results log is passed along as a tuple so no
round can rewrite what an earlier round produced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .errors import ValidationError


@dataclass(frozen=True)
class IterationResult:
    """Outcome of one agent round."""

    success: bool
    summary: str
    files_modified: frozenset[str] = field(default_factory=frozenset)
    commit_hash: Optional[str] = None
    issue_resolved: bool = False
    errors: Optional[tuple[str, ...]] = None
    review_notes: Optional[str] = None
    tests_run: bool = False
    cost_usd: Optional[float] = None
    num_turns: Optional[int] = None

    @classmethod
    def failed(
        cls, summary: str, *errors: str, files_modified: frozenset[str] = frozenset()
    ) -> IterationResult:
        """Build the record for a round whose agent call failed.

        Files the agent touched before failing are kept so the safety gate
        still sees them.
        """
        return cls(
            success=False,
            summary=summary,
            files_modified=frozenset(files_modified),
            errors=errors or None,
        )

    @property
    def made_changes(self) -> bool:
        """True if the round touched files or committed."""
        return bool(self.files_modified) or self.commit_hash is not None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "summary": self.summary,
            "files_modified": sorted(self.files_modified),
            "commit_hash": self.commit_hash,
            "issue_resolved": self.issue_resolved,
            "errors": list(self.errors) if self.errors else None,
            "review_notes": self.review_notes,
            "tests_run": self.tests_run,
            "cost_usd": self.cost_usd,
            "num_turns": self.num_turns,
        }


@dataclass(frozen=True)
class IterationContext:
    """Input to one round of the iteration loop."""

    issue_identifier: str
    working_directory: Path
    total_iterations: int
    iteration: int = 1
    previous_results: tuple[IterationResult, ...] = ()
    issue_description: str = ""
    single_commit: bool = False

    @property
    def is_first_iteration(self) -> bool:
        return self.iteration == 1

    def validate(self) -> None:
        """Check the context is well formed.

        Raises:
            ValidationError: If a required field is empty or out of range.
        """
        if not self.issue_identifier or not self.issue_identifier.strip():
            raise ValidationError("issue_identifier must not be empty")
        if self.total_iterations < 1:
            raise ValidationError(
                f"total_iterations must be at least 1, got {self.total_iterations}"
            )
        if not 1 <= self.iteration <= self.total_iterations:
            raise ValidationError(
                f"iteration {self.iteration} is outside 1..{self.total_iterations}"
            )
        if not str(self.working_directory):
            raise ValidationError("working_directory must not be empty")


class StopReason(str, Enum):
    """Why the iteration loop stopped."""

    RESOLVED = "resolved"
    CONVERGED = "no-further-changes"
    TOO_MANY_FAILURES = "too-many-failures"
    BUDGET_EXHAUSTED = "budget-exhausted"


@dataclass(frozen=True)
class IterationOutcome:
    """Ordered results of a finished loop plus its terminal state."""

    results: tuple[IterationResult, ...]
    stop_reason: StopReason

    @property
    def iterations_run(self) -> int:
        return len(self.results)

    @property
    def successful_iterations(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def all_files_modified(self) -> list[str]:
        """Union of every round's modified files, sorted."""
        files: set[str] = set()
        for result in self.results:
            files.update(result.files_modified)
        return sorted(files)

    @property
    def tests_were_run(self) -> bool:
        return any(r.tests_run for r in self.results)
