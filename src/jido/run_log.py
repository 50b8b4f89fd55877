"""Session log for one ``jido do`` run.

Each run writes a single JSON file under ``.jido/logs`` holding every round's
result, the stop reason and the safety report.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .models import IterationResult, StopReason

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    """Running totals for a session."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    iterations: int = 0
    successful_iterations: int = 0
    failed_iterations: int = 0
    commits_made: int = 0
    total_cost_usd: float = 0.0
    total_turns: int = 0

    @property
    def duration_seconds(self) -> float:
        """Get duration in seconds."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def record(self, result: IterationResult) -> None:
        self.iterations += 1
        if result.success:
            self.successful_iterations += 1
        else:
            self.failed_iterations += 1
        if result.commit_hash:
            self.commits_made += 1
        if result.cost_usd:
            self.total_cost_usd += result.cost_usd
        if result.num_turns:
            self.total_turns += result.num_turns

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "iterations": {
                "run": self.iterations,
                "successful": self.successful_iterations,
                "failed": self.failed_iterations,
            },
            "commits": self.commits_made,
            "cost_usd": round(self.total_cost_usd, 6),
            "turns": self.total_turns,
        }


class RunLogger:
    """Records the rounds of one run and writes them as JSON."""

    def __init__(self, log_dir: Path, issue_identifier: str):
        """Initialize the run logger.

        Args:
            log_dir: Directory for log files, created if missing.
            issue_identifier: Issue key the run works on.
        """
        self.log_dir = Path(log_dir)
        self.issue_identifier = issue_identifier
        self.stats = RunStats()

        self.log_dir.mkdir(parents=True, exist_ok=True)
        # Keeps run logs out of git status and out of the agent's commits.
        ignore_file = self.log_dir / ".gitignore"
        if not ignore_file.exists():
            ignore_file.write_text("# Created by jido\n*\n", encoding="utf-8")

        timestamp = self.stats.start_time.strftime("%Y%m%d_%H%M%S")
        safe_issue = "".join(c if c.isalnum() or c == "-" else "_" for c in issue_identifier[:30])
        self.log_file = self.log_dir / f"{timestamp}_{safe_issue}.json"

        self.log_data: dict[str, Any] = {
            "session": {
                "id": timestamp,
                "issue": issue_identifier,
                "start_time": self.stats.start_time.isoformat(),
            },
            "iterations": [],
            "errors": [],
        }

        logger.info(f"Run log: {self.log_file}")

    def iteration_started(self, iteration: int, total_iterations: int) -> None:
        self.log_data["iterations"].append({
            "number": iteration,
            "max": total_iterations,
            "start_time": datetime.now().isoformat(),
        })
        logger.info(f"Iteration {iteration}/{total_iterations} started")

    def iteration_finished(self, iteration: int, result: IterationResult) -> None:
        self.stats.record(result)
        entry = self._entry(iteration)
        entry["end_time"] = datetime.now().isoformat()
        entry["result"] = result.to_dict()

        status = "succeeded" if result.success else "failed"
        logger.info(f"Iteration {iteration} {status}: {result.summary}")
        for error in result.errors or ():
            self.log_error(error, {"iteration": iteration})

    def loop_stopped(self, reason: StopReason, iterations_run: int) -> None:
        self.log_data["session"]["stop_reason"] = reason.value
        self.log_data["session"]["iterations_run"] = iterations_run
        logger.info(f"Loop stopped after {iterations_run} iteration(s): {reason.value}")

    def log_safety_report(self, report: dict) -> None:
        self.log_data["safety"] = report

    def log_error(self, error: str, context: Optional[dict] = None) -> None:
        """Log an error."""
        self.log_data["errors"].append({
            "timestamp": datetime.now().isoformat(),
            "error": error,
            "context": context or {},
        })
        logger.error(f"Run error: {error}")

    def finalize(self, success: bool) -> Path:
        """Finalize the log and write it to disk.

        Returns:
            Path of the written log file.
        """
        self.stats.end_time = datetime.now()

        self.log_data["session"]["end_time"] = self.stats.end_time.isoformat()
        self.log_data["session"]["success"] = success
        self.log_data["stats"] = self.stats.to_dict()

        try:
            with open(self.log_file, "w", encoding="utf-8") as f:
                json.dump(self.log_data, f, indent=2)
            logger.info(f"Run log written to: {self.log_file}")
        except OSError as e:
            logger.error(f"Failed to write run log: {e}")
        return self.log_file

    def _entry(self, iteration: int) -> dict:
        for entry in reversed(self.log_data["iterations"]):
            if entry["number"] == iteration:
                return entry
        entry = {"number": iteration}
        self.log_data["iterations"].append(entry)
        return entry
