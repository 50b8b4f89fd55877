"""Tests for the run log."""

from __future__ import annotations

import json
from pathlib import Path

from jido.models import IterationResult, StopReason
from jido.run_log import RunLogger, RunStats


class TestRunStats:
    """Tests for RunStats."""

    def test_record(self) -> None:
        stats = RunStats()

        stats.record(IterationResult(success=True, summary="a", commit_hash="abc1234", cost_usd=0.5, num_turns=3))
        stats.record(IterationResult.failed("b", "boom"))

        data = stats.to_dict()
        assert data["iterations"] == {"run": 2, "successful": 1, "failed": 1}
        assert data["commits"] == 1
        assert data["cost_usd"] == 0.5
        assert data["turns"] == 3


class TestRunLogger:
    """Tests for RunLogger."""

    def test_log_file_name(self, tmp_path: Path) -> None:
        run_logger = RunLogger(tmp_path / "logs", "PROJ-123")

        assert run_logger.log_dir.exists()
        assert run_logger.log_file.name.endswith("_PROJ-123.json")

    def test_log_dir_ignored_by_git(self, tmp_path: Path) -> None:
        run_logger = RunLogger(tmp_path / ".jido" / "logs", "PROJ-123")

        ignore_file = run_logger.log_dir / ".gitignore"
        assert ignore_file.read_text().splitlines()[-1] == "*"

    def test_existing_ignore_file_kept(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_text("*.json\n")

        RunLogger(tmp_path, "PROJ-123")

        assert (tmp_path / ".gitignore").read_text() == "*.json\n"

    def test_finalize_writes_json(self, tmp_path: Path) -> None:
        run_logger = RunLogger(tmp_path, "PROJ-7")
        result = IterationResult(success=True, summary="done", files_modified=frozenset({"a.ts"}))

        run_logger.iteration_started(1, 2)
        run_logger.iteration_finished(1, result)
        run_logger.loop_stopped(StopReason.RESOLVED, 1)
        run_logger.log_safety_report({"overall": True})
        log_file = run_logger.finalize(success=True)

        data = json.loads(log_file.read_text())
        assert data["session"]["issue"] == "PROJ-7"
        assert data["session"]["stop_reason"] == "resolved"
        assert data["session"]["success"] is True
        assert data["iterations"][0]["result"]["files_modified"] == ["a.ts"]
        assert data["safety"] == {"overall": True}
        assert data["stats"]["iterations"]["run"] == 1

    def test_errors_recorded(self, tmp_path: Path) -> None:
        run_logger = RunLogger(tmp_path, "PROJ-7")

        run_logger.iteration_started(1, 1)
        run_logger.iteration_finished(1, IterationResult.failed("failed", "agent crashed"))

        assert run_logger.log_data["errors"][0]["error"] == "agent crashed"
        assert run_logger.log_data["errors"][0]["context"] == {"iteration": 1}
