"""Shared test fixtures for jido tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import git
import pytest

from jido.config import SafetyConfig
from jido.models import IterationContext


@pytest.fixture
def temp_repo(tmp_path: Path) -> Path:
    """Create a temporary project tree with a few source files."""
    (tmp_path / "src").mkdir()
    (tmp_path / "tests").mkdir()

    (tmp_path / "src" / "feature.ts").write_text("export const feature = () => 1;\n")
    (tmp_path / "src" / "utils.ts").write_text("export const add = (a, b) => a + b;\n")
    (tmp_path / "src" / "feature.test.ts").write_text("test('feature', () => {});\n")
    (tmp_path / "README.md").write_text("# Project\n")

    return tmp_path


@pytest.fixture
def git_repo(temp_repo: Path) -> git.Repo:
    """Turn temp_repo into a git repository with one commit."""
    repo = git.Repo.init(temp_repo)

    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()

    repo.git.add(all=True)
    repo.index.commit("Initial commit")

    return repo


@pytest.fixture
def safety_config() -> SafetyConfig:
    """A small, explicit safety policy."""
    return SafetyConfig(
        max_file_size=1024,
        max_files_modified=5,
        allowed_extensions=frozenset({".ts", ".md", ".py"}),
        forbidden_paths=frozenset({"dist"}),
        forbidden_patterns=frozenset({"**/*.key"}),
    )


@pytest.fixture
def context(tmp_path: Path) -> IterationContext:
    """A three-round context in tmp_path."""
    return IterationContext(
        issue_identifier="PROJ-123",
        working_directory=tmp_path,
        total_iterations=3,
        issue_description="Add a feature flag for the new dashboard.",
    )


@pytest.fixture
def stream_lines() -> Callable[..., list[str]]:
    """Build stream-json output lines from event dicts."""

    def build(*events: dict) -> list[str]:
        return [json.dumps(event) + "\n" for event in events]

    return build
