"""Tests for prompt building."""

from __future__ import annotations

from dataclasses import replace

from jido.models import IterationContext, IterationResult
from jido.prompts import build_iteration_prompt


class TestBuildIterationPrompt:
    """Tests for build_iteration_prompt."""

    def test_first_iteration(self, context: IterationContext) -> None:
        prompt = build_iteration_prompt(context)

        assert "PROJ-123" in prompt
        assert "Add a feature flag for the new dashboard." in prompt
        assert "**Iteration:** 1/3 (Initial Implementation)" in prompt
        assert str(context.working_directory) in prompt
        assert "Previous Iterations" not in prompt
        assert '"issue_resolved"' in prompt

    def test_review_iteration_lists_previous_results(self, context: IterationContext) -> None:
        previous = (
            IterationResult(
                success=True,
                summary="Added the flag",
                files_modified=frozenset({"src/flag.ts"}),
                commit_hash="abc1234",
            ),
        )

        prompt = build_iteration_prompt(replace(context, iteration=2, previous_results=previous))

        assert "(Code Review & Refinement)" in prompt
        assert "Iteration 1: Added the flag (success: True, files: 1, commit: abc1234)" in prompt
        assert "git show HEAD" in prompt
        assert "make no further changes" in prompt

    def test_review_without_previous_changes(self, context: IterationContext) -> None:
        previous = (IterationResult(success=False, summary="Timed out", errors=("x",)),)

        prompt = build_iteration_prompt(replace(context, iteration=2, previous_results=previous))

        assert "No changes were made in previous iterations" in prompt

    def test_resumed_round_reviews_committed_work(self, context: IterationContext) -> None:
        prompt = build_iteration_prompt(replace(context, iteration=3, previous_results=()))

        assert "Iterations 1-2 ran in an earlier session" in prompt
        assert "git show HEAD" in prompt
        assert "No changes were made in previous iterations" not in prompt

    def test_commit_strategy(self, context: IterationContext) -> None:
        multi = build_iteration_prompt(context)
        single = build_iteration_prompt(replace(context, single_commit=True))

        assert "incremental commits" in multi
        assert "Part of PROJ-123" in multi
        assert "single commit" in single
        assert "ONE commit" in single

    def test_missing_description_falls_back_to_key(self, context: IterationContext) -> None:
        prompt = build_iteration_prompt(replace(context, issue_description=""))

        assert "## Issue Details\nPROJ-123" in prompt
