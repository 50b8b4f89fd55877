"""Read-only view of the git repository a run works in.

Used by the CLI for the pre-flight check (no uncommitted changes) and to
work out how many rounds an interrupted run already committed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from .errors import WorkspaceError

logger = logging.getLogger(__name__)

# Base refs tried in order when counting commits made by earlier rounds.
RESUME_BASE_REFS = ("origin/master", "origin/main")


class GitWorkspace:
    """Git state of a working directory, via GitPython."""

    def __init__(self, repo_path: Optional[Path] = None):
        """Open the repository.

        Args:
            repo_path: Path to the repository root. Defaults to the current directory.

        Raises:
            WorkspaceError: If the directory is not a git repository.
        """
        self.repo_path = Path(repo_path) if repo_path else Path.cwd()
        try:
            self.repo = git.Repo(self.repo_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise WorkspaceError(f"Not a git repository: {self.repo_path}") from exc

    def current_branch(self) -> Optional[str]:
        """Active branch name, or None on a detached HEAD."""
        try:
            return self.repo.active_branch.name
        except TypeError:
            return None

    def is_dirty(self) -> bool:
        """True if there are staged, unstaged or untracked changes."""
        return self.repo.is_dirty(untracked_files=True)

    def uncommitted_files(self) -> list[str]:
        """Paths with uncommitted changes, sorted."""
        files = set(self.repo.untracked_files)
        files.update(item.a_path for item in self.repo.index.diff(None))
        if self.repo.head.is_valid():
            files.update(item.a_path for item in self.repo.index.diff("HEAD"))
        else:
            files.update(path for path, _stage in self.repo.index.entries)
        return sorted(files)

    def has_ref(self, ref: str) -> bool:
        try:
            self.repo.git.rev_parse("--verify", "--quiet", ref)
            return True
        except GitCommandError:
            return False

    def commits_ahead(self, base_ref: str) -> int:
        """Count commits on HEAD that are not on base_ref.

        Raises:
            WorkspaceError: If the count cannot be computed.
        """
        try:
            return int(self.repo.git.rev_list("--count", f"{base_ref}..HEAD"))
        except (GitCommandError, ValueError) as exc:
            raise WorkspaceError(f"Cannot count commits ahead of {base_ref}: {exc}") from exc

    def infer_previous_iterations(self) -> int:
        """Estimate rounds completed by an earlier run on this branch.

        Each committed round adds at least one commit, so the number of
        commits ahead of the first existing base ref is used. Returns 0 when
        no base ref exists.
        """
        for base in RESUME_BASE_REFS:
            if self.has_ref(base):
                count = self.commits_ahead(base)
                logger.info(f"Branch is {count} commit(s) ahead of {base}")
                return count
        logger.warning(f"No base ref found ({', '.join(RESUME_BASE_REFS)}); assuming a fresh run")
        return 0
