"""Isolated per-task worktree provisioning."""

import logging
import os
from pathlib import Path

from fog.config import DEFAULT_WORKTREE_DIR
from fog.errors import ValidationError
from fog.integrations.git import branch_exists, is_repository, show_toplevel, worktree_add

logger = logging.getLogger(__name__)


class WorktreeError(ValidationError):
    """Raised when a worktree request is malformed."""


def worktree_root(repo_path: str | Path, worktree_dir: str = DEFAULT_WORKTREE_DIR) -> Path:
    """Directory that holds task worktrees for the repo containing repo_path."""
    toplevel = show_toplevel(repo_path)
    return Path(os.path.normpath(os.path.join(toplevel, worktree_dir)))


def create_worktree(
    repo_path: str | Path,
    name: str,
    branch: str,
    base_branch: str = "",
    worktree_dir: str = DEFAULT_WORKTREE_DIR,
) -> Path:
    """Attach a worktree for branch at <toplevel>/<worktree_dir>/<name>.

    An existing branch is checked out as-is; a new branch is created at
    base_branch, which is then required.
    """
    if not name.strip():
        raise WorktreeError("worktree name is required")
    if not branch.strip():
        raise WorktreeError("worktree branch is required")
    if not is_repository(repo_path):
        raise WorktreeError(f"not a git repository: {repo_path}")

    path = worktree_root(repo_path, worktree_dir) / name
    if path.exists():
        raise WorktreeError(f"worktree path already exists: {path}")

    if branch_exists(repo_path, branch):
        worktree_add(repo_path, path, branch, create_branch=False)
    else:
        if not base_branch.strip():
            raise WorktreeError("base branch is required")
        worktree_add(repo_path, path, branch, base_branch, create_branch=True)

    logger.info("created worktree %s on %s", path, branch)
    return path
