"""Git subprocess wrappers for mirrors, worktrees and commits."""

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

AUTH_HEADER_PREFIX = "http.extraHeader=Authorization:"
REDACTED_HEADER = "http.extraHeader=Authorization: ***"


class GitError(Exception):
    """Raised when a git command fails."""


def sanitize_args(args: list[str]) -> list[str]:
    """Redact authorization header values from a git argument list."""
    return [REDACTED_HEADER if a.startswith(AUTH_HEADER_PREFIX) else a for a in args]


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    shown = " ".join(sanitize_args(args))
    logger.debug("git %s (cwd=%s)", shown, cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            errors="replace",
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        output = (e.stderr or e.stdout or "").strip()
        raise GitError(f"git {shown} failed: {output}") from e


def show_toplevel(path: str | Path) -> str:
    """Top-level directory of the repository containing path."""
    return run_git(["rev-parse", "--show-toplevel"], cwd=path)


def is_repository(path: str | Path) -> bool:
    if not Path(path).is_dir():
        return False
    try:
        run_git(["rev-parse", "--git-dir"], cwd=path)
        return True
    except GitError:
        return False


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch]
    args += [str(worktree_path)]
    if not create_branch:
        args.append(branch)
    else:
        args.append(base_branch)
    return run_git(args, cwd=repo_path)


def clone_bare(url: str, dest: str | Path, auth_header: str | None = None) -> str:
    """Clone url as a bare mirror. The auth header goes in a per-invocation -c flag."""
    args = []
    if auth_header:
        args += ["-c", f"http.extraHeader={auth_header}"]
    args += ["clone", "--bare", url, str(dest)]
    return run_git(args)


def bare_worktree_add(bare_path: str | Path, worktree_path: str | Path, branch: str | None = None) -> str:
    """Attach a working copy to a bare mirror."""
    args = ["--git-dir", str(bare_path), "worktree", "add", str(worktree_path)]
    if branch:
        args.append(branch)
    return run_git(args)


def bare_default_branch(bare_path: str | Path) -> str:
    return run_git(["--git-dir", str(bare_path), "symbolic-ref", "--short", "HEAD"])


def status_porcelain(cwd: str | Path) -> str:
    return run_git(["status", "--porcelain"], cwd=cwd)


def add_all(cwd: str | Path) -> str:
    return run_git(["add", "."], cwd=cwd)


def commit(cwd: str | Path, message: str) -> str:
    return run_git(["commit", "-m", message], cwd=cwd)


def head_sha(cwd: str | Path) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=cwd)
