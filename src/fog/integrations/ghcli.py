"""Pull request creation through the GitHub CLI."""

import shutil
import subprocess
from pathlib import Path


class GhError(Exception):
    """Raised when the gh CLI is missing or fails."""


def is_available() -> bool:
    return shutil.which("gh") is not None


def create_pr(cwd: str | Path, base: str, head: str, title: str, body: str) -> str:
    """Run `gh pr create` and return the PR URL it prints."""
    if not is_available():
        raise GhError("gh CLI not available")
    result = subprocess.run(
        ["gh", "pr", "create", "--base", base, "--head", head, "--title", title, "--body", body],
        cwd=cwd,
        capture_output=True,
        text=True,
        errors="replace",
    )
    if result.returncode != 0:
        output = (result.stdout + result.stderr).strip()
        raise GhError(f"gh pr create failed: {output}")
    return result.stdout.strip()
