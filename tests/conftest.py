"""Shared fixtures: temp fog home, a git repo with one commit, stub executables."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from fog.core.state import Store
from fog.db.models import Repo

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def git(args, cwd):
    subprocess.run(["git"] + args, cwd=cwd, capture_output=True, check=True)


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    for k, v in GIT_IDENTITY.items():
        monkeypatch.setenv(k, v)


@pytest.fixture
def fog_home(monkeypatch):
    with tempfile.TemporaryDirectory() as tmp:
        monkeypatch.setenv("FOG_HOME", tmp)
        monkeypatch.delenv("FOG_WORKTREE_DIR", raising=False)
        yield Path(tmp)


@pytest.fixture
def store(fog_home):
    s = Store(fog_home / "fog.db", fog_home / "master.key")
    yield s
    s.close()


@pytest.fixture
def git_repo():
    """A repo laid out like a managed base worktree, with an initial commit on main."""
    with tempfile.TemporaryDirectory() as tmp:
        base = Path(tmp) / "acme" / "api" / "base"
        base.mkdir(parents=True)
        git(["init"], base)
        git(["checkout", "-b", "main"], base)
        (base / "README.md").write_text("# Test")
        git(["add", "."], base)
        git(["commit", "-m", "init"], base)
        yield base


@pytest.fixture
def repo(store, git_repo) -> Repo:
    return store.upsert_repo(
        Repo(
            name="acme/api",
            url="https://github.com/acme/api.git",
            host="github.com",
            owner="acme",
            repo="api",
            bare_path=str(git_repo.parent / "repo.git"),
            base_worktree_path=str(git_repo),
            default_branch="main",
        )
    )


@pytest.fixture
def stub_bin(monkeypatch):
    """A directory placed first on PATH; returns a function that writes executables into it."""
    with tempfile.TemporaryDirectory() as tmp:
        bin_dir = Path(tmp)
        monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

        def make(name: str, script: str) -> Path:
            path = bin_dir / name
            path.write_text("#!/bin/sh\n" + script)
            path.chmod(0o755)
            return path

        yield make


@pytest.fixture
def claude_stub(stub_bin):
    """A fake `claude` that edits a file in its working directory."""
    return stub_bin("claude", 'echo "change" >> ai.txt\necho "claude ran with: $*"\n')
