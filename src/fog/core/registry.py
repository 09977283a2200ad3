"""Managed repository layout: a bare mirror plus a base worktree per repo.

Layout under $FOG_HOME/repos/<owner>/<name>/:
    repo.git/  bare mirror cloned with the stored PAT
    base/      working copy attached to the mirror, parent of task worktrees
"""

import base64
import logging
import re
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse

from fog.config import Config
from fog.core.state import Store
from fog.db.models import Repo
from fog.errors import ConfigError, ValidationError
from fog.integrations import git as git_mod
from fog.integrations.git import GitError
from fog.integrations.github import GitHubClient, GitHubRepo

logger = logging.getLogger(__name__)

_SEGMENT = re.compile(r"^[A-Za-z0-9_.-]+$")

CloneFn = Callable[[str, Path, str], object]


def split_repo_full_name(full_name: str) -> tuple[str, str]:
    """Split `owner/name`, rejecting anything else."""
    parts = full_name.strip().split("/")
    if len(parts) != 2 or not all(_SEGMENT.match(p) for p in parts):
        raise ValidationError(f"invalid repository name {full_name.strip()!r}: expected owner/name")
    if any(p in (".", "..") for p in parts):
        raise ValidationError(f"invalid repository name {full_name.strip()!r}: expected owner/name")
    return parts[0], parts[1]


def repo_host(url: str) -> str:
    host = urlparse(url.strip()).hostname
    return host or "github.com"


def basic_auth_credential(token: str) -> str:
    return base64.b64encode(f"x-access-token:{token}".encode()).decode()


def parse_indexes(text: str, count: int) -> list[int]:
    """Parse 1-based comma-separated selections into unique 0-based indexes."""
    seen: list[int] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            idx = int(part)
        except ValueError:
            raise ValidationError(f"invalid selection: {part}")
        if idx < 1 or idx > count:
            raise ValidationError(f"selection out of range: {idx}")
        if idx - 1 not in seen:
            seen.append(idx - 1)
    if not seen:
        raise ValidationError("no valid selections provided")
    return seen


def discover_repos(store: Store, client_factory: Callable[[str], GitHubClient]) -> list[GitHubRepo]:
    """List repositories visible to the stored GitHub token."""
    token, found = store.get_github_token()
    if not found or not token:
        raise ConfigError("GitHub token not configured: run `fog setup`")
    with client_factory(token) as gh:
        return gh.list_repos()


def select_repos(available: list[GitHubRepo], selection: list[str]) -> list[GitHubRepo]:
    """Pick discovered repos by full name, preserving selection order."""
    by_name = {r.full_name.lower(): r for r in available}
    picked: list[GitHubRepo] = []
    unknown: list[str] = []
    for name in selection:
        name = name.strip()
        if not name:
            continue
        repo = by_name.get(name.lower())
        if repo is None:
            unknown.append(name)
        elif repo not in picked:
            picked.append(repo)
    if unknown:
        raise ValidationError(f"unknown repositories: {', '.join(unknown)}")
    if not picked:
        raise ValidationError("no repositories selected")
    return picked


def _clone_with_fallback(token: str, url: str, bare_path: Path, clone: CloneFn):
    attempts = [
        f"Authorization: Bearer {token}",
        f"Authorization: Basic {basic_auth_credential(token)}",
    ]
    last_error: GitError | None = None
    for header in attempts:
        try:
            clone(url, bare_path, header)
            return
        except GitError as e:
            last_error = e
            logger.info("clone of %s rejected, retrying with basic auth", url)
    raise GitError(f"clone {url} failed: {last_error}") from last_error


def ensure_initialised(
    token: str,
    url: str,
    bare_path: str | Path,
    base_path: str | Path,
    clone: CloneFn = git_mod.clone_bare,
) -> str:
    """Create the bare mirror and base worktree if missing. Returns the default branch."""
    bare_path = Path(bare_path)
    base_path = Path(base_path)

    if not bare_path.exists():
        bare_path.parent.mkdir(parents=True, exist_ok=True)
        _clone_with_fallback(token, url, bare_path, clone)

    default_branch = git_mod.bare_default_branch(bare_path)

    if not base_path.exists():
        git_mod.bare_worktree_add(bare_path, base_path, default_branch)

    return default_branch


def import_repo(
    store: Store,
    config: Config,
    gh_repo: GitHubRepo,
    clone: CloneFn = git_mod.clone_bare,
) -> Repo:
    """Initialise the on-disk layout for a discovered repo and register it."""
    token, found = store.get_github_token()
    if not found or not token:
        raise ConfigError("GitHub token not configured: run `fog setup`")

    owner, name = split_repo_full_name(gh_repo.full_name)
    bare_path, base_path = config.repo_paths(owner, name)
    default_branch = ensure_initialised(token, gh_repo.clone_url, bare_path, base_path, clone=clone)

    repo = store.upsert_repo(
        Repo(
            name=f"{owner}/{name}",
            url=gh_repo.clone_url,
            host=repo_host(gh_repo.clone_url),
            owner=owner,
            repo=name,
            bare_path=str(bare_path.absolute()),
            base_worktree_path=str(base_path.absolute()),
            default_branch=gh_repo.default_branch or default_branch or "main",
        )
    )
    logger.info("imported %s into %s", repo.name, base_path)
    return repo
