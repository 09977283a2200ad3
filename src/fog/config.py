"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_WORKTREE_DIR = "../worktrees"
DEFAULT_BRANCH_PREFIX = "fog"
DEFAULT_GITHUB_API_URL = "https://api.github.com"


@dataclass
class Config:
    home: Path = field(default_factory=lambda: Path.home() / ".fog")
    worktree_dir: str = DEFAULT_WORKTREE_DIR
    github_api_url: str = DEFAULT_GITHUB_API_URL
    slack_bot_token: str | None = None
    slack_app_token: str | None = None
    slack_signing_secret: str | None = None

    @property
    def db_path(self) -> Path:
        return self.home / "fog.db"

    @property
    def key_path(self) -> Path:
        return self.home / "master.key"

    @property
    def repos_dir(self) -> Path:
        return self.home / "repos"

    def repo_paths(self, owner: str, name: str) -> tuple[Path, Path]:
        """Return (bare mirror, base worktree) paths for a managed repo."""
        root = self.repos_dir / owner / name
        return root / "repo.git", root / "base"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if home := os.environ.get("FOG_HOME"):
            config.home = Path(home).expanduser().absolute()

        if wt_dir := os.environ.get("FOG_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if api_url := os.environ.get("FOG_GITHUB_API_URL"):
            config.github_api_url = api_url.rstrip("/")

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_app_token = os.environ.get("SLACK_APP_TOKEN")
        config.slack_signing_secret = os.environ.get("SLACK_SIGNING_SECRET")

        return config


def get_config() -> Config:
    return Config.from_env()
