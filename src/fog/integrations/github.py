"""GitHub REST client for token validation and repository discovery."""

import logging
from dataclasses import dataclass

import httpx

from fog.config import DEFAULT_GITHUB_API_URL

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT = 30.0
SETUP_TIMEOUT = 20.0


class GitHubError(Exception):
    """Raised when a GitHub API call fails."""


@dataclass
class GitHubRepo:
    id: int
    name: str
    full_name: str
    clone_url: str
    private: bool = False
    default_branch: str = "main"
    owner_login: str = ""
    html_url: str = ""

    def to_dict(self) -> dict:
        return {
            "full_name": self.full_name,
            "clone_url": self.clone_url,
            "private": self.private,
            "default_branch": self.default_branch,
        }


class GitHubClient:
    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_GITHUB_API_URL,
        timeout: float = DISCOVERY_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        if not token.strip():
            raise GitHubError("github token is required")
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token.strip()}",
                "User-Agent": "fogd",
            },
        )

    def close(self):
        self._client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *exc):
        self.close()

    def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        try:
            resp = self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise GitHubError(f"github request {path} failed: {e}") from e
        if resp.status_code in (401, 403):
            raise GitHubError("github token is invalid or missing required scopes")
        if resp.status_code // 100 != 2:
            raise GitHubError(f"github request {path} failed: status={resp.status_code} body={resp.text[:512].strip()}")
        return resp

    def validate_token(self) -> str:
        """Check the token against /user and return the login."""
        data = self._get("/user").json()
        return data.get("login", "")

    def list_repos(self) -> list[GitHubRepo]:
        """All repositories visible to the token, most recently updated first."""
        repos: list[GitHubRepo] = []
        page = 1
        while True:
            resp = self._get("/user/repos", params={"per_page": 100, "page": page, "sort": "updated"})
            for item in resp.json():
                repos.append(
                    GitHubRepo(
                        id=item.get("id", 0),
                        name=item.get("name", ""),
                        full_name=item.get("full_name", ""),
                        clone_url=item.get("clone_url", ""),
                        private=bool(item.get("private", False)),
                        default_branch=item.get("default_branch") or "main",
                        owner_login=(item.get("owner") or {}).get("login", ""),
                        html_url=item.get("html_url", ""),
                    )
                )
            if "next" not in resp.links:
                break
            page += 1
        logger.debug("discovered %d repositories", len(repos))
        return repos
