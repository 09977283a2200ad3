"""Registered repository persistence."""

import sqlite3
from datetime import datetime

from fog.db.models import Repo, utcnow


def upsert_repo(db: sqlite3.Connection, repo: Repo) -> Repo:
    """Insert or update a repo by name. The row id is preserved across upserts."""
    now = utcnow().isoformat()
    db.execute(
        """INSERT INTO repos (name, url, host, owner, repo, bare_path, base_worktree_path,
                              default_branch, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(name) DO UPDATE SET
               url = excluded.url,
               host = excluded.host,
               owner = excluded.owner,
               repo = excluded.repo,
               bare_path = excluded.bare_path,
               base_worktree_path = excluded.base_worktree_path,
               default_branch = excluded.default_branch,
               updated_at = excluded.updated_at""",
        (
            repo.name, repo.url, repo.host, repo.owner, repo.repo, repo.bare_path,
            repo.base_worktree_path, repo.default_branch or "main", now, now,
        ),
    )
    db.commit()
    return get_repo_by_name(db, repo.name)


def get_repo_by_name(db: sqlite3.Connection, name: str) -> Repo | None:
    row = db.execute("SELECT * FROM repos WHERE name = ?", (name.strip(),)).fetchone()
    if not row:
        return None
    return _row_to_repo(row)


def get_repo(db: sqlite3.Connection, repo_id: int) -> Repo | None:
    row = db.execute("SELECT * FROM repos WHERE id = ?", (repo_id,)).fetchone()
    if not row:
        return None
    return _row_to_repo(row)


def list_repos(db: sqlite3.Connection) -> list[Repo]:
    rows = db.execute("SELECT * FROM repos ORDER BY name ASC").fetchall()
    return [_row_to_repo(r) for r in rows]


def _row_to_repo(row: sqlite3.Row) -> Repo:
    return Repo(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        host=row["host"],
        owner=row["owner"],
        repo=row["repo"],
        bare_path=row["bare_path"],
        base_worktree_path=row["base_worktree_path"],
        default_branch=row["default_branch"] or "main",
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
