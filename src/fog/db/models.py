"""Data models for fog."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

# Task states
CREATED = "CREATED"
SETUP = "SETUP"
AI_RUNNING = "AI_RUNNING"
VALIDATING = "VALIDATING"
COMMITTED = "COMMITTED"
PR_CREATED = "PR_CREATED"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

STATE_ORDER = [CREATED, SETUP, AI_RUNNING, VALIDATING, COMMITTED, PR_CREATED, COMPLETED]
TERMINAL_STATES = {COMPLETED, FAILED}


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


def can_transition(old: str, new: str) -> bool:
    """Transitions move forward along STATE_ORDER; FAILED is reachable from any non-terminal state."""
    if is_terminal(old):
        return False
    if new == FAILED:
        return True
    if new not in STATE_ORDER or old not in STATE_ORDER:
        return False
    return STATE_ORDER.index(new) > STATE_ORDER.index(old)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Repo:
    name: str
    url: str
    host: str
    owner: str
    repo: str
    bare_path: str
    base_worktree_path: str
    default_branch: str = "main"
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TaskOptions:
    commit: bool = False
    create_pr: bool = False
    validate: bool = False
    run_async: bool = False
    base_branch: str = "main"
    commit_msg: str = ""
    pr_title: str = ""
    setup_cmd: str = ""
    validate_cmd: str = ""
    slack_channel: str = ""

    def to_dict(self) -> dict:
        return {
            "commit": self.commit,
            "createPR": self.create_pr,
            "validate": self.validate,
            "async": self.run_async,
            "baseBranch": self.base_branch,
            "commitMsg": self.commit_msg,
            "prTitle": self.pr_title,
            "setupCmd": self.setup_cmd,
            "validateCmd": self.validate_cmd,
            "slackChannel": self.slack_channel,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "TaskOptions":
        data = data or {}
        return cls(
            commit=bool(data.get("commit", False)),
            create_pr=bool(data.get("createPR", False)),
            validate=bool(data.get("validate", False)),
            run_async=bool(data.get("async", False)),
            base_branch=data.get("baseBranch") or "main",
            commit_msg=data.get("commitMsg") or "",
            pr_title=data.get("prTitle") or "",
            setup_cmd=data.get("setupCmd") or "",
            validate_cmd=data.get("validateCmd") or "",
            slack_channel=data.get("slackChannel") or "",
        )


@dataclass
class Task:
    id: str
    repo_id: int
    prompt: str
    ai_tool: str
    branch: str
    state: str = CREATED
    model: str | None = None
    parent_task_id: str | None = None
    worktree_path: str | None = None
    options: TaskOptions = field(default_factory=TaskOptions)
    metadata: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration(self) -> float:
        """Seconds between creation and completion (or now, while running)."""
        if not self.created_at:
            return 0.0
        end = self.completed_at or utcnow()
        return max(0.0, (end - self.created_at).total_seconds())


@dataclass
class TaskEvent:
    task_id: str
    type: str
    message: str = ""
    data: dict | None = None
    id: int | None = None
    ts: datetime | None = None


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def repo_to_dict(r: Repo) -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "url": r.url,
        "host": r.host,
        "owner": r.owner,
        "repo": r.repo,
        "bare_path": r.bare_path,
        "base_worktree_path": r.base_worktree_path,
        "default_branch": r.default_branch,
        "created_at": _iso(r.created_at),
        "updated_at": _iso(r.updated_at),
    }


def task_to_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "repo_id": t.repo_id,
        "parent_task_id": t.parent_task_id,
        "state": t.state,
        "prompt": t.prompt,
        "ai_tool": t.ai_tool,
        "model": t.model,
        "branch": t.branch,
        "worktree_path": t.worktree_path,
        "options": t.options.to_dict(),
        "metadata": dict(t.metadata),
        "error": t.error,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "completed_at": _iso(t.completed_at),
    }


def event_to_dict(e: TaskEvent) -> dict:
    return {
        "id": e.id,
        "task_id": e.task_id,
        "ts": _iso(e.ts),
        "type": e.type,
        "message": e.message,
        "data": e.data,
    }
