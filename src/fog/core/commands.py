"""Command grammar and task construction shared by every ingress.

Grammar: `[@fog] [key='value' ...] <prompt>` with keys repo (required), tool,
model, autopr, branch and commit_msg.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from fog.config import DEFAULT_BRANCH_PREFIX
from fog.core.state import Store
from fog.core.tools import DEFAULT_TOOL_SETTING, get_tool, resolve_tool
from fog.db.models import Repo, Task, TaskOptions
from fog.errors import ValidationError

_OPTION = re.compile(r"""([a-zA-Z_-]+)=('([^']*)'|"([^"]*)"|[^\s]+)""")
_MENTION = re.compile(r"<@[^>]+>")
_NON_SLUG = re.compile(r"[^a-z0-9]+")

USAGE = "Use: @fog [repo='owner/name' tool='' model='' autopr=true/false branch='' commit_msg=''] prompt"

OPTION_KEYS = {
    "repo": "repo",
    "tool": "tool",
    "model": "model",
    "autopr": "autopr",
    "branch": "branch",
    "branch-name": "branch",
    "branch_name": "branch",
    "commit_msg": "commit_msg",
    "commit-msg": "commit_msg",
}

PROTECTED_BRANCHES = {"main", "master"}
MAX_BRANCH_LENGTH = 255
BRANCH_PREFIX_SETTING = "branch_prefix"


@dataclass
class ParsedCommand:
    repo: str
    prompt: str
    tool: str = ""
    model: str = ""
    autopr: bool = False
    branch: str = ""
    commit_msg: str = ""


def parse_command_text(raw: str) -> ParsedCommand:
    text = raw.strip()
    if text.lower().startswith("@fog"):
        text = text[len("@fog"):].strip()
    if not text:
        raise ValidationError(f"invalid command format. {USAGE}")
    if not text.startswith("["):
        raise ValidationError(f"options block is required. {USAGE}")
    end = text.find("]")
    if end == -1:
        raise ValidationError("invalid options block: missing closing ]")

    prompt = text[end + 1:].strip()
    if not prompt:
        raise ValidationError("prompt is required")

    opts = parse_options(text[1:end].strip())
    repo = opts.get("repo", "").strip()
    if not repo:
        raise ValidationError("repo is required")

    autopr = False
    raw_autopr = opts.get("autopr", "").strip().lower()
    if raw_autopr == "true":
        autopr = True
    elif raw_autopr not in ("", "false"):
        raise ValidationError(f"invalid autopr value {opts['autopr']!r}, expected true/false")

    return ParsedCommand(
        repo=repo,
        prompt=prompt,
        tool=opts.get("tool", "").strip(),
        model=opts.get("model", "").strip(),
        autopr=autopr,
        branch=opts.get("branch", "").strip(),
        commit_msg=opts.get("commit_msg", "").strip(),
    )


def parse_options(text: str) -> dict[str, str]:
    options: dict[str, str] = {}
    cursor = 0
    for m in _OPTION.finditer(text):
        gap = text[cursor:m.start()].strip()
        if gap:
            raise ValidationError(f"invalid options format near {gap!r}")
        key = m.group(1).lower()
        if key not in OPTION_KEYS:
            raise ValidationError(f"unknown option key: {key}")
        value = m.group(3) if m.group(3) is not None else m.group(4) if m.group(4) is not None else m.group(2)
        options[OPTION_KEYS[key]] = value
        cursor = m.end()
    rest = text[cursor:].strip()
    if rest:
        raise ValidationError(f"invalid options format near {rest!r}")
    return options


def strip_mentions(text: str) -> str:
    return _MENTION.sub("", text).strip()


def normalize_follow_up_prompt(text: str) -> str:
    prompt = text.strip()
    if not prompt:
        raise ValidationError("follow-up prompt is required")
    if prompt.startswith("["):
        raise ValidationError(
            "follow-up messages must be plain prompts; options are only allowed for the initial task"
        )
    return prompt


# ── Branch names ──────────────────────────────────────────────────────────────


def slugify_prompt(prompt: str) -> str:
    slug = _NON_SLUG.sub("-", prompt.strip().lower()).strip("-")
    if not slug:
        return "task-" + datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return slug


def generate_branch_name(prefix: str, prompt: str) -> str:
    branch = prefix.strip("/") + "/" + slugify_prompt(prompt)
    if len(branch) > MAX_BRANCH_LENGTH:
        branch = branch[:MAX_BRANCH_LENGTH].strip("/.-")
    return branch


def validate_branch_name(name: str) -> str:
    value = name.strip()
    if not value:
        raise ValidationError("branch name cannot be empty")
    if len(value) > MAX_BRANCH_LENGTH:
        raise ValidationError(f"branch name exceeds {MAX_BRANCH_LENGTH} characters")
    if value.startswith("/") or value.endswith("/"):
        raise ValidationError("branch name cannot start or end with '/'")
    if any(seq in value for seq in ("..", "//", "@{")):
        raise ValidationError(f"invalid branch name: {value}")
    if any(ch in value for ch in " ~^:?*[\\"):
        raise ValidationError(f"invalid branch name: {value}")
    if value.endswith(".lock") or value.endswith("."):
        raise ValidationError(f"invalid branch name: {value}")
    if value in PROTECTED_BRANCHES:
        raise ValidationError(f"protected branch {value!r} is not allowed")
    return value


def branch_prefix(store: Store) -> str:
    value, found = store.get_setting(BRANCH_PREFIX_SETTING)
    if found and value.strip():
        return value.strip()
    return DEFAULT_BRANCH_PREFIX


def set_branch_prefix(store: Store, prefix: str) -> str:
    value = prefix.strip().strip("/")
    if not value:
        raise ValidationError("branch prefix cannot be empty")
    validate_branch_name(value + "/x")
    store.set_setting(BRANCH_PREFIX_SETTING, value)
    return value


def set_default_tool(store: Store, name: str) -> str:
    tool = get_tool(name).name
    store.set_setting(DEFAULT_TOOL_SETTING, tool)
    return tool


# ── Task construction ─────────────────────────────────────────────────────────


def new_task(
    repo: Repo,
    branch: str,
    prompt: str,
    ai_tool: str,
    options: TaskOptions | None = None,
    model: str | None = None,
    metadata: dict[str, str] | None = None,
) -> Task:
    """A fresh CREATED task; validation happens before any side effect."""
    if not prompt.strip():
        raise ValidationError("prompt is required")
    options = options or TaskOptions()
    if not options.base_branch.strip():
        options.base_branch = repo.default_branch or "main"
    metadata = dict(metadata or {})
    metadata.setdefault("repo", repo.name)
    if model:
        metadata["model"] = model
    return Task(
        id=str(uuid.uuid4()),
        repo_id=repo.id,
        prompt=prompt.strip(),
        ai_tool=ai_tool,
        branch=validate_branch_name(branch),
        model=model or None,
        options=options,
        metadata=metadata,
    )


def lookup_repo(store: Store, name: str) -> Repo:
    repo = store.get_repo_by_name(name)
    if repo is None:
        raise ValidationError(f"unknown repo: {name}")
    if not repo.base_worktree_path.strip():
        raise ValidationError(f"repo {name} has no base worktree path")
    return repo


def build_task(store: Store, parsed: ParsedCommand, entrypoint: str) -> tuple[Task, str]:
    """Turn a parsed command into a task plus the path to provision it from."""
    repo = lookup_repo(store, parsed.repo)
    tool = resolve_tool(parsed.tool, store, entrypoint)
    branch = parsed.branch or generate_branch_name(branch_prefix(store), parsed.prompt)
    options = TaskOptions(
        commit=True,
        create_pr=parsed.autopr,
        base_branch=repo.default_branch or "main",
        commit_msg=parsed.commit_msg,
    )
    task = new_task(repo, branch, parsed.prompt, tool, options, model=parsed.model or None)
    return task, repo.base_worktree_path


def build_follow_up(store: Store, parent: Task, prompt: str, entrypoint: str) -> tuple[Task, str]:
    """A task continuing parent: same repo and tool, forked from the parent's branch and worktree."""
    prompt = normalize_follow_up_prompt(prompt)
    repo = store.get_repo(parent.repo_id)
    if repo is None:
        raise ValidationError(f"repo of task {parent.id} no longer exists")

    task, repo_path = build_task(store, ParsedCommand(repo=repo.name, tool=parent.ai_tool, prompt=prompt), entrypoint)
    task.parent_task_id = parent.id
    task.options.base_branch = parent.branch
    task.metadata["parent_task_id"] = parent.id
    task.metadata["parent_branch"] = parent.branch
    if parent.worktree_path:
        repo_path = parent.worktree_path
    return task, repo_path


def attach_slack_metadata(task: Task, channel_id: str, root_ts: str = "", response_url: str = ""):
    task.options.slack_channel = channel_id
    task.options.run_async = True
    if channel_id:
        task.metadata["slack_channel_id"] = channel_id
    if root_ts:
        task.metadata["slack_root_ts"] = root_ts
    if response_url:
        task.metadata["slack_response_url"] = response_url
