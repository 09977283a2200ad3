"""The task engine: drives a task through setup, AI, validation, commit and PR.

Every step persists the new state before running its side effect, so the
stored state always names the last step attempted. A failing step moves the
task to FAILED, records the error and notifies once. Nothing is rolled back:
branches and worktrees stay in place for inspection.
"""

import logging
import subprocess
import threading
from pathlib import Path

from fog.config import Config, get_config
from fog.core import worktrees as worktrees_mod
from fog.core.notifier import Notifier
from fog.core.state import Store
from fog.core.tools import ToolError, get_tool
from fog.db.models import (
    AI_RUNNING,
    COMMITTED,
    COMPLETED,
    FAILED,
    PR_CREATED,
    SETUP,
    VALIDATING,
    Task,
    utcnow,
)
from fog.errors import FogError
from fog.integrations import ghcli
from fog.integrations import git as git_mod
from fog.integrations.ghcli import GhError
from fog.integrations.git import GitError

logger = logging.getLogger(__name__)

PR_TITLE_MAX = 72


class TaskFailed(Exception):
    """A task step failed."""


# Errors that fail the current task instead of escaping the engine.
STEP_ERRORS = (TaskFailed, FogError, GitError, GhError, ToolError, OSError)


def default_commit_message(task: Task) -> str:
    return f"feat: {task.prompt}\n\nGenerated by Fog AI task {task.id}"


def default_pr_title(prompt: str) -> str:
    first_line = prompt.strip().splitlines()[0] if prompt.strip() else "Fog AI changes"
    if len(first_line) > PR_TITLE_MAX:
        first_line = first_line[: PR_TITLE_MAX - 3].rstrip() + "..."
    return first_line


def pr_body(task: Task) -> str:
    return f"Generated by Fog AI\n\nTask ID: {task.id}\nAI Tool: {task.ai_tool}\n\nPrompt:\n{task.prompt}"


class Runner:
    def __init__(self, store: Store, notifier: Notifier | None = None, config: Config | None = None):
        self.store = store
        self.notifier = notifier or Notifier()
        self.config = config or get_config()

    # ── Entry points ────────────────────────────────────────────────────────

    def submit(self, task: Task, repo_path: str | Path) -> threading.Thread:
        """Persist the task and run it on a background thread."""
        if self.store.get_task(task.id) is None:
            self.store.save_task(task)
        thread = threading.Thread(
            target=self._run_in_background,
            args=(task, repo_path),
            name=f"task-{task.id[:8]}",
            daemon=True,
        )
        thread.start()
        return thread

    def execute(self, task: Task, repo_path: str | Path) -> Task:
        """Run a task to a terminal state and return it."""
        if self.store.get_task(task.id) is None:
            self.store.save_task(task)

        try:
            self._setup(task, repo_path)
            self._run_ai(task)
            if task.options.validate and task.options.validate_cmd.strip():
                self._validate(task)
            if task.options.commit:
                self._commit(task)
            if task.options.create_pr:
                self._create_pr(task)
            self._complete(task)
        except STEP_ERRORS as e:
            self._fail(task, str(e))
        except Exception as e:
            logger.exception("task %s step %s crashed", task.id, task.state)
            self._fail(task, f"unexpected error in {task.state}: {e}")

        self.notifier.notify(task, str(repo_path))
        return task

    def _run_in_background(self, task: Task, repo_path: str | Path):
        try:
            self.execute(task, repo_path)
        except Exception:
            logger.exception("task %s crashed", task.id)
        finally:
            self.store.release_thread()

    # ── Steps ───────────────────────────────────────────────────────────────

    def _transition(self, task: Task, state: str):
        task.state = state
        self.store.save_task(task)
        logger.debug("task %s -> %s", task.id, state)

    def _setup(self, task: Task, repo_path: str | Path):
        self._transition(task, SETUP)
        path = worktrees_mod.create_worktree(
            repo_path,
            name=task.branch,
            branch=task.branch,
            base_branch=task.options.base_branch,
            worktree_dir=self.config.worktree_dir,
        )
        task.worktree_path = str(path)
        self.store.save_task(task)
        self.store.append_event(task.id, "worktree_created", str(path))

        if task.options.setup_cmd.strip():
            self._run_shell(task, task.options.setup_cmd, "setup")

    def _run_ai(self, task: Task):
        self._transition(task, AI_RUNNING)
        tool = get_tool(task.ai_tool)
        if not tool.is_available():
            raise TaskFailed(f"AI tool {tool.name} not available")

        model = task.model or task.metadata.get("model") or None
        result = tool.execute(task.worktree_path, task.prompt, model)
        task.metadata["ai_output"] = result.output
        self.store.save_task(task)
        self.store.append_event(task.id, "ai_finished", f"{tool.name} exited {result.exit_code}")
        if not result.success:
            raise TaskFailed(f"AI execution failed: {result.output.strip()}")

    def _validate(self, task: Task):
        self._transition(task, VALIDATING)
        self._run_shell(task, task.options.validate_cmd, "validation")

    def _commit(self, task: Task):
        self._transition(task, COMMITTED)
        if not git_mod.status_porcelain(task.worktree_path):
            self.store.append_event(task.id, "commit_skipped", "no changes to commit")
            return
        message = task.options.commit_msg.strip() or default_commit_message(task)
        git_mod.add_all(task.worktree_path)
        git_mod.commit(task.worktree_path, message)
        sha = git_mod.head_sha(task.worktree_path)
        self.store.append_event(task.id, "committed", sha, {"sha": sha})

    def _create_pr(self, task: Task):
        self._transition(task, PR_CREATED)
        title = task.options.pr_title.strip() or default_pr_title(task.prompt)
        url = ghcli.create_pr(
            task.worktree_path,
            base=task.options.base_branch,
            head=task.branch,
            title=title,
            body=pr_body(task),
        )
        task.metadata["pr_url"] = url
        self.store.save_task(task)
        self.store.append_event(task.id, "pr_created", url)

    def _complete(self, task: Task):
        task.state = COMPLETED
        task.completed_at = utcnow()
        self.store.save_task(task)
        logger.info("task %s completed on %s", task.id, task.branch)

    def _fail(self, task: Task, error: str):
        task.state = FAILED
        task.error = error
        task.completed_at = utcnow()
        self.store.save_task(task)
        self.store.append_event(task.id, "error", error)
        logger.warning("task %s failed: %s", task.id, error)

    def _run_shell(self, task: Task, command: str, label: str):
        result = subprocess.run(
            ["sh", "-c", command],
            cwd=task.worktree_path,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
        self.store.append_event(task.id, f"{label}_finished", f"exit {result.returncode}")
        if result.returncode != 0:
            raise TaskFailed(f"{label} failed: exit status {result.returncode}\n{result.stdout.strip()}")
