"""CLI entry point for fog."""

import json
import sys
from contextlib import contextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version

import click
import httpx

from fog.config import get_config
from fog.core import commands
from fog.core import registry
from fog.core.commands import BRANCH_PREFIX_SETTING
from fog.core.runner import Runner
from fog.core.state import Store
from fog.core.tools import DEFAULT_TOOL_SETTING, available_tools, get_tool, resolve_tool
from fog.db.models import FAILED, TaskOptions, task_to_dict
from fog.errors import ConfigError, FogError, ValidationError
from fog.integrations.git import GitError
from fog.integrations.github import SETUP_TIMEOUT, GitHubClient, GitHubError

CLI_ERRORS = (FogError, GitError, GitHubError, httpx.HTTPError)


def _get_store() -> Store:
    return Store.open(get_config())


def _github_client(token: str, timeout: float | None = None) -> GitHubClient:
    config = get_config()
    if timeout is None:
        return GitHubClient(token, base_url=config.github_api_url)
    return GitHubClient(token, base_url=config.github_api_url, timeout=timeout)


@contextmanager
def _handle_errors():
    try:
        yield
    except CLI_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
def main():
    """fog - run AI coding agents in isolated worktrees"""
    pass


# ── Setup & Config ────────────────────────────────────────────────────────────


@main.command("setup")
@click.option("--token", default=None, help="GitHub personal access token")
@click.option("--default-tool", default=None, help="AI tool to use when none is given")
def setup(token, default_tool):
    """Store a GitHub token and pick a default AI tool."""
    with _handle_errors(), _get_store() as store:
        installed = available_tools()
        if not installed:
            raise ConfigError("no supported AI tools found in PATH (expected cursor, claude, aider, or gemini)")

        if default_tool:
            tool = get_tool(default_tool).name
            if tool not in installed:
                raise ConfigError(f"AI tool {tool} is not installed (available: {', '.join(installed)})")
        else:
            tool = installed[0]

        if not token:
            token = click.prompt("GitHub token", hide_input=True)
        token = token.strip()
        if not token:
            raise ValidationError("GitHub token is required")

        with _github_client(token, SETUP_TIMEOUT) as gh:
            login = gh.validate_token()

        store.save_github_token(token)
        store.set_setting(DEFAULT_TOOL_SETTING, tool)
        click.echo(f"GitHub token saved{f' for {login}' if login else ''}")
        click.echo(f"Default tool: {tool}")


@main.group("config")
def config_group():
    """View or change settings."""
    pass


@config_group.command("view")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def config_view(json_output):
    """Show current settings."""
    with _handle_errors(), _get_store() as store:
        default_tool, _ = store.get_setting(DEFAULT_TOOL_SETTING)
        prefix, _ = store.get_setting(BRANCH_PREFIX_SETTING)
        token_state = "configured" if store.has_github_token() else "missing"
        home = str(get_config().home)

        if json_output:
            click.echo(json.dumps({
                "home": home,
                "default_tool": default_tool,
                "branch_prefix": prefix,
                "github_token": token_state,
            }, indent=2))
            return

        click.echo(f"Home: {home}")
        click.echo(f"Default tool: {default_tool or '(unset)'}")
        click.echo(f"Branch prefix: {prefix or '(unset)'}")
        click.echo(f"GitHub token: {token_state}")


@config_group.command("set")
@click.option("--default-tool", default=None, help="Default AI tool")
@click.option("--branch-prefix", default=None, help="Prefix for generated branch names")
def config_set(default_tool, branch_prefix):
    """Update settings."""
    with _handle_errors(), _get_store() as store:
        if default_tool is None and branch_prefix is None:
            raise ValidationError("nothing to set: pass --default-tool or --branch-prefix")
        if default_tool is not None:
            tool = commands.set_default_tool(store, default_tool)
            click.echo(f"default_tool = {tool}")
        if branch_prefix is not None:
            prefix = commands.set_branch_prefix(store, branch_prefix)
            click.echo(f"branch_prefix = {prefix}")


# ── Repo Commands ─────────────────────────────────────────────────────────────


@main.group("repos")
def repos_group():
    """Discover, import and list repositories."""
    pass


def _discover(store: Store):
    return registry.discover_repos(store, _github_client)


@repos_group.command("discover")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def repos_discover(json_output):
    """List repositories visible to the stored GitHub token."""
    with _handle_errors(), _get_store() as store:
        repos = _discover(store)
        if json_output:
            click.echo(json.dumps([r.to_dict() for r in repos], indent=2))
            return
        if not repos:
            click.echo("No repositories found.")
            return
        for i, r in enumerate(repos, start=1):
            visibility = "private" if r.private else "public"
            click.echo(f"  {i:3d}. {r.full_name} ({visibility})")


@repos_group.command("import")
@click.option("--select", "selection", default=None, help="Comma-separated owner/name list")
def repos_import(selection):
    """Clone selected repositories into the managed layout."""
    config = get_config()
    with _handle_errors(), _get_store() as store:
        discovered = _discover(store)
        if not discovered:
            raise ValidationError("no repositories available to import")

        if selection:
            picked = registry.select_repos(discovered, selection.split(","))
        else:
            for i, r in enumerate(discovered, start=1):
                click.echo(f"  {i:3d}. {r.full_name}")
            answer = click.prompt("Select repositories (e.g. 1,3)")
            picked = [discovered[i] for i in registry.parse_indexes(answer, len(discovered))]

        for gh_repo in picked:
            repo = registry.import_repo(store, config, gh_repo)
            click.echo(f"Imported {repo.name}")
            click.echo(f"  Mirror: {repo.bare_path}")
            click.echo(f"  Base:   {repo.base_worktree_path}")


@repos_group.command("list")
def repos_list():
    """List registered repositories."""
    with _handle_errors(), _get_store() as store:
        repos = store.list_repos()
        if not repos:
            click.echo("No repositories registered. Run `fog repos import`.")
            return
        for r in repos:
            click.echo(f"  {r.name} [{r.default_branch}] {r.base_worktree_path}")


# ── Task Commands ─────────────────────────────────────────────────────────────


def _select_repo(store: Store, name: str | None):
    if name:
        return commands.lookup_repo(store, name)
    repos = store.list_repos()
    if not repos:
        raise ConfigError("no repositories registered: run `fog repos import`")
    if len(repos) > 1:
        names = ", ".join(r.name for r in repos)
        raise ValidationError(f"--repo is required when multiple repositories are registered ({names})")
    return repos[0]


@main.command("run")
@click.option("--branch", required=True, help="Branch to create or reuse")
@click.option("--prompt", required=True, help="Instructions for the AI tool")
@click.option("--repo", default=None, help="Registered repo (owner/name)")
@click.option("--tool", default=None, help="AI tool (defaults to the configured tool)")
@click.option("--model", default=None, help="Model passed to the AI tool")
@click.option("--commit", is_flag=True, help="Commit the changes")
@click.option("--pr", is_flag=True, help="Open a pull request")
@click.option("--validate", is_flag=True, help="Run the validation command")
@click.option("--base", "base_branch", default="main", help="Base branch for new branches")
@click.option("--setup-cmd", default="", help="Shell command run in the worktree first")
@click.option("--validate-cmd", default="", help="Shell command used for validation")
@click.option("--commit-msg", default="", help="Commit message override")
@click.option("--pr-title", default="", help="Pull request title override")
@click.option("--async", "run_async", is_flag=True, help="Hand the task to a running fogd and return")
@click.option("--daemon-url", default="http://127.0.0.1:8080", help="fogd address used with --async")
def run_task(branch, prompt, repo, tool, model, commit, pr, validate, base_branch,
             setup_cmd, validate_cmd, commit_msg, pr_title, run_async, daemon_url):
    """Run an AI task in a fresh worktree."""
    config = get_config()
    with _handle_errors(), _get_store() as store:
        target = _select_repo(store, repo)
        options = TaskOptions(
            commit=commit,
            create_pr=pr,
            validate=validate,
            run_async=run_async,
            base_branch=base_branch,
            commit_msg=commit_msg,
            pr_title=pr_title,
            setup_cmd=setup_cmd,
            validate_cmd=validate_cmd,
        )

        if run_async:
            resp = httpx.post(
                f"{daemon_url.rstrip('/')}/api/tasks/create",
                json={
                    "repo": target.name,
                    "branch": branch,
                    "prompt": prompt,
                    "ai_tool": tool or "",
                    "model": model or "",
                    "options": options.to_dict(),
                },
                timeout=30.0,
            )
            if resp.status_code != 202:
                raise ValidationError(resp.json().get("error", f"fogd returned {resp.status_code}"))
            click.echo(f"Accepted task {resp.json()['task_id']}")
            return

        ai_tool = resolve_tool(tool, store, "cli")
        task = commands.new_task(target, branch, prompt, ai_tool, options, model=model)

        click.echo(f"Starting task {task.id}")
        click.echo(f"  Repo: {target.name}")
        click.echo(f"  Branch: {task.branch}")
        click.echo(f"  AI Tool: {task.ai_tool}")

        task = Runner(store, config=config).execute(task, target.base_worktree_path)
        if task.state == FAILED:
            raise ValidationError(f"task execution failed: {task.error}")

        click.echo(f"✅ Task completed in {task.duration:.1f}s")
        click.echo(f"  State: {task.state}")
        click.echo(f"  Worktree: {task.worktree_path}")
        if pr_url := task.metadata.get("pr_url"):
            click.echo(f"  PR: {pr_url}")


@main.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def list_tasks(json_output):
    """List tasks, newest first."""
    with _handle_errors(), _get_store() as store:
        tasks = store.list_tasks()
        if json_output:
            click.echo(json.dumps([task_to_dict(t) for t in tasks], indent=2))
            return
        if not tasks:
            click.echo("No tasks found.")
            return
        click.echo(f"{'ID':<36} {'STATE':<12} {'BRANCH':<30} CREATED")
        for t in tasks:
            created = t.created_at.strftime("%Y-%m-%d %H:%M") if t.created_at else ""
            click.echo(f"{t.id:<36} {t.state:<12} {t.branch:<30} {created}")


@main.command("status")
@click.argument("task_id")
def task_status(task_id):
    """Show task details and its event log."""
    with _handle_errors(), _get_store() as store:
        task = store.get_task(task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  State: {task.state}")
        click.echo(f"  Branch: {task.branch}")
        click.echo(f"  AI Tool: {task.ai_tool}")
        click.echo(f"  Prompt: {task.prompt}")
        if task.created_at:
            click.echo(f"  Created: {task.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
        click.echo(f"  Duration: {task.duration:.1f}s")
        if task.worktree_path:
            click.echo(f"  Worktree: {task.worktree_path}")
        if task.error:
            click.echo(f"  Error: {task.error}")
        if pr_url := task.metadata.get("pr_url"):
            click.echo(f"  PR: {pr_url}")

        events = store.list_events(task.id)
        if events:
            click.echo("  Events:")
            for e in events:
                ts = e.ts.strftime("%H:%M:%S") if e.ts else ""
                click.echo(f"    {ts} {e.type}: {e.message}")


@main.command("version")
def show_version():
    """Print the fog version."""
    try:
        click.echo(f"fog {pkg_version('fog')}")
    except PackageNotFoundError:
        click.echo("fog (development)")


if __name__ == "__main__":
    main()
