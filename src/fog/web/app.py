"""HTTP API for fogd: health, tasks, repos, settings and the Slack slash-command endpoint."""

from datetime import datetime, timezone
from functools import partial
from typing import Callable
from urllib.parse import parse_qs

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from fog.config import Config, get_config
from fog.core import commands, registry
from fog.core.commands import BRANCH_PREFIX_SETTING
from fog.core.runner import Runner
from fog.core.state import Store
from fog.core.tools import DEFAULT_TOOL_SETTING, resolve_tool
from fog.db.models import TaskOptions, event_to_dict, repo_to_dict, task_to_dict
from fog.errors import FogError, ValidationError
from fog.integrations import git as git_mod
from fog.integrations import slack as slack_mod
from fog.integrations.git import GitError
from fog.integrations.github import GitHubClient, GitHubError
from fog.slackbot.handler import SlackHandler

LOCAL_ORIGINS = r"^(https?://(localhost|127\.0\.0\.1)(:\d+)?|wails://.*)$"


# ── Handlers ──────────────────────────────────────────────────────────────────


async def health(request: Request):
    return JSONResponse({"status": "ok", "time": datetime.now(timezone.utc).isoformat()})


async def api_list_tasks(request: Request):
    store: Store = request.app.state.store
    return JSONResponse([task_to_dict(t) for t in store.list_tasks()])


async def api_get_task(request: Request):
    store: Store = request.app.state.store
    task = store.get_task(request.path_params["task_id"])
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    td = task_to_dict(task)
    td["events"] = [event_to_dict(e) for e in store.list_events(task.id)]
    return JSONResponse(td)


async def api_create_task(request: Request):
    store: Store = request.app.state.store
    runner: Runner = request.app.state.runner
    data = await _json_body(request)
    if data is None:
        return JSONResponse({"error": "invalid JSON body"}, status_code=400)

    try:
        task, repo_path = _task_from_request(store, data)
    except FogError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    if task.options.run_async:
        runner.submit(task, repo_path)
        return JSONResponse({"task_id": task.id, "status": "accepted"}, status_code=202)

    task = await run_in_threadpool(runner.execute, task, repo_path)
    return JSONResponse(task_to_dict(task))


async def api_list_repos(request: Request):
    store: Store = request.app.state.store
    return JSONResponse([repo_to_dict(r) for r in store.list_repos()])


async def api_discover_repos(request: Request):
    try:
        repos = await run_in_threadpool(_discover, request.app)
    except FogError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except GitHubError as e:
        return JSONResponse({"error": str(e)}, status_code=502)
    return JSONResponse([r.to_dict() for r in repos])


async def api_import_repos(request: Request):
    data = await _json_body(request)
    names = data.get("repos") if data else None
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        return JSONResponse({"error": "repos must be a list of owner/name strings"}, status_code=400)

    try:
        imported = await run_in_threadpool(_import, request.app, names)
    except FogError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except (GitHubError, GitError) as e:
        return JSONResponse({"error": str(e)}, status_code=502)
    return JSONResponse([repo_to_dict(r) for r in imported])


async def api_get_settings(request: Request):
    return JSONResponse(_settings(request.app.state.store))


async def api_update_settings(request: Request):
    store: Store = request.app.state.store
    data = await _json_body(request)
    if data is None:
        return JSONResponse({"error": "invalid JSON body"}, status_code=400)
    if "default_tool" not in data and "branch_prefix" not in data:
        return JSONResponse({"error": "nothing to set: pass default_tool or branch_prefix"}, status_code=400)

    try:
        if "default_tool" in data:
            commands.set_default_tool(store, str(data["default_tool"] or ""))
        if "branch_prefix" in data:
            commands.set_branch_prefix(store, str(data["branch_prefix"] or ""))
    except FogError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse(_settings(store))


async def slack_command(request: Request):
    handler: SlackHandler | None = request.app.state.slack_handler
    if handler is None:
        return JSONResponse({"error": "Slack is not enabled"}, status_code=404)

    body = await request.body()
    secret = request.app.state.slack_signing_secret
    if secret and not slack_mod.verify_request(secret, body, dict(request.headers)):
        return JSONResponse({"error": "invalid signature"}, status_code=401)

    form = {k: v[0] for k, v in parse_qs(body.decode("utf-8")).items()}
    payload, _ = await run_in_threadpool(
        handler.start_slash_task,
        form.get("text", ""),
        form.get("channel_id", ""),
        form.get("response_url", ""),
    )
    return JSONResponse(payload)


# ── Request parsing ───────────────────────────────────────────────────────────


async def _json_body(request: Request) -> dict | None:
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _discover(app):
    return registry.discover_repos(app.state.store, app.state.github_client)


def _import(app, names: list[str]):
    picked = registry.select_repos(_discover(app), names)
    return [registry.import_repo(app.state.store, app.state.config, r, clone=app.state.clone) for r in picked]


def _settings(store: Store) -> dict:
    default_tool, _ = store.get_setting(DEFAULT_TOOL_SETTING)
    prefix, _ = store.get_setting(BRANCH_PREFIX_SETTING)
    return {
        "default_tool": default_tool,
        "branch_prefix": prefix,
        "github_token": "configured" if store.has_github_token() else "missing",
    }


def _task_from_request(store: Store, data: dict):
    branch = str(data.get("branch") or "").strip()
    prompt = str(data.get("prompt") or "").strip()
    if not branch or not prompt:
        raise ValidationError("branch and prompt are required")

    repo_name = str(data.get("repo") or "").strip()
    if repo_name:
        repo = commands.lookup_repo(store, repo_name)
    else:
        repos = store.list_repos()
        if len(repos) != 1:
            raise ValidationError("repo is required when more than one repository is registered")
        repo = repos[0]

    raw_options = data.get("options") if isinstance(data.get("options"), dict) else {}
    options = TaskOptions.from_dict(raw_options)
    if not raw_options.get("baseBranch"):
        options.base_branch = repo.default_branch or "main"
    tool = resolve_tool(str(data.get("ai_tool") or ""), store, "api")
    task = commands.new_task(repo, branch, prompt, tool, options, model=str(data.get("model") or "") or None)
    if options.slack_channel:
        task.metadata["slack_channel_id"] = options.slack_channel
    return task, repo.base_worktree_path


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    store: Store | None = None,
    runner: Runner | None = None,
    slack_handler: SlackHandler | None = None,
    slack_signing_secret: str | None = None,
    config: Config | None = None,
    github_client: Callable[[str], GitHubClient] | None = None,
    clone: registry.CloneFn = git_mod.clone_bare,
) -> Starlette:
    config = config or get_config()
    store = store or Store.open(config)
    runner = runner or Runner(store, config=config)

    routes = [
        Route("/health", health),
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/create", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/repos", api_list_repos),
        Route("/api/repos/discover", api_discover_repos, methods=["POST"]),
        Route("/api/repos/import", api_import_repos, methods=["POST"]),
        Route("/api/settings", api_get_settings, methods=["GET"]),
        Route("/api/settings", api_update_settings, methods=["PUT"]),
        Route("/slack/command", slack_command, methods=["POST"]),
    ]
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origin_regex=LOCAL_ORIGINS,
            allow_methods=["GET", "POST", "PUT", "OPTIONS"],
            allow_headers=["*"],
        )
    ]
    app = Starlette(routes=routes, middleware=middleware)
    app.state.store = store
    app.state.runner = runner
    app.state.slack_handler = slack_handler
    app.state.slack_signing_secret = slack_signing_secret
    app.state.config = config
    app.state.github_client = github_client or partial(GitHubClient, base_url=config.github_api_url)
    app.state.clone = clone
    return app
