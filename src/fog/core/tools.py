"""AI coding tool adapters and tool resolution."""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from fog.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TOOL_SETTING = "default_tool"


class ToolError(Exception):
    """Raised when an AI tool cannot be run."""


@dataclass
class ToolResult:
    success: bool
    output: str
    exit_code: int


class AITool:
    """An AI CLI invoked headlessly inside a worktree."""

    name: str = ""
    binaries: tuple[str, ...] = ()

    def binary(self) -> str | None:
        for candidate in self.binaries:
            path = shutil.which(candidate)
            if path:
                return path
        return None

    def is_available(self) -> bool:
        return self.binary() is not None

    def build_args(self, prompt: str, model: str | None = None) -> list[str]:
        raise NotImplementedError

    def execute(self, workdir: str | Path, prompt: str, model: str | None = None) -> ToolResult:
        binary = self.binary()
        if binary is None:
            raise ToolError(f"AI tool {self.name} not available")
        args = [binary] + self.build_args(prompt, model)
        logger.info("running %s in %s", self.name, workdir)
        result = subprocess.run(
            args,
            cwd=workdir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )
        return ToolResult(success=result.returncode == 0, output=result.stdout or "", exit_code=result.returncode)


class ClaudeCode(AITool):
    name = "claude"
    binaries = ("claude",)

    def build_args(self, prompt, model=None):
        args = ["-p", prompt]
        if model:
            args += ["--model", model]
        return args


class Cursor(AITool):
    name = "cursor"
    binaries = ("cursor-agent", "agent")

    def build_args(self, prompt, model=None):
        args = ["-p", "--force"]
        if model:
            args += ["--model", model]
        return args + [prompt]


class Aider(AITool):
    name = "aider"
    binaries = ("aider",)

    def build_args(self, prompt, model=None):
        args = ["--yes", "--message", prompt]
        if model:
            args += ["--model", model]
        return args


class Gemini(AITool):
    name = "gemini"
    binaries = ("gemini",)

    def build_args(self, prompt, model=None):
        args = ["-p", prompt]
        if model:
            args += ["--model", model]
        return args


TOOLS: dict[str, AITool] = {t.name: t for t in (Cursor(), ClaudeCode(), Aider(), Gemini())}
ALIASES = {"claude-code": "claude"}


def get_tool(name: str) -> AITool:
    key = name.strip().lower()
    key = ALIASES.get(key, key)
    tool = TOOLS.get(key)
    if tool is None:
        raise ConfigError(f"unknown AI tool: {name} (supported: {', '.join(TOOLS)})")
    return tool


def available_tools() -> list[str]:
    return [name for name, tool in TOOLS.items() if tool.is_available()]


def resolve_tool(requested: str | None, store, entrypoint: str) -> str:
    """Pick the tool for a task: explicit request, then the default_tool setting."""
    name = (requested or "").strip()
    if not name:
        name, _ = store.get_setting(DEFAULT_TOOL_SETTING)
        name = name.strip()
    if not name:
        installed = ", ".join(available_tools()) or "none"
        raise ConfigError(
            f"AI tool is required ({entrypoint}): run `fog setup` to set default_tool "
            f"or provide tool explicitly (available: {installed})"
        )
    return get_tool(name).name
