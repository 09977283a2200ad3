"""Tests for the command grammar, branch naming and task construction."""

import re

import pytest

from fog.core import commands
from fog.db.models import CREATED, Task
from fog.errors import ConfigError, ValidationError


class TestParseCommand:
    def test_full_options(self):
        parsed = commands.parse_command_text(
            "[repo='acme/api' tool=\"claude\" model=opus autopr=true branch='fog/login' commit_msg='feat: login'] Add login"
        )
        assert parsed.repo == "acme/api"
        assert parsed.tool == "claude"
        assert parsed.model == "opus"
        assert parsed.autopr is True
        assert parsed.branch == "fog/login"
        assert parsed.commit_msg == "feat: login"
        assert parsed.prompt == "Add login"

    def test_leading_mention_keyword(self):
        parsed = commands.parse_command_text("@fog [repo='acme/api'] fix the build")
        assert parsed.repo == "acme/api"
        assert parsed.prompt == "fix the build"
        assert parsed.autopr is False

    def test_hyphenated_aliases(self):
        parsed = commands.parse_command_text("[repo=acme/api branch-name=fog/x commit-msg='m'] p")
        assert parsed.branch == "fog/x"
        assert parsed.commit_msg == "m"

    @pytest.mark.parametrize(
        "text,message",
        [
            ("", "invalid command format"),
            ("Add login", "options block is required"),
            ("[repo='acme/api' Add login", "missing closing ]"),
            ("[repo='acme/api']", "prompt is required"),
            ("[tool='claude'] Add login", "repo is required"),
            ("[repo='acme/api' color=red] Add login", "unknown option key: color"),
            ("[repo='acme/api' autopr=maybe] Add login", "invalid autopr value"),
            ("[repo='acme/api' junk] Add login", "invalid options format"),
        ],
    )
    def test_errors(self, text, message):
        with pytest.raises(ValidationError, match=re.escape(message)):
            commands.parse_command_text(text)


class TestMentionsAndFollowUps:
    def test_strip_mentions(self):
        assert commands.strip_mentions("<@U123> [repo='a/b'] go <@U456|fog>") == "[repo='a/b'] go"

    def test_follow_up_plain(self):
        assert commands.normalize_follow_up_prompt("  fix error handling ") == "fix error handling"

    def test_follow_up_empty(self):
        with pytest.raises(ValidationError, match="follow-up prompt is required"):
            commands.normalize_follow_up_prompt("   ")

    def test_follow_up_rejects_options(self):
        with pytest.raises(ValidationError, match="options are only allowed for the initial task"):
            commands.normalize_follow_up_prompt("[repo='acme/api'] again")


class TestBranchNames:
    def test_generate(self):
        assert commands.generate_branch_name("fog", "Add OTP login!") == "fog/add-otp-login"

    def test_prefix_slashes_trimmed(self):
        assert commands.generate_branch_name("/team/ai/", "Fix") == "team/ai/fix"

    def test_empty_slug_uses_timestamp(self):
        assert re.fullmatch(r"fog/task-\d{14}", commands.generate_branch_name("fog", "!!!"))

    def test_length_capped(self):
        branch = commands.generate_branch_name("fog", "word " * 100)
        assert len(branch) <= 255
        commands.validate_branch_name(branch)

    @pytest.mark.parametrize("name", ["feature-otp", "fog/add-login", "user/JIRA-12_fix"])
    def test_valid(self, name):
        assert commands.validate_branch_name(name) == name

    @pytest.mark.parametrize(
        "name",
        ["", "/lead", "trail/", "a..b", "a//b", "a@{b", "has space", "a~b", "a^b", "a:b", "a?b", "a*b", "a[b",
         "a\\b", "x" * 256, "main", "master"],
    )
    def test_invalid(self, name):
        with pytest.raises(ValidationError):
            commands.validate_branch_name(name)

    def test_prefix_setting(self, store):
        assert commands.branch_prefix(store) == "fog"
        store.set_setting("branch_prefix", "ai")
        assert commands.branch_prefix(store) == "ai"


class TestBuildTask:
    def test_build_from_command(self, store, repo):
        parsed = commands.parse_command_text("[repo='acme/api' tool='claude' model='opus' autopr=true] Add login")
        task, repo_path = commands.build_task(store, parsed, "slack")

        assert task.state == CREATED
        assert task.repo_id == repo.id
        assert task.branch == "fog/add-login"
        assert task.ai_tool == "claude"
        assert task.options.commit is True
        assert task.options.create_pr is True
        assert task.options.base_branch == "main"
        assert task.metadata["model"] == "opus"
        assert task.metadata["repo"] == "acme/api"
        assert repo_path == repo.base_worktree_path

    def test_unknown_repo(self, store, repo):
        parsed = commands.parse_command_text("[repo='acme/nope' tool='claude'] Add login")
        with pytest.raises(ValidationError, match="unknown repo: acme/nope"):
            commands.build_task(store, parsed, "slack")

    def test_tool_required(self, store, repo):
        parsed = commands.parse_command_text("[repo='acme/api'] Add login")
        with pytest.raises(ConfigError):
            commands.build_task(store, parsed, "slack")

    def test_protected_branch(self, store, repo):
        parsed = commands.parse_command_text("[repo='acme/api' tool='claude' branch=main] Add login")
        with pytest.raises(ValidationError, match="protected branch"):
            commands.build_task(store, parsed, "slack")

    def test_follow_up_inherits_from_parent(self, store, repo):
        parent = Task(
            id="parent-1", repo_id=repo.id, prompt="first", ai_tool="aider", branch="fog/first",
            worktree_path="/w/first", metadata={"slack_channel_id": "C1", "slack_root_ts": "123.456"},
        )
        task, repo_path = commands.build_follow_up(store, parent, "fix error handling", "slack")

        assert repo_path == "/w/first"
        assert task.ai_tool == "aider"
        assert task.branch == "fog/fix-error-handling"
        assert task.parent_task_id == "parent-1"
        assert task.options.base_branch == "fog/first"
        assert task.metadata["parent_task_id"] == "parent-1"
        assert task.metadata["parent_branch"] == "fog/first"

    def test_attach_slack_metadata(self, store, repo):
        task = commands.new_task(repo, "fog/x", "p", "claude")
        commands.attach_slack_metadata(task, "C1", "1.2", "https://hooks.slack.com/x")
        assert task.options.run_async is True
        assert task.options.slack_channel == "C1"
        assert task.metadata["slack_channel_id"] == "C1"
        assert task.metadata["slack_root_ts"] == "1.2"
        assert task.metadata["slack_response_url"] == "https://hooks.slack.com/x"
