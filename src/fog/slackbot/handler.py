"""Slack ingress: slash commands and app mentions turned into tasks."""

import logging
import threading
from typing import Callable

from slack_sdk import WebClient

from fog.core import commands
from fog.core.runner import Runner
from fog.core.state import Store
from fog.errors import FogError
from fog.integrations import slack as slack_mod
from fog.integrations.slack import SlackError

logger = logging.getLogger(__name__)

NO_THREAD_CONTEXT = "Could not find a prior Fog task in this thread. Start with `@fog [repo='name'] prompt`."


class SlackHandler:
    def __init__(
        self,
        store: Store,
        runner: Runner,
        slack_client: WebClient | None = None,
        post_webhook: Callable[[str, dict], None] = slack_mod.post_response_url,
    ):
        self.store = store
        self.runner = runner
        self.slack_client = slack_client
        self.post_webhook = post_webhook

    # ── Slash commands ──────────────────────────────────────────────────────

    def start_slash_task(
        self, text: str, channel_id: str, response_url: str = ""
    ) -> tuple[dict, threading.Thread | None]:
        """Parse and launch a slash command. Returns the reply payload and the task thread."""
        try:
            parsed = commands.parse_command_text(text)
            task, repo_path = commands.build_task(self.store, parsed, "slack")
        except FogError as e:
            return slack_mod.error_payload(str(e)), None

        commands.attach_slack_metadata(task, channel_id, response_url=response_url)
        thread = self.runner.submit(task, repo_path)
        logger.info("slash command started task %s on %s", task.id, task.branch)
        return slack_mod.ack_payload(task.branch), thread

    def handle_socket_slash(self, payload: dict) -> threading.Thread | None:
        """Socket-mode slash commands reply through response_url."""
        response_url = payload.get("response_url", "")
        reply, thread = self.start_slash_task(
            payload.get("text", ""), payload.get("channel_id", ""), response_url
        )
        try:
            self.post_webhook(response_url, reply)
        except SlackError as e:
            logger.warning("slash command reply failed: %s", e)
        return thread

    # ── App mentions ────────────────────────────────────────────────────────

    def handle_event(self, payload: dict) -> threading.Thread | None:
        """Handle an events_api payload; only app_mention events start tasks."""
        event = payload.get("event") or {}
        if event.get("type") != "app_mention":
            return None
        if event.get("bot_id") or event.get("subtype"):
            return None

        prompt = commands.strip_mentions(event.get("text", ""))
        if not prompt:
            return None

        ts = (event.get("ts") or "").strip()
        thread_ts = (event.get("thread_ts") or "").strip()
        root_ts = thread_ts or ts
        channel = (event.get("channel") or "").strip()
        if not root_ts or not channel:
            return None

        try:
            if thread_ts and thread_ts != ts:
                parent = self.store.find_latest_thread_task(channel, root_ts)
                if parent is None:
                    self._reply(channel, root_ts, f"❌ {NO_THREAD_CONTEXT}")
                    return None
                task, repo_path = commands.build_follow_up(self.store, parent, prompt, "slack")
            else:
                parsed = commands.parse_command_text(prompt)
                task, repo_path = commands.build_task(self.store, parsed, "slack")
        except FogError as e:
            self._reply(channel, root_ts, f"❌ {e}")
            return None

        commands.attach_slack_metadata(task, channel, root_ts)
        self._reply(channel, root_ts, slack_mod.start_text(task.branch, task.prompt))
        return self.runner.submit(task, repo_path)

    def _reply(self, channel: str, thread_ts: str, text: str):
        if self.slack_client is None:
            logger.warning("no Slack bot token; dropping reply to %s: %s", channel, text)
            return
        try:
            slack_mod.post_message(self.slack_client, channel, text, thread_ts)
        except SlackError as e:
            logger.warning("Slack reply to %s failed: %s", channel, e)
