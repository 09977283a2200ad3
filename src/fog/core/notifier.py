"""Completion notifications routed back to where a task came from."""

import logging
from typing import Callable

from slack_sdk import WebClient

from fog.db.models import FAILED, Task
from fog.integrations import desktop as desktop_mod
from fog.integrations import slack as slack_mod
from fog.integrations.slack import SlackError

logger = logging.getLogger(__name__)


class Notifier:
    """Slack-origin tasks reply in Slack; everything else gets a desktop notification."""

    def __init__(
        self,
        slack_client: WebClient | None = None,
        desktop: Callable[[str, str], bool] = desktop_mod.notify,
        post_webhook: Callable[[str, dict], None] = slack_mod.post_response_url,
    ):
        self.slack_client = slack_client
        self.desktop = desktop
        self.post_webhook = post_webhook

    def notify(self, task: Task, repo_path: str = ""):
        channel = task.metadata.get("slack_channel_id", "")
        if channel:
            self._notify_slack(task, channel)
        else:
            self._notify_desktop(task, repo_path)

    def _notify_slack(self, task: Task, channel: str):
        root_ts = task.metadata.get("slack_root_ts", "")
        response_url = task.metadata.get("slack_response_url", "")
        try:
            if root_ts and self.slack_client:
                slack_mod.post_message(self.slack_client, channel, slack_mod.completion_text(task), root_ts)
            elif response_url:
                self.post_webhook(response_url, slack_mod.completion_payload(task))
            elif self.slack_client:
                slack_mod.post_message(self.slack_client, channel, slack_mod.completion_text(task))
            else:
                logger.warning("no Slack route for task %s in channel %s", task.id, channel)
        except (SlackError, OSError) as e:
            logger.warning("Slack notification for task %s failed: %s", task.id, e)

    def _notify_desktop(self, task: Task, repo_path: str):
        where = repo_path or task.worktree_path or ""
        if task.state == FAILED:
            self.desktop("Fog Task Failed", f"Failed on {task.branch} ({where}): {task.error}")
        else:
            self.desktop("Fog Task Complete", f"Finished successfully on {task.branch} ({where})")
