"""Slack Web API, response_url webhooks, request signing and message text."""

import logging
from dataclasses import dataclass

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from slack_sdk.signature import SignatureVerifier
from slack_sdk.webhook import WebhookClient

from fog.db.models import FAILED, Task

logger = logging.getLogger(__name__)

SLACK_TIMEOUT = 20


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None) -> WebClient | None:
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    return WebClient(token=token, timeout=SLACK_TIMEOUT)


def post_message(client: WebClient, channel: str, text: str, thread_ts: str | None = None) -> SlackMessage:
    """Post text to a channel, threaded under thread_ts when given."""
    try:
        response = client.chat_postMessage(channel=channel, text=text, thread_ts=thread_ts or None)
    except SlackApiError as e:
        raise SlackError(f"chat.postMessage failed: {e.response.get('error', e)}") from e
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def post_response_url(response_url: str, payload: dict):
    """Send a payload to a slash command's response_url."""
    if not response_url.strip():
        return
    resp = WebhookClient(response_url, timeout=SLACK_TIMEOUT).send_dict(payload)
    if resp.status_code // 100 != 2:
        raise SlackError(f"response_url post failed: status={resp.status_code} body={resp.body}")


def verify_request(signing_secret: str, body: bytes | str, headers: dict) -> bool:
    return SignatureVerifier(signing_secret).is_valid_request(body, headers)


# ── Message text ──────────────────────────────────────────────────────────────


def format_duration(seconds: float) -> str:
    """Render a duration like 1h2m3s, rounded to the second."""
    total = int(round(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def start_text(branch: str, prompt: str | None = None) -> str:
    text = f"🚀 Starting task on branch `{branch}`"
    if prompt:
        text += f"\n{prompt}"
    return text


def completion_text(task: Task) -> str:
    if task.state == FAILED:
        return f"❌ Task failed: `{task.branch}`\n{task.error}"
    text = f"✅ Task completed: `{task.branch}` ({format_duration(task.duration)})"
    if pr_url := task.metadata.get("pr_url"):
        text += f"\nPR: {pr_url}"
    return text


def error_text(message: str) -> str:
    return f"❌ Error: {message}"


def ack_payload(branch: str) -> dict:
    return {"response_type": "in_channel", "text": start_text(branch)}


def error_payload(message: str) -> dict:
    return {"response_type": "ephemeral", "text": error_text(message)}


def completion_payload(task: Task) -> dict:
    return {"response_type": "in_channel", "text": completion_text(task)}
