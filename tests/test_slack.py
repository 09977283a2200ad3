"""Tests for Slack ingress, notifications and the Socket Mode loop."""

import json
import queue
import threading
import urllib.error

import pytest

from fog.core.notifier import Notifier
from fog.db.models import COMPLETED, FAILED, Task
from fog.integrations import slack as slack_mod
from fog.integrations.slack import SlackError
from fog.slackbot.handler import NO_THREAD_CONTEXT, SlackHandler
from fog.slackbot.socket_mode import MAX_BACKOFF, SocketModeClient


class FakeWebClient:
    def __init__(self):
        self.posts = []

    def chat_postMessage(self, channel, text, thread_ts=None):
        self.posts.append({"channel": channel, "text": text, "thread_ts": thread_ts})
        return {"channel": channel, "ts": "999.1"}


class FakeRunner:
    """Persists submitted tasks without running them."""

    def __init__(self, store):
        self.store = store
        self.submitted = []

    def submit(self, task, repo_path):
        self.store.save_task(task)
        self.submitted.append((task, str(repo_path)))
        return None


class RecordingWebhook:
    def __init__(self):
        self.calls = []

    def __call__(self, url, payload):
        self.calls.append((url, payload))


@pytest.fixture
def web_client():
    return FakeWebClient()


@pytest.fixture
def runner(store):
    return FakeRunner(store)


@pytest.fixture
def webhook():
    return RecordingWebhook()


@pytest.fixture
def handler(store, runner, web_client, webhook):
    store.set_setting("default_tool", "claude")
    return SlackHandler(store, runner, slack_client=web_client, post_webhook=webhook)


def mention(text, ts="100.1", thread_ts=None, channel="C1", **extra):
    event = {"type": "app_mention", "text": text, "ts": ts, "channel": channel, **extra}
    if thread_ts:
        event["thread_ts"] = thread_ts
    return {"event": event}


class TestSlashCommands:
    def test_starts_task(self, handler, runner, repo):
        payload, _ = handler.start_slash_task(
            "[repo='acme/api' autopr=true] Add login", "C1", "https://hooks.slack.com/commands/1"
        )

        assert payload == {"response_type": "in_channel", "text": "🚀 Starting task on branch `fog/add-login`"}
        task, repo_path = runner.submitted[0]
        assert repo_path == repo.base_worktree_path
        assert task.options.create_pr is True
        assert task.options.run_async is True
        assert task.metadata["slack_channel_id"] == "C1"
        assert task.metadata["slack_response_url"] == "https://hooks.slack.com/commands/1"

    def test_parse_error_is_ephemeral(self, handler, runner, repo):
        payload, thread = handler.start_slash_task("Add login", "C1")

        assert thread is None
        assert payload["response_type"] == "ephemeral"
        assert payload["text"].startswith("❌ Error: options block is required")
        assert runner.submitted == []

    def test_unknown_repo(self, handler, repo):
        payload, _ = handler.start_slash_task("[repo='acme/nope'] Add login", "C1")
        assert payload["text"] == "❌ Error: unknown repo: acme/nope"

    def test_socket_slash_replies_to_response_url(self, handler, webhook, repo):
        handler.handle_socket_slash(
            {"text": "[repo='acme/api'] Add login", "channel_id": "C1", "response_url": "https://hooks.slack.com/r"}
        )
        assert webhook.calls == [
            ("https://hooks.slack.com/r", {"response_type": "in_channel", "text": "🚀 Starting task on branch `fog/add-login`"})
        ]


class TestMentions:
    def test_root_mention_starts_task(self, handler, runner, web_client, repo):
        handler.handle_event(mention("<@UFOG> [repo='acme/api' tool='aider'] Add login"))

        task, _ = runner.submitted[0]
        assert task.ai_tool == "aider"
        assert task.metadata["slack_root_ts"] == "100.1"
        assert web_client.posts == [
            {"channel": "C1", "text": "🚀 Starting task on branch `fog/add-login`\nAdd login", "thread_ts": "100.1"}
        ]

    def test_follow_up_in_thread(self, handler, runner, web_client, repo):
        handler.handle_event(mention("<@UFOG> [repo='acme/api'] Add login"))
        parent, _ = runner.submitted[0]

        handler.handle_event(mention("<@UFOG> fix error handling", ts="100.5", thread_ts="100.1"))

        child, _ = runner.submitted[1]
        assert child.parent_task_id == parent.id
        assert child.options.base_branch == parent.branch
        assert child.metadata["slack_root_ts"] == "100.1"
        assert child.branch == "fog/fix-error-handling"

    def test_follow_up_uses_latest_task_in_thread(self, handler, runner, store, repo):
        handler.handle_event(mention("<@UFOG> [repo='acme/api'] Add login"))
        handler.handle_event(mention("<@UFOG> add tests", ts="100.5", thread_ts="100.1"))
        second, _ = runner.submitted[1]

        handler.handle_event(mention("<@UFOG> update docs", ts="100.9", thread_ts="100.1"))

        third, _ = runner.submitted[2]
        assert third.parent_task_id == second.id

    def test_follow_up_rejects_options(self, handler, runner, web_client, repo):
        handler.handle_event(mention("<@UFOG> [repo='acme/api'] Add login"))
        handler.handle_event(mention("<@UFOG> [repo='acme/api'] again", ts="100.5", thread_ts="100.1"))

        assert len(runner.submitted) == 1
        assert "options are only allowed for the initial task" in web_client.posts[-1]["text"]

    def test_thread_without_task(self, handler, runner, web_client, repo):
        handler.handle_event(mention("<@UFOG> fix it", ts="200.5", thread_ts="200.1"))

        assert runner.submitted == []
        assert web_client.posts == [{"channel": "C1", "text": f"❌ {NO_THREAD_CONTEXT}", "thread_ts": "200.1"}]

    def test_parse_error_replied_in_thread(self, handler, runner, web_client, repo):
        handler.handle_event(mention("<@UFOG> just do it"))

        assert runner.submitted == []
        assert web_client.posts[0]["text"].startswith("❌ options block is required")
        assert web_client.posts[0]["thread_ts"] == "100.1"

    @pytest.mark.parametrize(
        "payload",
        [
            {"event": {"type": "message", "text": "[repo='acme/api'] x", "ts": "1", "channel": "C1"}},
            mention("[repo='acme/api'] x", bot_id="B1"),
            mention("[repo='acme/api'] x", subtype="message_changed"),
            mention("<@UFOG>"),
        ],
    )
    def test_ignored_events(self, handler, runner, web_client, repo, payload):
        assert handler.handle_event(payload) is None
        assert runner.submitted == []
        assert web_client.posts == []


class TestNotifier:
    def make_task(self, state=COMPLETED, **metadata):
        return Task(
            id="t1", repo_id=1, prompt="p", ai_tool="claude", branch="fog/x", state=state,
            error="boom" if state == FAILED else None, metadata=metadata,
        )

    def test_thread_reply(self, web_client):
        Notifier(slack_client=web_client).notify(
            self.make_task(pr_url="https://github.com/acme/api/pull/7", slack_channel_id="C1", slack_root_ts="1.1")
        )
        post = web_client.posts[0]
        assert post["thread_ts"] == "1.1"
        assert post["text"].startswith("✅ Task completed: `fog/x`")
        assert post["text"].endswith("\nPR: https://github.com/acme/api/pull/7")

    def test_response_url(self, webhook):
        Notifier(post_webhook=webhook).notify(
            self.make_task(FAILED, slack_channel_id="C1", slack_response_url="https://hooks.slack.com/r")
        )
        assert webhook.calls == [
            ("https://hooks.slack.com/r", {"response_type": "in_channel", "text": "❌ Task failed: `fog/x`\nboom"})
        ]

    def test_slack_failure_is_logged(self, caplog):
        def broken(url, payload):
            raise SlackError("status=500")

        Notifier(post_webhook=broken).notify(
            self.make_task(slack_channel_id="C1", slack_response_url="https://hooks.slack.com/r")
        )
        assert "status=500" in caplog.text

    def test_slack_transport_error_is_logged(self, caplog):
        def unreachable(url, payload):
            raise urllib.error.URLError("connection refused")

        Notifier(post_webhook=unreachable).notify(
            self.make_task(slack_channel_id="C1", slack_response_url="https://hooks.slack.com/r")
        )
        assert "connection refused" in caplog.text

    def test_desktop_without_slack(self):
        calls = []
        Notifier(desktop=lambda title, msg: calls.append((title, msg))).notify(self.make_task(), "/repo")
        assert calls == [("Fog Task Complete", "Finished successfully on fog/x (/repo)")]


class TestMessageText:
    @pytest.mark.parametrize("seconds,text", [(5, "5s"), (65, "1m5s"), (3723, "1h2m3s")])
    def test_format_duration(self, seconds, text):
        assert slack_mod.format_duration(seconds) == text

    def test_error_text(self):
        assert slack_mod.error_text("nope") == "❌ Error: nope"


# ── Socket Mode ───────────────────────────────────────────────────────────────


class RecordingEvent(threading.Event):
    """Records backoff waits and stops the loop after a fixed number of them."""

    def __init__(self, limit):
        super().__init__()
        self.limit = limit
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        if len(self.waits) >= self.limit:
            self.set()
            return True
        return False


class FakeSocket:
    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def send(self, data):
        self.sent.append(json.loads(data))

    def recv(self, timeout=None):
        if not self.frames:
            raise TimeoutError
        return self.frames.pop(0)


class ScriptedWebClient:
    """apps.connections.open that follows a script of outcomes."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)

    def apps_connections_open(self, app_token):
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("network down")
        if isinstance(outcome, Exception):
            raise outcome
        return {"ok": True, "url": outcome}


class FakeStore:
    def __init__(self):
        self.released = queue.Queue()

    def release_thread(self):
        self.released.put(threading.current_thread().name)


class RecordingHandler:
    def __init__(self):
        self.store = FakeStore()
        self.calls = queue.Queue()

    def handle_socket_slash(self, payload):
        self.calls.put(("slash", payload))

    def handle_event(self, payload):
        self.calls.put(("event", payload))


class TestSocketMode:
    def client(self, stop, outcomes=(), frames=(), handler=None):
        socket = FakeSocket(frames)
        client = SocketModeClient(
            "xapp-1", handler or RecordingHandler(), stop,
            web_client=ScriptedWebClient(outcomes), connect=lambda url: socket,
        )
        return client, socket

    def test_requires_app_token(self):
        with pytest.raises(SlackError):
            SocketModeClient("", RecordingHandler(), threading.Event(), web_client=ScriptedWebClient([]))

    def test_acks_and_dispatches(self):
        handler = RecordingHandler()
        client, socket = self.client(threading.Event(), handler=handler)

        slash = json.dumps({"envelope_id": "e1", "type": "slash_commands", "payload": {"text": "x"}})
        event = json.dumps({"envelope_id": "e2", "type": "events_api", "payload": {"event": {}}})
        assert client.handle_frame(socket, slash) is False
        assert client.handle_frame(socket, event) is False

        assert socket.sent == [{"envelope_id": "e1"}, {"envelope_id": "e2"}]
        calls = [handler.calls.get(timeout=5), handler.calls.get(timeout=5)]
        assert sorted(calls, key=lambda c: c[0]) == [("event", {"event": {}}), ("slash", {"text": "x"})]

    def test_slow_handler_does_not_delay_acks(self):
        gate = threading.Event()

        class Slow(RecordingHandler):
            def handle_event(self, payload):
                gate.wait(timeout=5)
                super().handle_event(payload)

        handler = Slow()
        client, socket = self.client(threading.Event(), handler=handler)
        first = json.dumps({"envelope_id": "e1", "type": "events_api", "payload": {"n": 1}})
        second = json.dumps({"envelope_id": "e2", "type": "events_api", "payload": {"n": 2}})

        client.handle_frame(socket, first)
        client.handle_frame(socket, second)

        assert socket.sent == [{"envelope_id": "e1"}, {"envelope_id": "e2"}]
        assert handler.calls.empty()
        gate.set()
        handled = {handler.calls.get(timeout=5)[1]["n"], handler.calls.get(timeout=5)[1]["n"]}
        assert handled == {1, 2}

    def test_disconnect(self):
        client, socket = self.client(threading.Event())
        assert client.handle_frame(socket, json.dumps({"type": "disconnect"})) is True

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]"])
    def test_malformed_frame_is_skipped(self, raw):
        handler = RecordingHandler()
        client, socket = self.client(threading.Event(), handler=handler)
        assert client.handle_frame(socket, raw) is False
        assert socket.sent == []
        assert handler.calls.empty()

    def test_malformed_frame_keeps_connection(self):
        stop = RecordingEvent(limit=1)
        frames = ["{garbage", json.dumps({"type": "disconnect"})]
        client, socket = self.client(stop, outcomes=["wss://x"], frames=frames)
        client.run()
        # the disconnect after the bad frame was still read on the same socket
        assert socket.frames == []
        assert stop.waits == [1]

    def test_handler_errors_do_not_escape(self):
        class Broken(RecordingHandler):
            def handle_event(self, payload):
                raise RuntimeError("boom")

        handler = Broken()
        client, socket = self.client(threading.Event(), handler=handler)
        frame = json.dumps({"envelope_id": "e1", "type": "events_api", "payload": {}})
        assert client.handle_frame(socket, frame) is False
        assert socket.sent == [{"envelope_id": "e1"}]
        # the dispatch thread still releases its store connection
        assert handler.store.released.get(timeout=5).startswith("slack-events_api")

    def test_backoff_doubles_and_caps(self):
        stop = RecordingEvent(limit=7)
        client, _ = self.client(stop)
        client.run()
        assert stop.waits == [1, 2, 4, 8, 16, MAX_BACKOFF, MAX_BACKOFF]

    def test_backoff_resets_after_connect(self):
        stop = RecordingEvent(limit=3)
        disconnect = json.dumps({"type": "disconnect"})
        client, _ = self.client(stop, outcomes=[OSError("a"), OSError("b"), "wss://x"], frames=[disconnect])
        client.run()
        assert stop.waits == [1, 2, 1]
