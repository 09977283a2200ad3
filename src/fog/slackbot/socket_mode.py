"""Slack Socket Mode: one outbound WebSocket, every envelope acked."""

import json
import logging
import threading
from typing import Callable

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from fog.integrations.slack import SLACK_TIMEOUT, SlackError
from fog.slackbot.handler import SlackHandler

logger = logging.getLogger(__name__)

INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 30.0
RECV_TIMEOUT = 1.0


class SocketModeClient:
    def __init__(
        self,
        app_token: str,
        handler: SlackHandler,
        stop_event: threading.Event,
        web_client: WebClient | None = None,
        connect: Callable = ws_connect,
    ):
        if not app_token:
            raise SlackError("socket mode requires an app token")
        self.app_token = app_token
        self.handler = handler
        self.stop_event = stop_event
        self.web_client = web_client or WebClient(timeout=SLACK_TIMEOUT)
        self._connect = connect
        self._backoff = INITIAL_BACKOFF
        self._thread: threading.Thread | None = None

    def start(self):
        """Run the reconnect loop on a background thread."""
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self.run, name="slack-socket-mode", daemon=True)
        self._thread.start()

    def join(self, timeout: float | None = None):
        if self._thread:
            self._thread.join(timeout=timeout)

    def run(self):
        """Connect, serve, reconnect with exponential backoff until stopped."""
        while not self.stop_event.is_set():
            try:
                self._serve_once()
                continue
            except (OSError, WebSocketException, SlackApiError, SlackError, ValueError) as e:
                logger.warning("socket mode connection error: %s; reconnecting in %.0fs", e, self._backoff)
            except Exception:
                logger.exception("socket mode loop crashed; reconnecting in %.0fs", self._backoff)
            if self.stop_event.wait(self._backoff):
                break
            self._backoff = min(self._backoff * 2, MAX_BACKOFF)
        logger.info("socket mode stopped")

    def open_connection_url(self) -> str:
        response = self.web_client.apps_connections_open(app_token=self.app_token)
        url = (response.get("url") or "").strip()
        if not url:
            raise SlackError("open socket mode session failed: missing websocket url")
        return url

    def _serve_once(self):
        url = self.open_connection_url()
        with self._connect(url) as ws:
            self._backoff = INITIAL_BACKOFF
            logger.info("socket mode connected")
            while not self.stop_event.is_set():
                try:
                    raw = ws.recv(timeout=RECV_TIMEOUT)
                except TimeoutError:
                    continue
                if self.handle_frame(ws, raw):
                    logger.info("socket mode disconnect requested")
                    return

    def handle_frame(self, ws, raw: str | bytes) -> bool:
        """Ack one envelope and dispatch it on its own thread.

        Returns True when Slack asks us to reconnect. Malformed frames are skipped.
        """
        try:
            envelope = json.loads(raw)
        except ValueError as e:
            logger.warning("skipping malformed socket mode frame: %s", e)
            return False
        if not isinstance(envelope, dict):
            logger.warning("skipping socket mode frame that is not an object")
            return False

        envelope_id = envelope.get("envelope_id")
        if envelope_id:
            ws.send(json.dumps({"envelope_id": envelope_id}))

        kind = envelope.get("type")
        if kind == "disconnect":
            return True
        if kind not in ("slash_commands", "events_api"):
            return False

        thread = threading.Thread(
            target=self.dispatch,
            args=(kind, envelope.get("payload") or {}, envelope_id),
            name=f"slack-{kind}",
            daemon=True,
        )
        thread.start()
        return False

    def dispatch(self, kind: str, payload: dict, envelope_id: str | None = None):
        try:
            if kind == "slash_commands":
                self.handler.handle_socket_slash(payload)
            elif kind == "events_api":
                self.handler.handle_event(payload)
        except Exception:
            logger.exception("failed to handle %s envelope %s", kind, envelope_id)
        finally:
            self.handler.store.release_thread()
