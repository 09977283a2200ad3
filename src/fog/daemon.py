"""fogd: the long-running daemon serving the HTTP API, Slack and the cloud relay."""

import logging
import sys
import threading

import click
import uvicorn

from fog.cloud.relay import CLOUD_URL_SETTING, DEFAULT_POLL_INTERVAL, Relay
from fog.config import get_config
from fog.core.notifier import Notifier
from fog.core.runner import Runner
from fog.core.state import Store
from fog.errors import FogError
from fog.integrations import slack as slack_mod
from fog.slackbot.handler import SlackHandler
from fog.slackbot.socket_mode import SocketModeClient
from fog.web.app import create_app

logger = logging.getLogger(__name__)

JOIN_TIMEOUT = 10.0


@click.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8080, type=int, help="Port to listen on")
@click.option("--enable-slack", is_flag=True, help="Accept tasks from Slack")
@click.option("--slack-mode", type=click.Choice(["http", "socket"]), default="http", help="Slack ingress mode")
@click.option("--slack-secret", default=None, help="Slack signing secret (http mode)")
@click.option("--slack-bot-token", default=None, help="Slack bot token (xoxb-)")
@click.option("--slack-app-token", default=None, help="Slack app-level token (xapp-, socket mode)")
@click.option("--cloud-url", default=None, help="Fog cloud URL for the job relay")
@click.option("--cloud-poll-interval", default=DEFAULT_POLL_INTERVAL, type=float, help="Seconds between cloud polls")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def main(host, port, enable_slack, slack_mode, slack_secret, slack_bot_token, slack_app_token,
         cloud_url, cloud_poll_interval, verbose):
    """Run the fog daemon."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = get_config()
    slack_bot_token = slack_bot_token or config.slack_bot_token
    slack_app_token = slack_app_token or config.slack_app_token
    slack_secret = slack_secret or config.slack_signing_secret

    if enable_slack and slack_mode == "socket" and not (slack_bot_token and slack_app_token):
        click.echo("Error: --slack-mode socket requires --slack-bot-token and --slack-app-token", err=True)
        sys.exit(1)

    try:
        store = Store.open(config)
    except FogError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    stop = threading.Event()
    slack_client = slack_mod.get_client(slack_bot_token)
    runner = Runner(store, Notifier(slack_client=slack_client), config)
    loops = []

    slack_handler = None
    if enable_slack:
        slack_handler = SlackHandler(store, runner, slack_client=slack_client)
        if slack_mode == "socket":
            socket_client = SocketModeClient(slack_app_token, slack_handler, stop)
            socket_client.start()
            loops.append(socket_client)
            logger.info("Slack socket mode enabled")
        else:
            logger.info("Slack slash commands enabled at /slack/command")

    if not cloud_url:
        cloud_url, _ = store.get_setting(CLOUD_URL_SETTING)
    if cloud_url:
        try:
            relay = Relay.from_store(store, runner, stop, cloud_url, cloud_poll_interval)
        except FogError as e:
            click.echo(f"Error: cloud relay: {e}", err=True)
            store.close()
            sys.exit(1)
        relay.start()
        loops.append(relay)

    app = create_app(
        store=store,
        runner=runner,
        slack_handler=slack_handler if slack_mode == "http" else None,
        slack_signing_secret=slack_secret,
        config=config,
    )
    logger.info("fogd listening on http://%s:%d", host, port)
    try:
        uvicorn.run(app, host=host, port=port, log_level="debug" if verbose else "info")
    finally:
        stop.set()
        for loop in loops:
            loop.join(timeout=JOIN_TIMEOUT)
        store.close()
        logger.info("fogd stopped")


if __name__ == "__main__":
    main()
