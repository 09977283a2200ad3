"""Local desktop notifications."""

import logging
import shutil
import subprocess
import sys

logger = logging.getLogger(__name__)


def _osascript_quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def notify(title: str, message: str) -> bool:
    """Show a desktop notification. Returns False when no notifier is installed."""
    if sys.platform == "darwin" and shutil.which("osascript"):
        script = f"display notification {_osascript_quote(message)} with title {_osascript_quote(title)}"
        cmd = ["osascript", "-e", script]
    elif shutil.which("notify-send"):
        cmd = ["notify-send", title, message]
    else:
        logger.debug("no desktop notifier available for %r", title)
        return False

    result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
    if result.returncode != 0:
        logger.warning("desktop notification failed: %s", result.stderr.strip())
        return False
    return True
