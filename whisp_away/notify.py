"""
Desktop notifications via notify-send
"""

import logging
import subprocess

logger = logging.getLogger(__name__)

TITLE = "Voice Input"


class Notifier:
    """Best-effort desktop notifications; failures only reach the log"""

    def __init__(self, enabled: bool = True, title: str = TITLE):
        self.enabled = enabled
        self.title = title

    def send(self, message: str, timeout_ms: int = 2000) -> None:
        if not self.enabled:
            return
        logger.debug(f"Notification: {message}")
        try:
            result = subprocess.run(
                [
                    "notify-send", self.title, message,
                    "-t", str(timeout_ms),
                    "-h", "string:x-canonical-private-synchronous:voice",
                ],
                capture_output=True,
                timeout=2,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.info(f"[{self.title}] {message} (notify-send unavailable: {e})")
            return
        if result.returncode != 0:
            logger.info(f"[{self.title}] {message} (notify-send failed: {result.stderr.decode().strip()})")
