"""Discord webhook notification integration."""

import logging
from typing import Any

import httpx

from mkvauto.config import MkvautoConfig

logger = logging.getLogger(__name__)

COLOR_GREEN = 3066993  # Success
COLOR_BLUE = 5793266  # Info
COLOR_RED = 15158332  # Error


class DiscordNotifier:
    """Sends notifications to a Discord webhook."""

    def __init__(self, config: MkvautoConfig):
        self.config = config
        self.webhook_url = config.discord_webhook
        self.client = httpx.Client(
            timeout=config.notification_timeout,
            headers={"User-Agent": "mkvauto/0.1.0"},
        )

    def _post(self, payload: dict[str, Any], summary: str) -> bool:
        if not self.webhook_url:
            logger.debug("No Discord webhook configured, skipping notification")
            return False

        try:
            response = self.client.post(self.webhook_url, json=payload)
            response.raise_for_status()
            logger.debug(f"Sent notification: {summary}")
            return True

        except httpx.RequestError as e:
            logger.exception(f"Failed to send notification: {e}")
            return False
        except httpx.HTTPStatusError as e:
            logger.exception(
                f"Discord webhook error {e.response.status_code}: {e.response.text}",
            )
            return False

    def send_embed(self, title: str, description: str, color: int) -> bool:
        """Post a single embed."""
        embed = {"title": title, "description": description, "color": color}
        return self._post({"embeds": [embed]}, title)

    def send_message(self, message: str) -> bool:
        """Post plain text without an embed."""
        return self._post({"content": message}, message[:50])

    def send_rip_complete(self, disc_name: str, titles_ripped: int, media_kind: str) -> bool:
        return self.send_embed(
            "✅ Rip Complete",
            f"**{disc_name}** ({media_kind})\n"
            f"{titles_ripped} title(s) ripped and queued for encoding",
            COLOR_GREEN,
        )

    def send_encode_complete(self, filename: str, media_kind: str) -> bool:
        return self.send_embed(
            "🎬 Encode Complete",
            f"**{filename}**\nProfile: {media_kind}",
            COLOR_BLUE,
        )

    def send_error(self, operation: str, error_message: str) -> bool:
        return self.send_embed(
            "❌ Error",
            f"**{operation} failed**\n```\n{error_message}\n```",
            COLOR_RED,
        )

    def test_notification(self) -> bool:
        """Send a test notification."""
        return self.send_message("mkvauto notifications are working correctly!")

    def close(self) -> None:
        self.client.close()
