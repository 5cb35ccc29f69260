"""Webhook alerts for syncs that land in the error state."""

import logging
from typing import Optional

import httpx

from shared.config import get_env

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10.0


class NotificationService:
    """Posts sync failures to an optional webhook (Slack-compatible ``text`` payload)."""

    def __init__(self, webhook_url: Optional[str] = None, enabled: Optional[bool] = None):
        if enabled is None:
            enabled = get_env("ENABLE_NOTIFICATIONS", "false").lower() == "true"
        self.enabled = enabled
        self.webhook_url = webhook_url or get_env("NOTIFICATION_WEBHOOK_URL")

    @staticmethod
    def format_sync_error(error_message: str, cursor: Optional[str], context: Optional[dict]) -> str:
        lines = [
            "Readwise sync failed",
            f"Error: {error_message}",
            f"Resume cursor: {cursor or 'start of collection'}",
        ]
        if context:
            lines.extend(f"{key}: {value}" for key, value in context.items())
        return "\n".join(lines)

    async def send_sync_error_notification(
        self,
        error_message: str,
        cursor: Optional[str] = None,
        context: Optional[dict] = None
    ) -> bool:
        """
        Report a failed sync step.

        Delivery problems are logged and swallowed; the sync state has
        already been persisted when this runs.

        Returns:
            True if the webhook accepted the alert
        """
        if not self.enabled:
            logger.debug("Notifications disabled, not reporting sync failure")
            return False

        text = self.format_sync_error(error_message, cursor, context)
        logger.warning(f"Sync failure alert: {text}")

        if not self.webhook_url:
            return False

        try:
            async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
                response = await client.post(
                    self.webhook_url,
                    json={"text": text, "error": error_message, "cursor": cursor}
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to deliver sync failure alert: {e}")
            return False

        logger.info("Sync failure alert delivered")
        return True
