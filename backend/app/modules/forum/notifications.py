"""
Moderation notifications.

Posts moderation outcomes to the staff Telegram chat through the Bot API.
Does nothing when no bot token or chat is configured.
"""

from typing import Any

import httpx
from loguru import logger
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.models.forum import ForumReport, ForumTopic


class NotifierSettings(BaseSettings):
    """Telegram staff chat configuration."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    telegram_notifications_enabled: bool = True


class ModerationNotifier:
    """
    Notification sink for moderation events.

    Usage:
        notifier = ModerationNotifier()
        await notifier.report_filed(report)
    """

    REPORT_TEMPLATE = """
🚩 <b>New report #{report_id}</b>

Message: <b>{subject}</b> by {author}
Reported by: {reporter}
Reason: {comment}
    """.strip()

    def __init__(
        self,
        bot_token: str | None = None,
        chat_id: str | None = None,
    ) -> None:
        """
        Initialize notifier.

        Args:
            bot_token: Telegram bot token (or from env)
            chat_id: Staff chat ID (or from env)
        """
        settings = NotifierSettings()

        self.bot_token = bot_token or settings.telegram_bot_token
        self.chat_id = chat_id or settings.telegram_chat_id
        self.enabled = (
            settings.telegram_notifications_enabled
            and bool(self.bot_token)
            and bool(self.chat_id)
        )
        self.api_base = f"https://api.telegram.org/bot{self.bot_token}"

        if not self.enabled:
            logger.info("Moderation notifications disabled (Telegram not configured)")

    async def send_message(self, text: str) -> dict[str, Any] | None:
        """
        Send message to the staff chat.

        Returns:
            API response or None when disabled or on error
        """
        if not self.enabled:
            return None

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.api_base}/sendMessage",
                    json={
                        "chat_id": self.chat_id,
                        "text": text,
                        "parse_mode": "HTML",
                        "disable_notification": True,
                    },
                    timeout=10.0,
                )
                response.raise_for_status()
                result = response.json()

                if not result.get("ok"):
                    logger.error(f"Telegram API error: {result}")
                    return None

                return result

        except httpx.HTTPStatusError as e:
            logger.error(f"Telegram HTTP error: {e.response.status_code}")
            return None
        except httpx.RequestError as e:
            logger.error(f"Telegram request error: {e}")
            return None

    async def report_filed(self, report: ForumReport) -> bool:
        text = self.REPORT_TEMPLATE.format(
            report_id=report.id,
            subject=report.message_subject,
            author=report.message_author_name,
            reporter=report.reporter_name,
            comment=report.comment[:300],
        )
        return await self.send_message(text) is not None

    async def report_closed(self, report: ForumReport, moderator_name: str) -> bool:
        text = f"✅ Report #{report.id} closed by <b>{moderator_name}</b>"
        return await self.send_message(text) is not None

    async def topic_moderated(
        self,
        topic: ForumTopic,
        action: str,
        moderator_name: str,
    ) -> bool:
        """Announce a lock, unlock, sticky or move of a topic."""
        text = f"🛠 Topic <b>{topic.subject}</b> {action} by <b>{moderator_name}</b>"
        return await self.send_message(text) is not None


# Singleton instance
_moderation_notifier: ModerationNotifier | None = None


def get_moderation_notifier() -> ModerationNotifier:
    """Get or create moderation notifier singleton."""
    global _moderation_notifier
    if _moderation_notifier is None:
        _moderation_notifier = ModerationNotifier()
    return _moderation_notifier
