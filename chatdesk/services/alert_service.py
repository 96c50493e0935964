"""Operational alerts pushed to a Telegram chat."""

from typing import Optional

import httpx

from chatdesk.config import settings
from chatdesk.logging_config import get_logger

logger = get_logger("alert_service")

LEVEL_MARKERS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_MARKERS.get(level, '📢')} *{level}* [chatdesk]\n\n{message}"
    if context:
        lines = "\n".join(f"  {key}: {value}" for key, value in context.items())
        text += f"\n\n```\n{lines}\n```"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Push an alert to the ops chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: human readable summary
        context: ids and error details

    Returns:
        True if Telegram accepted the message. Delivery problems are logged, never raised.
    """
    bot_token = settings.alert_bot_token
    chat_id = settings.alert_chat_id
    if not bot_token or not chat_id:
        logger.warning(
            "Alert not configured",
            extra={"context": {"level": level, "alert": message, **(context or {})}},
        )
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{bot_token}/sendMessage",
                json={
                    "chat_id": chat_id,
                    "text": format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
            return response.status_code == 200
    except Exception as exc:
        logger.error("Failed to send alert", extra={"context": {"level": level, "error": str(exc)}})
        return False


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)

