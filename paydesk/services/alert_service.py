"""Operator alerts delivered through a Telegram bot."""

from typing import Optional

import httpx

from paydesk.config import settings
from paydesk.logging_config import get_logger, redact

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = settings.alert_bot_token
ALERT_CHAT_ID = settings.alert_chat_id

_LEVEL_MARKERS = {"INFO": "[i]", "WARNING": "[!]", "ERROR": "[x]", "CRITICAL": "[!!!]"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{_LEVEL_MARKERS.get(level, '[*]')} *paydesk {level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in redact(context).items())
        text += f"\n\n```\n{context_str}\n```"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send an alert to the operator chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict, credentials are masked

    Returns:
        True if sent successfully
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={
                    "chat_id": ALERT_CHAT_ID,
                    "text": format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("CRITICAL", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)
