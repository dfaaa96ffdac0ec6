"""Telegram bot bridge: inbound bot messages are forwarded into a chat channel."""

from typing import Any, Optional

import httpx
from pydantic import ValidationError
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.models import TelegramUser
from paydesk.schemas.telegram import TelegramUpdate
from paydesk.services import feature_flags
from paydesk.services.conversation_service import get_or_create_user
from paydesk.services.idempotency_service import SOURCE_TELEGRAM, is_duplicate
from paydesk.services.rate_limit_service import MINUTE_MS, WINDOW_TELEGRAM, check_window
from paydesk.services.result import guarded
from paydesk.services.sendbird_service import SendbirdAPIError, get_chat_service

logger = get_logger("telegram_service")

MSG_TOO_FAST = "You're sending messages too quickly. Please wait a minute before trying again."

OUTCOME_DISABLED = "disabled"
OUTCOME_IGNORED = "ignored"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_RATE_LIMITED = "rate_limited"
OUTCOME_FORWARDED = "forwarded"


def chat_user_id_for(telegram_id: str) -> str:
    return f"tg_{telegram_id}"


def channel_url_for(telegram_id: str) -> str:
    return f"tg_channel_{telegram_id}"


async def send_message(chat_id: str, text: str) -> bool:
    """Reply to a Telegram chat. Failures are logged and reported as False."""
    token = settings.telegram_bot_token
    if not token:
        logger.warning("Telegram reply skipped, TELEGRAM_BOT_TOKEN is not set")
        return False

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                f"https://api.telegram.org/bot{token}/sendMessage",
                json={"chat_id": chat_id, "text": text},
            )
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send Telegram message: {e}")
        return False


async def _create_channel(telegram_id: str, chat_user_id: str, display_name: str) -> str:
    chat = get_chat_service()
    channel_url = channel_url_for(telegram_id)
    try:
        created = await chat.create_channel(
            channel_url, f"Telegram Support - {display_name}", [chat_user_id, chat.bot_id]
        )
    except SendbirdAPIError as e:
        # Already created by an earlier, unrecorded attempt
        logger.info(
            "Telegram channel create failed, using the deterministic url",
            extra={"context": {"telegram_id": telegram_id, "status_code": e.status_code}},
        )
        return channel_url
    return created.get("channel_url") or channel_url


async def ensure_telegram_user(db: Session, telegram_id: str, username: Optional[str] = None) -> TelegramUser:
    """Map a Telegram chat to its chat user and channel, creating both on first contact."""
    mapping = db.query(TelegramUser).filter(TelegramUser.telegram_id == telegram_id).first()
    if mapping:
        return mapping

    chat_user_id = chat_user_id_for(telegram_id)
    display_name = username or f"Telegram User {telegram_id}"
    await guarded(
        "create_chat_user",
        get_chat_service().create_user(chat_user_id, display_name),
        telegram_id=telegram_id,
    )
    channel_url = await _create_channel(telegram_id, chat_user_id, username or telegram_id)

    get_or_create_user(db, chat_user_id)
    db.execute(
        insert(TelegramUser)
        .values(telegram_id=telegram_id, chat_user_id=chat_user_id, channel_url=channel_url, username=username)
        .on_conflict_do_nothing(index_elements=["telegram_id"])
    )
    db.commit()
    logger.info(
        "Telegram user mapped",
        extra={"context": {"telegram_id": telegram_id, "user_id": chat_user_id, "channel_url": channel_url}},
    )
    return db.query(TelegramUser).filter(TelegramUser.telegram_id == telegram_id).first()


async def handle_update(db: Session, raw: Any, *, redis_client=None) -> str:
    if not feature_flags.is_enabled(db, feature_flags.TELEGRAM_ENABLED):
        logger.debug("Telegram bridge is off, update ignored")
        return OUTCOME_DISABLED

    try:
        update = TelegramUpdate.model_validate(raw)
    except ValidationError:
        logger.debug("Malformed Telegram update ignored")
        return OUTCOME_IGNORED

    message = update.message
    text = (message.text or "").strip() if message else ""
    if not text:
        return OUTCOME_IGNORED

    if update.update_id is not None and await is_duplicate(
        db, str(update.update_id), SOURCE_TELEGRAM, redis_client=redis_client
    ):
        return OUTCOME_DUPLICATE

    telegram_id = str(message.chat.id)
    window = await check_window(
        telegram_id,
        WINDOW_TELEGRAM,
        settings.telegram_rate_limit_minute,
        MINUTE_MS,
        redis_client=redis_client,
    )
    if not window.allowed:
        logger.info("Telegram user rate limited", extra={"context": {"telegram_id": telegram_id}})
        await send_message(telegram_id, MSG_TOO_FAST)
        return OUTCOME_RATE_LIMITED

    sender = message.sender
    username = (sender.username or sender.first_name) if sender else None
    mapping = await ensure_telegram_user(db, telegram_id, username)
    await get_chat_service().send_channel_message(mapping.channel_url, mapping.chat_user_id, text)
    logger.info(
        "Telegram message forwarded",
        extra={"context": {"telegram_id": telegram_id, "channel_url": mapping.channel_url}},
    )
    return OUTCOME_FORWARDED
