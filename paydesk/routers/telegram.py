from typing import Any

from fastapi import APIRouter, BackgroundTasks, Request

from paydesk.database import SessionLocal
from paydesk.logging_config import get_logger
from paydesk.schemas.webhook import WebhookAck
from paydesk.services.telegram_service import handle_update

logger = get_logger("telegram")

router = APIRouter()


async def process_update(raw: Any) -> None:
    db = SessionLocal()
    try:
        await handle_update(db, raw)
    except Exception as e:
        db.rollback()
        logger.error(f"Telegram update processing failed: {e}", exc_info=True)
    finally:
        db.close()


@router.post("/telegram-webhook", response_model=WebhookAck)
async def telegram_webhook(request: Request, background_tasks: BackgroundTasks):
    """Always acknowledged; Telegram redelivers anything that is not a 200."""
    try:
        raw = await request.json()
    except ValueError:
        logger.warning("Telegram webhook body is not JSON")
        return WebhookAck(success=True, message="ignored")

    background_tasks.add_task(process_update, raw)
    return WebhookAck(success=True)
