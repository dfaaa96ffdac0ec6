from typing import Optional

import httpx
from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.models import User
from paydesk.services import feature_flags
from paydesk.services.rate_limit_service import DAY_MS, WINDOW_PUSH, check_window

logger = get_logger("push_service")

FCM_SEND_URL = "https://fcm.googleapis.com/fcm/send"
_STALE_TOKEN_ERRORS = {"NotRegistered", "InvalidRegistration"}


async def _post_fcm(payload: dict) -> dict:
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.post(
            FCM_SEND_URL,
            headers={"Authorization": f"key={settings.fcm_server_key}", "Content-Type": "application/json"},
            json=payload,
        )
    response.raise_for_status()
    return response.json()


async def send_push_notification(
    db: Session,
    user_id: str,
    title: str,
    body: str,
    data: Optional[dict] = None,
    *,
    redis_client=None,
) -> bool:
    """Deliver a push notification. Every skip or failure returns False quietly."""
    if not settings.fcm_server_key or not feature_flags.is_enabled(db, feature_flags.PUSH_NOTIFICATIONS_ENABLED):
        return False

    user = db.query(User).filter(User.user_id == user_id).first()
    if not user or not user.fcm_token:
        return False

    quota = await check_window(user_id, WINDOW_PUSH, settings.push_daily_limit, DAY_MS, redis_client=redis_client)
    if not quota.allowed:
        logger.info("Push quota reached, skipping", extra={"context": {"user_id": user_id}})
        return False

    payload = {
        "to": user.fcm_token,
        "notification": {"title": title, "body": body},
        "data": {k: str(v) for k, v in (data or {}).items()},
        "priority": "high",
    }
    try:
        result = await _post_fcm(payload)
    except Exception as e:
        logger.warning(f"Push send failed for {user_id}: {e}")
        return False

    errors = {item.get("error") for item in result.get("results") or [] if item.get("error")}
    if errors & _STALE_TOKEN_ERRORS:
        user.fcm_token = None
        db.commit()
        logger.info("Cleared stale FCM token", extra={"context": {"user_id": user_id}})
        return False

    return bool(result.get("success"))


async def notify_refund_processed(db: Session, user_id: str, txn_id: str, amount) -> bool:
    return await send_push_notification(
        db,
        user_id,
        "Refund Processed",
        f"Your refund of ${amount} for {txn_id} has been issued.",
        {"txnId": txn_id, "type": "refund"},
    )


async def notify_escalation_created(db: Session, user_id: str, txn_id: Optional[str] = None) -> bool:
    return await send_push_notification(
        db,
        user_id,
        "Agent Assigned",
        "A support agent has been assigned to your case.",
        {"txnId": txn_id or "", "type": "escalation"},
    )


async def notify_payment_success(db: Session, user_id: str, txn_id: str) -> bool:
    return await send_push_notification(
        db,
        user_id,
        "Payment Successful",
        f"Payment for {txn_id} was successful.",
        {"txnId": txn_id, "type": "payment_success"},
    )
