from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.database import SessionLocal, get_db
from paydesk.logging_config import get_logger
from paydesk.schemas.webhook import IgnoredEvent, MessageSendEvent, WebhookAck, parse_chat_event
from paydesk.services import audit_service, escalation_service, payment_service, push_service
from paydesk.services.alert_service import alert_error, alert_warning
from paydesk.services.conversation_service import get_or_create_user
from paydesk.services.idempotency_service import SOURCE_SENDBIRD, SOURCE_STRIPE, is_duplicate, release_event
from paydesk.services.message_router import route_message
from paydesk.services.rate_limit_service import check_user_rate_limit
from paydesk.services.result import guarded
from paydesk.services.sendbird_service import notify
from paydesk.services.transaction_service import mark_transaction_paid

logger = get_logger("webhook")

router = APIRouter()


async def handle_message_event(db: Session, event: MessageSendEvent) -> Optional[str]:
    """Dedup, throttle and route one message. Returns the route taken, or None when dropped."""
    context = {"message_id": event.message_id, "user_id": event.sender_id, "channel_url": event.channel_url}

    audit_service.log_action(
        db,
        "webhook_received",
        user_id=event.sender_id,
        channel_url=event.channel_url,
        details={"message_id": event.message_id, "message_length": len(event.text)},
    )
    db.commit()

    if await is_duplicate(db, event.message_id, SOURCE_SENDBIRD):
        return None

    if event.sender_id != settings.support_bot_id:
        decision = await check_user_rate_limit(event.sender_id)
        if not decision.allowed:
            logger.warning("Rate limit hit", extra={"context": {**context, "window": decision.reason}})
            audit_service.log_action(
                db,
                "rate_limit_hit",
                user_id=event.sender_id,
                channel_url=event.channel_url,
                details={"window": decision.reason, "limit": decision.limit},
            )
            db.commit()
            await notify(event.channel_url, decision.message)
            return None

        get_or_create_user(db, event.sender_id)
        db.commit()

    outcome = await route_message(db, event)
    logger.info("Message routed", extra={"context": {**context, "route": outcome.route}})
    return outcome.route


async def process_chat_event(raw: Any) -> None:
    """Background half of the chat webhook; runs after the 200 has been sent."""
    event = parse_chat_event(raw)
    if isinstance(event, IgnoredEvent):
        logger.debug(f"Ignoring chat event: {event.reason}")
        return

    db = SessionLocal()
    try:
        await handle_message_event(db, event)
    except Exception as e:
        db.rollback()
        logger.error(
            f"Chat event processing failed: {e}",
            extra={"context": {"message_id": event.message_id, "channel_url": event.channel_url}},
            exc_info=True,
        )
        alert_error("Chat event processing failed", {"message_id": event.message_id, "error": str(e)})
    finally:
        db.close()


@router.post("/sendbird-webhook", response_model=WebhookAck)
async def sendbird_webhook(request: Request, background_tasks: BackgroundTasks):
    """Always acknowledged; the platform retries anything that is not a 200."""
    try:
        raw = await request.json()
    except ValueError:
        logger.warning("Chat webhook body is not JSON")
        return WebhookAck(success=True, message="ignored")

    background_tasks.add_task(process_chat_event, raw)
    return WebhookAck(success=True)


def _field(obj: Any, key: str) -> Any:
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


async def handle_checkout_completed(db: Session, session: Any) -> None:
    metadata = _field(session, "metadata") or {}
    txn_id = _field(metadata, "txnId")
    channel_url = _field(metadata, "channelUrl")
    user_id = _field(metadata, "userId")
    payment_intent_id = _field(session, "payment_intent")

    if txn_id and user_id:
        if mark_transaction_paid(db, txn_id, user_id, payment_intent_id):
            logger.info("Transaction marked paid", extra={"context": {"txn_id": txn_id, "user_id": user_id}})
        audit_service.track(
            db,
            "payment_retry",
            user_id=user_id,
            channel_url=channel_url,
            txn_id=txn_id,
            metadata={"status": "success", "payment_intent_id": payment_intent_id},
        )
        db.commit()

    if channel_url:
        await notify(channel_url, f"Payment for {txn_id} was successful! Your transaction is now complete. Thank you.")
        desk_channel_url = escalation_service.get_desk_channel_url(db, channel_url)
        if desk_channel_url:
            await notify(
                desk_channel_url,
                f"Customer {user_id} successfully retried payment for {txn_id}. Ticket can be closed.",
            )

    if txn_id and user_id:
        await guarded("payment_push", push_service.notify_payment_success(db, user_id, txn_id), txn_id=txn_id)


@router.post("/payment-webhook")
async def payment_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await request.body()
    try:
        event = payment_service.verify_webhook_event(payload, request.headers.get("stripe-signature"))
    except payment_service.PaymentNotConfiguredError:
        logger.warning("Payment webhook called but Stripe is not configured")
        raise HTTPException(status_code=503, detail="Payment webhook not configured")
    except payment_service.PaymentSignatureError as e:
        logger.warning(f"Payment webhook signature rejected: {e}")
        alert_warning("Payment webhook signature rejected", {"error": str(e)})
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_id = _field(event, "id")
    event_type = _field(event, "type")
    if await is_duplicate(db, event_id, SOURCE_STRIPE):
        return {"received": True, "duplicate": True}

    if event_type == payment_service.CHECKOUT_COMPLETED:
        try:
            await handle_checkout_completed(db, _field(_field(event, "data"), "object"))
        except Exception:
            db.rollback()
            await release_event(db, event_id, SOURCE_STRIPE)
            raise
    else:
        logger.info(f"Unhandled payment event type: {event_type}")

    return {"received": True}
