from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from paydesk.database import get_db
from paydesk.logging_config import get_logger
from paydesk.schemas.webhook import EscalateRequest, EscalateResponse
from paydesk.services import audit_service, escalation_service
from paydesk.services.conversation_service import update_conversation_state
from paydesk.services.result import guarded
from paydesk.services.sendbird_service import get_chat_service

logger = get_logger("escalation")

router = APIRouter()


@router.post("/escalate", response_model=EscalateResponse)
async def escalate(request: EscalateRequest, db: Session = Depends(get_db)):
    """'Talk to Agent' button: open a ticket or confirm the live one."""
    await guarded(
        "add_bot_to_channel",
        get_chat_service().add_bot_to_channel(request.channel_url),
        channel_url=request.channel_url,
    )

    try:
        outcome = await escalation_service.escalate(db, request.channel_url, request.user_id)
    except escalation_service.EscalationError as e:
        logger.error(
            "Escalation failed",
            extra={"context": {"channel_url": request.channel_url, "user_id": request.user_id, "error": str(e)}},
        )
        raise HTTPException(status_code=502, detail="Could not create a support ticket")

    if not outcome.created:
        return EscalateResponse(success=True, message="Already escalated", ticket_id=outcome.ticket_id)

    update_conversation_state(db, request.channel_url, request.user_id, escalation_status="normal")
    audit_service.log_escalation(
        db, user_id=request.user_id, channel_url=request.channel_url, priority="NORMAL", reason="user_request"
    )
    audit_service.track(
        db,
        "escalation",
        user_id=request.user_id,
        channel_url=request.channel_url,
        metadata={"source": "button", "ticket_id": outcome.ticket_id},
    )
    db.commit()
    return EscalateResponse(success=True, message="Escalated", ticket_id=outcome.ticket_id)
