from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from paydesk.database import get_db
from paydesk.logging_config import get_logger
from paydesk.models import RefundRequest
from paydesk.routers import raise_for_result
from paydesk.schemas.refund import ProcessRefundRequest, RefundActionRequest, RefundResponse
from paydesk.services import audit_service, negotiation_service
from paydesk.services.state_machine import EXECUTABLE_STATUSES
from paydesk.services.transaction_service import execute_refund, find_transaction

logger = get_logger("refund")

router = APIRouter()


@router.post("/refund-action", response_model=RefundResponse)
async def refund_action(request: RefundActionRequest, db: Session = Depends(get_db)):
    """Advance a refund negotiation from a button press."""
    transaction = find_transaction(db, request.txn_id, request.user_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail=f"Transaction {request.txn_id} not found")

    result = await negotiation_service.handle_action(
        db,
        action=request.action,
        channel_url=request.channel_url,
        user_id=request.user_id,
        transaction=transaction,
        reason=request.reason,
    )
    raise_for_result(result)
    outcome = result.value
    return RefundResponse(success=True, decision=outcome.decision, amount=outcome.amount)


@router.post("/process-refund", response_model=RefundResponse)
async def process_refund(request: ProcessRefundRequest, db: Session = Depends(get_db)):
    """Execute a refund that a negotiation already authorized."""
    transaction = find_transaction(db, request.txn_id, request.user_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail=f"Transaction {request.txn_id} not found")

    authorized = (
        db.query(RefundRequest)
        .filter(
            RefundRequest.user_id == request.user_id,
            RefundRequest.txn_id == transaction.transaction_id,
            RefundRequest.channel_url == request.channel_url,
            RefundRequest.status.in_(EXECUTABLE_STATUSES),
        )
        .first()
    )
    if authorized is None:
        logger.warning(
            "Refund execution without an authorizing request",
            extra={"context": {"txn_id": request.txn_id, "user_id": request.user_id}},
        )
        raise HTTPException(status_code=403, detail="No pending or approved refund request for this transaction")

    result = await execute_refund(
        db,
        transaction=transaction,
        channel_url=request.channel_url,
        user_id=request.user_id,
        amount=request.amount,
    )
    raise_for_result(result)

    audit_service.log_refund_decision(
        db,
        user_id=request.user_id,
        txn_id=transaction.transaction_id,
        channel_url=request.channel_url,
        decision="EXECUTED",
        amount=result.value,
    )
    db.commit()
    return RefundResponse(success=True, decision="refunded", amount=result.value)
