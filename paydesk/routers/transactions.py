from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from paydesk.database import get_db
from paydesk.logging_config import get_logger
from paydesk.schemas.transaction import RetryPaymentResponse, TransactionListRequest, TransactionRequest
from paydesk.services import audit_service, payment_service
from paydesk.services.conversation_service import update_conversation_state
from paydesk.services.result import guarded
from paydesk.services.sendbird_service import get_chat_service, notify
from paydesk.services.transaction_service import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_REFUNDED,
    STATUS_SUCCESS,
    find_transaction,
    get_recent_transactions,
    normalize_txn_id,
)

logger = get_logger("transactions")

router = APIRouter()

LIST_LIMIT = 5
DEMO_PAYMENT_URL = "https://stripe.com/docs/testing"

STATUS_MARKERS = {STATUS_FAILED: "[x]", STATUS_SUCCESS: "[ok]", STATUS_PENDING: "[..]", STATUS_REFUNDED: "[refunded]"}

BUTTON_AGENT = {"label": "Talk to Agent", "action": "escalate"}
BUTTON_FAQ = {"label": "FAQ", "action": "faq"}


def status_buttons(status: str, txn_id: str) -> list:
    if status == STATUS_FAILED:
        return [{"label": "Retry Payment", "action": "retry_payment", "txnId": txn_id}, BUTTON_AGENT, BUTTON_FAQ]
    if status == STATUS_SUCCESS:
        return [{"label": "Request Refund", "action": "refund_start", "txnId": txn_id}, BUTTON_AGENT]
    if status == STATUS_PENDING:
        return [BUTTON_AGENT, BUTTON_FAQ]
    return [BUTTON_AGENT]


async def _join_bot(channel_url: str) -> None:
    await guarded("add_bot_to_channel", get_chat_service().add_bot_to_channel(channel_url), channel_url=channel_url)


@router.post("/transaction-list")
async def transaction_list(request: TransactionListRequest, db: Session = Depends(get_db)):
    """Last few transactions as tappable buttons."""
    await _join_bot(request.channel_url)
    transactions = get_recent_transactions(db, request.user_id, limit=LIST_LIMIT)
    if not transactions:
        await notify(request.channel_url, "No transactions found for your account.")
        return {"success": True, "count": 0}

    buttons = [
        {
            "label": f"{t.transaction_id} · ${t.amount} · {STATUS_MARKERS.get(t.status, '?')} {t.status}",
            "action": "view_transaction",
            "txnId": t.transaction_id,
        }
        for t in transactions
    ]
    await notify(
        request.channel_url,
        "Here are your recent transactions. Tap one to manage it:",
        {"type": "action_buttons", "buttons": buttons},
    )
    return {"success": True, "count": len(transactions)}


@router.post("/view-transaction")
async def view_transaction(request: TransactionRequest, db: Session = Depends(get_db)):
    txn_id = normalize_txn_id(request.txn_id)
    transaction = find_transaction(db, txn_id, request.user_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail=f"Transaction {request.txn_id} not found")

    await _join_bot(request.channel_url)
    update_conversation_state(
        db, request.channel_url, request.user_id, active_txn_id=txn_id, last_intent="transaction_status"
    )
    db.commit()

    await notify(
        request.channel_url,
        f"Transaction {txn_id} · ${transaction.amount} · Status: {transaction.status}",
        {"type": "action_buttons", "txnId": txn_id, "buttons": status_buttons(transaction.status, txn_id)},
    )
    return {"success": True, "status": transaction.status}


@router.post("/retry-payment", response_model=RetryPaymentResponse)
async def retry_payment(request: TransactionRequest, db: Session = Depends(get_db)):
    """Hosted checkout link for a failed payment, or a demo reply without Stripe."""
    txn_id = normalize_txn_id(request.txn_id)
    transaction = find_transaction(db, txn_id, request.user_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail=f"Transaction {request.txn_id} not found")
    if transaction.status != STATUS_FAILED:
        raise HTTPException(status_code=409, detail=f"Transaction {txn_id} is {transaction.status}, not failed")

    await _join_bot(request.channel_url)

    if not payment_service.is_configured():
        logger.info("Retry payment in demo mode", extra={"context": {"txn_id": txn_id, "user_id": request.user_id}})
        await notify(
            request.channel_url,
            f"[DEMO] Stripe is not configured yet. In production, 'Retry Payment' opens a secure Stripe Checkout "
            f"for ${transaction.amount} ({txn_id}). Add STRIPE_SECRET_KEY to enable real payments.",
        )
        return RetryPaymentResponse(
            paymentUrl=DEMO_PAYMENT_URL,
            demo=True,
            message="Add STRIPE_SECRET_KEY to enable real Stripe Checkout.",
        )

    try:
        payment_url = await payment_service.create_checkout_session(
            txn_id, transaction.amount, request.channel_url, request.user_id
        )
    except Exception as e:
        logger.error(
            "Checkout session creation failed",
            extra={"context": {"txn_id": txn_id, "user_id": request.user_id, "error": str(e)}},
        )
        raise HTTPException(status_code=502, detail="Could not create a payment link")

    await notify(
        request.channel_url,
        f"Your secure payment link for {txn_id} (${transaction.amount}) is ready. "
        "Complete the payment and you'll be redirected back here when done.",
    )
    audit_service.log_payment_retry(
        db, user_id=request.user_id, txn_id=txn_id, channel_url=request.channel_url, method="stripe_checkout"
    )
    audit_service.track(
        db,
        "payment_retry",
        user_id=request.user_id,
        channel_url=request.channel_url,
        txn_id=txn_id,
        metadata={"method": "stripe_checkout", "amount": transaction.amount},
    )
    db.commit()
    return RetryPaymentResponse(paymentUrl=payment_url)
