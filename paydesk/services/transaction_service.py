from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.models import RefundRequest, Transaction
from paydesk.services import escalation_service, payment_service, push_service
from paydesk.services.refund_policy import round_money
from paydesk.services.result import Result, guarded
from paydesk.services.sendbird_service import notify
from paydesk.services.state_machine import RefundStage, RefundStatus

logger = get_logger("transaction_service")

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"


def normalize_txn_id(txn_id: str) -> str:
    return (txn_id or "").strip().upper()


def find_transaction(db: Session, txn_id: str, user_id: str) -> Optional[Transaction]:
    """Lookup is always scoped to the owning user."""
    return (
        db.query(Transaction)
        .filter(Transaction.transaction_id == normalize_txn_id(txn_id), Transaction.user_id == user_id)
        .first()
    )


def get_recent_transactions(db: Session, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
    limit = limit or settings.duplicate_lookback
    return (
        db.query(Transaction)
        .filter(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc())
        .limit(limit)
        .all()
    )


def has_matching_duplicate(db: Session, transaction: Transaction) -> bool:
    """Another recent transaction of the same user with the same amount."""
    return any(
        other.transaction_id != transaction.transaction_id and Decimal(other.amount) == Decimal(transaction.amount)
        for other in get_recent_transactions(db, transaction.user_id)
    )


def mark_transaction_paid(db: Session, txn_id: str, user_id: str, payment_intent_id: Optional[str] = None) -> bool:
    values = {"status": STATUS_SUCCESS, "updated_at": datetime.now(timezone.utc)}
    if payment_intent_id:
        values["payment_intent_id"] = payment_intent_id
    updated = (
        db.query(Transaction)
        .filter(Transaction.transaction_id == normalize_txn_id(txn_id), Transaction.user_id == user_id)
        .update(values, synchronize_session=False)
    )
    db.commit()
    return updated > 0


async def execute_refund(
    db: Session,
    *,
    transaction: Transaction,
    channel_url: str,
    user_id: str,
    amount: Optional[Decimal] = None,
) -> Result[Decimal]:
    """Move the transaction to ``refunded`` once, then run the external refund.

    The conditional update on ``status = 'success'`` is the claim: a second
    caller finds no row to update and moves no money.
    """
    txn_id = transaction.transaction_id
    refund_amount = round_money(amount if amount is not None else transaction.amount)
    if refund_amount > round_money(transaction.amount):
        logger.warning(
            "Refund amount exceeds transaction amount",
            extra={"context": {"txn_id": txn_id, "user_id": user_id, "amount": str(refund_amount)}},
        )
        return Result.failure(
            f"Refund amount ${refund_amount} exceeds the ${transaction.amount} paid for {txn_id}", code="invalid_amount"
        )
    now = datetime.now(timezone.utc)

    claimed = (
        db.query(Transaction)
        .filter(
            Transaction.transaction_id == txn_id,
            Transaction.user_id == user_id,
            Transaction.status == STATUS_SUCCESS,
        )
        .update(
            {"status": STATUS_REFUNDED, "refunded_amount": refund_amount, "updated_at": now},
            synchronize_session=False,
        )
    )
    if not claimed:
        db.rollback()
        logger.warning(
            "Refund claim lost, transaction not refundable",
            extra={"context": {"txn_id": txn_id, "user_id": user_id}},
        )
        return Result.failure(f"Transaction {txn_id} is not refundable", code="not_refundable")

    db.query(RefundRequest).filter(
        RefundRequest.txn_id == txn_id,
        RefundRequest.user_id == user_id,
        RefundRequest.channel_url == channel_url,
    ).update(
        {
            "status": RefundStatus.REFUNDED.value,
            "refund_stage": RefundStage.COMPLETED.value,
            "updated_at": now,
        },
        synchronize_session=False,
    )
    db.commit()

    context = {"txn_id": txn_id, "user_id": user_id, "amount": str(refund_amount)}
    if transaction.payment_intent_id and payment_service.is_configured():
        await guarded(
            "stripe_refund",
            payment_service.create_refund(transaction.payment_intent_id, refund_amount),
            **context,
        )
    else:
        logger.info("Refund recorded without processor call", extra={"context": context})

    await notify(
        channel_url,
        f"Refund of ${refund_amount} for {txn_id} has been approved and initiated. "
        "It will reflect in your account within 5-7 business days.",
        {"type": "refund_status", "status": "refunded", "txnId": txn_id, "amount": str(refund_amount)},
    )

    desk_channel_url = escalation_service.get_desk_channel_url(db, channel_url)
    if desk_channel_url:
        await notify(
            desk_channel_url,
            f"Refund of ${refund_amount} for {txn_id} has been processed for customer {user_id}. Ticket can be closed.",
        )

    await guarded(
        "refund_push",
        push_service.notify_refund_processed(db, user_id, txn_id, refund_amount),
        **context,
    )
    return Result.success(refund_amount)
