"""Refund negotiation: reason_asked -> policy_evaluated -> completed.

Every stage change is a conditional UPDATE on the expected stage (and attempt
count), so two concurrent submissions for the same negotiation cannot both run
the policy or move money. The loser sees zero updated rows and does nothing.
"""

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.models import RefundRequest, Transaction
from paydesk.services import audit_service, feature_flags, fraud_service, push_service, refund_policy
from paydesk.services.conversation_service import account_age, get_or_create_user, update_conversation_state
from paydesk.services.escalation_service import EscalationError, open_ticket, send_desk_context
from paydesk.services.intent_service import detect_sentiment
from paydesk.services.refund_policy import REASON_LABELS, Decision, PolicyContext, PolicyResult, Priority, RefundReason
from paydesk.services.result import Result, guarded
from paydesk.services.sendbird_service import notify
from paydesk.services.state_machine import (
    ExecutionPath,
    InvalidTransitionError,
    RefundStage,
    RefundStatus,
    execution_path_for,
    transition,
)
from paydesk.services.transaction_service import STATUS_REFUNDED, STATUS_SUCCESS, execute_refund, has_matching_duplicate

logger = get_logger("negotiation_service")

ACTION_START = "refund_start"
ACTION_REASON = "refund_reason"
ACTION_ACCEPT_PARTIAL = "refund_accept_partial"
ACTION_DECLINE = "refund_decline"

DECISION_DECLINED = "declined"

MSG_ESCALATION_FAILED = (
    "We couldn't reach a support agent right now. Please tap 'Talk to Agent' again in a moment."
)


@dataclass
class NegotiationOutcome:
    decision: Optional[str] = None
    amount: Optional[Decimal] = None
    started: bool = False


def reason_buttons(txn_id: str) -> dict:
    return {
        "type": "action_buttons",
        "txnId": txn_id,
        "buttons": [
            {"label": REASON_LABELS[reason], "action": ACTION_REASON, "reason": reason.value}
            for reason in RefundReason
        ],
    }


def generate_coupon_code() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "COUP-" + "".join(secrets.choice(alphabet) for _ in range(6))


def get_refund_request(db: Session, user_id: str, txn_id: str, channel_url: str) -> Optional[RefundRequest]:
    return (
        db.query(RefundRequest)
        .filter(
            RefundRequest.user_id == user_id,
            RefundRequest.txn_id == txn_id,
            RefundRequest.channel_url == channel_url,
        )
        .first()
    )


def _upsert_request(db: Session, user_id: str, txn_id: str, channel_url: str) -> None:
    now = datetime.now(timezone.utc)
    reset = {
        "refund_stage": RefundStage.REASON_ASKED.value,
        "status": RefundStatus.PENDING.value,
        "negotiation_attempts": 0,
        "refund_reason": None,
        "final_decision": None,
        "coupon_code": None,
        "coupon_expires_at": None,
        "updated_at": now,
    }
    stmt = insert(RefundRequest).values(user_id=user_id, txn_id=txn_id, channel_url=channel_url, created_at=now, **reset)
    stmt = stmt.on_conflict_do_update(constraint="uq_refund_requests_negotiation", set_=reset)
    db.execute(stmt)


def _claim_stage(
    db: Session,
    record: RefundRequest,
    *,
    to_stage: RefundStage,
    expected_attempts: Optional[int] = None,
    expected_decision: Optional[str] = None,
    **values,
) -> bool:
    """Compare-and-set on the stage the caller read. False means someone else moved it."""
    from_stage = RefundStage(record.refund_stage)
    if from_stage != to_stage:
        try:
            transition(from_stage, to_stage)
        except InvalidTransitionError as e:
            logger.warning(str(e), extra={"context": {"refund_request_id": str(record.id)}})
            return False

    query = db.query(RefundRequest).filter(
        RefundRequest.id == record.id,
        RefundRequest.refund_stage == from_stage.value,
    )
    if expected_attempts is not None:
        query = query.filter(RefundRequest.negotiation_attempts == expected_attempts)
    if expected_decision is not None:
        query = query.filter(RefundRequest.final_decision == expected_decision)

    updated = query.update(
        {"refund_stage": to_stage.value, "updated_at": datetime.now(timezone.utc), **values},
        synchronize_session=False,
    )
    db.commit()
    return updated > 0


async def _reply_not_eligible(transaction: Transaction, channel_url: str) -> Result[NegotiationOutcome]:
    if transaction.status == STATUS_REFUNDED:
        message = f"A refund for {transaction.transaction_id} has already been processed."
    else:
        message = (
            "Refunds are only available for successful transactions. "
            f"{transaction.transaction_id} has status: {transaction.status}."
        )
    await notify(channel_url, message)
    return Result.success(NegotiationOutcome())


async def start_negotiation(
    db: Session, *, channel_url: str, user_id: str, transaction: Transaction
) -> Result[NegotiationOutcome]:
    if transaction.status != STATUS_SUCCESS:
        return await _reply_not_eligible(transaction, channel_url)

    txn_id = transaction.transaction_id
    _upsert_request(db, user_id, txn_id, channel_url)
    update_conversation_state(
        db,
        channel_url,
        user_id,
        active_txn_id=txn_id,
        refund_stage=RefundStage.REASON_ASKED.value,
        last_intent=ACTION_START,
    )
    db.commit()

    audit_service.log_refund_attempt(db, user_id=user_id, txn_id=txn_id, channel_url=channel_url, amount=transaction.amount)
    audit_service.track(db, "refund_request", user_id=user_id, channel_url=channel_url, txn_id=txn_id)
    db.commit()

    await notify(
        channel_url,
        f"I can help with a refund for {txn_id} (${transaction.amount}). Please select the reason for your request:",
        reason_buttons(txn_id),
    )
    return Result.success(NegotiationOutcome(started=True))


def _apply_gates(
    db: Session,
    *,
    policy: PolicyResult,
    path: ExecutionPath,
    transaction: Transaction,
    user_id: str,
) -> tuple[ExecutionPath, PolicyResult]:
    """Fraud scoring and auto-refund switch may only make a decision stricter."""
    if policy.decision in (Decision.APPROVED, Decision.PARTIAL) and feature_flags.is_enabled(
        db, feature_flags.FRAUD_ENGINE_ENABLED
    ):
        user = get_or_create_user(db, user_id)
        assessment = fraud_service.evaluate(
            db,
            user_id=user_id,
            txn_id=transaction.transaction_id,
            refund_amount=policy.amount,
            account_age=account_age(user),
        )
        if assessment.risk_level == fraud_service.RISK_HIGH:
            policy = PolicyResult(
                decision=Decision.ESCALATE,
                reason="fraud_risk_high",
                amount=refund_policy.round_money(0),
                message="Your request has been flagged for review. A senior agent will contact you shortly.",
                priority=Priority.HIGH,
            )
            path = ExecutionPath.ESCALATE_HIGH
        elif assessment.risk_level == fraud_service.RISK_MEDIUM and policy.decision == Decision.APPROVED:
            partial = refund_policy.half_amount(transaction.amount)
            policy = PolicyResult(
                decision=Decision.PARTIAL,
                reason="fraud_risk_medium",
                amount=partial,
                message=f"We can offer a 50% refund (${partial}) on this transaction right away.",
                priority=Priority.NORMAL,
            )
            path = ExecutionPath.OFFER_PARTIAL

    if path == ExecutionPath.AUTO_REFUND and not feature_flags.is_enabled(db, feature_flags.AUTO_REFUND_ENABLED):
        policy = PolicyResult(
            decision=Decision.ESCALATE,
            reason="auto_refund_disabled",
            amount=refund_policy.round_money(0),
            message="Your refund is eligible. An agent will review and confirm it shortly.",
            priority=Priority.NORMAL,
        )
        path = ExecutionPath.ESCALATE_NORMAL

    return path, policy


async def submit_reason(
    db: Session, *, channel_url: str, user_id: str, transaction: Transaction, reason: str
) -> Result[NegotiationOutcome]:
    try:
        reason = RefundReason(reason).value
    except ValueError:
        return Result.failure(f"Unknown refund reason: {reason}", code="invalid_reason")

    txn_id = transaction.transaction_id
    record = get_refund_request(db, user_id, txn_id, channel_url)
    if record is None:
        if transaction.status != STATUS_SUCCESS:
            return await _reply_not_eligible(transaction, channel_url)
        _upsert_request(db, user_id, txn_id, channel_url)
        db.commit()
        record = get_refund_request(db, user_id, txn_id, channel_url)

    attempts = record.negotiation_attempts or 0
    abuse_score = fraud_service.count_recent_approved_refunds(db, user_id)

    if attempts > 0:
        path = ExecutionPath.ESCALATE_NORMAL
        policy = PolicyResult(
            decision=Decision.ESCALATE,
            reason="repeat_attempt",
            amount=refund_policy.round_money(0),
            message="Connecting you with an agent to further assist with your refund request.",
            priority=Priority.NORMAL,
        )
    else:
        if transaction.status != STATUS_SUCCESS:
            return await _reply_not_eligible(transaction, channel_url)
        has_duplicate = reason == RefundReason.DUPLICATE.value and has_matching_duplicate(db, transaction)
        policy = refund_policy.evaluate(
            PolicyContext(
                amount=Decimal(transaction.amount),
                reason=reason,
                sentiment_priority=detect_sentiment(reason).priority,
                attempts=attempts,
                has_duplicate=has_duplicate,
                transaction_date=transaction.created_at,
                fraud_score=abuse_score,
            )
        )
        path = execution_path_for(policy.decision.value, policy.priority.value)
        path, policy = _apply_gates(db, policy=policy, path=path, transaction=transaction, user_id=user_id)

    to_stage = RefundStage.POLICY_EVALUATED if attempts == 0 else RefundStage.COMPLETED
    claimed = _claim_stage(
        db,
        record,
        to_stage=to_stage,
        expected_attempts=attempts,
        negotiation_attempts=attempts + 1,
        refund_reason=reason,
        final_decision=path.value,
    )
    if not claimed:
        logger.info(
            "Concurrent reason submission ignored",
            extra={"context": {"txn_id": txn_id, "user_id": user_id, "channel_url": channel_url}},
        )
        return Result.success(NegotiationOutcome())

    update_conversation_state(
        db,
        channel_url,
        user_id,
        refund_stage=to_stage.value,
        last_intent=ACTION_REASON,
    )
    audit_service.log_refund_attempt(
        db, user_id=user_id, txn_id=txn_id, channel_url=channel_url, amount=transaction.amount, reason=reason
    )
    db.commit()

    logger.info(
        "Refund policy decision",
        extra={
            "context": {
                "txn_id": txn_id,
                "user_id": user_id,
                "reason": reason,
                "rule": policy.reason,
                "path": path.value,
                "attempts": attempts,
                "abuse_score": abuse_score,
            }
        },
    )

    if path == ExecutionPath.AUTO_REFUND:
        return await _execute_auto_refund(db, record, transaction, channel_url, user_id, policy, reason)
    if path == ExecutionPath.OFFER_PARTIAL:
        return await _offer_partial(transaction, channel_url, policy)
    if path == ExecutionPath.OFFER_COUPON:
        return await _issue_coupon(db, record, transaction, channel_url, user_id, policy, reason)
    return await _escalate(db, record, transaction, channel_url, user_id, policy, path, reason, abuse_score)


async def _execute_auto_refund(db, record, transaction, channel_url, user_id, policy, reason):
    result = await execute_refund(
        db, transaction=transaction, channel_url=channel_url, user_id=user_id, amount=policy.amount
    )
    if not result.ok:
        return Result.failure(result.error, code=result.error_code)
    txn_id = transaction.transaction_id
    audit_service.log_refund_decision(
        db, user_id=user_id, txn_id=txn_id, channel_url=channel_url, decision=Decision.APPROVED.value, amount=result.value, reason=reason
    )
    audit_service.track(
        db,
        "refund_approved",
        user_id=user_id,
        channel_url=channel_url,
        txn_id=txn_id,
        metadata={"reason": reason, "action": ExecutionPath.AUTO_REFUND.value},
    )
    db.commit()
    return Result.success(NegotiationOutcome(decision=ExecutionPath.AUTO_REFUND.value, amount=result.value))


async def _offer_partial(transaction, channel_url, policy):
    txn_id = transaction.transaction_id
    half = refund_policy.half_amount(transaction.amount)
    await notify(
        channel_url,
        f"{policy.message} Would you like to accept a 50% refund of ${half}?",
        {
            "type": "action_buttons",
            "txnId": txn_id,
            "buttons": [
                {"label": f"Accept ${half} Refund", "action": ACTION_ACCEPT_PARTIAL, "txnId": txn_id},
                {"label": "Decline", "action": ACTION_DECLINE, "txnId": txn_id},
            ],
        },
    )
    return Result.success(NegotiationOutcome(decision=ExecutionPath.OFFER_PARTIAL.value, amount=half))


async def _issue_coupon(db, record, transaction, channel_url, user_id, policy, reason):
    txn_id = transaction.transaction_id
    code = generate_coupon_code()
    expires_at = datetime.now(timezone.utc) + timedelta(days=settings.coupon_valid_days)
    if not _claim_stage(
        db,
        record,
        to_stage=RefundStage.COMPLETED,
        status=RefundStatus.APPROVED.value,
        coupon_code=code,
        coupon_expires_at=expires_at,
    ):
        return Result.success(NegotiationOutcome())

    await notify(
        channel_url,
        f"{policy.message} Your compensation coupon: {code} (valid until {expires_at:%Y-%m-%d} on your next transaction).",
        {"type": "refund_status", "status": "coupon_issued", "txnId": txn_id, "couponCode": code},
    )
    audit_service.log_refund_decision(
        db, user_id=user_id, txn_id=txn_id, channel_url=channel_url, decision=Decision.COUPON.value, amount=0, reason=reason
    )
    audit_service.track(
        db,
        "refund_approved",
        user_id=user_id,
        channel_url=channel_url,
        txn_id=txn_id,
        metadata={"reason": reason, "action": ExecutionPath.OFFER_COUPON.value, "couponCode": code},
    )
    db.commit()
    return Result.success(NegotiationOutcome(decision=ExecutionPath.OFFER_COUPON.value))


def _desk_context(transaction, user_id, reason, policy, path, abuse_score) -> str:
    header = (
        "HIGH PRIORITY - Refund Escalation" if path == ExecutionPath.ESCALATE_HIGH else "Refund Escalation - Agent Review Required"
    )
    label = REASON_LABELS.get(RefundReason(reason), reason)
    return (
        "[Support Bot - Automated Context]\n\n"
        f"{header}\n\n"
        f"Customer : {user_id}\n"
        f"Transaction : {transaction.transaction_id} - ${transaction.amount}\n"
        f"Refund Reason : {label}\n"
        f"Policy Rule : {policy.reason}\n"
        f"Abuse Score : {abuse_score} approved refunds in last 30 days"
    )


async def _escalate(db, record, transaction, channel_url, user_id, policy, path, reason, abuse_score):
    txn_id = transaction.transaction_id
    if not _claim_stage(db, record, to_stage=RefundStage.COMPLETED):
        logger.info(
            "Escalation skipped, negotiation already moved on",
            extra={"context": {"txn_id": txn_id, "user_id": user_id, "channel_url": channel_url}},
        )
        return Result.success(NegotiationOutcome())

    try:
        desk_channel_url = await open_ticket(db, channel_url, user_id)
    except EscalationError as e:
        logger.error(
            "Refund escalation ticket failed",
            extra={"context": {"txn_id": txn_id, "user_id": user_id, "error": str(e)}},
        )
        await notify(channel_url, MSG_ESCALATION_FAILED)
        return Result.failure(str(e), code="escalation_failed")

    await notify(channel_url, policy.message, {"type": "priority_badge", "priority": policy.priority.value, "txnId": txn_id})
    await send_desk_context(
        desk_channel_url, user_id, _desk_context(transaction, user_id, reason, policy, path, abuse_score)
    )

    update_conversation_state(
        db,
        channel_url,
        user_id,
        escalation_status=policy.priority.value.lower(),
        priority=policy.priority.value,
        refund_stage=RefundStage.COMPLETED.value,
    )
    audit_service.log_escalation(
        db, user_id=user_id, channel_url=channel_url, txn_id=txn_id, priority=policy.priority.value, reason=reason
    )
    audit_service.track(
        db,
        "escalation",
        user_id=user_id,
        channel_url=channel_url,
        txn_id=txn_id,
        metadata={"reason": reason, "priority": policy.priority.value, "rule": policy.reason},
    )
    db.commit()
    await guarded("escalation_push", push_service.notify_escalation_created(db, user_id, txn_id))
    return Result.success(NegotiationOutcome(decision=path.value))


async def accept_partial(
    db: Session, *, channel_url: str, user_id: str, transaction: Transaction
) -> Result[NegotiationOutcome]:
    record = get_refund_request(db, user_id, transaction.transaction_id, channel_url)
    if (
        record is None
        or record.final_decision != ExecutionPath.OFFER_PARTIAL.value
        or record.refund_stage != RefundStage.POLICY_EVALUATED.value
    ):
        return Result.failure("No pending partial refund offer", code="invalid_stage")

    if not _claim_stage(
        db,
        record,
        to_stage=RefundStage.COMPLETED,
        expected_decision=ExecutionPath.OFFER_PARTIAL.value,
    ):
        return Result.failure("Partial refund offer already resolved", code="invalid_stage")

    partial = refund_policy.half_amount(transaction.amount)
    result = await execute_refund(db, transaction=transaction, channel_url=channel_url, user_id=user_id, amount=partial)
    if not result.ok:
        return Result.failure(result.error, code=result.error_code)

    audit_service.log_refund_decision(
        db,
        user_id=user_id,
        txn_id=transaction.transaction_id,
        channel_url=channel_url,
        decision=Decision.PARTIAL.value,
        amount=partial,
        reason=record.refund_reason,
    )
    audit_service.track(
        db,
        "refund_approved",
        user_id=user_id,
        channel_url=channel_url,
        txn_id=transaction.transaction_id,
        metadata={"action": ExecutionPath.OFFER_PARTIAL.value, "amount": str(partial)},
    )
    db.commit()
    return Result.success(NegotiationOutcome(decision=ExecutionPath.OFFER_PARTIAL.value, amount=partial))


async def decline(db: Session, *, channel_url: str, user_id: str, transaction: Transaction) -> Result[NegotiationOutcome]:
    txn_id = transaction.transaction_id
    record = get_refund_request(db, user_id, txn_id, channel_url)
    if record is None:
        return Result.failure(f"No refund request found for {txn_id}", code="not_found")
    if record.refund_stage == RefundStage.COMPLETED.value:
        return Result.failure("Refund request already completed", code="invalid_stage")

    if not _claim_stage(db, record, to_stage=RefundStage.COMPLETED, status=RefundStatus.REJECTED.value):
        return Result.failure("Refund request already completed", code="invalid_stage")

    update_conversation_state(db, channel_url, user_id, refund_stage=RefundStage.COMPLETED.value, last_intent=ACTION_DECLINE)
    await notify(
        channel_url,
        f"Understood. Your refund request for {txn_id} has been cancelled. Is there anything else I can help you with?",
    )
    audit_service.log_refund_decision(db, user_id=user_id, txn_id=txn_id, channel_url=channel_url, decision=DECISION_DECLINED)
    audit_service.track(db, "refund_rejected", user_id=user_id, channel_url=channel_url, txn_id=txn_id)
    db.commit()
    return Result.success(NegotiationOutcome(decision=DECISION_DECLINED))


ACTION_HANDLERS = {
    ACTION_START: start_negotiation,
    ACTION_REASON: submit_reason,
    ACTION_ACCEPT_PARTIAL: accept_partial,
    ACTION_DECLINE: decline,
}


async def handle_action(
    db: Session,
    *,
    action: str,
    channel_url: str,
    user_id: str,
    transaction: Transaction,
    reason: Optional[str] = None,
) -> Result[NegotiationOutcome]:
    handler = ACTION_HANDLERS.get(action)
    if handler is None:
        return Result.failure(f"Unknown refund action: {action}", code="invalid_action")
    if action == ACTION_REASON:
        if not reason:
            return Result.failure("reason is required", code="invalid_reason")
        return await handler(db, channel_url=channel_url, user_id=user_id, transaction=transaction, reason=reason)
    return await handler(db, channel_url=channel_url, user_id=user_id, transaction=transaction)
