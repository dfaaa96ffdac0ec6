"""Refund fraud risk scoring.

The score is rebuilt from stored counts on every call, so the same durable
state always yields the same assessment.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.models import FraudLog, RefundRequest

logger = get_logger("fraud_service")

WEIGHT_HIGH_REFUND_AMOUNT = 30
WEIGHT_REFUND_HISTORY = 40
WEIGHT_NEW_USER_INSTANT = 20
WEIGHT_RAPID_REQUESTS = 25

MAX_SCORE = 100
MEDIUM_FLOOR = 31
HIGH_FLOOR = 61

REFUND_HISTORY_DAYS = 30
REFUND_HISTORY_LIMIT = 3  # strictly more than this many approved refunds
NEW_ACCOUNT_AGE = timedelta(hours=24)
RAPID_WINDOW = timedelta(minutes=5)
RAPID_REQUEST_COUNT = 3

RISK_LOW = "LOW"
RISK_MEDIUM = "MEDIUM"
RISK_HIGH = "HIGH"

ACTION_APPROVE = "APPROVE"
ACTION_PARTIAL = "PARTIAL"
ACTION_ESCALATE = "ESCALATE"


@dataclass
class FraudAssessment:
    risk_score: int
    risk_level: str
    action: str
    triggers: List[str] = field(default_factory=list)
    refunds_in_last_30_days: int = 0
    recent_requests: int = 0


def count_recent_approved_refunds(db: Session, user_id: str, now: Optional[datetime] = None) -> int:
    """Approved or refunded negotiations for this user in the trailing 30 days."""
    now = now or datetime.now(timezone.utc)
    return (
        db.query(RefundRequest)
        .filter(
            RefundRequest.user_id == user_id,
            RefundRequest.status.in_(["approved", "refunded"]),
            RefundRequest.created_at >= now - timedelta(days=REFUND_HISTORY_DAYS),
        )
        .count()
    )


def count_recent_requests(db: Session, user_id: str, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    return (
        db.query(RefundRequest)
        .filter(
            RefundRequest.user_id == user_id,
            RefundRequest.created_at >= now - RAPID_WINDOW,
        )
        .count()
    )


def classify_score(score: int) -> tuple[str, str]:
    if score >= HIGH_FLOOR:
        return RISK_HIGH, ACTION_ESCALATE
    if score >= MEDIUM_FLOOR:
        return RISK_MEDIUM, ACTION_PARTIAL
    return RISK_LOW, ACTION_APPROVE


def score_signals(
    *,
    refund_amount: Decimal,
    refunds_in_last_30_days: int,
    recent_requests: int,
    account_age: Optional[timedelta],
    amount_threshold: Optional[Decimal] = None,
) -> FraudAssessment:
    amount_threshold = (
        amount_threshold if amount_threshold is not None else Decimal(str(settings.fraud_high_amount_threshold))
    )
    score = 0
    triggers: List[str] = []

    if Decimal(refund_amount) > amount_threshold:
        score += WEIGHT_HIGH_REFUND_AMOUNT
        triggers.append("high_refund_amount")

    if refunds_in_last_30_days > REFUND_HISTORY_LIMIT:
        score += WEIGHT_REFUND_HISTORY
        triggers.append("refund_history_abuse")

    if account_age is not None and account_age < NEW_ACCOUNT_AGE:
        score += WEIGHT_NEW_USER_INSTANT
        triggers.append("new_user_instant_refund")

    if recent_requests >= RAPID_REQUEST_COUNT:
        score += WEIGHT_RAPID_REQUESTS
        triggers.append("rapid_requests")

    score = min(score, MAX_SCORE)
    risk_level, action = classify_score(score)
    return FraudAssessment(
        risk_score=score,
        risk_level=risk_level,
        action=action,
        triggers=triggers,
        refunds_in_last_30_days=refunds_in_last_30_days,
        recent_requests=recent_requests,
    )


def _persist_log(db: Session, user_id: str, txn_id: Optional[str], refund_amount: Decimal, assessment: FraudAssessment) -> None:
    try:
        with db.begin_nested():
            db.add(
                FraudLog(
                    user_id=user_id,
                    txn_id=txn_id,
                    risk_score=assessment.risk_score,
                    risk_level=assessment.risk_level,
                    action=assessment.action,
                    triggers=list(assessment.triggers),
                    refund_amount=refund_amount,
                    refunds_in_last_30_days=assessment.refunds_in_last_30_days,
                    recent_requests=assessment.recent_requests,
                )
            )
    except Exception as e:
        logger.warning(
            "Fraud log persist failed (non-fatal)",
            extra={"context": {"user_id": user_id, "txn_id": txn_id, "error": str(e)}},
        )


def evaluate(
    db: Session,
    *,
    user_id: str,
    txn_id: Optional[str],
    refund_amount: Decimal,
    account_age: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> FraudAssessment:
    now = now or datetime.now(timezone.utc)
    assessment = score_signals(
        refund_amount=refund_amount,
        refunds_in_last_30_days=count_recent_approved_refunds(db, user_id, now),
        recent_requests=count_recent_requests(db, user_id, now),
        account_age=account_age,
    )
    _persist_log(db, user_id, txn_id, refund_amount, assessment)

    logger.info(
        "Fraud evaluation",
        extra={
            "context": {
                "user_id": user_id,
                "txn_id": txn_id,
                "score": assessment.risk_score,
                "level": assessment.risk_level,
                "action": assessment.action,
                "triggers": assessment.triggers,
            }
        },
    )
    return assessment
