"""Audit trail and analytics events.

Writes run inside a SAVEPOINT so a failure never rolls back the caller's work
and never propagates.
"""

from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from paydesk.logging_config import get_logger
from paydesk.models import AnalyticsEvent, AuditLog
from paydesk.services.result import Result

logger = get_logger("audit_service")


def _jsonable(details: Optional[dict]) -> dict:
    if not details:
        return {}
    return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in details.items()}


def log_action(
    db: Session,
    action_type: str,
    *,
    user_id: Optional[str] = None,
    channel_url: Optional[str] = None,
    txn_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> Result[None]:
    try:
        with db.begin_nested():
            db.add(
                AuditLog(
                    user_id=user_id,
                    action_type=action_type,
                    channel_url=channel_url,
                    txn_id=txn_id,
                    details=_jsonable(details),
                )
            )
        return Result.success()
    except Exception as e:
        logger.warning(
            "Audit write failed (non-fatal)",
            extra={"context": {"action_type": action_type, "user_id": user_id, "error": str(e)}},
        )
        return Result.failure(str(e), code="audit_failed")


def track(
    db: Session,
    event_type: str,
    *,
    user_id: Optional[str] = None,
    channel_url: Optional[str] = None,
    txn_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> Result[None]:
    try:
        with db.begin_nested():
            db.add(
                AnalyticsEvent(
                    event_type=event_type,
                    user_id=user_id,
                    channel_url=channel_url,
                    txn_id=txn_id,
                    event_metadata=_jsonable(metadata),
                )
            )
        return Result.success()
    except Exception as e:
        logger.warning(
            "Analytics write failed (non-fatal)",
            extra={"context": {"event_type": event_type, "user_id": user_id, "error": str(e)}},
        )
        return Result.failure(str(e), code="analytics_failed")


def log_refund_attempt(db: Session, *, user_id: str, txn_id: str, channel_url: str, amount, reason: Optional[str] = None):
    return log_action(
        db,
        "refund_attempt",
        user_id=user_id,
        channel_url=channel_url,
        txn_id=txn_id,
        details={"amount": amount, "reason": reason},
    )


def log_refund_decision(
    db: Session,
    *,
    user_id: str,
    txn_id: str,
    channel_url: str,
    decision: str,
    amount=None,
    reason: Optional[str] = None,
):
    return log_action(
        db,
        "refund_decision",
        user_id=user_id,
        channel_url=channel_url,
        txn_id=txn_id,
        details={"decision": decision, "amount": amount, "reason": reason},
    )


def log_escalation(
    db: Session,
    *,
    user_id: str,
    channel_url: str,
    priority: str,
    reason: Optional[str] = None,
    txn_id: Optional[str] = None,
):
    return log_action(
        db,
        "escalation",
        user_id=user_id,
        channel_url=channel_url,
        txn_id=txn_id,
        details={"priority": priority, "reason": reason},
    )


def log_payment_retry(db: Session, *, user_id: str, txn_id: str, channel_url: str, method: str):
    return log_action(
        db,
        "payment_retry",
        user_id=user_id,
        channel_url=channel_url,
        txn_id=txn_id,
        details={"method": method},
    )
