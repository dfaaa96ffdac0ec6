"""Deterministic refund decision table.

Rules are checked in a fixed order and the first match wins:

1. fraud reason or HIGH sentiment      -> ESCALATE (HIGH)
2. abuse score >= limit                -> ESCALATE (HIGH)
3. small amount inside refund window   -> APPROVED, full amount
4. duplicate charge                    -> APPROVED if verified, else ESCALATE
5. service issue                       -> COUPON
6. accidental payment                  -> PARTIAL 50% on first attempt, else ESCALATE
7. anything else                       -> ESCALATE

The only data the engine needs from storage (the abuse score) is passed in by
the caller, so ``evaluate`` does no I/O.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from paydesk.config import settings

CENTS = Decimal("0.01")
PARTIAL_RATIO = Decimal("0.5")


class Decision(str, Enum):
    APPROVED = "APPROVED"
    PARTIAL = "PARTIAL"
    COUPON = "COUPON"
    ESCALATE = "ESCALATE"


class Priority(str, Enum):
    NORMAL = "NORMAL"
    HIGH = "HIGH"


class RefundReason(str, Enum):
    DUPLICATE = "duplicate"
    SERVICE_ISSUE = "service_issue"
    ACCIDENTAL = "accidental"
    FRAUD = "fraud"
    OTHER = "other"


REASON_LABELS = {
    RefundReason.DUPLICATE: "Duplicate Charge",
    RefundReason.SERVICE_ISSUE: "Service Issue",
    RefundReason.ACCIDENTAL: "Accidental Payment",
    RefundReason.FRAUD: "Fraud Concern",
    RefundReason.OTHER: "Other / Unspecified",
}


@dataclass(frozen=True)
class PolicyConfig:
    small_transaction_threshold: Decimal
    refund_window_days: int
    abuse_score_limit: int

    @classmethod
    def from_settings(cls) -> "PolicyConfig":
        return cls(
            small_transaction_threshold=Decimal(str(settings.small_transaction_threshold)),
            refund_window_days=settings.refund_window_days,
            abuse_score_limit=settings.abuse_score_limit,
        )


@dataclass(frozen=True)
class PolicyContext:
    amount: Decimal
    reason: str
    sentiment_priority: Priority = Priority.NORMAL
    attempts: int = 0
    has_duplicate: bool = False
    transaction_date: Optional[datetime] = None
    fraud_score: int = 0
    now: Optional[datetime] = None


@dataclass(frozen=True)
class PolicyResult:
    decision: Decision
    reason: str
    amount: Decimal
    message: str
    priority: Priority


def round_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def half_amount(amount) -> Decimal:
    return round_money(Decimal(str(amount)) * PARTIAL_RATIO)


def is_within_refund_window(
    transaction_date: Optional[datetime],
    window_days: int = 7,
    now: Optional[datetime] = None,
) -> bool:
    """Transactions without a creation date are treated as eligible."""
    if transaction_date is None:
        return True
    now = now or datetime.now(timezone.utc)
    if transaction_date.tzinfo is None:
        transaction_date = transaction_date.replace(tzinfo=timezone.utc)
    return now - transaction_date <= timedelta(days=window_days)


def _escalate(reason: str, message: str, priority: Priority = Priority.NORMAL) -> PolicyResult:
    return PolicyResult(
        decision=Decision.ESCALATE,
        reason=reason,
        amount=round_money(0),
        message=message,
        priority=priority,
    )


def evaluate(context: PolicyContext, config: Optional[PolicyConfig] = None) -> PolicyResult:
    config = config or PolicyConfig.from_settings()
    amount = round_money(context.amount)
    reason = str(context.reason.value if isinstance(context.reason, Enum) else context.reason)

    if reason == RefundReason.FRAUD.value or context.sentiment_priority == Priority.HIGH:
        return _escalate(
            "fraud_or_high_priority",
            "This case has been flagged as high priority. A senior agent has been notified "
            "and will contact you immediately.",
            Priority.HIGH,
        )

    if context.fraud_score >= config.abuse_score_limit:
        return _escalate(
            "excessive_refunds",
            "We've noticed multiple recent refund requests on your account. "
            "A senior agent will review this case personally.",
            Priority.HIGH,
        )

    in_window = is_within_refund_window(context.transaction_date, config.refund_window_days, context.now)

    if amount < config.small_transaction_threshold and in_window:
        return PolicyResult(
            decision=Decision.APPROVED,
            reason="small_transaction_policy",
            amount=amount,
            message=(
                f"Your refund of ${amount} qualifies for automatic approval under our "
                "small-transaction policy. Processing now."
            ),
            priority=Priority.NORMAL,
        )

    if reason == RefundReason.DUPLICATE.value:
        if context.has_duplicate:
            return PolicyResult(
                decision=Decision.APPROVED,
                reason="verified_duplicate",
                amount=amount,
                message="We found a matching duplicate charge on your account. Your full refund has been approved.",
                priority=Priority.NORMAL,
            )
        return _escalate(
            "unverified_duplicate",
            "We couldn't automatically verify the duplicate charge. Escalating to an agent for manual review.",
        )

    if reason == RefundReason.SERVICE_ISSUE.value:
        return PolicyResult(
            decision=Decision.COUPON,
            reason="service_compensation",
            amount=round_money(0),
            message="We're sorry for the service inconvenience. We'd like to offer you a compensation coupon.",
            priority=Priority.NORMAL,
        )

    if reason == RefundReason.ACCIDENTAL.value:
        if context.attempts > 0:
            return _escalate(
                "repeat_attempt" if in_window else "outside_window_repeat_attempt",
                "Connecting you with an agent to further assist with your refund request.",
            )
        partial = half_amount(amount)
        if in_window:
            message = f"For accidental payments we can offer a 50% refund (${partial}) immediately."
            rule = "accidental_payment"
        else:
            message = (
                f"This transaction is outside the standard {config.refund_window_days}-day refund window. "
                f"We can offer a 50% refund (${partial}) as a goodwill gesture."
            )
            rule = "outside_refund_window"
        return PolicyResult(
            decision=Decision.PARTIAL,
            reason=rule,
            amount=partial,
            message=message,
            priority=Priority.NORMAL,
        )

    return _escalate("default_escalation", "Connecting you with an agent to review your refund request.")
