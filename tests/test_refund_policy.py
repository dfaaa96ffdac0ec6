from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from paydesk.services.refund_policy import (
    Decision,
    PolicyConfig,
    PolicyContext,
    Priority,
    evaluate,
    half_amount,
    is_within_refund_window,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
CONFIG = PolicyConfig(small_transaction_threshold=Decimal("100"), refund_window_days=7, abuse_score_limit=3)


def ctx(amount, reason, days_ago=2, **kwargs):
    return PolicyContext(
        amount=Decimal(str(amount)),
        reason=reason,
        transaction_date=NOW - timedelta(days=days_ago),
        now=NOW,
        **kwargs,
    )


class TestFraudAndSentiment:
    def test_fraud_reason_escalates_high(self):
        result = evaluate(ctx(50, "fraud"), CONFIG)
        assert result.decision == Decision.ESCALATE
        assert result.priority == Priority.HIGH
        assert result.reason == "fraud_or_high_priority"

    def test_high_sentiment_escalates_even_for_small_amount(self):
        result = evaluate(ctx(20, "other", sentiment_priority=Priority.HIGH), CONFIG)
        assert result.decision == Decision.ESCALATE
        assert result.priority == Priority.HIGH

    def test_abuse_score_beats_small_transaction_approval(self):
        result = evaluate(ctx(50, "duplicate", fraud_score=3), CONFIG)
        assert result.decision == Decision.ESCALATE
        assert result.reason == "excessive_refunds"
        assert result.priority == Priority.HIGH

    def test_abuse_score_below_limit_does_not_escalate(self):
        result = evaluate(ctx(50, "duplicate", fraud_score=2), CONFIG)
        assert result.decision == Decision.APPROVED


class TestSmallTransaction:
    @pytest.mark.parametrize("reason", ["duplicate", "service_issue", "accidental", "other"])
    def test_small_amount_in_window_is_approved_in_full(self, reason):
        result = evaluate(ctx(50, reason), CONFIG)
        assert result.decision == Decision.APPROVED
        assert result.amount == Decimal("50.00")
        assert result.reason == "small_transaction_policy"

    def test_small_amount_outside_window_falls_through_to_reason(self):
        result = evaluate(ctx(50, "other", days_ago=10), CONFIG)
        assert result.decision == Decision.ESCALATE
        assert result.reason == "default_escalation"


class TestDuplicate:
    def test_unverified_duplicate_escalates(self):
        result = evaluate(ctx(150, "duplicate", has_duplicate=False), CONFIG)
        assert result.decision == Decision.ESCALATE
        assert result.reason == "unverified_duplicate"
        assert result.priority == Priority.NORMAL

    def test_verified_duplicate_is_approved(self):
        result = evaluate(ctx(150, "duplicate", has_duplicate=True), CONFIG)
        assert result.decision == Decision.APPROVED
        assert result.amount == Decimal("150.00")


class TestServiceIssue:
    def test_service_issue_gets_coupon(self):
        result = evaluate(ctx(500, "service_issue"), CONFIG)
        assert result.decision == Decision.COUPON
        assert result.amount == Decimal("0.00")


class TestAccidental:
    def test_first_attempt_in_window_is_partial(self):
        result = evaluate(ctx(500, "accidental", attempts=0), CONFIG)
        assert result.decision == Decision.PARTIAL
        assert result.amount == Decimal("250.00")
        assert result.reason == "accidental_payment"

    def test_repeat_attempt_in_window_escalates(self):
        result = evaluate(ctx(500, "accidental", attempts=1), CONFIG)
        assert result.decision == Decision.ESCALATE

    def test_first_attempt_outside_window_is_partial(self):
        result = evaluate(ctx(500, "accidental", days_ago=30, attempts=0), CONFIG)
        assert result.decision == Decision.PARTIAL
        assert result.reason == "outside_refund_window"
        assert result.amount == Decimal("250.00")

    def test_repeat_attempt_outside_window_escalates(self):
        result = evaluate(ctx(500, "accidental", days_ago=30, attempts=2), CONFIG)
        assert result.decision == Decision.ESCALATE
        assert result.reason == "outside_window_repeat_attempt"


class TestDefaultDeny:
    def test_other_reason_escalates(self):
        result = evaluate(ctx(500, "other"), CONFIG)
        assert result.decision == Decision.ESCALATE
        assert result.priority == Priority.NORMAL

    def test_unknown_reason_escalates(self):
        assert evaluate(ctx(500, "changed_my_mind"), CONFIG).decision == Decision.ESCALATE


class TestDeterminism:
    def test_identical_inputs_give_identical_outputs(self):
        context = ctx(333.33, "accidental")
        first = evaluate(context, CONFIG)
        second = evaluate(context, CONFIG)
        assert (first.decision, first.amount) == (second.decision, second.amount)


class TestHelpers:
    def test_half_amount_rounds_half_up(self):
        assert half_amount(Decimal("0.05")) == Decimal("0.03")
        assert half_amount(Decimal("333.33")) == Decimal("166.67")

    def test_missing_date_counts_as_in_window(self):
        assert is_within_refund_window(None) is True

    def test_window_boundary(self):
        assert is_within_refund_window(NOW - timedelta(days=7), 7, NOW) is True
        assert is_within_refund_window(NOW - timedelta(days=7, seconds=1), 7, NOW) is False

    def test_naive_dates_are_treated_as_utc(self):
        naive = (NOW - timedelta(days=1)).replace(tzinfo=None)
        assert is_within_refund_window(naive, 7, NOW) is True
