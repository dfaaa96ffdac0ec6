from enum import Enum


class RefundStage(str, Enum):
    REASON_ASKED = "reason_asked"
    POLICY_EVALUATED = "policy_evaluated"
    COMPLETED = "completed"


class RefundStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REFUNDED = "refunded"


class ExecutionPath(str, Enum):
    AUTO_REFUND = "AUTO_REFUND"
    OFFER_PARTIAL = "OFFER_PARTIAL"
    OFFER_COUPON = "OFFER_COUPON"
    ESCALATE_HIGH = "ESCALATE_HIGH"
    ESCALATE_NORMAL = "ESCALATE_NORMAL"


VALID_TRANSITIONS = {
    RefundStage.REASON_ASKED: [RefundStage.POLICY_EVALUATED, RefundStage.COMPLETED],
    RefundStage.POLICY_EVALUATED: [RefundStage.COMPLETED],
    RefundStage.COMPLETED: [],
}

# Statuses that authorize a direct refund execution.
EXECUTABLE_STATUSES = [RefundStatus.PENDING.value, RefundStatus.APPROVED.value]


class InvalidTransitionError(Exception):
    def __init__(self, from_stage: RefundStage, to_stage: RefundStage):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Invalid transition: {from_stage.value} -> {to_stage.value}")


def can_transition(from_stage: RefundStage, to_stage: RefundStage) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_stage, [])
    return to_stage in allowed


def transition(from_stage: RefundStage, to_stage: RefundStage) -> RefundStage:
    """Perform stage transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_stage, to_stage):
        raise InvalidTransitionError(from_stage, to_stage)
    return to_stage


def execution_path_for(decision: str, priority: str) -> ExecutionPath:
    """Map a policy decision to the action the negotiation will execute."""
    if decision == "APPROVED":
        return ExecutionPath.AUTO_REFUND
    if decision == "PARTIAL":
        return ExecutionPath.OFFER_PARTIAL
    if decision == "COUPON":
        return ExecutionPath.OFFER_COUPON
    if priority == "HIGH":
        return ExecutionPath.ESCALATE_HIGH
    return ExecutionPath.ESCALATE_NORMAL
