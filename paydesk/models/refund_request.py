import uuid

from sqlalchemy import Column, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from paydesk.database import Base


class RefundRequest(Base):
    __tablename__ = "refund_requests"
    __table_args__ = (
        UniqueConstraint("user_id", "txn_id", "channel_url", name="uq_refund_requests_negotiation"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    txn_id = Column(Text, nullable=False)
    channel_url = Column(Text, nullable=False)
    refund_stage = Column(Text, nullable=False, default="reason_asked")  # reason_asked, policy_evaluated, completed
    refund_reason = Column(Text)  # duplicate, service_issue, accidental, fraud, other
    negotiation_attempts = Column(Integer, nullable=False, default=0)
    final_decision = Column(Text)  # AUTO_REFUND, OFFER_PARTIAL, OFFER_COUPON, ESCALATE_HIGH, ESCALATE_NORMAL
    status = Column(Text, nullable=False, default="pending")  # pending, approved, rejected, refunded
    coupon_code = Column(Text)
    coupon_expires_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
