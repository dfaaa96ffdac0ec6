import uuid

from sqlalchemy import Column, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from paydesk.database import Base


class FraudLog(Base):
    __tablename__ = "fraud_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    txn_id = Column(Text)
    risk_score = Column(Integer, nullable=False)
    risk_level = Column(Text, nullable=False)  # LOW, MEDIUM, HIGH
    action = Column(Text, nullable=False)  # APPROVE, PARTIAL, ESCALATE
    triggers = Column(JSONB, nullable=False, default=list)
    refund_amount = Column(Numeric(12, 2))
    refunds_in_last_30_days = Column(Integer)
    recent_requests = Column(Integer)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
