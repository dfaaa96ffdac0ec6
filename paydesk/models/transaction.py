import uuid

from sqlalchemy import Column, Numeric, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from paydesk.database import Base


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("transaction_id", "user_id", name="uq_transactions_txn_user"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(Text, nullable=False, index=True)  # TXN1001
    user_id = Column(Text, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(Text, nullable=False)  # pending, success, failed, refunded
    user_email = Column(Text)
    payment_intent_id = Column(Text)
    refunded_amount = Column(Numeric(12, 2))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True))
