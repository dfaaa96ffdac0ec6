from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from paydesk.database import Base


class ConversationState(Base):
    __tablename__ = "conversation_states"

    channel_url = Column(Text, primary_key=True)
    user_id = Column(Text, nullable=False)
    active_txn_id = Column(Text)
    last_intent = Column(Text)
    refund_stage = Column(Text)  # mirrors refund_requests.refund_stage
    escalation_status = Column(Text, nullable=False, default="none")  # none, normal, high
    priority = Column(Text, nullable=False, default="NORMAL")  # NORMAL, HIGH
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
