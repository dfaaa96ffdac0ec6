from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from paydesk.database import Base


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    event_id = Column(Text, primary_key=True)
    source = Column(Text, nullable=False)  # sendbird, stripe, telegram
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
