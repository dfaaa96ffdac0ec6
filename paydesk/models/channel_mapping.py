import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from paydesk.database import Base


class ChannelMapping(Base):
    __tablename__ = "channel_mappings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    desk_channel_url = Column(Text, nullable=False, unique=True)
    original_channel_url = Column(Text, nullable=False, index=True)
    user_id = Column(Text, nullable=False)
    ticket_id = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
