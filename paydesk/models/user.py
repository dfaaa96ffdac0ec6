from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from paydesk.database import Base


class User(Base):
    __tablename__ = "users"

    user_id = Column(Text, primary_key=True)  # chat platform user id
    display_name = Column(Text)
    fcm_token = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    last_active_at = Column(TIMESTAMP(timezone=True))
