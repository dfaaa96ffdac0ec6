from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from paydesk.database import Base


class TelegramUser(Base):
    __tablename__ = "telegram_users"

    telegram_id = Column(Text, primary_key=True)  # Telegram chat id
    chat_user_id = Column(Text, nullable=False, unique=True)
    channel_url = Column(Text, nullable=False)
    username = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
