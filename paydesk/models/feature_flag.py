from sqlalchemy import Boolean, Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from paydesk.database import Base


class FeatureFlag(Base):
    __tablename__ = "feature_flags"

    name = Column(Text, primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    description = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
