from sqlalchemy import BigInteger, Column, Numeric, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from paydesk.database import Base


class TokenBudget(Base):
    __tablename__ = "token_budget"

    id = Column(Text, primary_key=True, default="global")
    total_input_tokens = Column(BigInteger, nullable=False, default=0)
    total_output_tokens = Column(BigInteger, nullable=False, default=0)
    total_cost_usd = Column(Numeric(12, 6), nullable=False, default=0)
    warning_level = Column(Text, nullable=False, default="ok")  # ok, warn_60, warn_80, exhausted
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
