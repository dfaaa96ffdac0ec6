"""Global LLM spend tracking."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.models import TokenBudget
from paydesk.services.alert_service import alert_critical

logger = get_logger("budget_service")

BUDGET_ID = "global"
INPUT_COST_PER_TOKEN = Decimal("0.15") / Decimal(1_000_000)
OUTPUT_COST_PER_TOKEN = Decimal("0.60") / Decimal(1_000_000)

_LEVELS = (
    (Decimal("1.0"), "exhausted"),
    (Decimal("0.8"), "warn_80"),
    (Decimal("0.6"), "warn_60"),
)
_LEVEL_ORDER = ["ok", "warn_60", "warn_80", "exhausted"]


def token_cost(input_tokens: int, output_tokens: int) -> Decimal:
    return input_tokens * INPUT_COST_PER_TOKEN + output_tokens * OUTPUT_COST_PER_TOKEN


def warning_level_for(total_cost: Decimal, budget: Decimal) -> str:
    if budget <= 0:
        return "exhausted"
    used = Decimal(total_cost) / budget
    for threshold, level in _LEVELS:
        if used >= threshold:
            return level
    return "ok"


def is_budget_available(db: Session) -> bool:
    """A failed lookup does not block the LLM path."""
    try:
        budget = db.query(TokenBudget).filter(TokenBudget.id == BUDGET_ID).first()
    except Exception as e:
        logger.warning(f"Budget lookup failed: {e}")
        return True
    if budget is None:
        return True
    return Decimal(budget.total_cost_usd or 0) < Decimal(str(settings.llm_budget_usd))


def record_token_usage(db: Session, input_tokens: int, output_tokens: int) -> None:
    cost = token_cost(input_tokens, output_tokens)
    now = datetime.now(timezone.utc)
    try:
        stmt = insert(TokenBudget).values(
            id=BUDGET_ID,
            total_input_tokens=input_tokens,
            total_output_tokens=output_tokens,
            total_cost_usd=cost,
            warning_level="ok",
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "total_input_tokens": TokenBudget.total_input_tokens + input_tokens,
                "total_output_tokens": TokenBudget.total_output_tokens + output_tokens,
                "total_cost_usd": TokenBudget.total_cost_usd + cost,
                "updated_at": now,
            },
        )
        db.execute(stmt)
        budget = db.query(TokenBudget).filter(TokenBudget.id == BUDGET_ID).first()

        limit = Decimal(str(settings.llm_budget_usd))
        level = warning_level_for(Decimal(budget.total_cost_usd), limit)
        if _LEVEL_ORDER.index(level) > _LEVEL_ORDER.index(budget.warning_level or "ok"):
            budget.warning_level = level
            context = {"total_cost_usd": str(budget.total_cost_usd), "budget_usd": str(limit)}
            if level == "exhausted":
                logger.error("LLM budget exhausted, falling back to rules", extra={"context": context})
                alert_critical("LLM budget exhausted", context)
            else:
                logger.warning(f"LLM budget {level}", extra={"context": context})
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Budget tracking failed (non-fatal): {e}")
