import time
from typing import Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.models import FeatureFlag

logger = get_logger("feature_flags")

LLM_ENABLED = "LLM_ENABLED"
AUTO_REFUND_ENABLED = "AUTO_REFUND_ENABLED"
FRAUD_ENGINE_ENABLED = "FRAUD_ENGINE_ENABLED"
PUSH_NOTIFICATIONS_ENABLED = "PUSH_NOTIFICATIONS_ENABLED"
TELEGRAM_ENABLED = "TELEGRAM_ENABLED"

DEFAULT_FLAGS = [
    (LLM_ENABLED, True, "Use the LLM for intent detection. Off: rule-based classifier only."),
    (AUTO_REFUND_ENABLED, True, "Execute APPROVED refunds automatically. Off: route them to an agent."),
    (FRAUD_ENGINE_ENABLED, True, "Score fraud risk before money-moving refund decisions."),
    (PUSH_NOTIFICATIONS_ENABLED, False, "Send FCM push notifications. Requires FCM_SERVER_KEY."),
    (TELEGRAM_ENABLED, False, "Bridge Telegram bot messages into chat channels. Requires TELEGRAM_BOT_TOKEN."),
]

_cache: dict[str, tuple[bool, float]] = {}


def seed_feature_flags(db: Session) -> None:
    """Insert missing default flags without touching operator changes."""
    try:
        for name, enabled, description in DEFAULT_FLAGS:
            db.execute(
                insert(FeatureFlag)
                .values(name=name, enabled=enabled, description=description)
                .on_conflict_do_nothing(index_elements=["name"])
            )
        db.commit()
        logger.info("Feature flags seeded")
    except Exception as e:
        db.rollback()
        logger.error(f"Feature flag seeding failed: {e}")


def is_enabled(db: Session, name: str, now: Optional[float] = None) -> bool:
    """Cached flag lookup. Unknown or unreadable flags are off."""
    now = now if now is not None else time.monotonic()
    cached = _cache.get(name)
    if cached and cached[1] > now:
        return cached[0]

    try:
        flag = db.query(FeatureFlag).filter(FeatureFlag.name == name).first()
    except Exception as e:
        db.rollback()
        logger.warning(f"Feature flag lookup failed for {name}: {e}")
        return False

    enabled = bool(flag.enabled) if flag else False
    _cache[name] = (enabled, now + settings.feature_flag_cache_seconds)
    return enabled


def invalidate_flag_cache(name: Optional[str] = None) -> None:
    if name is None:
        _cache.clear()
    else:
        _cache.pop(name, None)
