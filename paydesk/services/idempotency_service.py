"""Webhook deduplication.

Three tiers are consulted in order:

1. Redis ``SET NX`` with a short TTL. An existing key means the event was
   already seen by some process.
2. ``processed_events`` insert with ``ON CONFLICT DO NOTHING``. A conflict is a
   duplicate even when tier 1 was unreachable or its key has expired.
3. A per-process dict with its own TTL, consulted only when tier 2 could not be
   reached. Its contents are lost on restart.

Tier failures never count as "duplicate"; they fall through to the next tier.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.models import ProcessedEvent
from paydesk.services.redis_client import get_redis

logger = get_logger("idempotency")

SOURCE_SENDBIRD = "sendbird"
SOURCE_STRIPE = "stripe"
SOURCE_TELEGRAM = "telegram"

_memory_seen: dict[str, float] = {}


def _event_key(event_id: str, source: str) -> str:
    return f"{source}:{event_id}"


def _redis_key(event_id: str, source: str) -> str:
    return f"paydesk:idem:{source}:{event_id}"


def _purge_memory(now_ts: float) -> None:
    expired = [key for key, expires_at in _memory_seen.items() if expires_at <= now_ts]
    for key in expired:
        _memory_seen.pop(key, None)


def check_memory(event_id: str, source: str, now_ts: Optional[float] = None) -> bool:
    """Tier 3: returns True if the event was already recorded in this process."""
    now_ts = now_ts if now_ts is not None else time.time()
    _purge_memory(now_ts)
    key = _event_key(event_id, source)
    if key in _memory_seen:
        return True
    _memory_seen[key] = now_ts + settings.idempotency_memory_ttl_seconds
    return False


def reset_memory() -> None:
    _memory_seen.clear()


def record_processed_event(db: Session, event_id: str, source: str, now: Optional[datetime] = None) -> bool:
    """Tier 2: insert the ledger row. Returns False when the event id already exists."""
    now = now or datetime.now(timezone.utc)
    stmt = (
        insert(ProcessedEvent)
        .values(
            event_id=event_id,
            source=source,
            created_at=now,
            expires_at=now + timedelta(hours=settings.processed_event_ttl_hours),
        )
        .on_conflict_do_nothing(index_elements=["event_id"])
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount != 0


async def is_duplicate(
    db: Session,
    event_id: Optional[str],
    source: str = SOURCE_SENDBIRD,
    *,
    redis_client=None,
) -> bool:
    if not event_id:
        return False

    context = {"event_id": event_id, "source": source}
    redis_client = redis_client or get_redis()
    if redis_client:
        try:
            was_set = await redis_client.set(
                _redis_key(event_id, source),
                "1",
                ex=settings.idempotency_redis_ttl_seconds,
                nx=True,
            )
            if not was_set:
                logger.info("Duplicate event (redis)", extra={"context": context})
                return True
        except Exception as e:
            logger.warning(
                "Idempotency redis unavailable, falling back to DB",
                extra={"context": {**context, "error": str(e)}},
            )

    try:
        if not record_processed_event(db, event_id, source):
            logger.info("Duplicate event (DB)", extra={"context": context})
            return True
        return False
    except Exception as e:
        db.rollback()
        logger.warning(
            "Idempotency DB check failed, using in-memory ledger",
            extra={"context": {**context, "error": str(e)}},
        )

    duplicate = check_memory(event_id, source)
    if duplicate:
        logger.info("Duplicate event (memory)", extra={"context": context})
    return duplicate


def purge_expired_events(db: Session, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    deleted = (
        db.query(ProcessedEvent)
        .filter(ProcessedEvent.expires_at <= now)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


async def release_event(
    db: Session,
    event_id: Optional[str],
    source: str = SOURCE_SENDBIRD,
    *,
    redis_client=None,
) -> None:
    """Forget an event whose processing failed, so the sender's redelivery is handled."""
    if not event_id:
        return

    context = {"event_id": event_id, "source": source}
    _memory_seen.pop(_event_key(event_id, source), None)

    redis_client = redis_client or get_redis()
    if redis_client:
        try:
            await redis_client.delete(_redis_key(event_id, source))
        except Exception as e:
            logger.warning("Idempotency redis release failed", extra={"context": {**context, "error": str(e)}})

    try:
        db.query(ProcessedEvent).filter(
            ProcessedEvent.event_id == event_id,
            ProcessedEvent.source == source,
        ).delete(synchronize_session=False)
        db.commit()
        logger.info("Event released for redelivery", extra={"context": context})
    except Exception as e:
        db.rollback()
        logger.error("Idempotency ledger release failed", extra={"context": {**context, "error": str(e)}})
