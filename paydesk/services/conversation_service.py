from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from paydesk.models import ConversationState, User

_STATE_FIELDS = {"active_txn_id", "last_intent", "refund_stage", "escalation_status", "priority"}


def get_or_create_user(db: Session, user_id: str) -> User:
    """Find the chat user or register them on first contact."""
    user = db.query(User).filter(User.user_id == user_id).first()
    now = datetime.now(timezone.utc)

    if not user:
        user = User(user_id=user_id, created_at=now, last_active_at=now)
        db.add(user)
        db.flush()
    else:
        user.last_active_at = now

    return user


def account_age(user: Optional[User], now: Optional[datetime] = None) -> Optional[timedelta]:
    if user is None or user.created_at is None:
        return None
    now = now or datetime.now(timezone.utc)
    created_at = user.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return now - created_at


def get_conversation_state(db: Session, channel_url: str) -> Optional[ConversationState]:
    return db.query(ConversationState).filter(ConversationState.channel_url == channel_url).first()


def update_conversation_state(db: Session, channel_url: str, user_id: str, **fields) -> None:
    """Upsert the per-channel working memory. Only known fields are written."""
    unknown = set(fields) - _STATE_FIELDS
    if unknown:
        raise ValueError(f"Unknown conversation state fields: {sorted(unknown)}")

    now = datetime.now(timezone.utc)
    values = {"channel_url": channel_url, "user_id": user_id, "updated_at": now, **fields}
    stmt = insert(ConversationState).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["channel_url"],
        set_={"user_id": user_id, "updated_at": now, **fields},
    )
    db.execute(stmt)
    db.flush()
