"""Human handoff through help-desk tickets.

``escalated_channels`` and ``desk_channels`` are per-process caches rebuilt
from ``channel_mappings`` at startup; the mapping table is the source of truth.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Set

from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.models import ChannelMapping
from paydesk.services.alert_service import alert_error
from paydesk.services.result import guarded
from paydesk.services.sendbird_service import (
    AGENT_REPLY_PREFIX,
    DeskTicket,
    get_chat_service,
    get_desk_service,
    notify,
)

logger = get_logger("escalation_service")

DESK_CHANNEL_PREFIX = "sendbird_desk_"
DESK_AGENT_PREFIX = "sendbird_desk_agent_id_"
TICKET_STATUS_INITIALIZED = "INITIALIZED"

MSG_AGENT_AWAY = (
    "Our support agent is currently assisting other customers. You're in the queue, "
    "we'll be with you shortly. Feel free to type any additional details in the meantime."
)

escalated_channels: Set[str] = set()
desk_channels: Set[str] = set()
_agent_away_timers: Dict[str, asyncio.Task] = {}


class EscalationError(Exception):
    pass


@dataclass
class EscalationOutcome:
    created: bool
    ticket_id: Optional[str]
    desk_channel_url: Optional[str]


def is_desk_channel(channel_url: Optional[str]) -> bool:
    if not channel_url:
        return False
    return channel_url.startswith(DESK_CHANNEL_PREFIX) or channel_url in desk_channels


def is_escalated(channel_url: Optional[str]) -> bool:
    return bool(channel_url) and channel_url in escalated_channels


def get_mapping_for_channel(db: Session, channel_url: str) -> Optional[ChannelMapping]:
    return (
        db.query(ChannelMapping)
        .filter(ChannelMapping.original_channel_url == channel_url)
        .order_by(ChannelMapping.created_at.desc())
        .first()
    )


def get_mapping_for_desk_channel(db: Session, desk_channel_url: str) -> Optional[ChannelMapping]:
    return db.query(ChannelMapping).filter(ChannelMapping.desk_channel_url == desk_channel_url).first()


def get_desk_channel_url(db: Session, channel_url: str) -> Optional[str]:
    """Ticket channel for an escalated customer channel, if any."""
    if not is_escalated(channel_url):
        return None
    mapping = get_mapping_for_channel(db, channel_url)
    return mapping.desk_channel_url if mapping else None


def load_escalated_channels(db: Session) -> int:
    mappings = db.query(ChannelMapping.original_channel_url, ChannelMapping.desk_channel_url).all()
    for original_channel_url, desk_channel_url in mappings:
        escalated_channels.add(original_channel_url)
        desk_channels.add(desk_channel_url)
    logger.info(f"Restored {len(mappings)} escalated channel mappings")
    return len(mappings)


# --- agent-away timer -------------------------------------------------------


async def agent_has_replied(channel_url: str) -> Optional[bool]:
    """None when the history could not be read."""
    try:
        messages = await get_chat_service().get_recent_messages(channel_url, 20)
    except Exception as e:
        logger.warning(f"Recent messages check failed for {channel_url}: {e}")
        return None
    return any(
        isinstance(m.get("message"), str) and m["message"].startswith(AGENT_REPLY_PREFIX) for m in messages
    )


async def _agent_away_after(channel_url: str, delay: float) -> None:
    await asyncio.sleep(delay)
    if _agent_away_timers.get(channel_url) is asyncio.current_task():
        _agent_away_timers.pop(channel_url, None)

    replied = await agent_has_replied(channel_url)
    if replied is None or replied:
        return
    if await notify(channel_url, MSG_AGENT_AWAY):
        logger.info("Agent-away notice sent", extra={"context": {"channel_url": channel_url}})


def schedule_agent_away_fallback(channel_url: str, delay: Optional[float] = None) -> asyncio.Task:
    """(Re)arm the single pending notice for this channel."""
    clear_agent_away_timer(channel_url)
    delay = settings.agent_reply_timeout_seconds if delay is None else delay
    task = asyncio.create_task(_agent_away_after(channel_url, delay))
    _agent_away_timers[channel_url] = task
    return task


def clear_agent_away_timer(channel_url: str) -> bool:
    task = _agent_away_timers.pop(channel_url, None)
    if task is None:
        return False
    task.cancel()
    return True


def has_pending_timer(channel_url: str) -> bool:
    task = _agent_away_timers.get(channel_url)
    return task is not None and not task.done()


async def cancel_all_timers() -> None:
    tasks = list(_agent_away_timers.values())
    _agent_away_timers.clear()
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


# --- ticket lifecycle -------------------------------------------------------


async def create_desk_ticket(db: Session, channel_url: str, user_id: str) -> DeskTicket:
    """Open a ticket and persist the channel mapping.

    Customer lookup, ticket creation and the mapping write must succeed;
    participants and the activation message are best effort.
    """
    desk = get_desk_service()
    chat = get_chat_service()
    try:
        customer_id = await desk.find_or_create_customer(user_id)
        ticket = await desk.create_ticket(customer_id, f"Support - {user_id}")
    except Exception as e:
        alert_error("Desk ticket creation failed", {"channel_url": channel_url, "user_id": user_id, "error": str(e)})
        raise EscalationError(f"Desk ticket creation failed: {e}") from e

    try:
        db.add(
            ChannelMapping(
                desk_channel_url=ticket.channel_url,
                original_channel_url=channel_url,
                user_id=user_id,
                ticket_id=ticket.ticket_id,
            )
        )
        db.commit()
    except Exception as e:
        db.rollback()
        raise EscalationError(f"Channel mapping save failed: {e}") from e

    desk_channels.add(ticket.channel_url)
    logger.info(
        "Desk ticket created",
        extra={"context": {"ticket_id": ticket.ticket_id, "desk_channel_url": ticket.channel_url, "user_id": user_id}},
    )

    agents = (await guarded("desk_online_agents", desk.get_online_agents())).unwrap_or([]) or []
    await guarded("desk_add_members", chat.add_members(ticket.channel_url, [user_id, *agents]))
    await guarded(
        "desk_activation_message",
        chat.send_channel_message(
            ticket.channel_url,
            user_id,
            f"Hi, I need help with my payment. Original channel: {channel_url}",
        ),
    )
    return ticket


async def open_ticket(db: Session, channel_url: str, user_id: str) -> Optional[str]:
    """Ticket channel for this customer channel, creating a ticket when none exists.

    Raises EscalationError when a new ticket could not be opened.
    """
    if is_escalated(channel_url):
        desk_channel_url = get_desk_channel_url(db, channel_url)
        if desk_channel_url:
            return desk_channel_url
        escalated_channels.discard(channel_url)

    mapping = get_mapping_for_channel(db, channel_url)
    if mapping:
        escalated_channels.add(channel_url)
        desk_channels.add(mapping.desk_channel_url)
        return mapping.desk_channel_url

    ticket = await create_desk_ticket(db, channel_url, user_id)
    escalated_channels.add(channel_url)
    schedule_agent_away_fallback(channel_url)
    return ticket.channel_url


async def _ticket_is_active(mapping: ChannelMapping) -> bool:
    """Unverifiable tickets count as stale."""
    if not mapping.ticket_id:
        logger.warning("Mapping has no ticket id, treating as stale")
        return False
    try:
        status = await get_desk_service().get_ticket_status(mapping.ticket_id)
    except Exception as e:
        logger.warning(f"Could not verify ticket {mapping.ticket_id}, re-escalating: {e}")
        return False
    logger.info(f"Existing ticket #{mapping.ticket_id} status: {status}")
    return bool(status) and status != TICKET_STATUS_INITIALIZED


def _forget_mapping(db: Session, mapping: ChannelMapping) -> None:
    clear_agent_away_timer(mapping.original_channel_url)
    escalated_channels.discard(mapping.original_channel_url)
    desk_channels.discard(mapping.desk_channel_url)
    db.delete(mapping)
    db.commit()


async def escalate(db: Session, channel_url: str, user_id: str) -> EscalationOutcome:
    """Open a ticket unless an active one already exists for this channel."""
    mapping = get_mapping_for_channel(db, channel_url)
    if mapping:
        if await _ticket_is_active(mapping):
            escalated_channels.add(channel_url)
            desk_channels.add(mapping.desk_channel_url)
            if not await agent_has_replied(channel_url):
                await notify(
                    channel_url,
                    f"Your support ticket is already open (Ticket #{mapping.ticket_id}). An agent will join shortly.",
                )
            return EscalationOutcome(created=False, ticket_id=mapping.ticket_id, desk_channel_url=mapping.desk_channel_url)
        _forget_mapping(db, mapping)
    else:
        escalated_channels.discard(channel_url)

    ticket = await create_desk_ticket(db, channel_url, user_id)
    escalated_channels.add(channel_url)
    schedule_agent_away_fallback(channel_url)
    await notify(channel_url, f"Support ticket created (Ticket #{ticket.ticket_id}). An agent will join shortly.")
    return EscalationOutcome(created=True, ticket_id=ticket.ticket_id, desk_channel_url=ticket.channel_url)


# --- forwarding -------------------------------------------------------------


async def forward_agent_reply(db: Session, desk_channel_url: str, sender_id: str, text: str) -> bool:
    mapping = get_mapping_for_desk_channel(db, desk_channel_url)
    if not mapping or sender_id == mapping.user_id:
        return False
    clear_agent_away_timer(mapping.original_channel_url)
    await notify(mapping.original_channel_url, f"{AGENT_REPLY_PREFIX} {text}")
    return True


async def forward_customer_message(db: Session, channel_url: str, sender_id: str, text: str) -> bool:
    mapping = get_mapping_for_channel(db, channel_url)
    if not mapping:
        escalated_channels.discard(channel_url)
        return False
    await guarded(
        "desk_forward",
        get_chat_service().send_channel_message(mapping.desk_channel_url, sender_id, text),
        channel_url=channel_url,
    )
    schedule_agent_away_fallback(channel_url)
    return True


async def send_desk_context(desk_channel_url: Optional[str], user_id: str, text: str) -> bool:
    if not desk_channel_url:
        return False
    result = await guarded(
        "desk_context",
        get_chat_service().send_channel_message(desk_channel_url, user_id, text),
        desk_channel_url=desk_channel_url,
    )
    return result.ok
