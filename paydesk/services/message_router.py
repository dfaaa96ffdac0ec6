"""Decide what to do with one inbound customer chat message.

Checked in order, first match wins: bot echo, help-desk channel, escalated
channel, high-risk sentiment, free text without a transaction id, and finally
a transaction id lookup.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from paydesk.config import settings
from paydesk.logging_config import get_logger
from paydesk.models import Transaction
from paydesk.schemas.webhook import MessageSendEvent
from paydesk.services import audit_service, escalation_service, negotiation_service
from paydesk.services.conversation_service import get_conversation_state, update_conversation_state
from paydesk.services.escalation_service import EscalationError
from paydesk.services.intent_service import (
    Intent,
    IntentResult,
    classify_intent,
    detect_sentiment,
    extract_transaction_id,
    query_knowledge_base,
)
from paydesk.services.refund_policy import Priority
from paydesk.services.result import guarded
from paydesk.services.sendbird_service import get_chat_service, notify
from paydesk.services.transaction_service import STATUS_FAILED, STATUS_SUCCESS, find_transaction

logger = get_logger("message_router")

ROUTE_IGNORED = "ignored"
ROUTE_AGENT_REPLY = "agent_reply"
ROUTE_FORWARDED = "forwarded_to_desk"
ROUTE_HIGH_PRIORITY = "high_priority_escalation"
ROUTE_INFERRED_TXN = "inferred_transaction"
ROUTE_ESCALATION = "escalation"
ROUTE_RETRY_PROMPT = "retry_prompt"
ROUTE_REFUND = "refund_negotiation"
ROUTE_FAQ = "faq"
ROUTE_FALLBACK = "fallback_menu"
ROUTE_TXN_NOT_FOUND = "transaction_not_found"
ROUTE_TXN_FAILED = "transaction_failed"
ROUTE_TXN_SUCCESS = "transaction_success"
ROUTE_TXN_STATUS = "transaction_status"

MSG_HIGH_PRIORITY = (
    "Your message has been flagged as high priority. A senior support agent has been notified "
    "and will contact you immediately."
)
MSG_CONNECTING = "Connecting you with a human support agent now. Please hold on, an agent will be with you shortly."
MSG_AGENT_UNAVAILABLE = "We couldn't reach a support agent right now. Please try 'Talk to Human' again in a moment."
MSG_RETRY_PROMPT = "Please provide your transaction ID (e.g., TXN1001) so I can initiate the retry."
MSG_REFUND_NEEDS_TXN = "To start a refund request, please provide your transaction ID first (e.g., TXN1001)."
MSG_FALLBACK = "Please provide your transaction ID (e.g., TXN1001), or choose an option below:"
MSG_FALLBACK_UPSET = (
    "I can see you're having a frustrating experience, I'm sorry about that. "
    "Let me help you get to the right place quickly."
)

BUTTON_RETRY = {"label": "Retry Payment", "action": "retry_payment"}
BUTTON_HUMAN = {"label": "Talk to Human", "action": "escalate"}
BUTTON_FAQ = {"label": "View FAQ", "action": "faq"}


@dataclass
class RouteOutcome:
    route: str
    txn_id: Optional[str] = None


def _transaction_buttons(transaction: Transaction) -> dict:
    txn_id = transaction.transaction_id
    if transaction.status == STATUS_FAILED:
        buttons = [{**BUTTON_RETRY, "txnId": txn_id}, BUTTON_HUMAN, BUTTON_FAQ]
    else:
        buttons = [
            {"label": "Request Refund", "action": negotiation_service.ACTION_START, "txnId": txn_id},
            {"label": "Talk to Agent", "action": "escalate"},
        ]
    return {"type": "action_buttons", "txnId": txn_id, "buttons": buttons}


async def _open_ticket_quietly(db: Session, channel_url: str, user_id: str) -> Optional[str]:
    """Escalation from the chat flow; a failed ticket is logged and reported as None."""
    try:
        return await escalation_service.open_ticket(db, channel_url, user_id)
    except EscalationError as e:
        logger.error(
            "Escalation from chat failed",
            extra={"context": {"channel_url": channel_url, "user_id": user_id, "error": str(e)}},
        )
        return None


async def _route_high_priority(db: Session, event: MessageSendEvent, triggers: list) -> RouteOutcome:
    logger.info(
        "High priority sentiment",
        extra={"context": {"channel_url": event.channel_url, "user_id": event.sender_id, "triggers": triggers}},
    )
    desk_channel_url = await _open_ticket_quietly(db, event.channel_url, event.sender_id)
    update_conversation_state(
        db,
        event.channel_url,
        event.sender_id,
        escalation_status="high",
        priority=Priority.HIGH.value,
        last_intent=Intent.ESCALATION.value,
    )
    audit_service.log_escalation(
        db,
        user_id=event.sender_id,
        channel_url=event.channel_url,
        priority=Priority.HIGH.value,
        reason="sentiment:" + ",".join(triggers),
    )
    audit_service.track(
        db,
        "escalation",
        user_id=event.sender_id,
        channel_url=event.channel_url,
        metadata={"priority": Priority.HIGH.value, "triggers": triggers},
    )
    db.commit()

    if desk_channel_url:
        await escalation_service.send_desk_context(
            desk_channel_url,
            event.sender_id,
            f"[Support Bot - Automated Context]\n\nHIGH PRIORITY - customer message flagged ({', '.join(triggers)}):\n{event.text}",
        )
        await notify(event.channel_url, MSG_HIGH_PRIORITY, {"type": "priority_badge", "priority": Priority.HIGH.value})
    else:
        await notify(event.channel_url, MSG_AGENT_UNAVAILABLE)
    return RouteOutcome(ROUTE_HIGH_PRIORITY)


async def _route_free_text(db: Session, event: MessageSendEvent) -> RouteOutcome:
    channel_url, user_id = event.channel_url, event.sender_id
    detected: IntentResult = await classify_intent(db, event.text, user_id)
    update_conversation_state(db, channel_url, user_id, last_intent=detected.intent.value)
    db.commit()

    if detected.transaction_id:
        inferred = find_transaction(db, detected.transaction_id, user_id)
        if inferred:
            update_conversation_state(
                db,
                channel_url,
                user_id,
                active_txn_id=inferred.transaction_id,
                last_intent=Intent.TRANSACTION_LOOKUP.value,
            )
            db.commit()
            await notify(
                channel_url,
                f"Transaction {inferred.transaction_id} status: {inferred.status}. Amount: ${inferred.amount}.",
                _transaction_buttons(inferred),
            )
            return RouteOutcome(ROUTE_INFERRED_TXN, inferred.transaction_id)

    if detected.intent == Intent.ESCALATION:
        desk_channel_url = await _open_ticket_quietly(db, channel_url, user_id)
        if desk_channel_url:
            update_conversation_state(db, channel_url, user_id, escalation_status="normal")
            audit_service.log_escalation(db, user_id=user_id, channel_url=channel_url, priority=Priority.NORMAL.value, reason="user_request")
            audit_service.track(db, "escalation", user_id=user_id, channel_url=channel_url, metadata={"source": "chat"})
            db.commit()
            await notify(channel_url, MSG_CONNECTING)
        else:
            await notify(channel_url, MSG_AGENT_UNAVAILABLE)
        return RouteOutcome(ROUTE_ESCALATION)

    if detected.intent == Intent.RETRY_PAYMENT:
        await notify(channel_url, MSG_RETRY_PROMPT)
        return RouteOutcome(ROUTE_RETRY_PROMPT)

    if detected.intent == Intent.REFUND_REQUEST:
        state = get_conversation_state(db, channel_url)
        active_txn_id = state.active_txn_id if state else None
        if not active_txn_id:
            await notify(channel_url, MSG_REFUND_NEEDS_TXN)
            return RouteOutcome(ROUTE_REFUND)
        transaction = find_transaction(db, active_txn_id, user_id)
        if transaction is None:
            await notify(
                channel_url,
                f"Transaction {active_txn_id} is not eligible for a refund (refunds apply to successful transactions only).",
            )
            return RouteOutcome(ROUTE_REFUND, active_txn_id)
        await negotiation_service.start_negotiation(
            db, channel_url=channel_url, user_id=user_id, transaction=transaction
        )
        return RouteOutcome(ROUTE_REFUND, active_txn_id)

    answer = query_knowledge_base(event.text)
    if answer:
        await notify(channel_url, answer)
        return RouteOutcome(ROUTE_FAQ)

    if detected.is_upset:
        await notify(channel_url, MSG_FALLBACK_UPSET, {"type": "action_buttons", "buttons": [BUTTON_HUMAN, BUTTON_RETRY, BUTTON_FAQ]})
    else:
        await notify(channel_url, MSG_FALLBACK, {"type": "action_buttons", "buttons": [BUTTON_RETRY, BUTTON_HUMAN, BUTTON_FAQ]})
    return RouteOutcome(ROUTE_FALLBACK)


async def _route_transaction(db: Session, event: MessageSendEvent, txn_id: str) -> RouteOutcome:
    channel_url, user_id = event.channel_url, event.sender_id
    transaction = find_transaction(db, txn_id, user_id)
    if transaction is None:
        await notify(channel_url, f"Transaction {txn_id} was not found in our system. Please check the ID and try again.")
        return RouteOutcome(ROUTE_TXN_NOT_FOUND, txn_id)

    update_conversation_state(
        db,
        channel_url,
        user_id,
        active_txn_id=txn_id,
        last_intent=Intent.TRANSACTION_LOOKUP.value,
    )
    db.commit()

    if transaction.status == STATUS_FAILED:
        desk_channel_url = await _open_ticket_quietly(db, channel_url, user_id)
        if desk_channel_url:
            await escalation_service.send_desk_context(
                desk_channel_url,
                user_id,
                f"[Support Bot - Automated Context]\n\nFailed payment {txn_id} - ${transaction.amount} for customer {user_id}",
            )
        audit_service.track(
            db,
            "payment_retry",
            user_id=user_id,
            channel_url=channel_url,
            txn_id=txn_id,
            metadata={"status": STATUS_FAILED, "amount": transaction.amount},
        )
        db.commit()
        await notify(
            channel_url,
            f"Your transaction {txn_id} (${transaction.amount}) has failed. A support case has been opened. "
            "How would you like to proceed?",
            _transaction_buttons(transaction),
        )
        return RouteOutcome(ROUTE_TXN_FAILED, txn_id)

    if transaction.status == STATUS_SUCCESS:
        await notify(
            channel_url,
            f"Transaction {txn_id} completed successfully. Amount: ${transaction.amount}.\nNeed help with this transaction?",
            _transaction_buttons(transaction),
        )
        return RouteOutcome(ROUTE_TXN_SUCCESS, txn_id)

    await notify(channel_url, f"Transaction {txn_id} status: {transaction.status}. Amount: ${transaction.amount}.")
    return RouteOutcome(ROUTE_TXN_STATUS, txn_id)


async def route_message(db: Session, event: MessageSendEvent) -> RouteOutcome:
    channel_url, user_id = event.channel_url, event.sender_id

    if user_id == settings.support_bot_id:
        return RouteOutcome(ROUTE_IGNORED)

    if escalation_service.is_desk_channel(channel_url):
        await escalation_service.forward_agent_reply(db, channel_url, user_id, event.text)
        return RouteOutcome(ROUTE_AGENT_REPLY)

    if user_id.startswith(escalation_service.DESK_AGENT_PREFIX):
        return RouteOutcome(ROUTE_IGNORED)

    txn_id = extract_transaction_id(event.text)

    if escalation_service.is_escalated(channel_url) and not txn_id:
        if await escalation_service.forward_customer_message(db, channel_url, user_id, event.text):
            return RouteOutcome(ROUTE_FORWARDED)

    await guarded("add_bot_to_channel", get_chat_service().add_bot_to_channel(channel_url), channel_url=channel_url)

    sentiment = detect_sentiment(event.text)
    if sentiment.priority == Priority.HIGH:
        return await _route_high_priority(db, event, sentiment.triggers)

    if not txn_id:
        return await _route_free_text(db, event)
    return await _route_transaction(db, event, txn_id)
