import asyncio
from decimal import Decimal
from typing import Optional

import stripe

from paydesk.config import settings
from paydesk.logging_config import get_logger

logger = get_logger("payment_service")

CHECKOUT_COMPLETED = "checkout.session.completed"


class PaymentNotConfiguredError(Exception):
    pass


class PaymentSignatureError(Exception):
    pass


def is_configured() -> bool:
    return bool(settings.stripe_secret_key)


def verify_webhook_event(payload: bytes, signature: Optional[str]):
    """Verify the Stripe signature over the raw body and return the event."""
    secret = settings.stripe_webhook_secret
    if not secret:
        raise PaymentNotConfiguredError("STRIPE_WEBHOOK_SECRET is not set")
    if not signature:
        raise PaymentSignatureError("Missing Stripe-Signature header")
    try:
        return stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        raise PaymentSignatureError(str(e)) from e
    except ValueError as e:
        raise PaymentSignatureError(f"Invalid payload: {e}") from e


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value())


def _create_refund_sync(payment_intent_id: str, amount: Optional[Decimal]):
    params = {"payment_intent": payment_intent_id, "api_key": settings.stripe_secret_key}
    if amount is not None:
        params["amount"] = to_minor_units(amount)
    return stripe.Refund.create(**params)


async def create_refund(payment_intent_id: str, amount: Optional[Decimal] = None):
    if not is_configured():
        raise PaymentNotConfiguredError("STRIPE_SECRET_KEY is not set")
    refund = await asyncio.to_thread(_create_refund_sync, payment_intent_id, amount)
    logger.info(
        "Stripe refund created",
        extra={"context": {"payment_intent_id": payment_intent_id, "refund_id": getattr(refund, "id", None)}},
    )
    return refund


def _create_checkout_session_sync(txn_id: str, amount: Decimal, channel_url: str, user_id: str):
    frontend_url = settings.frontend_url.rstrip("/")
    return stripe.checkout.Session.create(
        api_key=settings.stripe_secret_key,
        payment_method_types=["card"],
        mode="payment",
        line_items=[
            {
                "price_data": {
                    "currency": "usd",
                    "product_data": {
                        "name": f"Retry Payment - {txn_id}",
                        "description": f"Re-attempt for failed transaction {txn_id}",
                    },
                    "unit_amount": to_minor_units(amount),
                },
                "quantity": 1,
            }
        ],
        success_url=f"{frontend_url}?payment=success&txn={txn_id}",
        cancel_url=f"{frontend_url}?payment=cancelled&txn={txn_id}",
        metadata={"txnId": txn_id, "channelUrl": channel_url, "userId": user_id},
    )


async def create_checkout_session(txn_id: str, amount: Decimal, channel_url: str, user_id: str) -> str:
    """Hosted checkout for a failed payment; returns the session URL."""
    if not is_configured():
        raise PaymentNotConfiguredError("STRIPE_SECRET_KEY is not set")
    session = await asyncio.to_thread(_create_checkout_session_sync, txn_id, amount, channel_url, user_id)
    logger.info(
        "Stripe checkout session created",
        extra={"context": {"txn_id": txn_id, "user_id": user_id, "session_id": getattr(session, "id", None)}},
    )
    return session.url
