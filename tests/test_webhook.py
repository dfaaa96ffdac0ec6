import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from paydesk.database import get_db
from paydesk.main import app
from paydesk.routers import webhook as webhook_router
from paydesk.schemas.webhook import IgnoredEvent, MessageSendEvent, parse_chat_event
from paydesk.services import payment_service
from paydesk.services.message_router import RouteOutcome
from paydesk.services.rate_limit_service import RateLimitDecision

WEBHOOK_SECRET = "whsec_test_secret"


def chat_body(text="TXN1002", sender="user_1", message_id=101, category="group_channel:message_send"):
    return {
        "category": category,
        "sender": {"user_id": sender},
        "channel": {"channel_url": "ch1"},
        "payload": {"message_id": message_id, "message": text},
    }


@pytest.fixture
def db():
    return Mock()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestParseChatEvent:
    def test_message_send(self):
        parsed = parse_chat_event(chat_body())

        assert parsed == MessageSendEvent(message_id="101", sender_id="user_1", channel_url="ch1", text="TXN1002")

    def test_event_category_field_name(self):
        raw = chat_body(message_id=7)
        raw["event_category"] = raw.pop("category")

        parsed = parse_chat_event(raw)

        assert parsed == MessageSendEvent(message_id="7", sender_id="user_1", channel_url="ch1", text="TXN1002")

    @pytest.mark.parametrize(
        "raw,reason",
        [
            ("not a dict", "not_an_object"),
            ({"category": "group_channel:join"}, "category"),
            ({**chat_body(), "sender": {}}, "no_sender"),
            ({**chat_body(), "channel": None}, "no_channel"),
            ({**chat_body(), "payload": {"message": "hi"}}, "no_message_id"),
            ({"category": "group_channel:message_send", "sender": "oops"}, "malformed"),
        ],
    )
    def test_ignored_shapes(self, raw, reason):
        assert parse_chat_event(raw) == IgnoredEvent(reason)


class TestChatWebhookEndpoint:
    @patch("paydesk.routers.webhook.process_chat_event")
    def test_acks_and_defers_processing(self, mock_process, client):
        response = client.post("/sendbird-webhook", json=chat_body())

        assert response.status_code == 200
        assert response.json()["success"] is True
        mock_process.assert_called_once_with(chat_body())

    @patch("paydesk.routers.webhook.process_chat_event")
    def test_non_json_body_still_acks(self, mock_process, client):
        response = client.post("/sendbird-webhook", content=b"not json", headers={"content-type": "application/json"})

        assert response.status_code == 200
        mock_process.assert_not_called()


@pytest.fixture
def pipeline():
    with patch.object(webhook_router, "is_duplicate", new_callable=AsyncMock, return_value=False) as dup, patch.object(
        webhook_router, "check_user_rate_limit", new_callable=AsyncMock, return_value=RateLimitDecision(allowed=True)
    ) as rate, patch.object(
        webhook_router, "route_message", new_callable=AsyncMock, return_value=RouteOutcome("transaction_success")
    ) as route, patch.object(
        webhook_router, "notify", new_callable=AsyncMock
    ) as notify, patch.object(
        webhook_router, "audit_service"
    ) as audit, patch.object(
        webhook_router, "get_or_create_user"
    ):
        yield SimpleNamespace(dup=dup, rate=rate, route=route, notify=notify, audit=audit)


class TestHandleMessageEvent:
    @pytest.mark.asyncio
    async def test_routes_new_message(self, db, pipeline):
        event = parse_chat_event(chat_body())

        route = await webhook_router.handle_message_event(db, event)

        assert route == "transaction_success"
        pipeline.dup.assert_awaited_once_with(db, "101", "sendbird")
        assert pipeline.audit.log_action.call_args[0][1] == "webhook_received"

    @pytest.mark.asyncio
    async def test_duplicate_is_dropped(self, db, pipeline):
        pipeline.dup.return_value = True

        route = await webhook_router.handle_message_event(db, parse_chat_event(chat_body()))

        assert route is None
        pipeline.rate.assert_not_awaited()
        pipeline.route.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limited_user_gets_message(self, db, pipeline):
        pipeline.rate.return_value = RateLimitDecision(
            allowed=False, reason="per_minute", message="You're sending messages too quickly.", limit=10
        )

        route = await webhook_router.handle_message_event(db, parse_chat_event(chat_body()))

        assert route is None
        pipeline.notify.assert_awaited_once_with("ch1", "You're sending messages too quickly.")
        assert pipeline.audit.log_action.call_args[0][1] == "rate_limit_hit"
        pipeline.route.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bot_is_not_rate_limited(self, db, pipeline):
        await webhook_router.handle_message_event(db, parse_chat_event(chat_body(sender="support_bot")))

        pipeline.rate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_process_chat_event_closes_session_on_error(self, pipeline):
        session = Mock()
        pipeline.route.side_effect = RuntimeError("boom")

        with patch.object(webhook_router, "SessionLocal", return_value=session), patch.object(
            webhook_router, "alert_error"
        ) as alert:
            await webhook_router.process_chat_event(chat_body())

        session.rollback.assert_called_once()
        session.close.assert_called_once()
        alert.assert_called_once()

    @pytest.mark.asyncio
    async def test_process_chat_event_ignores_other_categories(self, pipeline):
        with patch.object(webhook_router, "SessionLocal") as session_factory:
            await webhook_router.process_chat_event(chat_body(category="group_channel:leave"))

        session_factory.assert_not_called()


def signed(payload: bytes, secret=WEBHOOK_SECRET):
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload.decode()}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_event(event_id="evt_1"):
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_1",
                    "object": "checkout.session",
                    "payment_intent": "pi_123",
                    "metadata": {"txnId": "TXN1001", "channelUrl": "ch1", "userId": "user_1"},
                }
            },
        }
    ).encode()


class TestPaymentWebhook:
    def test_missing_secret_is_unavailable(self, client):
        with patch.object(payment_service.settings, "stripe_webhook_secret", None):
            response = client.post("/payment-webhook", content=checkout_event(), headers={"stripe-signature": "t=1,v1=x"})

        assert response.status_code == 503

    @patch("paydesk.routers.webhook.alert_warning")
    @patch("paydesk.routers.webhook.mark_transaction_paid")
    def test_bad_signature_is_rejected_without_state_change(self, mock_mark, mock_alert, client):
        with patch.object(payment_service.settings, "stripe_webhook_secret", WEBHOOK_SECRET):
            response = client.post(
                "/payment-webhook", content=checkout_event(), headers={"stripe-signature": "t=1,v1=deadbeef"}
            )

        assert response.status_code == 400
        mock_mark.assert_not_called()
        mock_alert.assert_called_once()

    @patch("paydesk.routers.webhook.alert_warning")
    def test_missing_signature_is_rejected(self, _alert, client):
        with patch.object(payment_service.settings, "stripe_webhook_secret", WEBHOOK_SECRET):
            response = client.post("/payment-webhook", content=checkout_event())

        assert response.status_code == 400

    def test_signed_checkout_marks_transaction_paid(self, client, db):
        payload = checkout_event()
        with patch.object(payment_service.settings, "stripe_webhook_secret", WEBHOOK_SECRET), patch.object(
            webhook_router, "is_duplicate", new_callable=AsyncMock, return_value=False
        ) as dup, patch.object(webhook_router, "mark_transaction_paid", return_value=True) as mark, patch.object(
            webhook_router, "notify", new_callable=AsyncMock
        ) as notify, patch.object(
            webhook_router, "audit_service"
        ), patch.object(
            webhook_router.push_service, "notify_payment_success", new_callable=AsyncMock
        ):
            response = client.post("/payment-webhook", content=payload, headers={"stripe-signature": signed(payload)})

        assert response.status_code == 200
        assert response.json() == {"received": True}
        dup.assert_awaited_once_with(db, "evt_1", "stripe")
        mark.assert_called_once_with(db, "TXN1001", "user_1", "pi_123")
        assert "TXN1001" in notify.call_args_list[0][0][1]

    def test_redelivered_event_is_not_reprocessed(self, client):
        payload = checkout_event()
        with patch.object(payment_service.settings, "stripe_webhook_secret", WEBHOOK_SECRET), patch.object(
            webhook_router, "is_duplicate", new_callable=AsyncMock, return_value=True
        ), patch.object(webhook_router, "mark_transaction_paid") as mark:
            response = client.post("/payment-webhook", content=payload, headers={"stripe-signature": signed(payload)})

        assert response.status_code == 200
        assert response.json()["duplicate"] is True
        mark.assert_not_called()

    def test_failed_checkout_is_released_for_redelivery(self, db):
        payload = checkout_event()
        app.dependency_overrides[get_db] = lambda: db
        failing_client = TestClient(app, raise_server_exceptions=False)
        with patch.object(payment_service.settings, "stripe_webhook_secret", WEBHOOK_SECRET), patch.object(
            webhook_router, "is_duplicate", new_callable=AsyncMock, return_value=False
        ), patch.object(
            webhook_router, "mark_transaction_paid", side_effect=RuntimeError("db down")
        ), patch.object(
            webhook_router, "release_event", new_callable=AsyncMock
        ) as release:
            response = failing_client.post(
                "/payment-webhook", content=payload, headers={"stripe-signature": signed(payload)}
            )
        app.dependency_overrides.clear()

        assert response.status_code == 500
        release.assert_awaited_once_with(db, "evt_1", "stripe")
        db.rollback.assert_called_once()
