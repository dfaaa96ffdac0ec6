from unittest.mock import MagicMock, Mock, patch

from paydesk.services.alert_service import (
    alert_critical,
    alert_error,
    alert_warning,
    format_alert,
    send_alert,
)


def _ok_client(mock_client_class, status_code=200):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_client.post.return_value = mock_response
    return mock_client


class TestSendAlert:
    @patch("paydesk.services.alert_service.ALERT_BOT_TOKEN", None)
    @patch("paydesk.services.alert_service.ALERT_CHAT_ID", None)
    def test_returns_false_when_not_configured(self):
        assert send_alert("ERROR", "Desk ticket creation failed") is False

    @patch("paydesk.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("paydesk.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("paydesk.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = _ok_client(mock_client_class)

        result = send_alert("ERROR", "Desk ticket creation failed")

        assert result is True
        call_args = mock_client.post.call_args
        assert "api.telegram.org" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]

    @patch("paydesk.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("paydesk.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("paydesk.services.alert_service.httpx.Client")
    def test_includes_context_in_message(self, mock_client_class):
        mock_client = _ok_client(mock_client_class)

        send_alert("ERROR", "Refund failed", {"txn_id": "TXN1002"})

        text = mock_client.post.call_args[1]["json"]["text"]
        assert "txn_id" in text
        assert "TXN1002" in text

    @patch("paydesk.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("paydesk.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("paydesk.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class):
        _ok_client(mock_client_class, status_code=400)
        assert send_alert("ERROR", "Test message") is False

    @patch("paydesk.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("paydesk.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("paydesk.services.alert_service.httpx.Client")
    def test_returns_false_on_exception(self, mock_client_class):
        mock_client_class.return_value.__enter__.side_effect = Exception("Network error")
        assert send_alert("ERROR", "Test message") is False


class TestFormatAlert:
    def test_masks_credentials_in_context(self):
        text = format_alert("CRITICAL", "Stripe misconfigured", {"stripe_secret_key": "sk_live_123", "txn_id": "TXN1"})

        assert "sk_live_123" not in text
        assert "***" in text
        assert "TXN1" in text

    def test_level_markers(self):
        assert format_alert("ERROR", "x").startswith("[x]")
        assert format_alert("CRITICAL", "x").startswith("[!!!]")
        assert format_alert("WARNING", "x").startswith("[!]")


class TestAlertShortcuts:
    @patch("paydesk.services.alert_service.send_alert")
    def test_alert_error_calls_send_alert_with_error_level(self, mock_send):
        mock_send.return_value = True

        result = alert_error("Test error", {"key": "value"})

        mock_send.assert_called_once_with("ERROR", "Test error", {"key": "value"})
        assert result is True

    @patch("paydesk.services.alert_service.send_alert")
    def test_alert_critical_calls_send_alert_with_critical_level(self, mock_send):
        mock_send.return_value = True

        alert_critical("LLM budget exhausted")

        mock_send.assert_called_once_with("CRITICAL", "LLM budget exhausted", None)

    @patch("paydesk.services.alert_service.send_alert")
    def test_alert_warning_calls_send_alert_with_warning_level(self, mock_send):
        alert_warning("Rate limiter disabled")

        mock_send.assert_called_once_with("WARNING", "Rate limiter disabled", None)
