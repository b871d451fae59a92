from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from adminbot.config import settings
from adminbot.services.alert_service import alert_error, format_alert, send_alert


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setattr(settings, "alert_bot_token", "test-token")
    monkeypatch.setattr(settings, "alert_chat_id", "test-chat")


class TestSendAlert:
    @pytest.mark.asyncio
    async def test_returns_false_when_not_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "alert_bot_token", "")
        assert await send_alert("ERROR", "Test message") is False

    @pytest.mark.asyncio
    @patch("adminbot.services.alert_service.httpx.AsyncClient")
    async def test_sends_alert_to_telegram(self, mock_client_class, configured):
        mock_client = MagicMock()
        mock_client.post = AsyncMock(return_value=Mock(status_code=200))
        mock_client_class.return_value.__aenter__.return_value = mock_client

        result = await alert_error("Turn failed", {"key": "salon-1:79001234567"})

        assert result is True
        url = mock_client.post.call_args[0][0]
        json_data = mock_client.post.call_args[1]["json"]
        assert "api.telegram.org/bottest-token" in url
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]
        assert "salon-1:79001234567" in json_data["text"]

    @pytest.mark.asyncio
    @patch("adminbot.services.alert_service.httpx.AsyncClient")
    async def test_returns_false_on_telegram_error(self, mock_client_class, configured):
        mock_client = MagicMock()
        mock_client.post = AsyncMock(return_value=Mock(status_code=400))
        mock_client_class.return_value.__aenter__.return_value = mock_client

        assert await send_alert("ERROR", "Test message") is False

    @pytest.mark.asyncio
    @patch("adminbot.services.alert_service.httpx.AsyncClient")
    async def test_returns_false_on_network_error(self, mock_client_class, configured):
        mock_client_class.return_value.__aenter__.side_effect = httpx.ConnectError("Network error")

        assert await send_alert("ERROR", "Test message") is False


def test_format_alert_without_context():
    text = format_alert("WARNING", "Reply not delivered")
    assert "*WARNING*" in text
    assert "```" not in text
