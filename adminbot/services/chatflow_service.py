from abc import ABC, abstractmethod
from typing import Optional

import httpx

from adminbot.config import settings
from adminbot.logging_config import get_logger
from adminbot.services.alert_service import alert_critical
from adminbot.services.conversation_key import ConversationKey

logger = get_logger("chatflow_service")


class ReplyChannel(ABC):
    """Outbound message channel to the customer."""

    @abstractmethod
    async def send(self, key: ConversationKey, text: str, idempotency_key: Optional[str] = None) -> bool:
        pass


class ChatFlowChannel(ReplyChannel):
    """WhatsApp delivery through the ChatFlow gateway."""

    def __init__(
        self,
        token: Optional[str] = None,
        instance_id: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token if token is not None else settings.chatflow_token
        self.instance_id = instance_id if instance_id is not None else settings.chatflow_instance_id
        self.api_url = api_url or settings.chatflow_api_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def send(self, key: ConversationKey, text: str, idempotency_key: Optional[str] = None) -> bool:
        if not self.token:
            logger.error("ChatFlow token is missing (CHATFLOW_TOKEN not set)")
            await alert_critical("WhatsApp send failed", {"jid": key.jid, "error": "missing_chatflow_token"})
            return False

        if not self.instance_id or not text:
            logger.warning(f"ChatFlow send skipped: instance_id={self.instance_id!r}, empty_text={not text}")
            return False

        params = {
            "token": self.token,
            "instance_id": self.instance_id,
            "jid": key.jid,
            "msg": text,
        }
        if idempotency_key:
            params["msg_id"] = idempotency_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.get(self.api_url, params=params)
        except httpx.HTTPError as e:
            logger.error(f"Error sending WhatsApp message: {e}", extra={"context": {"key": str(key)}})
            await alert_critical("WhatsApp send failed", {"jid": key.jid, "error": str(e)})
            return False

        logger.info(
            f"ChatFlow response: status={response.status_code}",
            extra={"context": {"key": str(key), "body": response.text[:200]}},
        )
        return response.status_code == 200
