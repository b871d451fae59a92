from fastapi import APIRouter, Depends, HTTPException, status
from redis.exceptions import RedisError

from adminbot.logging_config import get_logger
from adminbot.schemas.webhook import WebhookMetadata, WebhookRequest, WebhookResponse
from adminbot.services.batch_service import BatchService, Fragment
from adminbot.services.conversation_key import ConversationKey

logger = get_logger("webhook")

router = APIRouter()


def get_batch_service() -> BatchService:
    return BatchService()


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(payload: WebhookRequest, batcher: BatchService = Depends(get_batch_service)):
    """Accept one inbound WhatsApp message and add it to the conversation's pending batch.

    The reply is produced later by the turn worker, once the customer
    stops typing.
    """
    body = payload.body
    metadata = body.metadata or WebhookMetadata()

    raw_subscriber = metadata.remoteJid or metadata.sender
    if not raw_subscriber:
        return WebhookResponse(success=False, message="Missing metadata.remoteJid")

    try:
        key = ConversationKey.from_raw(payload.tenant_id, raw_subscriber)
    except ValueError as e:
        logger.warning(f"Rejected webhook: {e}", extra={"context": {"tenant_id": str(payload.tenant_id)}})
        return WebhookResponse(success=False, message=str(e))

    text = (body.message or "").strip()
    message_type = (body.messageType or "text").strip().lower()
    if message_type != "text" or not text:
        logger.info(
            "Ignored non-text or empty message",
            extra={"context": {"key": str(key), "message_type": message_type}},
        )
        return WebhookResponse(success=True, message="Ignored", conversation_key=str(key))

    fragment = Fragment(
        text=text,
        message_id=metadata.messageId,
        metadata={
            "message_type": message_type,
            "sender_name": metadata.pushName,
            "gateway_timestamp": metadata.timestamp,
        },
    )

    try:
        added = await batcher.ingest(key, fragment)
    except RedisError as e:
        logger.error(f"Failed to queue message: {e}", extra={"context": {"key": str(key)}})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Message store unavailable")

    if not added:
        return WebhookResponse(success=True, message="Duplicate message", conversation_key=str(key), duplicate=True)

    logger.info("Message queued", extra={"context": {"key": str(key), "message_id": metadata.messageId}})
    return WebhookResponse(success=True, message="Queued", conversation_key=str(key))
