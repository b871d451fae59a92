from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class WebhookMetadata(BaseModel):
    sender: Optional[str] = None
    timestamp: Optional[float] = None
    messageId: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageId", "message_id"))
    remoteJid: Optional[str] = Field(default=None, validation_alias=AliasChoices("remoteJid", "remote_jid"))
    pushName: Optional[str] = None


class WebhookBody(BaseModel):
    messageType: Optional[str] = "text"
    message: Optional[str] = None
    metadata: Optional[WebhookMetadata] = None
    mediaData: Optional[Any] = None


class WebhookRequest(BaseModel):
    tenant_id: str | int = Field(validation_alias=AliasChoices("tenant_id", "tenantId", "company_id", "companyId"))
    body: WebhookBody


class WebhookResponse(BaseModel):
    success: bool
    message: str
    conversation_key: Optional[str] = None
    duplicate: bool = False
