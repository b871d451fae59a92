"""Canonical (tenant, subscriber) identity for a chat thread.

Subscriber ids arrive as WhatsApp JIDs (``79001234567@s.whatsapp.net``),
multi-device JIDs (``79001234567:12@s.whatsapp.net``), local formats
(``8 (900) 123-45-67``) or bare international numbers. All of them map
to the same digits-only E.164 string without the leading ``+``.
"""

import re
from dataclasses import dataclass

from adminbot.config import settings

MIN_PHONE_LENGTH = 10
MAX_PHONE_LENGTH = 15


class InvalidSubscriberId(ValueError):
    pass


def normalize_subscriber_id(raw: str, default_country_code: str | None = None) -> str:
    """Normalize a raw subscriber identifier to digits-only E.164.

    Examples:
        >>> normalize_subscriber_id("79001234567@s.whatsapp.net")
        '79001234567'
        >>> normalize_subscriber_id("8 (900) 123-45-67")
        '79001234567'
        >>> normalize_subscriber_id("+7 900 123 45 67")
        '79001234567'
    """
    if not raw or not isinstance(raw, str):
        raise InvalidSubscriberId("Subscriber id is required")

    country_code = default_country_code if default_country_code is not None else settings.default_country_code

    value = raw.strip().split("@", 1)[0]
    value = value.split(":", 1)[0]
    digits = re.sub(r"\D", "", value)

    if len(digits) == 11 and digits.startswith("8"):
        digits = "7" + digits[1:]
    if len(digits) == 10:
        digits = country_code + digits

    if len(digits) < MIN_PHONE_LENGTH:
        raise InvalidSubscriberId(f"Subscriber id too short: {raw!r}")
    if len(digits) > MAX_PHONE_LENGTH:
        raise InvalidSubscriberId(f"Subscriber id too long: {raw!r}")
    return digits


def normalize_tenant_id(raw) -> str:
    value = str(raw or "").strip().lower()
    if not value:
        raise ValueError("Tenant id is required")
    return value


@dataclass(frozen=True)
class ConversationKey:
    tenant_id: str
    subscriber_id: str

    @classmethod
    def from_raw(cls, tenant_id, subscriber_id: str) -> "ConversationKey":
        return cls(normalize_tenant_id(tenant_id), normalize_subscriber_id(subscriber_id))

    @classmethod
    def parse(cls, value: str) -> "ConversationKey":
        """Inverse of ``str(key)``."""
        tenant_id, _, subscriber_id = value.rpartition(":")
        if not tenant_id or not subscriber_id:
            raise ValueError(f"Malformed conversation key: {value!r}")
        return cls(tenant_id, subscriber_id)

    @property
    def jid(self) -> str:
        return f"{self.subscriber_id}@s.whatsapp.net"

    def __str__(self) -> str:
        return f"{self.tenant_id}:{self.subscriber_id}"
