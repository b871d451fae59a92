import json
from typing import Optional

from adminbot.logging_config import get_logger
from adminbot.services.conversation_key import ConversationKey
from adminbot.services.redis_client import get_redis

logger = get_logger("client_profile")

PROFILE_PREFIX = "adminbot:client:"
PROFILE_TTL_SECONDS = 90 * 24 * 3600


class ClientProfileStore:
    """Small per-conversation profile: the name the customer gave us."""

    def __init__(self, redis_client=None, ttl_seconds: int = PROFILE_TTL_SECONDS):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds

    @property
    def redis(self):
        return self._redis or get_redis()

    async def get(self, key: ConversationKey) -> dict:
        raw = await self.redis.get(f"{PROFILE_PREFIX}{key}")
        if not raw:
            return {}
        try:
            profile = json.loads(raw)
        except ValueError:
            logger.warning("Client profile undecodable", extra={"context": {"key": str(key)}})
            return {}
        return profile if isinstance(profile, dict) else {}

    async def get_name(self, key: ConversationKey) -> Optional[str]:
        return (await self.get(key)).get("name")

    async def update(self, key: ConversationKey, **fields) -> dict:
        profile = await self.get(key)
        profile.update({name: value for name, value in fields.items() if value is not None})
        await self.redis.set(f"{PROFILE_PREFIX}{key}", json.dumps(profile, ensure_ascii=False), ex=self.ttl_seconds)
        return profile
