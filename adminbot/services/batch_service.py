"""Rapid-fire debouncing: collapse bursts of fragments into one merged message.

Each conversation has at most one Pending Batch, a Redis list of JSON
fragments in arrival order. A batch becomes claimable once it has been
quiet for ``debounce_seconds``, or once it is older than
``max_batch_age_seconds`` or holds ``max_batch_size`` fragments so that
a user who never stops typing still gets an answer.

Claiming renames the list to a private key. Fragments arriving after
the rename open a fresh batch, which becomes the next turn.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import uuid4

from redis.exceptions import RedisError, ResponseError

from adminbot.config import settings
from adminbot.logging_config import get_logger
from adminbot.services.conversation_key import ConversationKey
from adminbot.services.redis_client import get_redis

logger = get_logger("batch_service")

BATCH_PREFIX = "adminbot:batch:"
CLAIM_PREFIX = "adminbot:batch_claim:"
DEDUP_PREFIX = "adminbot:dedup:"
CLAIM_KEY_TTL_SECONDS = 300


@dataclass
class Fragment:
    text: str
    received_at: Optional[float] = None
    message_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "text": self.text,
                "received_at": self.received_at,
                "message_id": self.message_id,
                "metadata": self.metadata,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> Optional["Fragment"]:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.error("Failed to decode batch fragment", extra={"context": {"raw": str(raw)[:200]}})
            return None
        if not isinstance(data, dict):
            return None
        return cls(
            text=data.get("text") or "",
            received_at=float(data.get("received_at") or 0.0),
            message_id=data.get("message_id"),
            metadata=data.get("metadata") if isinstance(data.get("metadata"), dict) else {},
        )


@dataclass
class MergedMessage:
    key: ConversationKey
    text: str
    fragments: list[Fragment]
    metadata: dict = field(default_factory=dict)

    @property
    def first_received_at(self) -> float:
        return self.fragments[0].received_at if self.fragments else 0.0

    @property
    def last_received_at(self) -> float:
        return self.fragments[-1].received_at if self.fragments else 0.0

    @property
    def batch_size(self) -> int:
        return len(self.fragments)


def merge_fragments(key: ConversationKey, fragments: list[Fragment], joiner: str = " ") -> MergedMessage:
    """Join fragment texts in arrival order."""
    texts = [fragment.text.strip() for fragment in fragments if fragment.text and fragment.text.strip()]
    metadata = dict(fragments[0].metadata) if fragments else {}
    metadata.update(
        {
            "batch_size": len(fragments),
            "batch_time_span": round(fragments[-1].received_at - fragments[0].received_at, 3) if fragments else 0.0,
            "original_messages": texts,
            "message_ids": [fragment.message_id for fragment in fragments if fragment.message_id],
        }
    )
    return MergedMessage(key=key, text=joiner.join(texts), fragments=list(fragments), metadata=metadata)


class BatchService:
    def __init__(
        self,
        redis_client=None,
        *,
        debounce_seconds: Optional[float] = None,
        max_batch_age_seconds: Optional[float] = None,
        max_batch_size: Optional[int] = None,
        ttl_seconds: Optional[int] = None,
        joiner: Optional[str] = None,
        dedup_ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis_client
        self.debounce_seconds = debounce_seconds if debounce_seconds is not None else settings.debounce_seconds
        self.max_batch_age_seconds = (
            max_batch_age_seconds if max_batch_age_seconds is not None else settings.max_batch_age_seconds
        )
        self.max_batch_size = max_batch_size if max_batch_size is not None else settings.max_batch_size
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.batch_ttl_seconds
        self.joiner = joiner if joiner is not None else settings.batch_joiner
        self.dedup_ttl_seconds = dedup_ttl_seconds if dedup_ttl_seconds is not None else settings.dedup_ttl_seconds
        self._clock = clock

    @property
    def redis(self):
        return self._redis or get_redis()

    @staticmethod
    def batch_key(key: ConversationKey) -> str:
        return f"{BATCH_PREFIX}{key}"

    @staticmethod
    def dedup_key(key: ConversationKey, message_id: str) -> str:
        return f"{DEDUP_PREFIX}{key.tenant_id}:{message_id}"

    async def is_duplicate(self, key: ConversationKey, message_id: Optional[str]) -> bool:
        """Webhook gateways redeliver; the first delivery of a message id wins."""
        if not message_id:
            return False
        was_set = await self.redis.set(self.dedup_key(key, message_id), "1", ex=self.dedup_ttl_seconds, nx=True)
        return not was_set

    async def _forget_delivery(self, key: ConversationKey, message_id: Optional[str]) -> None:
        if not message_id:
            return
        try:
            await self.redis.delete(self.dedup_key(key, message_id))
        except RedisError as e:
            logger.error(
                f"Dedup marker left behind, redelivery will be dropped: {e}",
                extra={"context": {"key": str(key), "message_id": message_id}},
            )

    async def ingest(self, key: ConversationKey, fragment: Fragment) -> bool:
        """Append a fragment to the conversation's Pending Batch.

        Returns False when the fragment is a duplicate delivery. Store
        errors propagate so the caller can ask the gateway to redeliver.
        """
        if await self.is_duplicate(key, fragment.message_id):
            logger.info(
                "Duplicate message_id, not batched",
                extra={"context": {"key": str(key), "message_id": fragment.message_id}},
            )
            return False

        if fragment.received_at is None:
            fragment.received_at = self._clock()

        batch_key = self.batch_key(key)
        try:
            size = await self.redis.rpush(batch_key, fragment.to_json())
        except RedisError:
            # Not batched: let the redelivery through.
            await self._forget_delivery(key, fragment.message_id)
            raise
        try:
            await self.redis.expire(batch_key, self.ttl_seconds)
        except RedisError as e:
            logger.warning(f"Batch TTL not refreshed: {e}", extra={"context": {"key": str(key)}})

        logger.debug(
            "Fragment added to batch",
            extra={"context": {"key": str(key), "batch_size": size, "preview": fragment.text[:50]}},
        )
        return True

    def _is_ready(self, size: int, first_at: float, last_at: float, now: float) -> bool:
        if size <= 0:
            return False
        if size >= self.max_batch_size:
            return True
        if now - first_at >= self.max_batch_age_seconds:
            return True
        return now - last_at >= self.debounce_seconds

    async def is_ready(self, key: ConversationKey) -> bool:
        batch_key = self.batch_key(key)
        size = await self.redis.llen(batch_key)
        if not size:
            return False
        first = Fragment.from_json(await self.redis.lindex(batch_key, 0))
        last = Fragment.from_json(await self.redis.lindex(batch_key, -1))
        if first is None or last is None:
            # Undecodable edge fragment: let claim() drop it rather than block the batch forever.
            return True
        return self._is_ready(size, first.received_at, last.received_at, self._clock())

    async def claim(self, key: ConversationKey) -> Optional[MergedMessage]:
        """Take the whole Pending Batch if it is ready, else None."""
        batch_key = self.batch_key(key)
        try:
            if not await self.is_ready(key):
                return None

            claim_key = f"{CLAIM_PREFIX}{key}:{uuid4().hex}"
            try:
                await self.redis.rename(batch_key, claim_key)
            except ResponseError:
                # Claimed by another worker or expired in between.
                return None
        except RedisError as e:
            logger.warning(f"Batch claim failed, will retry next cycle: {e}", extra={"context": {"key": str(key)}})
            return None

        try:
            await self.redis.expire(claim_key, CLAIM_KEY_TTL_SECONDS)
            raw_fragments = await self.redis.lrange(claim_key, 0, -1)
        except RedisError as e:
            logger.warning(f"Claimed batch unreadable, handing it back: {e}", extra={"context": {"key": str(key)}})
            await self._restore(claim_key, batch_key, key)
            return None

        fragments = [fragment for fragment in (Fragment.from_json(raw) for raw in raw_fragments) if fragment]
        if fragments and not self._is_ready(
            len(fragments), fragments[0].received_at, fragments[-1].received_at, self._clock()
        ):
            # A fragment landed between the readiness check and the rename.
            await self._restore(claim_key, batch_key, key)
            logger.info(
                "Batch claim aborted, fragment still arriving",
                extra={"context": {"key": str(key), "batch_size": len(fragments)}},
            )
            return None

        try:
            await self.redis.delete(claim_key)
        except RedisError as e:
            logger.warning(f"Claim key not deleted, it will expire: {e}", extra={"context": {"key": str(key)}})

        if not fragments:
            logger.warning("Claimed batch was empty", extra={"context": {"key": str(key)}})
            return None

        merged = merge_fragments(key, fragments, self.joiner)
        logger.info(
            "Batch claimed",
            extra={
                "context": {
                    "key": str(key),
                    "batch_size": merged.batch_size,
                    "time_span": merged.metadata["batch_time_span"],
                    "preview": merged.text[:100],
                }
            },
        )
        return merged

    async def _restore(self, claim_key: str, batch_key: str, key: ConversationKey) -> None:
        """Move a claimed list back in front of any newer fragments, keeping order."""
        try:
            while await self.redis.lmove(claim_key, batch_key, "RIGHT", "LEFT") is not None:
                pass
            await self.redis.expire(batch_key, self.ttl_seconds)
        except RedisError as e:
            logger.error(
                f"Claimed fragments stranded until the claim key expires: {e}",
                extra={"context": {"key": str(key), "claim_key": claim_key}},
            )

    async def _push_front(self, batch_key: str, raw_fragments: list[str]) -> None:
        # LPUSH inserts one by one at the head, so push newest first.
        await self.redis.lpush(batch_key, *reversed(raw_fragments))
        await self.redis.expire(batch_key, self.ttl_seconds)

    async def requeue(self, merged: MergedMessage) -> None:
        """Return a claimed message's fragments ahead of anything newer."""
        await self._push_front(self.batch_key(merged.key), [fragment.to_json() for fragment in merged.fragments])
        logger.info(
            "Batch requeued",
            extra={"context": {"key": str(merged.key), "batch_size": merged.batch_size}},
        )

    async def pending_keys(self) -> list[ConversationKey]:
        keys = []
        async for batch_key in self.redis.scan_iter(match=f"{BATCH_PREFIX}*"):
            try:
                keys.append(ConversationKey.parse(batch_key[len(BATCH_PREFIX):]))
            except ValueError:
                logger.warning(f"Skipping malformed batch key: {batch_key}")
        return keys

    async def ready_keys(self) -> list[ConversationKey]:
        ready = []
        for key in await self.pending_keys():
            try:
                if await self.is_ready(key):
                    ready.append(key)
            except RedisError as e:
                logger.warning(f"Readiness check failed: {e}", extra={"context": {"key": str(key)}})
        return ready

    async def get_stats(self) -> dict:
        now = self._clock()
        stats = {"pending_batches": 0, "batches": []}
        for key in await self.pending_keys():
            batch_key = self.batch_key(key)
            size = await self.redis.llen(batch_key)
            first = Fragment.from_json(await self.redis.lindex(batch_key, 0)) if size else None
            stats["batches"].append(
                {
                    "key": str(key),
                    "size": size,
                    "age_seconds": round(now - first.received_at, 3) if first else None,
                }
            )
        stats["pending_batches"] = len(stats["batches"])
        return stats

    async def clear(self, key: ConversationKey) -> None:
        await self.redis.delete(self.batch_key(key))
        logger.info("Batch cleared", extra={"context": {"key": str(key)}})
