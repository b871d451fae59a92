"""Per-conversation processing state shared by all workers.

Two Redis keys per conversation:

* ``adminbot:processing:{key}`` holds the token of the turn that owns the
  conversation. It is taken with SET NX and carries a TTL equal to the
  abandonment threshold, so a crashed worker's claim lapses on its own.
* ``adminbot:intermediate:{key}`` holds the IntermediateContext record:
  status, the merged message, what the bot last asked and what it was
  about to say.

The running turn calls ``refresh`` between stages, which pushes both the
marker TTL and the record's ``refreshed_at`` forward, so only a turn that
goes quiet for the whole threshold is treated as abandoned. This is a
time-based heuristic, not a fenced lease: a worker that stalls past the
threshold and then resumes can overlap with the turn that reclaimed its
conversation.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Callable, Optional
from uuid import uuid4

from redis.exceptions import RedisError

from adminbot.config import settings
from adminbot.logging_config import get_logger
from adminbot.services import state_machine
from adminbot.services.conversation_key import ConversationKey
from adminbot.services.redis_client import get_redis
from adminbot.services.result import ErrorKind, Result
from adminbot.services.state_machine import ProcessingStatus, coerce_status

if TYPE_CHECKING:
    from adminbot.services.response_parser import Command
    from adminbot.services.turn_service import TurnResult

logger = get_logger("intermediate_context")

INTERMEDIATE_PREFIX = "adminbot:intermediate:"
PROCESSING_PREFIX = "adminbot:processing:"
DRAFT_REPLY_MAX_CHARS = 200
RESULT_REPLY_MAX_CHARS = 100
RECENT_MESSAGES = 3

QUESTION_PATTERNS = (
    re.compile(r"(?:which|what) [^?.!\n]+ (?:would you like|do you want|are you interested in)\?", re.IGNORECASE),
    re.compile(r"what time [^?.!\n]+\?", re.IGNORECASE),
    re.compile(r"(?:which|what) (?:master|stylist|specialist) [^?.!\n]+\?", re.IGNORECASE),
    re.compile(r"what(?:'s| is) your name\?", re.IGNORECASE),
    re.compile(r"when [^?.!\n]+\?", re.IGNORECASE),
    re.compile(r"Какой [^?.!\n]+ (?:вас интересует|выбрать|хотите)\?", re.IGNORECASE),
    re.compile(r"На какую [^?.!\n]+\?", re.IGNORECASE),
    re.compile(r"Как вас зовут\?", re.IGNORECASE),
    re.compile(r"В какое время [^?.!\n]+\?", re.IGNORECASE),
    re.compile(r"К какому мастеру [^?.!\n]+\?", re.IGNORECASE),
    re.compile(r"Когда [^?.!\n]+\?", re.IGNORECASE),
)

# First match wins; confirmation questions often mention a time or a master too.
REPLY_TYPE_PATTERNS = (
    (
        "confirmation",
        re.compile(
            r"confirm|is that (?:right|correct|ok)|shall i book|should i book|подтверждаете|вс[её] верно|записать вас",
            re.IGNORECASE,
        ),
    ),
    ("name_request", re.compile(r"your name|как вас зовут|ваше имя|представьтесь", re.IGNORECASE)),
    (
        "staff_selection",
        re.compile(
            r"which (?:master|stylist|specialist)|who would you like|к какому мастеру|к кому|выберите мастера",
            re.IGNORECASE,
        ),
    ),
    (
        "service_selection",
        re.compile(
            r"which service|what service|what are you interested in|какой .+ услуг|на какую услугу|что вас интересует",
            re.IGNORECASE,
        ),
    ),
    ("time_selection", re.compile(r"what time|which time|в какое время|на какое время", re.IGNORECASE)),
    ("date_selection", re.compile(r"which day|what day|what date|when|на какой день|на какую дату|когда", re.IGNORECASE)),
)


@dataclass
class IntermediateContext:
    status: ProcessingStatus
    message: str
    started_at: float
    token: str
    client_name: Optional[str] = None
    recent_messages: list = field(default_factory=list)
    last_bot_message: Optional[str] = None
    last_bot_question: Optional[str] = None
    expected_reply_type: Optional[str] = None
    mentioned_services: list = field(default_factory=list)
    mentioned_staff: list = field(default_factory=list)
    mentioned_dates: list = field(default_factory=list)
    mentioned_times: list = field(default_factory=list)
    draft_reply: Optional[str] = None
    commands: list = field(default_factory=list)
    refreshed_at: Optional[float] = None
    completed_at: Optional[float] = None
    processing_ms: Optional[int] = None
    result: Optional[dict] = None
    error: Optional[str] = None
    age_seconds: float = 0.0

    def to_json(self) -> str:
        data = asdict(self)
        data["status"] = self.status.value
        data.pop("age_seconds", None)
        return json.dumps(data, ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str, now: Optional[float] = None) -> Optional["IntermediateContext"]:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        known = {name for name in cls.__dataclass_fields__ if name != "age_seconds"}
        values = {name: value for name, value in data.items() if name in known}
        values["status"] = coerce_status(values.get("status"))
        values.setdefault("message", "")
        values.setdefault("started_at", 0.0)
        values.setdefault("token", "")
        context = cls(**values)
        if now is not None:
            context.age_seconds = max(0.0, now - float(context.started_at or 0.0))
        return context


def extract_last_bot_message(history: Optional[list]) -> Optional[str]:
    for item in reversed(history or []):
        if item.get("role") == "assistant" and item.get("content"):
            return item["content"]
    return None


def extract_last_bot_question(history: Optional[list]) -> Optional[str]:
    last_bot = extract_last_bot_message(history)
    if not last_bot:
        return None

    for pattern in QUESTION_PATTERNS:
        match = pattern.search(last_bot)
        if match:
            return match.group(0).strip()

    if "?" in last_bot:
        for sentence in reversed(re.split(r"[.!\n]", last_bot)):
            if "?" in sentence:
                return sentence[: sentence.rfind("?") + 1].strip()
    return None


def detect_expected_reply_type(history: Optional[list]) -> Optional[str]:
    question = extract_last_bot_question(history)
    if not question:
        return None
    for reply_type, pattern in REPLY_TYPE_PATTERNS:
        if pattern.search(question):
            return reply_type
    return "unknown"


def _append_unique(values: list, value: Optional[str]) -> None:
    if value and value not in values:
        values.append(value)


class IntermediateContextStore:
    def __init__(
        self,
        redis_client=None,
        *,
        abandon_after_seconds: Optional[int] = None,
        context_ttl_seconds: Optional[int] = None,
        completed_ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis_client
        self.abandon_after_seconds = (
            abandon_after_seconds if abandon_after_seconds is not None else settings.abandon_after_seconds
        )
        self.context_ttl_seconds = context_ttl_seconds if context_ttl_seconds is not None else settings.context_ttl_seconds
        self.completed_ttl_seconds = (
            completed_ttl_seconds if completed_ttl_seconds is not None else settings.completed_ttl_seconds
        )
        self._clock = clock

    @property
    def redis(self):
        return self._redis or get_redis()

    @staticmethod
    def record_key(key: ConversationKey) -> str:
        return f"{INTERMEDIATE_PREFIX}{key}"

    @staticmethod
    def marker_key(key: ConversationKey) -> str:
        return f"{PROCESSING_PREFIX}{key}"

    async def get(self, key: ConversationKey) -> Optional[IntermediateContext]:
        raw = await self.redis.get(self.record_key(key))
        if not raw:
            return None
        context = IntermediateContext.from_json(raw, now=self._clock())
        if context is None:
            logger.warning("Intermediate context undecodable", extra={"context": {"key": str(key)}})
        return context

    def _is_abandoned(self, context: IntermediateContext) -> bool:
        if context.status != ProcessingStatus.STARTED:
            return False
        last_seen = context.refreshed_at or context.started_at or 0.0
        return self._clock() - last_seen >= self.abandon_after_seconds

    async def is_processing(self, key: ConversationKey) -> bool:
        context = await self.get(key)
        if context is None:
            return False
        return context.status == ProcessingStatus.STARTED and not self._is_abandoned(context)

    async def begin_processing(
        self,
        key: ConversationKey,
        message: str,
        *,
        history: Optional[list] = None,
        client_name: Optional[str] = None,
    ) -> Result[IntermediateContext]:
        """Claim the conversation for one turn and snapshot the dialogue state.

        Fails with ``busy`` while another turn holds the conversation.
        """
        now = self._clock()
        token = uuid4().hex
        marker_key = self.marker_key(key)

        try:
            acquired = await self.redis.set(marker_key, token, nx=True, ex=self.abandon_after_seconds)
            existing = await self.get(key)

            if not acquired:
                if existing is None or not self._is_abandoned(existing):
                    return Result.failure("Conversation is busy", "busy", ErrorKind.CONFLICT)
                logger.warning(
                    "Reclaiming abandoned turn",
                    extra={"context": {"key": str(key), "age_seconds": round(existing.age_seconds, 1)}},
                )
                await self.redis.set(marker_key, token, ex=self.abandon_after_seconds)

            previous = existing.status if existing else ProcessingStatus.IDLE
            if previous == ProcessingStatus.STARTED:
                # The marker lapsed without complete()/fail(): the owning worker is gone.
                logger.warning(
                    "Overwriting abandoned intermediate context",
                    extra={"context": {"key": str(key), "previous_token": existing.token}},
                )
            else:
                state_machine.start(previous)

            context = IntermediateContext(
                status=ProcessingStatus.STARTED,
                message=message,
                started_at=now,
                token=token,
                client_name=client_name,
                recent_messages=list((history or [])[-RECENT_MESSAGES:]),
                last_bot_message=extract_last_bot_message(history),
                last_bot_question=extract_last_bot_question(history),
                expected_reply_type=detect_expected_reply_type(history),
            )
            await self.redis.set(self.record_key(key), context.to_json(), ex=self.context_ttl_seconds)
        except RedisError as e:
            logger.error(f"Failed to begin processing: {e}", extra={"context": {"key": str(key)}})
            try:
                await self._release(key, token)
            except RedisError:
                logger.warning("Processing marker left to expire", extra={"context": {"key": str(key)}})
            return Result.failure(str(e), "store_error", ErrorKind.TRANSIENT)

        logger.info(
            "Processing started",
            extra={
                "context": {
                    "key": str(key),
                    "last_bot_question": context.last_bot_question,
                    "expected_reply_type": context.expected_reply_type,
                }
            },
        )
        return Result.success(context)

    async def record_interpretation(
        self,
        key: ConversationKey,
        reply_text: str,
        commands: list[Command],
    ) -> Result[IntermediateContext]:
        """Store the draft reply and the commands about to run."""
        try:
            context = await self.get(key)
            if context is None:
                return Result.failure("No intermediate context", "not_found")

            context.draft_reply = (reply_text or "")[:DRAFT_REPLY_MAX_CHARS]
            context.commands = [{"command": command.name.value, "params": command.params} for command in commands]

            for command in commands:
                params = command.named_params()
                _append_unique(context.mentioned_services, params.get("service"))
                _append_unique(context.mentioned_staff, params.get("staff"))
                _append_unique(context.mentioned_dates, params.get("date"))
                _append_unique(context.mentioned_times, params.get("time_preference"))
                moment = params.get("datetime")
                if moment and "T" in moment:
                    date_part, time_part = moment.split("T", 1)
                    _append_unique(context.mentioned_dates, date_part)
                    _append_unique(context.mentioned_times, time_part[:5])

            await self.redis.set(self.record_key(key), context.to_json(), ex=self.context_ttl_seconds)
        except RedisError as e:
            logger.error(f"Failed to record interpretation: {e}", extra={"context": {"key": str(key)}})
            return Result.failure(str(e), "store_error", ErrorKind.TRANSIENT)

        logger.info(
            "Interpretation recorded",
            extra={"context": {"key": str(key), "commands": [c["command"] for c in context.commands]}},
        )
        return Result.success(context)

    async def refresh(self, key: ConversationKey, token: str) -> Result[bool]:
        """Extend the running turn's hold on the conversation.

        Fails with ``token_mismatch`` once another turn owns the marker.
        """
        marker_key = self.marker_key(key)
        try:
            if await self.redis.get(marker_key) != token:
                return Result.failure("Turn token mismatch", "token_mismatch", ErrorKind.CONFLICT)
            await self.redis.expire(marker_key, self.abandon_after_seconds)

            context = await self.get(key)
            if context is not None and context.token == token:
                context.refreshed_at = self._clock()
                await self.redis.set(self.record_key(key), context.to_json(), ex=self.context_ttl_seconds)
        except RedisError as e:
            logger.warning(f"Failed to refresh processing marker: {e}", extra={"context": {"key": str(key)}})
            return Result.failure(str(e), "store_error", ErrorKind.TRANSIENT)
        return Result.success(True)

    async def complete(self, key: ConversationKey, turn_result: TurnResult, *, token: Optional[str] = None) -> Result[bool]:
        summary = {
            "success": True,
            "reply": (turn_result.reply or "")[:RESULT_REPLY_MAX_CHARS],
            "commands": [
                {"command": result.command, "status": result.status.value} for result in turn_result.results
            ],
        }
        return await self._finish(key, ProcessingStatus.COMPLETED, token=token, result=summary)

    async def fail(self, key: ConversationKey, error: str, *, token: Optional[str] = None) -> Result[bool]:
        return await self._finish(
            key, ProcessingStatus.FAILED, token=token, result={"success": False}, error=str(error)[:500]
        )

    async def _finish(
        self,
        key: ConversationKey,
        status: ProcessingStatus,
        *,
        token: Optional[str],
        result: dict,
        error: Optional[str] = None,
    ) -> Result[bool]:
        now = self._clock()
        try:
            context = await self.get(key)
            if context is None:
                logger.warning("Intermediate context expired before finish", extra={"context": {"key": str(key)}})
            elif token and context.token != token:
                logger.warning(
                    "Turn was reclaimed by another worker, not overwriting",
                    extra={"context": {"key": str(key), "status": status.value}},
                )
                return Result.failure("Turn token mismatch", "token_mismatch", ErrorKind.CONFLICT)
            else:
                context.status = state_machine.transition(context.status, status)
                context.completed_at = now
                context.processing_ms = int((now - context.started_at) * 1000)
                context.result = result
                context.error = error
                await self.redis.set(self.record_key(key), context.to_json(), ex=self.completed_ttl_seconds)

            await self._release(key, token)
        except state_machine.InvalidTransitionError as e:
            logger.warning(f"Ignoring finish: {e}", extra={"context": {"key": str(key)}})
            return Result.failure(str(e), "invalid_state", ErrorKind.CONFLICT)
        except RedisError as e:
            logger.error(f"Failed to finish turn: {e}", extra={"context": {"key": str(key)}})
            return Result.failure(str(e), "store_error", ErrorKind.TRANSIENT)

        logger.info(
            "Processing finished",
            extra={"context": {"key": str(key), "status": status.value, "error": error}},
        )
        return Result.success(True)

    async def _release(self, key: ConversationKey, token: Optional[str]) -> None:
        marker_key = self.marker_key(key)
        if token is None:
            await self.redis.delete(marker_key)
            return
        if await self.redis.get(marker_key) == token:
            await self.redis.delete(marker_key)

    async def wait_for_completion(
        self,
        key: ConversationKey,
        max_wait: float = 3.0,
        poll_interval: float = 0.1,
        sleep_func=asyncio.sleep,
    ) -> bool:
        """Poll until the running turn finishes; False on timeout."""
        deadline = self._clock() + max_wait
        while True:
            if not await self.is_processing(key):
                return True
            if self._clock() >= deadline:
                return False
            await sleep_func(poll_interval)
