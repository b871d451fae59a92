"""One conversational turn: claimed batch in, reply out.

The controller is the only place that talks to every other component.
It guarantees that a claimed message is either answered (a reply, a
clarification question or an apology) or handed back to the batcher,
and that at most one turn per conversation is running.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from redis.exceptions import RedisError

from adminbot.config import settings
from adminbot.database import SessionLocal
from adminbot.logging_config import conversation_logger, get_logger
from adminbot.services import history_service, prompt_service, reply_formatter, response_parser
from adminbot.services.alert_service import alert_error, alert_warning
from adminbot.services.batch_service import BatchService, MergedMessage
from adminbot.services.booking.base import BookingBackend
from adminbot.services.chatflow_service import ReplyChannel
from adminbot.services.client_profile import ClientProfileStore
from adminbot.services.command_executor import (
    BookingLedger,
    CommandResult,
    ExecutionContext,
    call_backend,
    execute_all,
)
from adminbot.services.conversation_key import ConversationKey
from adminbot.services.intermediate_context import IntermediateContext, IntermediateContextStore
from adminbot.services.llm.base import LLMProvider
from adminbot.services.response_parser import Command
from adminbot.services.result import BookingBackendError, LLMError

logger = get_logger("turn_service")

BUSY_NOTIFIED_FLAG = "busy_notified"


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DEFERRED = "deferred"


@dataclass
class TurnResult:
    key: ConversationKey
    status: TurnStatus
    reply: Optional[str] = None
    clean_text: str = ""
    commands: list[Command] = field(default_factory=list)
    results: list[CommandResult] = field(default_factory=list)
    elapsed_ms: int = 0
    error: Optional[str] = None


class TurnController:
    def __init__(
        self,
        *,
        batcher: BatchService,
        contexts: IntermediateContextStore,
        llm: LLMProvider,
        backend: BookingBackend,
        channel: ReplyChannel,
        profiles: Optional[ClientProfileStore] = None,
        ledger: Optional[BookingLedger] = None,
        session_factory: Callable = SessionLocal,
        busy_policy: Optional[str] = None,
        busy_wait_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
        history_limit: Optional[int] = None,
        sleep_func=asyncio.sleep,
    ):
        self.batcher = batcher
        self.contexts = contexts
        self.llm = llm
        self.backend = backend
        self.channel = channel
        self.profiles = profiles or ClientProfileStore()
        self.ledger = ledger or BookingLedger()
        self.session_factory = session_factory
        self.busy_policy = busy_policy or settings.busy_policy
        self.busy_wait_seconds = busy_wait_seconds if busy_wait_seconds is not None else settings.busy_wait_seconds
        self.poll_interval_seconds = (
            poll_interval_seconds if poll_interval_seconds is not None else settings.poll_interval_seconds
        )
        self.history_limit = history_limit if history_limit is not None else settings.history_limit
        self.sleep_func = sleep_func

    async def process(self, merged: MergedMessage) -> TurnResult:
        key = merged.key
        log = conversation_logger(logger, key)
        started = time.monotonic()

        try:
            busy = await self.contexts.is_processing(key) and not await self._wait_until_free(merged, log)
        except RedisError as e:
            # begin_processing still takes the marker with SET NX.
            log.warning(f"Busy check failed: {e}")
            busy = False
        if busy:
            return await self._defer(merged, started, log)

        history = await self._load_history(key, log)
        client_name = await self._load_client_name(key, log)

        begin = await self.contexts.begin_processing(key, merged.text, history=history, client_name=client_name)
        if not begin.ok:
            log.info(f"Turn not started: {begin.error_code}")
            if begin.error_code == "busy":
                await self._notify_busy(merged, log)
            return await self._defer(merged, started, log, error=begin.error)

        context = begin.value
        try:
            return await self._run(merged, context, history, client_name, started, log)
        except Exception as e:
            log.exception(f"Turn failed: {e}")
            await self.contexts.fail(key, str(e), token=context.token)
            await self._send(key, reply_formatter.APOLOGY, context.token, log)
            await alert_error("Turn failed", {"key": str(key), "error": str(e)[:300]})
            return TurnResult(
                key=key, status=TurnStatus.FAILED, reply=reply_formatter.APOLOGY, error=str(e), elapsed_ms=_ms(started)
            )

    async def _run(
        self,
        merged: MergedMessage,
        context: IntermediateContext,
        history: list,
        client_name: Optional[str],
        started: float,
        log,
    ) -> TurnResult:
        key = merged.key
        timings = {}

        stage = time.monotonic()
        services, staff = await self._load_catalog(key, log)
        timings["catalog_ms"] = _ms(stage)
        await self._heartbeat(key, context.token, log)

        system_prompt = prompt_service.build_system_prompt(
            services=services, staff=staff, context=context, client_name=client_name
        )
        messages = prompt_service.build_messages(system_prompt, history[-self.history_limit :], merged.text)

        stage = time.monotonic()
        try:
            model_text = await self._generate(messages, log)
        except LLMError as e:
            timings["llm_ms"] = _ms(stage)
            log.error(f"Model call failed: {e}")
            await self.contexts.fail(key, str(e), token=context.token)
            await self._record(merged, reply_formatter.APOLOGY, "failed", [], timings, log, error=str(e))
            await self._send(key, reply_formatter.APOLOGY, context.token, log)
            await alert_error("LLM call failed", {"key": str(key), "error": str(e)[:300]})
            return TurnResult(
                key=key,
                status=TurnStatus.FAILED,
                reply=reply_formatter.APOLOGY,
                error=str(e),
                elapsed_ms=_ms(started),
            )
        timings["llm_ms"] = _ms(stage)
        await self._heartbeat(key, context.token, log)

        clean_text, commands = response_parser.parse(model_text)
        interpretation = await self.contexts.record_interpretation(key, clean_text, commands)
        if not interpretation.ok:
            log.warning(f"Interpretation not recorded: {interpretation.error_code}")

        ctx = ExecutionContext(
            key=key,
            backend=self.backend,
            services=services,
            staff=staff,
            client_name=client_name,
            profiles=self.profiles,
            previous_bookings=await self.ledger.load(key),
        )
        stage = time.monotonic()
        results = await execute_all(
            commands, ctx, before_each=lambda command: self._heartbeat(key, context.token, log)
        )
        timings["commands_ms"] = _ms(stage)

        reply = reply_formatter.compose_reply(clean_text, results)
        turn_result = TurnResult(
            key=key,
            status=TurnStatus.COMPLETED,
            reply=reply,
            clean_text=clean_text,
            commands=commands,
            results=results,
        )

        outcomes = [result.to_dict() for result in results]
        await self._record(merged, reply, "completed", outcomes, timings, log)
        try:
            await self.ledger.save(key, ctx.created_bookings)
        except RedisError as e:
            log.warning(f"Booking ledger not saved: {e}")

        finished = await self.contexts.complete(key, turn_result, token=context.token)
        if not finished.ok:
            log.warning(f"Turn completion not recorded: {finished.error_code}")

        stage = time.monotonic()
        await self._send(key, reply, context.token, log)
        timings["send_ms"] = _ms(stage)

        turn_result.elapsed_ms = _ms(started)
        log.info(
            "Turn completed",
            extra={
                "context": {
                    "batch_size": merged.batch_size,
                    "elapsed_ms": turn_result.elapsed_ms,
                    "timings": timings,
                    "commands": [(o["command"], o["status"]) for o in outcomes],
                }
            },
        )
        return turn_result

    async def _wait_until_free(self, merged: MergedMessage, log) -> bool:
        if self.busy_policy == "notify":
            await self._notify_busy(merged, log)
            return False
        log.info("Conversation busy, waiting for the running turn")
        return await self.contexts.wait_for_completion(
            merged.key,
            max_wait=self.busy_wait_seconds,
            poll_interval=self.poll_interval_seconds,
            sleep_func=self.sleep_func,
        )

    async def _notify_busy(self, merged: MergedMessage, log) -> None:
        if self.busy_policy != "notify" or not merged.fragments:
            return
        first = merged.fragments[0]
        if first.metadata.get(BUSY_NOTIFIED_FLAG):
            return
        first.metadata[BUSY_NOTIFIED_FLAG] = True
        await self._send(merged.key, reply_formatter.BUSY_NOTICE, None, log)

    async def _defer(self, merged: MergedMessage, started: float, log, error: Optional[str] = None) -> TurnResult:
        try:
            await self.batcher.requeue(merged)
        except RedisError as e:
            log.error(f"Failed to requeue deferred batch: {e}", extra={"context": {"text": merged.text[:200]}})
            await alert_error("Deferred message could not be requeued", {"key": str(merged.key), "error": str(e)})
            await self._send(merged.key, reply_formatter.APOLOGY, None, log)
            return TurnResult(
                key=merged.key,
                status=TurnStatus.FAILED,
                reply=reply_formatter.APOLOGY,
                error=str(e),
                elapsed_ms=_ms(started),
            )
        log.info("Turn deferred", extra={"context": {"batch_size": merged.batch_size}})
        return TurnResult(key=merged.key, status=TurnStatus.DEFERRED, error=error, elapsed_ms=_ms(started))

    async def _generate(self, messages: list, log) -> str:
        attempts = max(1, settings.llm_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                response = await asyncio.wait_for(
                    self.llm.generate(
                        messages,
                        temperature=settings.llm_temperature,
                        max_tokens=settings.llm_max_tokens,
                        timeout_seconds=settings.llm_timeout_seconds,
                    ),
                    timeout=settings.llm_timeout_seconds,
                )
                return response.content
            except (LLMError, asyncio.TimeoutError) as e:
                if attempt == attempts:
                    raise LLMError(str(e) or "LLM timeout") from e
                log.warning(f"Model call failed, retrying: {e!r}", extra={"context": {"attempt": attempt}})

    async def _heartbeat(self, key: ConversationKey, token: str, log) -> None:
        refreshed = await self.contexts.refresh(key, token)
        if not refreshed.ok:
            log.warning(f"Processing marker not refreshed: {refreshed.error_code}")

    async def _fetch_catalog(self, key: ConversationKey) -> tuple[list, list]:
        services = await call_backend(self.backend.list_services, key.tenant_id)
        staff = await call_backend(self.backend.list_staff, key.tenant_id)
        return services, staff

    async def _load_catalog(self, key: ConversationKey, log) -> tuple[list, list]:
        try:
            services, staff = await asyncio.wait_for(self._fetch_catalog(key), timeout=settings.command_timeout_seconds)
        except (BookingBackendError, asyncio.TimeoutError) as e:
            log.warning(f"Catalog unavailable, continuing without it: {e}")
            return [], []
        return services, staff

    async def _load_client_name(self, key: ConversationKey, log) -> Optional[str]:
        try:
            return await self.profiles.get_name(key)
        except RedisError as e:
            log.warning(f"Client profile unavailable: {e}")
            return None

    async def _load_history(self, key: ConversationKey, log) -> list:
        def load():
            db = self.session_factory()
            try:
                return history_service.load_history(db, key, limit=self.history_limit)
            finally:
                db.close()

        try:
            return await asyncio.to_thread(load)
        except Exception as e:
            log.warning(f"History unavailable: {e}")
            return []

    async def _record(self, merged: MergedMessage, reply, status, outcomes, timings, log, error=None) -> None:
        def record():
            db = self.session_factory()
            try:
                return history_service.record_turn(
                    db,
                    merged.key,
                    user_text=merged.text,
                    reply=reply,
                    status=status,
                    commands=outcomes,
                    timings=timings,
                    batch_size=merged.batch_size,
                    user_metadata=merged.metadata,
                    error=error,
                )
            finally:
                db.close()

        try:
            result = await asyncio.to_thread(record)
        except Exception as e:
            log.error(f"Turn history not saved: {e}")
            return
        if not result.ok:
            log.error(f"Turn history not saved: {result.error}")

    async def _send(self, key: ConversationKey, text: str, idempotency_key: Optional[str], log) -> bool:
        try:
            sent = await self.channel.send(key, text, idempotency_key=idempotency_key)
        except Exception as e:
            log.exception(f"Reply channel raised: {e}")
            sent = False
        if not sent:
            log.error("Reply not delivered", extra={"context": {"preview": text[:100]}})
            await alert_warning("Reply not delivered", {"key": str(key)})
        return sent


def _ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class TurnWorker:
    """Claims ready batches and runs their turns, one in-flight turn per conversation."""

    def __init__(
        self,
        controller: TurnController,
        batcher: BatchService,
        *,
        max_concurrent_turns: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
    ):
        self.controller = controller
        self.batcher = batcher
        self.max_concurrent_turns = (
            max_concurrent_turns if max_concurrent_turns is not None else settings.max_concurrent_turns
        )
        self.poll_interval_seconds = (
            poll_interval_seconds if poll_interval_seconds is not None else settings.poll_interval_seconds
        )
        self._in_flight: dict[ConversationKey, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def run_batch_cycle(self) -> int:
        """Start turns for every ready batch; returns how many were started."""
        try:
            keys = await self.batcher.ready_keys()
        except RedisError as e:
            logger.warning(f"Batch scan failed: {e}")
            return 0

        started = 0
        for key in keys:
            if key in self._in_flight:
                continue
            if len(self._in_flight) >= self.max_concurrent_turns:
                break
            merged = await self.batcher.claim(key)
            if merged is None:
                continue
            task = asyncio.create_task(self._run_turn(merged))
            self._in_flight[key] = task
            task.add_done_callback(lambda _task, key=key: self._in_flight.pop(key, None))
            started += 1
        return started

    async def _run_turn(self, merged: MergedMessage) -> None:
        try:
            await self.controller.process(merged)
        except Exception as e:
            logger.exception(f"Turn crashed: {e}", extra={"context": {"key": str(merged.key)}})

    async def drain(self) -> None:
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def run_forever(self) -> None:
        while True:
            try:
                await self.run_batch_cycle()
                await asyncio.sleep(self.poll_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Turn worker cycle failed", extra={"context": {"error": str(e)}})
                await asyncio.sleep(self.poll_interval_seconds)
