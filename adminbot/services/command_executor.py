"""Run parsed commands against the booking backend.

Each command name maps to one registered handler. Handlers resolve
their parameters against the tenant catalog, raise ClarificationNeeded
when a parameter is missing or ambiguous, and return plain data for the
reply formatter. ``execute`` turns every outcome, including timeouts and
unexpected exceptions, into a CommandResult.
"""

import asyncio
import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from redis.exceptions import RedisError

from adminbot.config import settings
from adminbot.logging_config import get_logger
from adminbot.services import service_matcher
from adminbot.services.booking.base import BookingBackend
from adminbot.services.client_profile import ClientProfileStore
from adminbot.services.conversation_key import ConversationKey
from adminbot.services.redis_client import get_redis
from adminbot.services.response_parser import Command, CommandName
from adminbot.services.result import BookingBackendError, ClarificationNeeded, ErrorKind

logger = get_logger("command_executor")

LEDGER_PREFIX = "adminbot:bookings:"

RELATIVE_DAYS = {
    "today": 0,
    "сегодня": 0,
    "tomorrow": 1,
    "завтра": 1,
    "day after tomorrow": 2,
    "послезавтра": 2,
}

TIME_OF_DAY = {
    "morning": (0, 12),
    "утро": (0, 12),
    "утром": (0, 12),
    "afternoon": (12, 17),
    "день": (12, 17),
    "днем": (12, 17),
    "днём": (12, 17),
    "evening": (17, 24),
    "вечер": (17, 24),
    "вечером": (17, 24),
}

MAX_SLOTS_SHOWN = 8


class CommandStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NEEDS_CLARIFICATION = "needs_clarification"


@dataclass
class CommandResult:
    command: str
    params: list
    status: CommandStatus
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    question: Optional[str] = None
    options: list = field(default_factory=list)
    duplicate: bool = False

    @property
    def ok(self) -> bool:
        return self.status == CommandStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "params": self.params,
            "status": self.status.value,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "duplicate": self.duplicate,
        }


@dataclass
class ExecutionContext:
    key: ConversationKey
    backend: BookingBackend
    services: Optional[list] = None
    staff: Optional[list] = None
    client_name: Optional[str] = None
    now: Optional[datetime] = None
    tz_name: str = field(default_factory=lambda: settings.business_timezone)
    profiles: Optional[ClientProfileStore] = None
    # signature -> booking data, for the current turn and the one before it
    created_bookings: dict = field(default_factory=dict)
    previous_bookings: dict = field(default_factory=dict)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.tz_name)

    def current_time(self) -> datetime:
        return self.now.astimezone(self.tz) if self.now else datetime.now(self.tz)


Handler = Callable[[Command, ExecutionContext], Awaitable[Any]]
HANDLERS: dict = {}


def register(name: CommandName):
    def decorator(func: Handler) -> Handler:
        HANDLERS[name] = func
        return func

    return decorator


class BookingLedger:
    """Signatures of bookings created in the last turn of a conversation."""

    def __init__(self, redis_client=None, ttl_seconds: Optional[int] = None):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.booking_ledger_ttl_seconds

    @property
    def redis(self):
        return self._redis or get_redis()

    async def load(self, key: ConversationKey) -> dict:
        try:
            raw = await self.redis.get(f"{LEDGER_PREFIX}{key}")
        except RedisError as e:
            logger.warning(f"Booking ledger unavailable: {e}", extra={"context": {"key": str(key)}})
            return {}
        if not raw:
            return {}
        try:
            entries = json.loads(raw)
        except ValueError:
            return {}
        return entries if isinstance(entries, dict) else {}

    async def save(self, key: ConversationKey, entries: dict) -> None:
        ledger_key = f"{LEDGER_PREFIX}{key}"
        if not entries:
            await self.redis.delete(ledger_key)
            return
        await self.redis.set(ledger_key, json.dumps(entries, ensure_ascii=False, default=str), ex=self.ttl_seconds)


def booking_signature(key: ConversationKey, service_id: str, staff_id: Optional[str], starts_at: datetime) -> str:
    moment = starts_at.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    raw = "|".join([key.tenant_id, key.subscriber_id, str(service_id), str(staff_id or "any"), moment])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def parse_day(value: Optional[str], today: date) -> date:
    value = (value or "").strip().lower()
    if not value:
        return today
    if value in RELATIVE_DAYS:
        return today + timedelta(days=RELATIVE_DAYS[value])
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise ClarificationNeeded("Which day would you like to come in?", field="date") from None


def parse_moment(value: Optional[str], tz: ZoneInfo) -> datetime:
    """ISO 8601 date-time; naive values are in the business timezone."""
    value = (value or "").strip()
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        raise ClarificationNeeded("What date and time would suit you?", field="datetime") from None
    if len(value) <= 10:
        raise ClarificationNeeded("What time on that day would suit you?", field="datetime")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=tz)
    return moment


def filter_by_time_preference(slots: list, preference: Optional[str]) -> list:
    preference = (preference or "").strip().lower()
    if not preference:
        return slots
    if preference in TIME_OF_DAY:
        start, end = TIME_OF_DAY[preference]
        return [slot for slot in slots if start <= slot.starts_at.hour < end]

    match = re.match(r"^(\d{1,2})(?::(\d{2}))?", preference)
    if not match:
        return slots
    wanted = int(match.group(1)) * 60 + int(match.group(2) or 0)
    nearby = [slot for slot in slots if abs(slot.starts_at.hour * 60 + slot.starts_at.minute - wanted) <= 120]
    return sorted(nearby, key=lambda slot: abs(slot.starts_at.hour * 60 + slot.starts_at.minute - wanted))


async def call_backend(func, *args, **kwargs):
    """Call a backend method, retrying transient failures a bounded number of times."""
    attempts = max(1, settings.backend_max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except BookingBackendError as e:
            if not e.transient or attempt == attempts:
                raise
            logger.warning(
                f"Transient backend error, retrying: {e}",
                extra={"context": {"attempt": attempt, "call": getattr(func, "__name__", str(func))}},
            )
            await asyncio.sleep(settings.backend_retry_backoff_seconds)


async def get_services(ctx: ExecutionContext) -> list:
    if ctx.services is None:
        ctx.services = await call_backend(ctx.backend.list_services, ctx.key.tenant_id)
    return ctx.services


async def get_staff(ctx: ExecutionContext) -> list:
    if ctx.staff is None:
        ctx.staff = await call_backend(ctx.backend.list_staff, ctx.key.tenant_id)
    return ctx.staff


def _require(command: Command, index: int, question: str, field_name: str) -> str:
    value = command.param(index)
    if not value:
        raise ClarificationNeeded(question, field=field_name)
    return value


def _slot_data(slot, staff_by_id: dict) -> dict:
    return {
        "datetime": slot.starts_at.isoformat(),
        "time": slot.starts_at.strftime("%H:%M"),
        "staff_id": slot.staff_id,
        "staff_name": slot.staff_name or staff_by_id.get(slot.staff_id),
    }


@register(CommandName.SEARCH_SLOTS)
async def search_slots(command: Command, ctx: ExecutionContext) -> dict:
    service = service_matcher.match_service(
        _require(command, 0, "Which service would you like to book?", "service"), await get_services(ctx)
    )
    staff_query = command.param(1)
    staff = None
    if not service_matcher.is_any_staff(staff_query):
        staff = service_matcher.match_staff(staff_query, await get_staff(ctx))

    day = parse_day(command.param(2), ctx.current_time().date())
    slots = await call_backend(
        ctx.backend.search_availability, ctx.key.tenant_id, service.id, staff.id if staff else None, day
    )
    now = ctx.current_time()
    slots = [slot for slot in slots if slot.starts_at >= now]
    slots = filter_by_time_preference(slots, command.param(3))

    staff_by_id = {member.id: member.name for member in await get_staff(ctx)}
    return {
        "service": service.title,
        "staff": staff.name if staff else None,
        "date": day.isoformat(),
        "slots": [_slot_data(slot, staff_by_id) for slot in slots[:MAX_SLOTS_SHOWN]],
    }


async def _resolve_booking_target(command: Command, ctx: ExecutionContext):
    service = service_matcher.match_service(
        _require(command, 0, "Which service would you like to book?", "service"), await get_services(ctx)
    )
    staff_query = command.param(1)
    staff = None
    if not service_matcher.is_any_staff(staff_query):
        staff = service_matcher.match_staff(staff_query, await get_staff(ctx))
    starts_at = parse_moment(_require(command, 2, "What date and time would suit you?", "datetime"), ctx.tz)
    if starts_at < ctx.current_time():
        raise ClarificationNeeded("That time has already passed. What other time would suit you?", field="datetime")
    return service, staff, starts_at


async def _pick_free_staff(ctx: ExecutionContext, service, starts_at: datetime):
    slots = await call_backend(
        ctx.backend.search_availability, ctx.key.tenant_id, service.id, None, starts_at.astimezone(ctx.tz).date()
    )
    for slot in slots:
        if slot.starts_at == starts_at:
            return slot.staff_id
    return None


@register(CommandName.CHECK_BOOKING)
async def check_booking(command: Command, ctx: ExecutionContext) -> dict:
    service, staff, starts_at = await _resolve_booking_target(command, ctx)
    if staff is None:
        available = await _pick_free_staff(ctx, service, starts_at) is not None
    else:
        available = await call_backend(
            ctx.backend.check_availability, ctx.key.tenant_id, service.id, staff.id, starts_at
        )
    return {
        "service": service.title,
        "staff": staff.name if staff else None,
        "datetime": starts_at.isoformat(),
        "available": bool(available),
    }


@register(CommandName.CREATE_BOOKING)
async def create_booking(command: Command, ctx: ExecutionContext):
    service, staff, starts_at = await _resolve_booking_target(command, ctx)
    signature = booking_signature(ctx.key, service.id, staff.id if staff else None, starts_at)

    prior = ctx.created_bookings.get(signature) or ctx.previous_bookings.get(signature)
    if prior is not None:
        logger.info(
            "Duplicate booking request short-circuited",
            extra={"context": {"key": str(ctx.key), "booking_id": prior.get("booking_id")}},
        )
        return CommandResult(
            command=command.name.value, params=command.params, status=CommandStatus.SUCCESS, data=prior, duplicate=True
        )

    staff_id = staff.id if staff else await _pick_free_staff(ctx, service, starts_at)
    if staff_id is None or (
        staff is not None
        and not await call_backend(ctx.backend.check_availability, ctx.key.tenant_id, service.id, staff_id, starts_at)
    ):
        return CommandResult(
            command=command.name.value,
            params=command.params,
            status=CommandStatus.FAILURE,
            error="This time is no longer available",
            error_kind=ErrorKind.CONFLICT,
        )

    booking = await call_backend(
        ctx.backend.create_booking,
        ctx.key.tenant_id,
        phone=ctx.key.subscriber_id,
        client_name=ctx.client_name,
        service_id=service.id,
        staff_id=staff_id,
        starts_at=starts_at,
        comment=command.param(3),
    )
    staff_names = {member.id: member.name for member in await get_staff(ctx)}
    data = {
        "booking_id": booking.id,
        "service": service.title,
        "staff": staff.name if staff else staff_names.get(staff_id),
        "datetime": starts_at.isoformat(),
    }
    ctx.created_bookings[signature] = data
    return data


@register(CommandName.CANCEL_BOOKING)
async def cancel_booking(command: Command, ctx: ExecutionContext) -> dict:
    bookings = await call_backend(ctx.backend.list_client_bookings, ctx.key.tenant_id, ctx.key.subscriber_id)
    booking_id = command.param(0)
    options = [
        " ".join(part for part in (b.id, b.service_title, b.starts_at.strftime("%d.%m %H:%M") if b.starts_at else None) if part)
        for b in bookings
    ]

    if not bookings:
        return {"booking_id": booking_id, "cancelled": False, "reason": "no_bookings"}
    if not booking_id:
        if len(bookings) == 1:
            booking_id = bookings[0].id
        else:
            raise ClarificationNeeded("Which booking would you like to cancel?", options=options, field="booking_id")
    if booking_id not in {b.id for b in bookings}:
        raise ClarificationNeeded(
            "I couldn't find that booking. Which one would you like to cancel?", options=options, field="booking_id"
        )

    await call_backend(ctx.backend.cancel_booking, ctx.key.tenant_id, booking_id)
    return {"booking_id": booking_id, "cancelled": True}


@register(CommandName.SHOW_PRICES)
async def show_prices(command: Command, ctx: ExecutionContext) -> dict:
    services = service_matcher.filter_services(command.param(0), await get_services(ctx))
    return {
        "services": [
            {"title": s.title, "price_min": s.price_min, "price_max": s.price_max} for s in services
        ]
    }


@register(CommandName.SHOW_SERVICES)
async def show_services(command: Command, ctx: ExecutionContext) -> dict:
    services = service_matcher.filter_services(command.param(0), await get_services(ctx))
    return {
        "services": [
            {"title": s.title, "category": s.category, "duration_minutes": s.duration_minutes} for s in services
        ]
    }


@register(CommandName.SHOW_PORTFOLIO)
async def show_portfolio(command: Command, ctx: ExecutionContext) -> dict:
    staff = await get_staff(ctx)
    if command.param(0):
        member = service_matcher.match_staff(command.param(0), staff)
        staff = [member] if member else staff
    return {
        "staff": [
            {"name": m.name, "specialization": m.specialization, "portfolio": m.portfolio} for m in staff
        ]
    }


@register(CommandName.SHOW_MY_BOOKINGS)
async def show_my_bookings(command: Command, ctx: ExecutionContext) -> dict:
    bookings = await call_backend(ctx.backend.list_client_bookings, ctx.key.tenant_id, ctx.key.subscriber_id)
    return {
        "bookings": [
            {
                "booking_id": b.id,
                "datetime": b.starts_at.isoformat() if b.starts_at else None,
                "service": b.service_title,
                "staff": b.staff_name,
            }
            for b in bookings
        ]
    }


@register(CommandName.SAVE_CLIENT_NAME)
async def save_client_name(command: Command, ctx: ExecutionContext) -> dict:
    name = " ".join(command.params).strip()
    if not name:
        raise ClarificationNeeded("What's your name?", field="name")
    name = name[:100]
    if ctx.profiles is not None:
        await ctx.profiles.update(ctx.key, name=name)
    ctx.client_name = name
    return {"name": name}


def _failure(command: Command, error: str, kind: ErrorKind) -> CommandResult:
    name = command.name.value if isinstance(command.name, CommandName) else str(command.name)
    return CommandResult(
        command=name,
        params=command.params,
        status=CommandStatus.FAILURE,
        error=error,
        error_kind=kind,
    )


async def execute(command: Command, ctx: ExecutionContext) -> CommandResult:
    name = command.name.value if isinstance(command.name, CommandName) else str(command.name)
    handler = HANDLERS.get(command.name)
    if handler is None:
        logger.warning("No handler registered", extra={"context": {"command": name}})
        return _failure(command, "Unknown command", ErrorKind.UNKNOWN)

    log_context = {"context": {"command": name, "params": command.params}}
    try:
        outcome = await asyncio.wait_for(handler(command, ctx), timeout=settings.command_timeout_seconds)
    except ClarificationNeeded as e:
        logger.info(
            "Command needs clarification",
            extra={"context": {"command": name, "field": e.field, "options": e.options}},
        )
        return CommandResult(
            command=name,
            params=command.params,
            status=CommandStatus.NEEDS_CLARIFICATION,
            error=e.question,
            error_kind=ErrorKind.VALIDATION,
            question=e.question,
            options=e.options,
        )
    except asyncio.TimeoutError:
        logger.error("Command timed out", extra=log_context)
        return _failure(command, "Timed out", ErrorKind.TRANSIENT)
    except BookingBackendError as e:
        logger.error(f"Booking backend error: {e}", extra=log_context)
        return _failure(command, str(e), e.kind)
    except Exception as e:
        logger.exception(f"Command failed: {e}", extra=log_context)
        return _failure(command, str(e), ErrorKind.UNKNOWN)

    if isinstance(outcome, CommandResult):
        return outcome
    return CommandResult(command=name, params=command.params, status=CommandStatus.SUCCESS, data=outcome)


async def execute_all(
    commands: list[Command],
    ctx: ExecutionContext,
    before_each: Optional[Callable[[Command], Awaitable[Any]]] = None,
) -> list[CommandResult]:
    """Run commands in order; a failing command never stops the ones after it."""
    results = []
    for command in commands:
        if before_each is not None:
            await before_each(command)
        result = await execute(command, ctx)
        logger.info(
            "Command executed",
            extra={
                "context": {
                    "key": str(ctx.key),
                    "command": result.command,
                    "status": result.status.value,
                    "duplicate": result.duplicate,
                    "error": result.error,
                }
            },
        )
        results.append(result)
    return results
