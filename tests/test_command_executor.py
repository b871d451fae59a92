import asyncio
from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest

from adminbot.config import settings
from adminbot.services.client_profile import ClientProfileStore
from adminbot.services.command_executor import (
    HANDLERS,
    BookingLedger,
    CommandStatus,
    ExecutionContext,
    booking_signature,
    execute,
    execute_all,
    parse_day,
)
from adminbot.services.response_parser import Command, CommandName, parse
from adminbot.services.result import BookingBackendError, ErrorKind

MSK = ZoneInfo("Europe/Moscow")
NOW = datetime(2024, 7, 19, 12, 0, tzinfo=MSK)


@pytest.fixture
def ctx(backend, key, redis_client):
    return ExecutionContext(
        key=key,
        backend=backend,
        now=NOW,
        tz_name="Europe/Moscow",
        client_name="Anna",
        profiles=ClientProfileStore(redis_client),
    )


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "backend_retry_backoff_seconds", 0)
    monkeypatch.setattr(settings, "backend_max_attempts", 2)


def test_every_command_has_a_handler():
    assert set(HANDLERS) == set(CommandName)


class TestSearchSlots:
    @pytest.mark.asyncio
    async def test_any_master_tomorrow_evening(self, ctx):
        result = await execute(Command(CommandName.SEARCH_SLOTS, ["men's haircut", "0", "tomorrow", "evening"]), ctx)

        assert result.ok
        assert result.data["service"] == "Men's haircut"
        assert result.data["staff"] is None
        assert result.data["date"] == "2024-07-20"
        assert [slot["time"] for slot in result.data["slots"]] == ["18:00", "19:30"]
        assert result.data["slots"][1]["staff_name"] == "Bari"

    @pytest.mark.asyncio
    async def test_specific_master_iso_date(self, ctx):
        result = await execute(Command(CommandName.SEARCH_SLOTS, ["manicure", "Maria", "2024-07-22"]), ctx)
        assert [slot["time"] for slot in result.data["slots"]] == ["10:00", "15:00", "18:00"]

    @pytest.mark.asyncio
    async def test_past_slots_hidden_today(self, ctx):
        result = await execute(Command(CommandName.SEARCH_SLOTS, ["manicure", "any"]), ctx)
        assert [slot["time"] for slot in result.data["slots"]] == ["15:00", "18:00", "19:30"]

    @pytest.mark.asyncio
    async def test_near_requested_time(self, ctx):
        result = await execute(Command(CommandName.SEARCH_SLOTS, ["manicure", "0", "tomorrow", "15:00"]), ctx)
        assert [slot["time"] for slot in result.data["slots"]] == ["15:00"]

    @pytest.mark.asyncio
    async def test_ambiguous_service_asks_without_backend_search(self, ctx, backend):
        result = await execute(Command(CommandName.SEARCH_SLOTS, ["haircut", "0", "2024-07-20"]), ctx)

        assert result.status == CommandStatus.NEEDS_CLARIFICATION
        assert result.error_kind == ErrorKind.VALIDATION
        assert result.options == ["Men's haircut", "Women's haircut"]
        assert "search_availability" not in backend.calls


class TestCreateBooking:
    @pytest.mark.asyncio
    async def test_creates_booking(self, ctx, backend, key):
        result = await execute(
            Command(CommandName.CREATE_BOOKING, ["manicure", "Maria", "2024-07-20T15:00", "first visit"]), ctx
        )

        assert result.ok
        assert result.data["booking_id"] == "new-1"
        assert result.data["staff"] == "Maria"
        phone, client_name, service_id, staff_id, starts_at, comment = backend.created[0]
        assert (phone, client_name, service_id, staff_id, comment) == (key.subscriber_id, "Anna", "3", "10", "first visit")
        assert starts_at == datetime(2024, 7, 20, 15, 0, tzinfo=MSK)

    @pytest.mark.asyncio
    async def test_unresolved_service_never_reaches_backend(self, ctx, backend):
        result = await execute(Command(CommandName.CREATE_BOOKING, ["massage", "Maria", "2024-07-20T15:00"]), ctx)

        assert result.status == CommandStatus.NEEDS_CLARIFICATION
        assert result.question
        assert result.options
        assert backend.created == []
        assert "check_availability" not in backend.calls

    @pytest.mark.asyncio
    async def test_date_without_time_needs_clarification(self, ctx, backend):
        result = await execute(Command(CommandName.CREATE_BOOKING, ["manicure", "Maria", "2024-07-20"]), ctx)
        assert result.status == CommandStatus.NEEDS_CLARIFICATION
        assert backend.created == []

    @pytest.mark.asyncio
    async def test_past_time_needs_clarification(self, ctx, backend):
        result = await execute(Command(CommandName.CREATE_BOOKING, ["manicure", "Maria", "2024-07-19T10:00"]), ctx)
        assert result.status == CommandStatus.NEEDS_CLARIFICATION
        assert backend.created == []

    @pytest.mark.asyncio
    async def test_any_master_picks_free_one(self, ctx, backend):
        result = await execute(Command(CommandName.CREATE_BOOKING, ["manicure", "0", "2024-07-20T19:30"]), ctx)

        assert result.ok
        assert backend.created[0][3] == "11"
        assert result.data["staff"] == "Bari"

    @pytest.mark.asyncio
    async def test_taken_slot_is_conflict(self, ctx, backend):
        backend.taken.add(("10", datetime(2024, 7, 20, 15, 0, tzinfo=MSK)))

        result = await execute(Command(CommandName.CREATE_BOOKING, ["manicure", "Maria", "2024-07-20T15:00"]), ctx)

        assert result.status == CommandStatus.FAILURE
        assert result.error_kind == ErrorKind.CONFLICT
        assert backend.created == []

    @pytest.mark.asyncio
    async def test_duplicate_in_same_turn_books_once(self, ctx, backend):
        _, commands = parse(
            "Booking you now!\n[CREATE_BOOKING:manicure,Maria,2024-07-20T15:00]\n"
            "[CREATE_BOOKING:Manicure,maria,2024-07-20T15:00:00+03:00]"
        )

        results = await execute_all(commands, ctx)

        assert len(backend.created) == 1
        assert results[0].ok and not results[0].duplicate
        assert results[1].ok and results[1].duplicate
        assert results[1].data == results[0].data

    @pytest.mark.asyncio
    async def test_duplicate_of_previous_turn_short_circuits(self, ctx, backend, key):
        signature = booking_signature(key, "3", "10", datetime(2024, 7, 20, 15, 0, tzinfo=MSK))
        ctx.previous_bookings = {signature: {"booking_id": "new-0", "service": "Manicure"}}

        result = await execute(Command(CommandName.CREATE_BOOKING, ["manicure", "Maria", "2024-07-20T15:00"]), ctx)

        assert result.duplicate
        assert result.data["booking_id"] == "new-0"
        assert backend.created == []


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_failure_does_not_stop_later_commands(self, ctx, backend):
        backend.failures["search_availability"] = BookingBackendError("forbidden", status_code=403)
        commands = [
            Command(CommandName.SEARCH_SLOTS, ["manicure"]),
            Command(CommandName.SHOW_PRICES, []),
        ]

        results = await execute_all(commands, ctx)

        assert [r.status for r in results] == [CommandStatus.FAILURE, CommandStatus.SUCCESS]
        assert results[0].error_kind == ErrorKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, ctx, backend):
        backend.failures["list_client_bookings"] = [BookingBackendError("timeout", transient=True)]

        result = await execute(Command(CommandName.SHOW_MY_BOOKINGS, []), ctx)

        assert result.ok
        assert backend.calls.count("list_client_bookings") == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, ctx, backend):
        backend.failures["list_client_bookings"] = BookingBackendError("timeout", transient=True)

        result = await execute(Command(CommandName.SHOW_MY_BOOKINGS, []), ctx)

        assert result.status == CommandStatus.FAILURE
        assert result.error_kind == ErrorKind.TRANSIENT
        assert backend.calls.count("list_client_bookings") == 2

    @pytest.mark.asyncio
    async def test_timeout_becomes_failure(self, ctx, backend, monkeypatch):
        monkeypatch.setattr(settings, "command_timeout_seconds", 0.01)

        async def hang(tenant_id, phone):
            await asyncio.sleep(5)

        backend.list_client_bookings = hang
        result = await execute(Command(CommandName.SHOW_MY_BOOKINGS, []), ctx)

        assert result.status == CommandStatus.FAILURE
        assert result.error_kind == ErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failure(self, ctx, backend):
        backend.failures["list_staff"] = RuntimeError("boom")

        result = await execute(Command(CommandName.SHOW_PORTFOLIO, []), ctx)

        assert result.status == CommandStatus.FAILURE
        assert result.error == "boom"
        assert result.error_kind == ErrorKind.UNKNOWN


class TestOtherCommands:
    @pytest.mark.asyncio
    async def test_check_booking(self, ctx, backend):
        backend.taken.add(("10", datetime(2024, 7, 20, 18, 0, tzinfo=MSK)))

        free = await execute(Command(CommandName.CHECK_BOOKING, ["manicure", "Maria", "2024-07-20T15:00"]), ctx)
        taken = await execute(Command(CommandName.CHECK_BOOKING, ["manicure", "Maria", "2024-07-20T18:00"]), ctx)

        assert free.data["available"] is True
        assert taken.data["available"] is False

    @pytest.mark.asyncio
    async def test_cancel_own_booking(self, ctx, backend):
        result = await execute(Command(CommandName.CANCEL_BOOKING, ["r1"]), ctx)
        assert result.data == {"booking_id": "r1", "cancelled": True}
        assert backend.cancelled == ["r1"]

    @pytest.mark.asyncio
    async def test_cancel_foreign_booking_asks(self, ctx, backend):
        result = await execute(Command(CommandName.CANCEL_BOOKING, ["r999"]), ctx)
        assert result.status == CommandStatus.NEEDS_CLARIFICATION
        assert result.options == ["r1 Manicure 21.07 10:00"]
        assert backend.cancelled == []

    @pytest.mark.asyncio
    async def test_cancel_without_bookings(self, ctx, backend):
        backend.bookings = []
        result = await execute(Command(CommandName.CANCEL_BOOKING, ["r1"]), ctx)
        assert result.data["cancelled"] is False

    @pytest.mark.asyncio
    async def test_show_prices_filtered(self, ctx):
        result = await execute(Command(CommandName.SHOW_PRICES, ["hair"]), ctx)
        assert [s["title"] for s in result.data["services"]] == ["Men's haircut", "Women's haircut"]

    @pytest.mark.asyncio
    async def test_show_services(self, ctx):
        result = await execute(Command(CommandName.SHOW_SERVICES, []), ctx)
        assert len(result.data["services"]) == 3

    @pytest.mark.asyncio
    async def test_show_portfolio_for_one_master(self, ctx):
        result = await execute(Command(CommandName.SHOW_PORTFOLIO, ["Bari"]), ctx)
        assert [m["name"] for m in result.data["staff"]] == ["Bari"]

    @pytest.mark.asyncio
    async def test_show_my_bookings(self, ctx):
        result = await execute(Command(CommandName.SHOW_MY_BOOKINGS, []), ctx)
        assert result.data["bookings"][0]["booking_id"] == "r1"

    @pytest.mark.asyncio
    async def test_save_client_name(self, ctx, key, redis_client):
        result = await execute(Command(CommandName.SAVE_CLIENT_NAME, ["Anna Maria"]), ctx)

        assert result.data == {"name": "Anna Maria"}
        assert ctx.client_name == "Anna Maria"
        assert await ClientProfileStore(redis_client).get_name(key) == "Anna Maria"

    @pytest.mark.asyncio
    async def test_save_empty_name_asks(self, ctx):
        result = await execute(Command(CommandName.SAVE_CLIENT_NAME, []), ctx)
        assert result.status == CommandStatus.NEEDS_CLARIFICATION


class TestBookingLedger:
    @pytest.mark.asyncio
    async def test_save_load_and_replace(self, redis_client, key):
        ledger = BookingLedger(redis_client, ttl_seconds=1800)

        await ledger.save(key, {"sig": {"booking_id": "new-1"}})
        assert await ledger.load(key) == {"sig": {"booking_id": "new-1"}}

        await ledger.save(key, {})
        assert await ledger.load(key) == {}


class TestParseDay:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, date(2024, 7, 19)),
            ("today", date(2024, 7, 19)),
            ("завтра", date(2024, 7, 20)),
            ("послезавтра", date(2024, 7, 21)),
            ("2024-08-01", date(2024, 8, 1)),
        ],
    )
    def test_values(self, value, expected):
        assert parse_day(value, date(2024, 7, 19)) == expected
