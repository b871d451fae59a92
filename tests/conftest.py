from datetime import date, datetime
from fnmatch import fnmatchcase
from unittest.mock import Mock
from zoneinfo import ZoneInfo

import pytest
from redis.exceptions import ResponseError

from adminbot.services.batch_service import BatchService
from adminbot.services.booking.base import Booking, BookingBackend, CatalogService, Slot, StaffMember
from adminbot.services.conversation_key import ConversationKey
from adminbot.services.intermediate_context import IntermediateContextStore

START_TIME = 1_721_000_000.0
MSK = ZoneInfo("Europe/Moscow")


class FakeClock:
    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the pipeline uses, with TTLs on a fake clock."""

    def __init__(self, clock=None):
        self.data = {}
        self.expires_at = {}
        self.clock = clock or FakeClock()

    def _purge(self, key):
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= self.clock():
            self.data.pop(key, None)
            self.expires_at.pop(key, None)

    def _exists(self, key) -> bool:
        self._purge(key)
        return key in self.data

    def ttl(self, key):
        self._purge(key)
        deadline = self.expires_at.get(key)
        return None if deadline is None else deadline - self.clock()

    async def get(self, key):
        self._purge(key)
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    async def set(self, key, value, ex=None, nx=False):
        if nx and self._exists(key):
            return None
        self.data[key] = value
        if ex is not None:
            self.expires_at[key] = self.clock() + ex
        else:
            self.expires_at.pop(key, None)
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._exists(key):
                removed += 1
            self.data.pop(key, None)
            self.expires_at.pop(key, None)
        return removed

    async def rpush(self, key, *values):
        self._purge(key)
        items = self.data.setdefault(key, [])
        items.extend(values)
        return len(items)

    async def lpush(self, key, *values):
        self._purge(key)
        items = self.data.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def lmove(self, src, dst, wherefrom="LEFT", whereto="RIGHT"):
        self._purge(src)
        self._purge(dst)
        items = self.data.get(src)
        if not items:
            return None
        value = items.pop(-1 if wherefrom == "RIGHT" else 0)
        if not items:
            self.data.pop(src, None)
            self.expires_at.pop(src, None)
        target = self.data.setdefault(dst, [])
        if whereto == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    async def lrange(self, key, start, end):
        self._purge(key)
        items = self.data.get(key, [])
        return list(items[start:] if end == -1 else items[start : end + 1])

    async def lindex(self, key, index):
        self._purge(key)
        items = self.data.get(key, [])
        try:
            return items[index]
        except IndexError:
            return None

    async def llen(self, key):
        self._purge(key)
        return len(self.data.get(key, []))

    async def expire(self, key, seconds):
        if not self._exists(key):
            return False
        self.expires_at[key] = self.clock() + seconds
        return True

    async def rename(self, src, dst):
        if not self._exists(src):
            raise ResponseError("no such key")
        self.data[dst] = self.data.pop(src)
        self.expires_at.pop(dst, None)
        if src in self.expires_at:
            self.expires_at[dst] = self.expires_at.pop(src)
        return True

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if self._exists(key) and (match is None or fnmatchcase(key, match)):
                yield key


class FakeBackend(BookingBackend):
    """Salon with three services and two masters; records every call."""

    def __init__(self):
        self.services = [
            CatalogService("1", "Men's haircut", category="Hair", price_min=1500, price_max=2000),
            CatalogService("2", "Women's haircut", category="Hair", price_min=2500),
            CatalogService("3", "Manicure", category="Nails", price_min=1200),
        ]
        self.staff = [StaffMember("10", "Maria", "Stylist"), StaffMember("11", "Bari", "Barber")]
        self.slot_times = {"10": ["10:00", "15:00", "18:00"], "11": ["11:00", "19:30"]}
        self.taken = set()
        self.bookings = [Booking("r1", datetime(2024, 7, 21, 10, 0, tzinfo=MSK), "Manicure", "Maria")]
        self.created = []
        self.cancelled = []
        self.calls = []
        self.failures = {}

    async def _maybe_fail(self, name):
        self.calls.append(name)
        error = self.failures.get(name)
        if isinstance(error, list):
            error = error.pop(0) if error else None
        if error is not None:
            raise error

    async def list_services(self, tenant_id):
        await self._maybe_fail("list_services")
        return self.services

    async def list_staff(self, tenant_id, service_id=None):
        await self._maybe_fail("list_staff")
        return self.staff

    async def search_availability(self, tenant_id, service_id, staff_id, day: date):
        await self._maybe_fail("search_availability")
        slots = []
        for member_id, times in self.slot_times.items():
            if staff_id and member_id != staff_id:
                continue
            for value in times:
                hour, minute = map(int, value.split(":"))
                slots.append(Slot(datetime(day.year, day.month, day.day, hour, minute, tzinfo=MSK), member_id))
        return sorted(slots, key=lambda slot: slot.starts_at)

    async def check_availability(self, tenant_id, service_id, staff_id, starts_at):
        await self._maybe_fail("check_availability")
        return (staff_id, starts_at) not in self.taken

    async def create_booking(self, tenant_id, *, phone, client_name, service_id, staff_id, starts_at, comment=None):
        await self._maybe_fail("create_booking")
        booking = Booking(f"new-{len(self.created) + 1}", starts_at, status="created")
        self.created.append((phone, client_name, service_id, staff_id, starts_at, comment))
        return booking

    async def cancel_booking(self, tenant_id, booking_id):
        await self._maybe_fail("cancel_booking")
        self.cancelled.append(booking_id)
        return True

    async def list_client_bookings(self, tenant_id, phone):
        await self._maybe_fail("list_client_bookings")
        return self.bookings


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client(clock):
    return FakeRedis(clock)


@pytest.fixture
def key():
    return ConversationKey("salon-1", "79001234567")


@pytest.fixture
def batcher(redis_client, clock):
    return BatchService(
        redis_client,
        debounce_seconds=3.0,
        max_batch_age_seconds=30.0,
        max_batch_size=10,
        ttl_seconds=60,
        joiner=" ",
        dedup_ttl_seconds=86400,
        clock=clock,
    )


@pytest.fixture
def contexts(redis_client, clock):
    return IntermediateContextStore(
        redis_client,
        abandon_after_seconds=60,
        context_ttl_seconds=300,
        completed_ttl_seconds=60,
        clock=clock,
    )


@pytest.fixture
def backend():
    return FakeBackend()
