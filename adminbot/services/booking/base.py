from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional


@dataclass
class CatalogService:
    id: str
    title: str
    category: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    duration_minutes: Optional[int] = None


@dataclass
class StaffMember:
    id: str
    name: str
    specialization: Optional[str] = None
    rating: Optional[float] = None
    portfolio: List[str] = field(default_factory=list)


@dataclass
class Slot:
    starts_at: datetime
    staff_id: str
    staff_name: Optional[str] = None


@dataclass
class Booking:
    id: str
    starts_at: Optional[datetime]
    service_title: Optional[str] = None
    staff_name: Optional[str] = None
    status: Optional[str] = None


class BookingBackend(ABC):
    """Booking system a tenant's bot books against."""

    @abstractmethod
    async def list_services(self, tenant_id: str) -> List[CatalogService]:
        pass

    @abstractmethod
    async def list_staff(self, tenant_id: str, service_id: Optional[str] = None) -> List[StaffMember]:
        pass

    @abstractmethod
    async def search_availability(
        self,
        tenant_id: str,
        service_id: str,
        staff_id: Optional[str],
        day: date,
    ) -> List[Slot]:
        """Free slots for a service on one day; staff_id None means any master."""
        pass

    @abstractmethod
    async def check_availability(self, tenant_id: str, service_id: str, staff_id: str, starts_at: datetime) -> bool:
        pass

    @abstractmethod
    async def create_booking(
        self,
        tenant_id: str,
        *,
        phone: str,
        client_name: Optional[str],
        service_id: str,
        staff_id: str,
        starts_at: datetime,
        comment: Optional[str] = None,
    ) -> Booking:
        pass

    @abstractmethod
    async def cancel_booking(self, tenant_id: str, booking_id: str) -> bool:
        pass

    @abstractmethod
    async def list_client_bookings(self, tenant_id: str, phone: str) -> List[Booking]:
        pass
