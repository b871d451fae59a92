from datetime import date, datetime
from typing import List, Optional

import httpx

from adminbot.config import settings
from adminbot.logging_config import get_logger
from adminbot.services.booking.base import Booking, BookingBackend, CatalogService, Slot, StaffMember
from adminbot.services.result import BookingBackendError

logger = get_logger("booking.yclients")

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
ANY_STAFF_ID = "0"

VALIDATION_MESSAGES = {
    433: "Selected time is already taken",
    434: "Client is blacklisted",
    435: "Client name is missing",
    436: "No masters available",
    437: "Bookings overlap",
    438: "Service is not available",
}


def _parse_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class YClientsBackend(BookingBackend):
    """YClients REST API; the tenant id is the YClients company id."""

    def __init__(
        self,
        partner_token: Optional[str] = None,
        user_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.partner_token = partner_token if partner_token is not None else settings.yclients_partner_token
        self.user_token = user_token if user_token is not None else settings.yclients_user_token
        self.base_url = (base_url or settings.yclients_base_url).rstrip("/")
        self.timeout = timeout_seconds if timeout_seconds is not None else settings.command_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict:
        authorization = f"Bearer {self.partner_token}"
        if self.user_token:
            authorization += f", User {self.user_token}"
        return {
            "Authorization": authorization,
            "Accept": "application/vnd.yclients.v2+json",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, *, params: Optional[dict] = None, json: Optional[dict] = None):
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self._headers(), params=params, json=json)
        except httpx.TimeoutException as e:
            raise BookingBackendError(f"YClients timeout: {path}", transient=True) from e
        except httpx.HTTPError as e:
            raise BookingBackendError(f"YClients request failed: {e}", transient=True) from e

        logger.debug(f"YClients {method} {path}: {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400 or payload.get("success") is False:
            meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
            code = meta.get("code")
            message = VALIDATION_MESSAGES.get(code) or meta.get("message") or f"HTTP {response.status_code}"
            logger.warning(
                "YClients error response",
                extra={"context": {"path": path, "status": response.status_code, "code": code, "message": message}},
            )
            raise BookingBackendError(
                message,
                transient=response.status_code in TRANSIENT_STATUS_CODES,
                status_code=response.status_code,
            )

        return payload.get("data")

    async def list_services(self, tenant_id: str) -> List[CatalogService]:
        data = await self._request("GET", f"company/{tenant_id}/services")
        services = []
        for item in data or []:
            duration = item.get("duration") or item.get("seance_length")
            services.append(
                CatalogService(
                    id=str(item["id"]),
                    title=item.get("title") or "",
                    category=(item.get("category") or {}).get("title") if isinstance(item.get("category"), dict) else None,
                    price_min=item.get("price_min"),
                    price_max=item.get("price_max"),
                    duration_minutes=int(duration) // 60 if duration else None,
                )
            )
        return services

    async def list_staff(self, tenant_id: str, service_id: Optional[str] = None) -> List[StaffMember]:
        params = {"service_ids[]": service_id} if service_id else None
        path = f"book_staff/{tenant_id}" if service_id else f"company/{tenant_id}/staff"
        data = await self._request("GET", path, params=params)
        staff = []
        for item in data or []:
            if item.get("fired") or item.get("hidden"):
                continue
            portfolio = [photo for photo in (item.get("avatar_big"),) if photo]
            staff.append(
                StaffMember(
                    id=str(item["id"]),
                    name=item.get("name") or "",
                    specialization=item.get("specialization"),
                    rating=item.get("rating"),
                    portfolio=portfolio,
                )
            )
        return staff

    async def search_availability(
        self,
        tenant_id: str,
        service_id: str,
        staff_id: Optional[str],
        day: date,
    ) -> List[Slot]:
        staff_id = staff_id or ANY_STAFF_ID
        data = await self._request(
            "GET",
            f"book_times/{tenant_id}/{staff_id}/{day.isoformat()}",
            params={"service_ids[]": service_id},
        )
        slots = []
        for item in data or []:
            starts_at = _parse_datetime(item.get("datetime"))
            if starts_at is None:
                continue
            slots.append(Slot(starts_at=starts_at, staff_id=str(item.get("staff_id") or staff_id)))
        return slots

    async def check_availability(self, tenant_id: str, service_id: str, staff_id: str, starts_at: datetime) -> bool:
        try:
            await self._request(
                "POST",
                f"book_check/{tenant_id}",
                json={"appointments": [self._appointment(service_id, staff_id, starts_at)]},
            )
        except BookingBackendError as e:
            if e.status_code == 422:
                return False
            raise
        return True

    @staticmethod
    def _appointment(service_id: str, staff_id: str, starts_at: datetime) -> dict:
        return {
            "id": 1,
            "services": [int(service_id) if str(service_id).isdigit() else service_id],
            "staff_id": int(staff_id) if str(staff_id).isdigit() else staff_id,
            "datetime": starts_at.isoformat(),
        }

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
        payload = {
            "phone": phone,
            "fullname": client_name or "Client",
            "email": "",
            "comment": comment or "",
            "appointments": [self._appointment(service_id, staff_id, starts_at)],
        }
        data = await self._request("POST", f"book_record/{tenant_id}", json=payload)
        record = data[0] if isinstance(data, list) and data else data or {}
        record_id = record.get("record_id") or record.get("id")
        if not record_id:
            raise BookingBackendError("YClients returned no record id")

        logger.info(
            "Booking created",
            extra={"context": {"tenant_id": tenant_id, "record_id": record_id, "starts_at": starts_at.isoformat()}},
        )
        return Booking(id=str(record_id), starts_at=starts_at, status="created")

    async def cancel_booking(self, tenant_id: str, booking_id: str) -> bool:
        await self._request("DELETE", f"record/{tenant_id}/{booking_id}")
        logger.info("Booking cancelled", extra={"context": {"tenant_id": tenant_id, "record_id": booking_id}})
        return True

    async def list_client_bookings(self, tenant_id: str, phone: str) -> List[Booking]:
        data = await self._request("GET", f"records/{tenant_id}", params={"client_phone": phone})
        bookings = []
        for item in data or []:
            if item.get("deleted"):
                continue
            services = item.get("services") or []
            staff = item.get("staff") or {}
            bookings.append(
                Booking(
                    id=str(item["id"]),
                    starts_at=_parse_datetime(item.get("datetime")),
                    service_title=", ".join(s.get("title", "") for s in services) or None,
                    staff_name=staff.get("name"),
                    status="confirmed" if item.get("attendance") == 2 else None,
                )
            )
        return bookings
