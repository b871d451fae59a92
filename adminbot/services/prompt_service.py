from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo

from adminbot.config import settings
from adminbot.services.booking.base import CatalogService, StaffMember
from adminbot.services.intermediate_context import IntermediateContext

MAX_CATALOG_LINES = 40

COMMAND_GRAMMAR = """\
To act, put a command on its own line in square brackets. Parameters are comma separated.
[SEARCH_SLOTS:service,staff,date,time_preference] find free times (staff 0 = any master; date YYYY-MM-DD, today or tomorrow)
[CREATE_BOOKING:service,staff,YYYY-MM-DDTHH:MM,comment] book only after the client confirmed the exact time
[CHECK_BOOKING:service,staff,YYYY-MM-DDTHH:MM] check one specific time
[CANCEL_BOOKING:booking_id] cancel one of the client's bookings
[SHOW_MY_BOOKINGS] list the client's upcoming bookings
[SHOW_PRICES:service_or_category] prices
[SHOW_SERVICES:category] list of services
[SHOW_PORTFOLIO:staff] masters and their work
[SAVE_CLIENT_NAME:name] remember the client's name
Never invent free times or prices: use a command and the results will be added to your reply."""

REPLY_TYPE_HINTS = {
    "service_selection": "The client is most likely naming a service.",
    "staff_selection": "The client is most likely naming a master. Use that name in the booking command.",
    "time_selection": "The client is most likely choosing a time.",
    "date_selection": "The client is most likely choosing a day.",
    "name_request": "The client is most likely telling you their name. Save it with SAVE_CLIENT_NAME.",
    "confirmation": "The client is most likely confirming or declining what you proposed.",
}


def _price(service: CatalogService) -> str:
    if service.price_min is None:
        return ""
    if service.price_max and service.price_max != service.price_min:
        return f" {service.price_min:g}-{service.price_max:g}"
    return f" {service.price_min:g}"


def build_system_prompt(
    *,
    services: List[CatalogService],
    staff: List[StaffMember],
    context: Optional[IntermediateContext] = None,
    client_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    now = now or datetime.now(ZoneInfo(settings.business_timezone))
    sections = [
        f"You are the administrator of {settings.business_name}. Answer briefly and politely, "
        "in the language the client writes in.",
        f"Now: {now.strftime('%Y-%m-%d %H:%M, %A')} ({settings.business_timezone}).",
    ]

    if services:
        lines = [f"- {s.title}{_price(s)}" for s in services[:MAX_CATALOG_LINES]]
        sections.append("Services:\n" + "\n".join(lines))
    if staff:
        lines = [f"- {m.name}" + (f" ({m.specialization})" if m.specialization else "") for m in staff]
        sections.append("Masters:\n" + "\n".join(lines))

    sections.append(COMMAND_GRAMMAR)

    if client_name:
        sections.append(f"The client's name is {client_name}. Do not ask for it again.")

    if context is not None and context.last_bot_question:
        hint = f'This continues the conversation. Your last question was: "{context.last_bot_question}".'
        type_hint = REPLY_TYPE_HINTS.get(context.expected_reply_type or "")
        if type_hint:
            hint += f" {type_hint}"
        sections.append(hint)

    return "\n\n".join(sections)


def build_messages(system_prompt: str, history: List[dict], user_text: str) -> List[dict]:
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(history)
    if not history or history[-1] != {"role": "user", "content": user_text}:
        messages.append({"role": "user", "content": user_text})
    return messages
