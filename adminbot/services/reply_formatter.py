"""Turn command outcomes into text the customer reads."""

from datetime import datetime
from typing import Callable, Optional

from adminbot.services.command_executor import CommandResult, CommandStatus
from adminbot.services.response_parser import CommandName
from adminbot.services.result import ErrorKind

APOLOGY = "Sorry, something went wrong on our side. Please write to us again in a minute."
BUSY_NOTICE = "One moment please, I'm still working on your previous message."
FALLBACK_REPLY = "Sorry, I didn't quite get that. Could you rephrase?"

FAILURE_MESSAGES = {
    CommandName.SEARCH_SLOTS: "Sorry, I couldn't check the free times right now. Please try again in a minute.",
    CommandName.CREATE_BOOKING: "Sorry, I couldn't make the booking right now. Please try again in a minute.",
    CommandName.CHECK_BOOKING: "Sorry, I couldn't check that time right now.",
    CommandName.CANCEL_BOOKING: "Sorry, I couldn't cancel the booking right now. Please try again later.",
    CommandName.SHOW_MY_BOOKINGS: "Sorry, I couldn't load your bookings right now.",
    CommandName.SHOW_PRICES: "Sorry, I couldn't load the price list right now.",
    CommandName.SHOW_SERVICES: "Sorry, I couldn't load the list of services right now.",
    CommandName.SHOW_PORTFOLIO: "Sorry, I couldn't load information about our masters right now.",
}
CONFLICT_MESSAGES = {
    CommandName.CREATE_BOOKING: "Unfortunately that time has just been taken. Would you like another time?",
}
GENERIC_FAILURE = "Sorry, I couldn't complete that request."


def _when(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        return value
    return moment.strftime("%d.%m at %H:%M")


def _day(value: Optional[str]) -> str:
    try:
        return datetime.fromisoformat(value).strftime("%d.%m") if value else ""
    except ValueError:
        return value


def _price(item: dict) -> str:
    low, high = item.get("price_min"), item.get("price_max")
    if low is None:
        return ""
    if high and high != low:
        return f": {low:g}-{high:g}"
    return f": {low:g}"


def _slots(data: dict) -> str:
    staff = f" with {data['staff']}" if data.get("staff") else ""
    if not data.get("slots"):
        return f"Unfortunately there are no free times for {data['service']} on {_day(data['date'])}{staff}."
    times = ", ".join(slot["time"] for slot in data["slots"])
    return f"Free times for {data['service']} on {_day(data['date'])}{staff}: {times}"


def _check(data: dict) -> str:
    if data.get("available"):
        return f"{_when(data['datetime'])} is available."
    return f"Unfortunately {_when(data['datetime'])} is already taken."


def _created(data: dict) -> str:
    staff = f", master {data['staff']}" if data.get("staff") else ""
    return f"You're booked: {data['service']}, {_when(data['datetime'])}{staff}."


def _cancelled(data: dict) -> str:
    if data.get("cancelled"):
        return "Your booking has been cancelled."
    return "I couldn't find any upcoming bookings for you."


def _prices(data: dict) -> str:
    lines = [f"- {item['title']}{_price(item)}" for item in data.get("services", [])]
    return "\n".join(lines) if lines else "The price list is empty right now."


def _services(data: dict) -> str:
    lines = []
    for item in data.get("services", []):
        duration = f" ({item['duration_minutes']} min)" if item.get("duration_minutes") else ""
        lines.append(f"- {item['title']}{duration}")
    return "\n".join(lines) if lines else "The list of services is empty right now."


def _portfolio(data: dict) -> str:
    lines = []
    for member in data.get("staff", []):
        line = f"- {member['name']}"
        if member.get("specialization"):
            line += f", {member['specialization']}"
        lines.append(line)
        lines.extend(f"  {link}" for link in member.get("portfolio") or [])
    return "\n".join(lines)


def _my_bookings(data: dict) -> str:
    bookings = data.get("bookings") or []
    if not bookings:
        return "You have no upcoming bookings."
    lines = ["Your bookings:"]
    for booking in bookings:
        parts = [part for part in (booking.get("service"), _when(booking.get("datetime")), booking.get("staff")) if part]
        lines.append(f"- {', '.join(parts)} (#{booking['booking_id']})")
    return "\n".join(lines)


RENDERERS: dict[CommandName, Callable[[dict], Optional[str]]] = {
    CommandName.SEARCH_SLOTS: _slots,
    CommandName.CHECK_BOOKING: _check,
    CommandName.CREATE_BOOKING: _created,
    CommandName.CANCEL_BOOKING: _cancelled,
    CommandName.SHOW_PRICES: _prices,
    CommandName.SHOW_SERVICES: _services,
    CommandName.SHOW_PORTFOLIO: _portfolio,
    CommandName.SHOW_MY_BOOKINGS: _my_bookings,
    CommandName.SAVE_CLIENT_NAME: lambda data: None,
}


def format_clarification(result: CommandResult) -> str:
    text = result.question or "Could you clarify, please?"
    if result.options:
        text += "\n" + "\n".join(f"{number}. {option}" for number, option in enumerate(result.options, start=1))
    return text


def format_result(result: CommandResult) -> Optional[str]:
    try:
        name = CommandName(result.command)
    except ValueError:
        return None

    if result.status == CommandStatus.NEEDS_CLARIFICATION:
        return format_clarification(result)
    if result.status == CommandStatus.FAILURE:
        if result.error_kind == ErrorKind.CONFLICT and name in CONFLICT_MESSAGES:
            return CONFLICT_MESSAGES[name]
        return FAILURE_MESSAGES.get(name, GENERIC_FAILURE)
    return RENDERERS[name](result.data or {})


def compose_reply(clean_text: str, results: list[CommandResult]) -> str:
    """Model text first, then one block per command outcome, never empty."""
    blocks = [clean_text] if clean_text else []
    for result in results:
        block = format_result(result)
        if block and block not in blocks:
            blocks.append(block)
    return "\n\n".join(blocks) if blocks else FALLBACK_REPLY
