"""Extract bracketed command directives from model output.

The model answers in prose and embeds directives such as
``[SEARCH_SLOTS:haircut,0,2024-07-20]`` on their own lines or inline.
``parse`` returns the prose with every recognised directive removed,
plus those directives in the order they appeared.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from adminbot.logging_config import get_logger

logger = get_logger("response_parser")


class CommandName(str, Enum):
    SEARCH_SLOTS = "SEARCH_SLOTS"
    CREATE_BOOKING = "CREATE_BOOKING"
    CANCEL_BOOKING = "CANCEL_BOOKING"
    CHECK_BOOKING = "CHECK_BOOKING"
    SHOW_PRICES = "SHOW_PRICES"
    SHOW_SERVICES = "SHOW_SERVICES"
    SHOW_PORTFOLIO = "SHOW_PORTFOLIO"
    SHOW_MY_BOOKINGS = "SHOW_MY_BOOKINGS"
    SAVE_CLIENT_NAME = "SAVE_CLIENT_NAME"


# Positional parameter names per command; trailing ones are optional.
COMMAND_PARAM_NAMES = {
    CommandName.SEARCH_SLOTS: ("service", "staff", "date", "time_preference"),
    CommandName.CREATE_BOOKING: ("service", "staff", "datetime", "comment"),
    CommandName.CANCEL_BOOKING: ("booking_id",),
    CommandName.CHECK_BOOKING: ("service", "staff", "datetime"),
    CommandName.SHOW_PRICES: ("service",),
    CommandName.SHOW_SERVICES: ("category",),
    CommandName.SHOW_PORTFOLIO: ("staff",),
    CommandName.SHOW_MY_BOOKINGS: (),
    CommandName.SAVE_CLIENT_NAME: ("name",),
}

COMMAND_PATTERN = re.compile(r"\[([A-Z][A-Z0-9_]*)(?::([^\[\]\n]*))?\]")
HORIZONTAL_WS = re.compile(r"[ \t\f\v]+")


@dataclass
class Command:
    name: CommandName
    params: list = field(default_factory=list)
    raw: str = ""

    def named_params(self) -> dict:
        names = COMMAND_PARAM_NAMES.get(self.name, ())
        return {name: value for name, value in zip(names, self.params) if value != ""}

    def param(self, index: int, default=None):
        if index < len(self.params) and self.params[index] != "":
            return self.params[index]
        return default


def split_params(raw_params) -> list:
    if raw_params is None or not raw_params.strip():
        return []
    return [param.strip() for param in raw_params.split(",")]


def _normalize_whitespace(text: str, touched_lines: set) -> str:
    lines = []
    for index, line in enumerate(text.split("\n")):
        line = HORIZONTAL_WS.sub(" ", line).strip()
        if not line and index in touched_lines:
            continue
        if not line and lines and not lines[-1]:
            continue
        lines.append(line)
    return "\n".join(lines).strip()


def _command_name(name: str):
    try:
        return CommandName(name)
    except ValueError:
        return None


def _has_command(text: str) -> bool:
    return any(_command_name(match.group(1)) for match in COMMAND_PATTERN.finditer(text))


def parse(text: str) -> tuple[str, list[Command]]:
    """Split model output into customer-facing text and commands.

    Only known command tokens are removed. A grammar-shaped token with
    an unknown name (``[OK]``, ``[NOTE:later]``) is logged and left in the
    text as written, like any other bracketed text.
    """
    if not text:
        return "", []

    commands = []
    pieces = []
    touched_lines = set()
    position = 0

    for match in COMMAND_PATTERN.finditer(text):
        name, raw_params = match.group(1), match.group(2)
        command_name = _command_name(name)
        if command_name is None:
            logger.warning("Unknown command token left in text", extra={"context": {"token": match.group(0)[:100]}})
            continue

        commands.append(Command(name=command_name, params=split_params(raw_params), raw=match.group(0)))
        pieces.append(text[position : match.start()])
        touched_lines.add(text.count("\n", 0, match.start()))
        position = match.end()

    if not pieces:
        return _normalize_whitespace(text, set()), []

    pieces.append(text[position:])
    clean_text = _normalize_whitespace("".join(pieces), touched_lines)
    if _has_command(clean_text):
        # Removal joined brackets into a new token, e.g. "[[X]Y]".
        clean_text, _ = parse(clean_text)

    if commands:
        logger.debug(
            "Commands extracted",
            extra={"context": {"commands": [command.name.value for command in commands]}},
        )
    return clean_text, commands
