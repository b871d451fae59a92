from adminbot.models.message import Message
from adminbot.models.turn_log import TurnLog

__all__ = [
    "Message",
    "TurnLog",
]
