from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adminbot.logging_config import get_logger
from adminbot.models import Message, TurnLog
from adminbot.services.conversation_key import ConversationKey
from adminbot.services.result import Result

logger = get_logger("history_service")


def load_history(db: Session, key: ConversationKey, limit: int = 10) -> list[dict]:
    """Last ``limit`` messages of the conversation, oldest first, as chat messages."""
    rows = (
        db.query(Message)
        .filter(Message.tenant_id == key.tenant_id, Message.subscriber_id == key.subscriber_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return [{"role": row.role, "content": row.content} for row in reversed(rows)]


def save_message(
    db: Session,
    key: ConversationKey,
    role: str,
    content: str,
    message_metadata: Optional[dict] = None,
) -> Message:
    message = Message(
        tenant_id=key.tenant_id,
        subscriber_id=key.subscriber_id,
        role=role,
        content=content,
        message_metadata=message_metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def record_turn(
    db: Session,
    key: ConversationKey,
    *,
    user_text: str,
    reply: Optional[str],
    status: str,
    commands: list,
    timings: dict,
    batch_size: int = 1,
    user_metadata: Optional[dict] = None,
    error: Optional[str] = None,
) -> Result[bool]:
    """Persist the user message, the bot reply and the audit row in one transaction."""
    try:
        save_message(db, key, "user", user_text, user_metadata)
        if reply:
            save_message(db, key, "assistant", reply, {"commands": [c.get("command") for c in commands]})
        db.add(
            TurnLog(
                tenant_id=key.tenant_id,
                subscriber_id=key.subscriber_id,
                status=status,
                user_text=user_text,
                reply=reply,
                commands=commands,
                timings=timings,
                batch_size=batch_size,
                error=error,
                created_at=datetime.now(timezone.utc),
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to record turn: {e}", extra={"context": {"key": str(key)}})
        return Result.failure(str(e), "db_error")
    return Result.success(True)
