import uuid

from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from adminbot.database import Base


class TurnLog(Base):
    """One row per processed turn, for support and debugging."""

    __tablename__ = "turn_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    subscriber_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False)  # completed, failed
    user_text = Column(Text, nullable=False)
    reply = Column(Text)
    commands = Column(JSONB, nullable=False, default=list)
    timings = Column(JSONB, nullable=False, default=dict)
    batch_size = Column(Integer, nullable=False, default=1)
    error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
