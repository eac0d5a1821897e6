from sqlalchemy import Column, ForeignKey, Integer, Text

from app.database import Base
from app.models.types import UTCDateTime, utcnow


class OutboundJob(Base):
    __tablename__ = "outbound_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    inbound_message_id = Column(Integer, ForeignKey("messages.id"))
    inbound_provider_message_id = Column(Text, unique=True)
    idempotency_key = Column(Text, nullable=False, unique=True)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, GENERATING, READY_TO_SEND, SENT, SKIPPED, FAILED
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    run_at = Column(UTCDateTime, nullable=False, default=utcnow)
    claimed_at = Column(UTCDateTime)
    content = Column(Text)
    error = Column(Text)
    request_id = Column(Text)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime)
