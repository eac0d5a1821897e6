from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text

from app.database import Base
from app.models.types import UTCDateTime, utcnow


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"))
    type = Column(Text, nullable=False)  # REPLY_DUE, QUOTE, QUALIFY, RENEWAL_FOLLOWUP, ...
    title = Column(Text, nullable=False)
    due_at = Column(UTCDateTime)
    status = Column(Text, nullable=False, default="OPEN")  # OPEN, DONE, CANCELLED
    idempotency_key = Column(Text, nullable=False, unique=True)
    ai_suggested = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime)
