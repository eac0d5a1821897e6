from sqlalchemy import Column, ForeignKey, Integer, Text, UniqueConstraint

from app.database import Base
from app.models.types import UTCDateTime, utcnow


class OutboundMessageLog(Base):
    """One row per attempted automated send; inserted before transmission."""

    __tablename__ = "outbound_message_logs"
    __table_args__ = (
        UniqueConstraint("provider", "trigger_provider_message_id", name="uq_outbound_log_trigger"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(Text, nullable=False)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    trigger_provider_message_id = Column(Text)
    dedupe_key = Column(Text, nullable=False, unique=True)
    text_hash = Column(Text, nullable=False)
    reply_type = Column(Text)  # question, answer, greeting, manual, followup
    last_question_key = Column(Text)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, SENT, FAILED
    provider_message_id = Column(Text)
    error = Column(Text)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    sent_at = Column(UTCDateTime)
    failed_at = Column(UTCDateTime)


class QuestionCooldown(Base):
    """Last time a given question was asked in a conversation (compare-and-swap row)."""

    __tablename__ = "question_cooldowns"
    __table_args__ = (
        UniqueConstraint("conversation_id", "question_key", name="uq_question_cooldown_conversation_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    question_key = Column(Text, nullable=False)
    asked_at = Column(UTCDateTime, nullable=False)
