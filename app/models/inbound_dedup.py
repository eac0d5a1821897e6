from sqlalchemy import Column, Integer, Text, UniqueConstraint

from app.database import Base
from app.models.types import UTCDateTime, utcnow


class InboundMessageDedup(Base):
    __tablename__ = "inbound_message_dedup"
    __table_args__ = (
        UniqueConstraint("provider", "provider_message_id", name="uq_inbound_dedup_provider_message"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(Text, nullable=False)
    provider_message_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="PROCESSING")  # PROCESSING, COMPLETED, FAILED
    conversation_id = Column(Integer)
    attempts = Column(Integer, nullable=False, default=1)
    error = Column(Text)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    processed_at = Column(UTCDateTime)
