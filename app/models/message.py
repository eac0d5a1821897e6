from sqlalchemy import Column, ForeignKey, Integer, Text

from sqlalchemy.orm import relationship

from app.database import Base
from app.models.types import JSONType, UTCDateTime, utcnow


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"))
    contact_id = Column(Integer, ForeignKey("contacts.id"))
    direction = Column(Text, nullable=False)  # INBOUND, OUTBOUND
    channel = Column(Text, nullable=False)
    body = Column(Text, nullable=False, default="")
    provider_message_id = Column(Text, unique=True)
    status = Column(Text)  # RECEIVED, SENT
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    sent_at = Column(UTCDateTime)

    conversation = relationship("Conversation", back_populates="messages")
