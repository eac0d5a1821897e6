from sqlalchemy import Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.types import JSONType, UTCDateTime, utcnow


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("contact_id", "channel", name="uq_conversations_contact_channel"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id"))
    channel = Column(Text, nullable=False)  # whatsapp, instagram, facebook, email
    status = Column(Text, nullable=False, default="open")
    last_inbound_at = Column(UTCDateTime)
    last_outbound_at = Column(UTCDateTime)
    last_message_at = Column(UTCDateTime)
    last_question_key = Column(Text)  # NAME, NATIONALITY, SERVICE, ... or NULL when not waiting
    last_question_at = Column(UTCDateTime)
    known_fields = Column(JSONType, nullable=False, default=dict)
    needs_reply_since = Column(UTCDateTime)
    assigned_user_id = Column(Integer)  # human owner; automation stays silent when set
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    contact = relationship("Contact", back_populates="conversations")
    lead = relationship("Lead")
    messages = relationship("Message", back_populates="conversation")
