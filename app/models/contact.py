from sqlalchemy import Column, Integer, Text
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.types import UTCDateTime, utcnow


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(Text, nullable=False)  # raw address as received (phone, ig:<id>, email)
    phone_normalized = Column(Text, unique=True)  # E.164
    wa_id = Column(Text, unique=True)  # WhatsApp platform-stable id
    instagram_id = Column(Text, unique=True)  # Instagram-scoped sender id (IGSID)
    full_name = Column(Text)
    email = Column(Text)
    nationality = Column(Text)
    source = Column(Text)  # whatsapp, instagram, email
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    conversations = relationship("Conversation", back_populates="contact")
    leads = relationship("Lead", back_populates="contact")
