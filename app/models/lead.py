from sqlalchemy import Column, ForeignKey, Integer, Text

from sqlalchemy.orm import relationship

from app.database import Base
from app.models.types import JSONType, UTCDateTime, utcnow

CLOSED_LEAD_STAGES = ("COMPLETED_WON", "LOST", "ON_HOLD")


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False, index=True)
    stage = Column(Text, nullable=False, default="NEW")  # NEW, QUALIFIED, COMPLETED_WON, LOST, ON_HOLD
    service_type = Column(Text)  # FAMILY_VISA, MAINLAND_BUSINESS_SETUP, ...
    last_contact_channel = Column(Text)
    data_json = Column(JSONType, nullable=False, default=dict)
    last_inbound_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    contact = relationship("Contact", back_populates="leads")
