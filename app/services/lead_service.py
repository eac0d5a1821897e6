from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Contact, Conversation, Lead
from app.models.lead import CLOSED_LEAD_STAGES
from app.models.types import utcnow

logger = get_logger("lead_service")

ACTIVE_LEAD_WINDOW = timedelta(days=30)


def find_active_lead(db: Session, contact_id: int, now: Optional[datetime] = None) -> Optional[Lead]:
    """Most recent open lead created within the active window."""
    now = now or utcnow()
    return (
        db.query(Lead)
        .filter(
            Lead.contact_id == contact_id,
            Lead.stage.notin_(CLOSED_LEAD_STAGES),
            Lead.created_at >= now - ACTIVE_LEAD_WINDOW,
        )
        .order_by(Lead.created_at.desc(), Lead.id.desc())
        .first()
    )


def relink_conversations(db: Session, contact_id: int, lead_id: int) -> int:
    """Point every conversation of the contact at ``lead_id``."""
    updated = (
        db.query(Conversation)
        .filter(Conversation.contact_id == contact_id)
        .filter((Conversation.lead_id.is_(None)) | (Conversation.lead_id != lead_id))
        .update({Conversation.lead_id: lead_id}, synchronize_session="fetch")
    )
    return updated


def resolve_active_lead(db: Session, contact: Contact, channel: str, at: Optional[datetime] = None) -> Lead:
    """Reuse the contact's active lead or open a new one."""
    at = at or utcnow()
    lead = find_active_lead(db, contact.id, now=at)
    if lead is None:
        lead = Lead(
            contact_id=contact.id,
            stage="NEW",
            last_contact_channel=channel,
            data_json={},
            created_at=at,
            updated_at=at,
        )
        db.add(lead)
        db.flush()
        if not contact.source:
            contact.source = channel
        logger.info("Lead created", extra={"context": {"lead_id": lead.id, "contact_id": contact.id}})

    lead.last_inbound_at = at
    lead.last_contact_channel = channel
    relink_conversations(db, contact.id, lead.id)
    db.flush()
    return lead
