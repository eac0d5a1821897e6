"""Identity resolution: one Contact per platform id and per normalized phone."""

from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy.orm import Session

from app.errors import RecordNotFoundError
from app.logging_config import get_logger
from app.models import Contact
from app.models.types import utcnow
from app.services.phone import try_normalize_phone
from app.services.storage import insert_if_absent, reload

logger = get_logger("contact_service")

PLACEHOLDER_NAME_PREFIX = "Contact "
INSTAGRAM_ADDRESS_PREFIX = "ig:"


@dataclass
class ContactInput:
    phone: str
    wa_id: Optional[str] = None
    instagram_id: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    nationality: Optional[str] = None
    source: Optional[str] = None


def is_placeholder_name(name: Optional[str]) -> bool:
    return not name or name.startswith(PLACEHOLDER_NAME_PREFIX) or name.strip().lower() == "unknown"


def placeholder_name(data: ContactInput, phone_normalized: Optional[str]) -> str:
    if data.email and not data.phone:
        return f"{PLACEHOLDER_NAME_PREFIX}{data.email}"
    return f"{PLACEHOLDER_NAME_PREFIX}{phone_normalized or data.phone}"


def find_contact(db: Session, data: ContactInput, phone_normalized: Optional[str]) -> Optional[Contact]:
    """Lookup by priority: platform id (wa_id, instagram_id), normalized phone, raw phone."""
    if data.wa_id:
        contact = db.query(Contact).filter(Contact.wa_id == data.wa_id).first()
        if contact:
            return contact
    if data.instagram_id:
        contact = db.query(Contact).filter(Contact.instagram_id == data.instagram_id).first()
        if contact:
            return contact
    if phone_normalized:
        contact = db.query(Contact).filter(Contact.phone_normalized == phone_normalized).first()
        if contact:
            return contact
    if data.phone:
        return db.query(Contact).filter(Contact.phone == data.phone).order_by(Contact.id).first()
    return None


def _identity_taken(db: Session, column, value: str, contact_id: int) -> bool:
    return db.query(Contact.id).filter(column == value, Contact.id != contact_id).first() is not None


def backfill_contact(db: Session, contact: Contact, data: ContactInput, phone_normalized: Optional[str]) -> bool:
    """Fill missing identity fields without overwriting populated ones."""
    changed = False
    if phone_normalized and not contact.phone_normalized:
        if not _identity_taken(db, Contact.phone_normalized, phone_normalized, contact.id):
            contact.phone_normalized = phone_normalized
            changed = True
    if data.wa_id and not contact.wa_id:
        if not _identity_taken(db, Contact.wa_id, data.wa_id, contact.id):
            contact.wa_id = data.wa_id
            changed = True
    if data.instagram_id and not contact.instagram_id:
        if not _identity_taken(db, Contact.instagram_id, data.instagram_id, contact.id):
            contact.instagram_id = data.instagram_id
            changed = True
    if data.full_name and is_placeholder_name(contact.full_name) and not is_placeholder_name(data.full_name):
        contact.full_name = data.full_name
        changed = True
    if data.email and not contact.email:
        contact.email = data.email
        changed = True
    if data.nationality and not contact.nationality:
        contact.nationality = data.nationality
        changed = True
    if changed:
        contact.updated_at = utcnow()
        db.flush()
    return changed


def upsert_contact(db: Session, data: ContactInput) -> Contact:
    """Find or create the Contact for an inbound address.

    Concurrent first messages from the same sender converge on one row: the
    insert is ``ON CONFLICT DO NOTHING`` and the loser re-reads the winner.
    """
    if not data.instagram_id and (data.phone or "").startswith(INSTAGRAM_ADDRESS_PREFIX):
        data = replace(data, instagram_id=data.phone[len(INSTAGRAM_ADDRESS_PREFIX) :])
    phone_normalized = try_normalize_phone(data.phone)

    contact = find_contact(db, data, phone_normalized)
    if contact:
        backfill_contact(db, contact, data, phone_normalized)
        return contact

    now = utcnow()
    outcome = insert_if_absent(
        db,
        Contact,
        {
            "phone": data.phone or data.email or "unknown",
            "phone_normalized": phone_normalized,
            "wa_id": data.wa_id,
            "instagram_id": data.instagram_id,
            "full_name": data.full_name or placeholder_name(data, phone_normalized),
            "email": data.email,
            "nationality": data.nationality,
            "source": data.source or ("email" if data.email and not data.phone else "whatsapp"),
            "created_at": now,
            "updated_at": now,
        },
    )
    if outcome.created:
        logger.info("Contact created", extra={"context": {"contact_id": outcome.row_id, "source": data.source}})
        return reload(db, Contact, outcome.row_id)

    contact = find_contact(db, data, phone_normalized)
    if contact is None:
        raise RecordNotFoundError("Contact", phone_normalized or data.phone)
    logger.info("Contact insert raced, using existing row", extra={"context": {"contact_id": contact.id}})
    backfill_contact(db, contact, data, phone_normalized)
    return contact
