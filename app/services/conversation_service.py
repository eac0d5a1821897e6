from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.errors import UnsupportedChannelError
from app.logging_config import get_logger
from app.models import Conversation
from app.models.types import utcnow
from app.services.storage import excluded, reload, upsert_returning

logger = get_logger("conversation_service")

CHANNEL_ALIASES = {
    "whatsapp": "whatsapp",
    "wa": "whatsapp",
    "instagram": "instagram",
    "ig": "instagram",
    "facebook": "facebook",
    "fb": "facebook",
    "messenger": "facebook",
    "email": "email",
    "webchat": "webchat",
}


def normalize_channel(channel: str) -> str:
    key = (channel or "").strip().lower()
    try:
        return CHANNEL_ALIASES[key]
    except KeyError:
        raise UnsupportedChannelError(channel) from None


def upsert_conversation(
    db: Session,
    contact_id: int,
    channel: str,
    lead_id: Optional[int],
    timestamp: Optional[datetime] = None,
) -> Conversation:
    """One conversation per (contact, channel), linked to the current lead.

    Single ``INSERT ... ON CONFLICT DO UPDATE``: concurrent first messages
    converge on one row and a repeated call only moves the timestamps.
    """
    channel = normalize_channel(channel)
    at = timestamp or utcnow()
    now = utcnow()
    excl = excluded(db, Conversation)

    conversation_id = upsert_returning(
        db,
        Conversation,
        {
            "contact_id": contact_id,
            "channel": channel,
            "lead_id": lead_id,
            "status": "open",
            "known_fields": {},
            "last_inbound_at": at,
            "last_message_at": at,
            "created_at": now,
            "updated_at": now,
        },
        conflict_columns=["contact_id", "channel"],
        update_values={
            "lead_id": func.coalesce(excl.lead_id, Conversation.lead_id),
            "last_inbound_at": excl.last_inbound_at,
            "last_message_at": excl.last_message_at,
            "updated_at": excl.updated_at,
        },
    )
    conversation = reload(db, Conversation, conversation_id)
    logger.debug(
        "Conversation upserted",
        extra={"context": {"conversation_id": conversation.id, "contact_id": contact_id, "channel": channel}},
    )
    return conversation


def record_inbound(db: Session, conversation: Conversation, at: Optional[datetime] = None) -> None:
    at = at or utcnow()
    conversation.last_inbound_at = at
    conversation.last_message_at = at
    if conversation.needs_reply_since is None:
        conversation.needs_reply_since = at
    conversation.updated_at = utcnow()
    db.flush()


def record_outbound(db: Session, conversation: Conversation, at: Optional[datetime] = None) -> None:
    at = at or utcnow()
    conversation.last_outbound_at = at
    conversation.last_message_at = at
    conversation.needs_reply_since = None
    conversation.updated_at = utcnow()
    db.flush()


def assign_conversation(db: Session, conversation: Conversation, user_id: Optional[int]) -> None:
    """Hand the conversation to a human (or back to automation with ``None``)."""
    conversation.assigned_user_id = user_id
    conversation.updated_at = utcnow()
    db.flush()


def lock_conversation(db: Session, conversation_id: int) -> Conversation:
    """Re-read the row under ``FOR UPDATE`` before rewriting ``known_fields``.

    The flow state is one JSON value; writers merge into the stored map, never
    into a copy loaded earlier in the session.
    """
    return (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id)
        .populate_existing()
        .with_for_update()
        .one()
    )
