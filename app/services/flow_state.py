"""Conversation flow state: the pending question plus the fields known so far.

State lives on the Conversation row in two columns. ``last_question_key`` is
the question the contact was last asked (``None`` when not waiting on a
specific answer). ``known_fields`` is a JSON map that only accumulates: a
field, once known, is never cleared by a later message that fails to match.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Contact, Conversation, Lead
from app.models.types import utcnow
from app.services.contact_service import is_placeholder_name
from app.services.extractors import get_extractor, run_general_extraction
from app.services.service_catalog import BUSINESS_SETUP_SERVICES, RENEWAL_SERVICES, ServiceType

logger = get_logger("flow_state")

ASKED_QUESTIONS_FIELD = "asked_questions"


class QuestionKey(str, Enum):
    NAME = "NAME"
    NATIONALITY = "NATIONALITY"
    SERVICE = "SERVICE"
    EMAIL = "EMAIL"
    EXPIRY_DATE = "EXPIRY_DATE"
    PARTNERS_COUNT = "PARTNERS_COUNT"
    VISAS_COUNT = "VISAS_COUNT"


QUESTION_FIELDS = {
    QuestionKey.NAME: "name",
    QuestionKey.NATIONALITY: "nationality",
    QuestionKey.SERVICE: "service",
    QuestionKey.EMAIL: "email",
    QuestionKey.EXPIRY_DATE: "expiries",
    QuestionKey.PARTNERS_COUNT: "partners_count",
    QuestionKey.VISAS_COUNT: "visas_count",
}

BASE_QUESTION_ORDER = (QuestionKey.NAME, QuestionKey.SERVICE, QuestionKey.NATIONALITY)


@dataclass
class FlowState:
    last_question_key: Optional[QuestionKey] = None
    last_question_at: Optional[datetime] = None
    known_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def waiting(self) -> bool:
        return self.last_question_key is not None

    def is_known(self, field_name: str) -> bool:
        return not _is_empty(self.known_fields.get(field_name))

    @property
    def asked_questions(self) -> list[str]:
        return list(self.known_fields.get(ASKED_QUESTIONS_FIELD) or [])


@dataclass
class FlowUpdate:
    """What one inbound message changed in the flow state."""

    answered: Optional[QuestionKey] = None
    extracted: dict[str, Any] = field(default_factory=dict)
    pending: Optional[QuestionKey] = None

    @property
    def changed(self) -> bool:
        return self.answered is not None or bool(self.extracted)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def merge_known_fields(existing: Optional[dict], incoming: Optional[dict]) -> dict:
    """Deep merge where ``None``/empty values never overwrite populated ones."""
    result = dict(existing or {})
    for key, value in (incoming or {}).items():
        if _is_empty(value):
            continue
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = merge_known_fields(current, value)
        else:
            result[key] = value
    return result


def load_flow_state(conversation: Conversation) -> FlowState:
    key = conversation.last_question_key
    try:
        question = QuestionKey(key) if key else None
    except ValueError:
        logger.warning(
            "Unknown question key on conversation",
            extra={"context": {"conversation_id": conversation.id, "last_question_key": key}},
        )
        question = None
    return FlowState(
        last_question_key=question,
        last_question_at=conversation.last_question_at,
        known_fields=dict(conversation.known_fields or {}),
    )


def record_question_asked(
    db: Session, conversation: Conversation, key: QuestionKey, at: Optional[datetime] = None
) -> None:
    key = QuestionKey(key)
    known = dict(conversation.known_fields or {})
    asked = list(known.get(ASKED_QUESTIONS_FIELD) or [])
    if key.value not in asked:
        asked.append(key.value)
    known[ASKED_QUESTIONS_FIELD] = asked

    conversation.last_question_key = key.value
    conversation.last_question_at = at or utcnow()
    conversation.known_fields = known
    db.flush()


def question_order(service: Optional[str] = None) -> tuple[QuestionKey, ...]:
    order = BASE_QUESTION_ORDER
    try:
        service_type = ServiceType(service) if service else None
    except ValueError:
        service_type = None
    if service_type in RENEWAL_SERVICES:
        order += (QuestionKey.EXPIRY_DATE,)
    elif service_type in BUSINESS_SETUP_SERVICES:
        order += (QuestionKey.PARTNERS_COUNT, QuestionKey.VISAS_COUNT)
    return order


def next_question(state: FlowState, service: Optional[str] = None) -> Optional[QuestionKey]:
    """First unanswered question in qualification order, or None when done.

    At most ``MAX_QUALIFICATION_QUESTIONS`` distinct questions are ever asked
    in a conversation.
    """
    service = service or state.known_fields.get("service")
    asked = state.asked_questions
    for key in question_order(service):
        if state.is_known(QUESTION_FIELDS[key]):
            continue
        if key.value not in asked and len(asked) >= settings.max_qualification_questions:
            return None
        return key
    return None


def _write_durable(contact: Contact, lead: Optional[Lead], field_name: str, value: Any, targeted: bool) -> None:
    """Copy an extracted field onto the Contact/Lead record.

    General extraction only fills blanks; an explicit answer to the pending
    question may replace a previous value.
    """
    if field_name == "name":
        if is_placeholder_name(contact.full_name) or targeted:
            contact.full_name = value
    elif field_name == "email":
        if not contact.email or targeted:
            contact.email = value
    elif field_name == "nationality":
        if not contact.nationality or targeted:
            contact.nationality = value
    elif field_name == "service" and lead is not None:
        if not lead.service_type or targeted:
            lead.service_type = value

    if lead is not None:
        lead.data_json = merge_known_fields(lead.data_json, {field_name: value})


def apply_inbound_text(
    db: Session,
    conversation: Conversation,
    contact: Contact,
    lead: Optional[Lead],
    text: str,
) -> FlowUpdate:
    """Targeted extraction for the pending question, then general extraction."""
    state = load_flow_state(conversation)
    known = dict(state.known_fields)
    update = FlowUpdate(pending=state.last_question_key)
    context = {"conversation_id": conversation.id, "pending": state.last_question_key}

    if not text or not text.strip():
        return update

    if state.last_question_key is not None:
        field_name = QUESTION_FIELDS[state.last_question_key]
        value = get_extractor(field_name).answer(text)
        if value is not None:
            known[field_name] = value
            known[f"qualification_{field_name}"] = value
            _write_durable(contact, lead, field_name, value, targeted=True)
            update.extracted[field_name] = value
            update.answered = state.last_question_key
            update.pending = None
            conversation.last_question_key = None
            logger.info("Pending question answered", extra={"context": {**context, "field": field_name}})
        else:
            logger.info("Answer did not match pending question", extra={"context": context})

    for field_name, value in run_general_extraction(text).items():
        if field_name in update.extracted or not _is_empty(known.get(field_name)):
            continue
        known[field_name] = value
        _write_durable(contact, lead, field_name, value, targeted=False)
        update.extracted[field_name] = value

    if update.pending is not None and QUESTION_FIELDS[update.pending] in update.extracted:
        # volunteered the pending field in a form only the general extractors recognised
        update.answered = update.pending
        update.pending = None
        conversation.last_question_key = None

    if update.extracted:
        conversation.known_fields = merge_known_fields(conversation.known_fields, known)
        conversation.updated_at = utcnow()
        logger.info(
            "Fields extracted", extra={"context": {**context, "fields": sorted(update.extracted)}}
        )
    db.flush()
    return update
