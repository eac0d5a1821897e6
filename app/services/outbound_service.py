"""Outbound Idempotency Gate: at most one automated send per trigger.

Two guards run before any transmission, both as constrained inserts and
never as a prior SELECT:

* the send log row (unique ``dedupe_key`` and unique trigger per provider);
* for questions, a compare-and-swap on ``question_cooldowns`` that refuses a
  re-ask of the same question inside the cool-down window.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import TransmissionError
from app.logging_config import get_logger
from app.models import Message, OutboundMessageLog, QuestionCooldown
from app.models.types import utcnow
from app.services.conversation_service import lock_conversation, record_outbound
from app.services.flow_state import record_question_asked
from app.services.outbox_service import compute_idempotency_key
from app.services.storage import excluded, upsert_returning
from app.services.transport import Transport

logger = get_logger("outbound_service")

REPLY_TYPE_QUESTION = "question"
COOLDOWN_BLOCKED = "question_cooldown"


@dataclass
class SendRequest:
    conversation_id: int
    text: Any
    provider: str
    to_address: str
    trigger_id: Optional[str] = None
    reply_type: str = "answer"
    question_key: Optional[str] = None
    contact_id: Optional[int] = None
    lead_id: Optional[int] = None


@dataclass
class SendResult:
    sent: bool
    was_duplicate: bool = False
    message_id: Optional[int] = None
    error: Optional[str] = None


def normalize_outbound_text(value: Any) -> str:
    """Unwrap ``{"reply": "..."}`` payloads (as dict or JSON string) and trim."""
    if value is None:
        return ""
    if isinstance(value, dict):
        reply = value.get("reply")
        return reply.strip() if isinstance(reply, str) else ""
    text = str(value).strip()
    if text.startswith("{") and '"reply"' in text:
        try:
            parsed = json.loads(text)
        except ValueError:
            return text
        if isinstance(parsed, dict) and isinstance(parsed.get("reply"), str):
            return parsed["reply"].strip()
    return text


def text_hash(text: str) -> str:
    collapsed = re.sub(r"\s+", " ", text.lower()).strip()
    return hashlib.sha256(collapsed.encode("utf-8")).hexdigest()


def compute_dedupe_key(request: SendRequest, text: str) -> str:
    """Auto-replies share the job key; manual sends hash type, question, day and text."""
    if request.trigger_id:
        return compute_idempotency_key(request.conversation_id, request.trigger_id, request.provider)

    question = re.sub(r"\s+", "_", request.question_key.strip().lower()) if request.question_key else "none"
    parts = [
        f"conv:{request.conversation_id}",
        f"type:{request.reply_type or 'unknown'}",
        f"q:{question}",
        f"id:{utcnow().date().isoformat()}",
        f"text:{text_hash(text)[:16]}",
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def claim_question_slot(db: Session, conversation_id: int, question_key: str) -> bool:
    """Record that the question is being asked now, unless asked within the cool-down.

    ``INSERT ... ON CONFLICT DO UPDATE ... WHERE asked_at < cutoff``: when no row
    comes back, another send asked this question recently.
    """
    now = utcnow()
    cutoff = now - timedelta(minutes=settings.question_cooldown_minutes)
    row_id = upsert_returning(
        db,
        QuestionCooldown,
        {"conversation_id": conversation_id, "question_key": question_key, "asked_at": now},
        conflict_columns=["conversation_id", "question_key"],
        update_values={"asked_at": excluded(db, QuestionCooldown).asked_at},
        where=QuestionCooldown.asked_at < cutoff,
    )
    return row_id is not None


def release_question_slot(db: Session, conversation_id: int, question_key: str) -> None:
    """Undo ``claim_question_slot`` after a failed transmission; the question was never delivered."""
    db.query(QuestionCooldown).filter(
        QuestionCooldown.conversation_id == conversation_id,
        QuestionCooldown.question_key == question_key,
    ).delete(synchronize_session=False)


def claim_send_slot(db: Session, request: SendRequest, dedupe_key: str, text: str) -> Optional[int]:
    """Insert the PENDING send log row; ``None`` when this send already happened.

    A row left FAILED by a transmission error is taken over again so a job
    retry can resend; SENT, PENDING and cool-down-blocked rows are final.
    """
    now = utcnow()
    return upsert_returning(
        db,
        OutboundMessageLog,
        {
            "provider": request.provider,
            "conversation_id": request.conversation_id,
            "trigger_provider_message_id": request.trigger_id,
            "dedupe_key": dedupe_key,
            "text_hash": text_hash(text),
            "reply_type": request.reply_type,
            "last_question_key": request.question_key,
            "status": "PENDING",
            "created_at": now,
        },
        conflict_columns=["dedupe_key"],
        update_values={"status": "PENDING", "error": None, "failed_at": None},
        where=(OutboundMessageLog.status == "FAILED") & (OutboundMessageLog.error != COOLDOWN_BLOCKED),
    )


def _mark_log(db: Session, log_id: int, values: dict) -> None:
    db.query(OutboundMessageLog).filter(OutboundMessageLog.id == log_id).update(values, synchronize_session=False)


def try_send(db: Session, request: SendRequest, transport: Transport) -> SendResult:
    text = normalize_outbound_text(request.text)
    context = {
        "conversation_id": request.conversation_id,
        "trigger_id": request.trigger_id,
        "reply_type": request.reply_type,
        "question_key": request.question_key,
    }
    if not text:
        logger.info("Nothing to send", extra={"context": context})
        return SendResult(sent=False, error="empty_text")

    dedupe_key = compute_dedupe_key(request, text)
    now = utcnow()
    log_id = claim_send_slot(db, request, dedupe_key, text)
    if log_id is None:
        logger.info("Outbound already sent for trigger", extra={"context": context})
        return SendResult(sent=False, was_duplicate=True)

    if request.reply_type == REPLY_TYPE_QUESTION and request.question_key:
        if not claim_question_slot(db, request.conversation_id, request.question_key):
            _mark_log(
                db,
                log_id,
                {OutboundMessageLog.status: "FAILED", OutboundMessageLog.error: COOLDOWN_BLOCKED,
                 OutboundMessageLog.failed_at: now},
            )
            db.commit()
            logger.info("Question asked recently, not re-asking", extra={"context": context})
            return SendResult(sent=False, was_duplicate=True, error=COOLDOWN_BLOCKED)

    # log row is committed before transmission
    db.commit()

    try:
        provider_message_id = transport.send_text(request.to_address, text)
    except TransmissionError as e:
        _mark_log(
            db,
            log_id,
            {OutboundMessageLog.status: "FAILED", OutboundMessageLog.error: str(e)[:2000],
             OutboundMessageLog.failed_at: utcnow()},
        )
        if request.reply_type == REPLY_TYPE_QUESTION and request.question_key:
            release_question_slot(db, request.conversation_id, request.question_key)
        db.commit()
        logger.error("Outbound transmission failed", extra={"context": {**context, "error": str(e)}})
        return SendResult(sent=False, error=str(e))

    sent_at = utcnow()
    _mark_log(
        db,
        log_id,
        {OutboundMessageLog.status: "SENT", OutboundMessageLog.provider_message_id: provider_message_id,
         OutboundMessageLog.sent_at: sent_at},
    )
    message = Message(
        conversation_id=request.conversation_id,
        lead_id=request.lead_id,
        contact_id=request.contact_id,
        direction="OUTBOUND",
        channel=request.provider,
        body=text,
        provider_message_id=provider_message_id,
        status="SENT",
        message_metadata={"reply_type": request.reply_type, "trigger_id": request.trigger_id},
        created_at=sent_at,
        sent_at=sent_at,
    )
    db.add(message)
    conversation = lock_conversation(db, request.conversation_id)
    record_outbound(db, conversation, sent_at)
    if request.reply_type == REPLY_TYPE_QUESTION and request.question_key:
        record_question_asked(db, conversation, request.question_key, at=sent_at)
    db.commit()

    logger.info(
        "Outbound sent",
        extra={"context": {**context, "message_id": message.id, "provider_message_id": provider_message_id}},
    )
    return SendResult(sent=True, message_id=message.id)
