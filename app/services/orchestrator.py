"""Inbound event pipeline.

Fast path (webhook request): admit the event, resolve identity, lead and
conversation, store the inbound message, advance the flow state, create
tasks and enqueue at most one auto-reply job. Everything after admission is
one transaction; on any error it is rolled back and the dedup record is marked
FAILED so a redelivery can retry.

Worker path (:func:`run_reply_job`): draft the reply and send it through the
outbound idempotency gate.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import RecordNotFoundError
from app.logging_config import PipelineLogger, get_logger
from app.models import Contact, Conversation, InboundMessageDedup, Lead, Message, OutboundJob
from app.models.types import utcnow
from app.services.contact_service import ContactInput, upsert_contact
from app.services.conversation_service import (
    lock_conversation,
    normalize_channel,
    record_inbound,
    upsert_conversation,
)
from app.services.flow_state import QuestionKey, apply_inbound_text, load_flow_state, next_question
from app.services.inbound_dedup_service import InboundStatus, admit_inbound, finalize_inbound
from app.services.lead_service import resolve_active_lead
from app.services.outbound_service import COOLDOWN_BLOCKED, REPLY_TYPE_QUESTION, SendRequest, try_send
from app.services.outbox_service import JobStatus, enqueue_outbound_job, mark_job_status
from app.services.reply_service import ReplyContext, ReplyDrafter, load_history
from app.services.state_machine import PipelineRun, PipelineStage
from app.services.storage import insert_if_absent, reload
from app.services.task_service import (
    AutoTaskInput,
    TaskType,
    complete_task_by_key,
    create_auto_tasks,
    reply_task_key,
    upsert_task,
)
from app.services.transport import Transport

logger = get_logger("orchestrator")


@dataclass
class InboundEvent:
    """One customer message, decoded from a provider webhook."""

    provider: str
    provider_message_id: str
    sender: str
    text: str = ""
    sender_name: Optional[str] = None
    wa_id: Optional[str] = None
    instagram_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineOutcome:
    stage: PipelineStage
    duplicate: bool = False
    dedup_record_id: Optional[int] = None
    contact_id: Optional[int] = None
    lead_id: Optional[int] = None
    conversation_id: Optional[int] = None
    message_id: Optional[int] = None
    job_id: Optional[int] = None
    tasks_created: int = 0
    extracted: dict[str, Any] = field(default_factory=dict)
    stages: list[PipelineStage] = field(default_factory=list)


@dataclass
class ReplyJobOutcome:
    stage: PipelineStage
    error: Optional[str] = None
    retryable: bool = False
    message_id: Optional[int] = None


def should_auto_reply(conversation: Conversation) -> bool:
    """Automation stays silent once a human owns the conversation."""
    return conversation.assigned_user_id is None


def _event_logger(event: InboundEvent) -> PipelineLogger:
    return PipelineLogger(
        logger, {"provider": event.provider, "provider_message_id": event.provider_message_id}
    )


def _store_inbound_message(
    db: Session, event: InboundEvent, conversation: Conversation, contact: Contact, lead: Lead, at: datetime
) -> int:
    outcome = insert_if_absent(
        db,
        Message,
        {
            "conversation_id": conversation.id,
            "lead_id": lead.id,
            "contact_id": contact.id,
            "direction": "INBOUND",
            "channel": conversation.channel,
            "body": event.text or "",
            "provider_message_id": event.provider_message_id,
            "status": "RECEIVED",
            "message_metadata": {**event.metadata, "from": event.sender},
            "created_at": at,
        },
        conflict_columns=["provider_message_id"],
    )
    if outcome.created:
        return outcome.row_id
    return db.query(Message.id).filter(Message.provider_message_id == event.provider_message_id).scalar()


def _process_admitted(
    db: Session, event: InboundEvent, record: InboundMessageDedup, run: PipelineRun, log: PipelineLogger
) -> PipelineOutcome:
    at = event.timestamp or utcnow()
    channel = normalize_channel(event.provider)
    outcome = PipelineOutcome(stage=run.stage, dedup_record_id=record.id)

    contact = upsert_contact(
        db,
        ContactInput(
            phone=event.sender,
            wa_id=event.wa_id,
            instagram_id=event.instagram_id,
            full_name=event.sender_name,
            source=channel,
        ),
    )
    lead = resolve_active_lead(db, contact, channel, at=at)
    outcome.contact_id, outcome.lead_id = contact.id, lead.id
    run.advance(PipelineStage.IDENTITY_RESOLVED)

    conversation = upsert_conversation(db, contact.id, channel, lead.id, timestamp=at)
    conversation = lock_conversation(db, conversation.id)
    record_inbound(db, conversation, at)
    outcome.conversation_id = conversation.id
    outcome.message_id = _store_inbound_message(db, event, conversation, contact, lead, at)
    log = log.bind(conversation_id=conversation.id, lead_id=lead.id)
    run.advance(PipelineStage.CONVERSATION_RESOLVED)

    update = apply_inbound_text(db, conversation, contact, lead, event.text)
    outcome.extracted = dict(update.extracted)
    run.advance(PipelineStage.FIELDS_EXTRACTED)

    known = conversation.known_fields or {}
    outcome.tasks_created = create_auto_tasks(
        db,
        AutoTaskInput(
            lead_id=lead.id,
            conversation_id=conversation.id,
            channel=channel,
            provider_message_id=event.provider_message_id,
            service=known.get("service") or lead.service_type,
            expiries=update.extracted.get("expiries") or [],
            expiry_hint=update.extracted.get("expiry_hint"),
        ),
    )
    run.advance(PipelineStage.TASKS_CREATED)

    run.advance(PipelineStage.REPLY_DECISION)
    if not should_auto_reply(conversation):
        log.info("Conversation assigned, no auto-reply", context={"assigned_user_id": conversation.assigned_user_id})
        run.advance(PipelineStage.SKIPPED_ASSIGNED)
    elif not settings.auto_reply_enabled or not (event.text or "").strip():
        run.advance(PipelineStage.SKIPPED_NO_CONTENT)
    else:
        enqueued = enqueue_outbound_job(
            db,
            conversation_id=conversation.id,
            inbound_message_id=outcome.message_id,
            inbound_provider_message_id=event.provider_message_id,
            channel=channel,
        )
        outcome.job_id = enqueued.job_id
        run.advance(PipelineStage.AUTO_REPLY_QUEUED)

    finalize_inbound(db, record, InboundStatus.COMPLETED, conversation_id=conversation.id)
    run.advance(PipelineStage.FINALIZED)
    db.commit()

    outcome.stage = run.outcome
    outcome.stages = list(run.history)
    log.info(
        "Inbound event processed",
        context={"outcome": run.outcome.value, "tasks_created": outcome.tasks_created, "job_id": outcome.job_id},
    )
    return outcome


def handle_inbound_event(db: Session, event: InboundEvent) -> PipelineOutcome:
    """Process one inbound event exactly once.

    Returns ``duplicate=True`` without side effects when the event was already
    admitted. Unexpected errors are re-raised after the dedup record is marked
    FAILED.
    """
    log = _event_logger(event)
    run = PipelineRun()

    admission = admit_inbound(db, event.provider, event.provider_message_id)
    db.commit()
    if admission.is_duplicate:
        run.advance(PipelineStage.DUPLICATE)
        return PipelineOutcome(
            stage=PipelineStage.DUPLICATE,
            duplicate=True,
            dedup_record_id=admission.record.id,
            conversation_id=admission.record.conversation_id,
            stages=list(run.history),
        )
    run.advance(PipelineStage.ADMITTED)
    record_id = admission.record.id

    try:
        return _process_admitted(db, event, admission.record, run, log)
    except Exception as e:
        db.rollback()
        log.error(
            "Inbound event processing failed",
            exc_info=True,
            context={"stage": run.stage.value, "error": str(e)},
        )
        record = reload(db, InboundMessageDedup, record_id)
        finalize_inbound(db, record, InboundStatus.FAILED, error=f"{type(e).__name__}: {e}")
        db.commit()
        raise


def _reply_target(db: Session, job: OutboundJob, contact: Contact) -> str:
    if job.inbound_message_id is not None:
        inbound = db.get(Message, job.inbound_message_id)
        if inbound is not None and (inbound.message_metadata or {}).get("from"):
            return inbound.message_metadata["from"]
    return contact.wa_id or contact.phone


def _raise_reply_failed_task(db: Session, job: OutboundJob, conversation: Conversation, error: str) -> None:
    if conversation.lead_id is None:
        return
    upsert_task(
        db,
        conversation.lead_id,
        TaskType.AUTO_REPLY_FAILED,
        "Auto-reply failed: reply manually",
        due_at=utcnow(),
        idempotency_key=f"reply-failed:{job.id}",
        conversation_id=conversation.id,
    )


def run_reply_job(db: Session, job: OutboundJob, drafter: ReplyDrafter, transport: Transport) -> ReplyJobOutcome:
    """Draft and send the auto-reply for one claimed job.

    The caller owns the job's final status; this returns the reply outcome.
    A transmission failure comes back as ``retryable=True``.
    """
    log = PipelineLogger(logger, {"job_id": job.id, "conversation_id": job.conversation_id})
    run = PipelineRun(PipelineStage.REPLY_DECISION)

    conversation = reload(db, Conversation, job.conversation_id)
    if conversation is None:
        raise RecordNotFoundError("Conversation", job.conversation_id)
    contact = db.get(Contact, conversation.contact_id)

    if not should_auto_reply(conversation):
        run.advance(PipelineStage.SKIPPED_ASSIGNED)
        log.info("Conversation assigned since enqueue, skipping auto-reply")
        return ReplyJobOutcome(stage=run.stage)

    state = load_flow_state(conversation)
    lead = db.get(Lead, conversation.lead_id) if conversation.lead_id else None
    question: Optional[QuestionKey] = next_question(state, lead.service_type if lead else None)

    inbound = db.get(Message, job.inbound_message_id) if job.inbound_message_id else None
    context = ReplyContext(
        conversation_id=conversation.id,
        channel=conversation.channel,
        inbound_text=inbound.body if inbound is not None else "",
        contact_name=contact.full_name,
        known_fields=state.known_fields,
        next_question=question,
        history=load_history(db, conversation.id),
    )
    draft = drafter.draft(context)
    if not draft.ok:
        run.advance(PipelineStage.REPLY_FAILED)
        log.warning("Reply draft failed", context={"error": draft.error, "error_code": draft.error_code})
        _raise_reply_failed_task(db, job, conversation, draft.error or "draft_error")
        return ReplyJobOutcome(stage=run.stage, error=draft.error)

    mark_job_status(db, job, JobStatus.READY_TO_SEND, content=draft.value)
    result = try_send(
        db,
        SendRequest(
            conversation_id=conversation.id,
            text=draft.value,
            provider=conversation.channel,
            to_address=_reply_target(db, job, contact),
            trigger_id=job.inbound_provider_message_id,
            reply_type=REPLY_TYPE_QUESTION if question is not None else "answer",
            question_key=question.value if question is not None else None,
            contact_id=contact.id,
            lead_id=conversation.lead_id,
        ),
        transport,
    )

    if result.sent:
        run.advance(PipelineStage.AUTO_REPLIED)
        if conversation.lead_id is not None and job.inbound_provider_message_id:
            complete_task_by_key(db, reply_task_key(conversation.lead_id, job.inbound_provider_message_id))
        return ReplyJobOutcome(stage=run.stage, message_id=result.message_id)

    if result.was_duplicate and result.error == COOLDOWN_BLOCKED:
        run.advance(PipelineStage.SKIPPED_NO_CONTENT)
        return ReplyJobOutcome(stage=run.stage)
    if result.was_duplicate:
        run.advance(PipelineStage.AUTO_REPLIED)
        log.info("Auto-reply already sent for trigger")
        return ReplyJobOutcome(stage=run.stage)
    if result.error == "empty_text":
        run.advance(PipelineStage.SKIPPED_NO_CONTENT)
        return ReplyJobOutcome(stage=run.stage)

    run.advance(PipelineStage.REPLY_FAILED)
    return ReplyJobOutcome(stage=run.stage, error=result.error, retryable=True)
