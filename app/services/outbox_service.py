from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import or_, text
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Conversation, OutboundJob
from app.models.types import utcnow
from app.services.alert_service import alert_error
from app.services.storage import insert_if_absent, reload
from app.services.task_service import TaskType, upsert_task

logger = get_logger("outbox_service")


class JobStatus(str, Enum):
    PENDING = "PENDING"
    GENERATING = "GENERATING"
    READY_TO_SEND = "READY_TO_SEND"
    SENT = "SENT"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


IN_FLIGHT_STATUSES = (JobStatus.GENERATING.value, JobStatus.READY_TO_SEND.value)


@dataclass
class EnqueueResult:
    job_id: int
    was_duplicate: bool


def compute_idempotency_key(
    conversation_id: int,
    inbound_provider_message_id: Optional[str],
    channel: str = "whatsapp",
    purpose: str = "auto_reply",
) -> str:
    """sha256 over conversation, trigger, channel and purpose.

    The outbound send log uses the same key for auto-replies, so a job and
    the send it produces share one identity.
    """
    parts = [
        f"conv:{conversation_id}",
        f"inbound:{inbound_provider_message_id or 'none'}",
        f"channel:{channel}",
        f"purpose:{purpose}",
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def enqueue_outbound_job(
    db: Session,
    *,
    conversation_id: int,
    inbound_message_id: Optional[int],
    inbound_provider_message_id: Optional[str],
    channel: str = "whatsapp",
    request_id: Optional[str] = None,
) -> EnqueueResult:
    """At most one job per inbound event; a repeat returns the existing job."""
    key = compute_idempotency_key(conversation_id, inbound_provider_message_id, channel)
    now = utcnow()
    outcome = insert_if_absent(
        db,
        OutboundJob,
        {
            "conversation_id": conversation_id,
            "inbound_message_id": inbound_message_id,
            "inbound_provider_message_id": inbound_provider_message_id,
            "idempotency_key": key,
            "status": JobStatus.PENDING.value,
            "attempts": 0,
            "max_attempts": settings.outbound_max_attempts,
            "run_at": now,
            "request_id": request_id or f"req_{uuid.uuid4().hex[:12]}",
            "created_at": now,
            "updated_at": now,
        },
    )
    if outcome.created:
        return EnqueueResult(job_id=outcome.row_id, was_duplicate=False)

    filters = [OutboundJob.idempotency_key == key]
    if inbound_provider_message_id:
        filters.append(OutboundJob.inbound_provider_message_id == inbound_provider_message_id)
    existing_id = db.query(OutboundJob.id).filter(or_(*filters)).order_by(OutboundJob.id).limit(1).scalar()
    logger.info(
        "Outbound job already enqueued",
        extra={"context": {"job_id": existing_id, "inbound_provider_message_id": inbound_provider_message_id}},
    )
    return EnqueueResult(job_id=existing_id, was_duplicate=True)


def recover_stale_jobs(db: Session, older_than_minutes: Optional[int] = None) -> int:
    """Return jobs stuck mid-flight (worker died) to PENDING."""
    minutes = settings.outbound_stale_claim_minutes if older_than_minutes is None else older_than_minutes
    now = utcnow()
    recovered = (
        db.query(OutboundJob)
        .filter(
            OutboundJob.status.in_(IN_FLIGHT_STATUSES),
            OutboundJob.claimed_at < now - timedelta(minutes=minutes),
        )
        .update(
            {OutboundJob.status: JobStatus.PENDING.value, OutboundJob.claimed_at: None, OutboundJob.updated_at: now},
            synchronize_session=False,
        )
    )
    if recovered:
        logger.warning("Recovered stale outbound jobs", extra={"context": {"count": recovered}})
    return recovered


_CLAIM_SQL = text(
    """
    WITH cte AS (
        SELECT id
        FROM outbound_jobs
        WHERE status = 'PENDING'
          AND run_at <= :now
        ORDER BY run_at
        LIMIT :limit
        FOR UPDATE SKIP LOCKED
    )
    UPDATE outbound_jobs
    SET status = 'GENERATING',
        attempts = attempts + 1,
        claimed_at = :now,
        updated_at = :now
    FROM cte
    WHERE outbound_jobs.id = cte.id
    RETURNING outbound_jobs.id
    """
)


def claim_pending_jobs(db: Session, *, limit: int = 10) -> list[OutboundJob]:
    """Claim due PENDING jobs for this worker (PENDING -> GENERATING).

    On PostgreSQL concurrent workers skip each other's rows via
    ``FOR UPDATE SKIP LOCKED``; other dialects run single-worker.
    """
    recover_stale_jobs(db)
    now = utcnow()

    if db.get_bind().dialect.name == "postgresql":
        job_ids = list(db.execute(_CLAIM_SQL, {"limit": limit, "now": now}).scalars())
    else:
        job_ids = [
            row.id
            for row in db.query(OutboundJob.id)
            .filter(OutboundJob.status == JobStatus.PENDING.value, OutboundJob.run_at <= now)
            .order_by(OutboundJob.run_at)
            .limit(limit)
        ]
        if job_ids:
            db.query(OutboundJob).filter(OutboundJob.id.in_(job_ids)).update(
                {
                    OutboundJob.status: JobStatus.GENERATING.value,
                    OutboundJob.attempts: OutboundJob.attempts + 1,
                    OutboundJob.claimed_at: now,
                    OutboundJob.updated_at: now,
                },
                synchronize_session=False,
            )
    db.commit()
    return [reload(db, OutboundJob, job_id) for job_id in sorted(job_ids)]


def mark_job_status(
    db: Session,
    job: OutboundJob,
    status: JobStatus,
    *,
    error: Optional[str] = None,
    content: Optional[str] = None,
) -> None:
    status = JobStatus(status)
    now = utcnow()
    job.status = status.value
    job.updated_at = now
    if error is not None:
        job.error = error[:2000]
    if content is not None:
        job.content = content
    if status in (JobStatus.SENT, JobStatus.SKIPPED, JobStatus.FAILED):
        job.completed_at = now
        job.claimed_at = None
    db.flush()


def schedule_job_retry(db: Session, job: OutboundJob, error: str) -> bool:
    """Back off ``2**attempts`` seconds, or fail the job for good.

    Returns True when a retry was scheduled. A job that exhausted
    ``max_attempts`` is marked FAILED, raises a Task and an alert.
    """
    context = {"job_id": job.id, "attempts": job.attempts, "conversation_id": job.conversation_id}
    if job.attempts < job.max_attempts:
        backoff = timedelta(seconds=2 ** job.attempts)
        job.status = JobStatus.PENDING.value
        job.run_at = utcnow() + backoff
        job.claimed_at = None
        job.error = error[:2000]
        job.updated_at = utcnow()
        db.flush()
        logger.warning(
            "Outbound job retry scheduled",
            extra={"context": {**context, "backoff_seconds": backoff.total_seconds(), "error": error}},
        )
        return True

    mark_job_status(db, job, JobStatus.FAILED, error=error)
    conversation = db.get(Conversation, job.conversation_id)
    if conversation is not None and conversation.lead_id is not None:
        upsert_task(
            db,
            conversation.lead_id,
            TaskType.AUTO_REPLY_FAILED,
            "Auto-reply failed: reply manually",
            due_at=utcnow(),
            idempotency_key=f"job-failed:{job.id}",
            conversation_id=conversation.id,
        )
    logger.error("Outbound job failed permanently", extra={"context": {**context, "error": error}})
    alert_error("Outbound job failed permanently", {**context, "error": error[:200]})
    return False
