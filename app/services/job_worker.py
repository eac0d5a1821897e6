"""Outbound job worker: claims due jobs and runs the reply path for each."""

import asyncio
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import Conversation
from app.services.inbound_dedup_service import sweep_stale_inbound
from app.services.orchestrator import run_reply_job
from app.services.outbox_service import JobStatus, claim_pending_jobs, mark_job_status, schedule_job_retry
from app.services.reply_service import ReplyDrafter, get_reply_drafter
from app.services.state_machine import PipelineStage
from app.services.transport import Transport, get_transport

logger = get_logger("job_worker")

SKIP_STAGES = (PipelineStage.SKIPPED_ASSIGNED, PipelineStage.SKIPPED_NO_CONTENT)


def process_outbound_jobs(
    db: Session,
    limit: Optional[int] = None,
    drafter: Optional[ReplyDrafter] = None,
    transport_factory: Callable[[str], Transport] = get_transport,
) -> dict:
    """Run one batch. Returns counters for logging and the manual trigger endpoint."""
    jobs = claim_pending_jobs(db, limit=limit or settings.outbound_process_limit)
    results = {"claimed": len(jobs), "sent": 0, "skipped": 0, "retried": 0, "failed": 0}
    if not jobs:
        return results

    drafter = drafter or get_reply_drafter()
    for job in jobs:
        context = {"job_id": job.id, "conversation_id": job.conversation_id, "attempts": job.attempts}
        try:
            conversation = db.get(Conversation, job.conversation_id)
            transport = transport_factory(conversation.channel)
            outcome = run_reply_job(db, job, drafter, transport)

            if outcome.stage == PipelineStage.AUTO_REPLIED:
                mark_job_status(db, job, JobStatus.SENT)
                results["sent"] += 1
            elif outcome.stage in SKIP_STAGES:
                mark_job_status(db, job, JobStatus.SKIPPED, error=outcome.stage.value)
                results["skipped"] += 1
            elif outcome.retryable and schedule_job_retry(db, job, outcome.error or "send_failed"):
                results["retried"] += 1
            else:
                if job.status != JobStatus.FAILED.value:
                    mark_job_status(db, job, JobStatus.FAILED, error=outcome.error or "reply_failed")
                results["failed"] += 1
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Outbound job crashed", exc_info=True, extra={"context": {**context, "error": str(e)}})
            if not schedule_job_retry(db, job, f"{type(e).__name__}: {e}"):
                results["failed"] += 1
            else:
                results["retried"] += 1
            db.commit()

    logger.info("Outbound batch processed", extra={"context": results})
    return results


def run_batch() -> dict:
    """One worker tick: sweep abandoned inbound records, then process due jobs."""
    db = SessionLocal()
    try:
        sweep_stale_inbound(db)
        db.commit()
        return process_outbound_jobs(db)
    finally:
        db.close()


async def outbound_worker_loop(interval_seconds: Optional[float] = None) -> None:
    """Poll for due jobs until cancelled. Each iteration uses its own session."""
    interval = max(interval_seconds or settings.outbound_worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval)
            await asyncio.to_thread(run_batch)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.error("Outbound worker loop failed", extra={"context": {"error": str(exc)}})
