from datetime import timedelta
from unittest.mock import patch

from app.models import OutboundJob, Task
from app.models.types import utcnow
from app.services.outbox_service import (
    JobStatus,
    claim_pending_jobs,
    compute_idempotency_key,
    enqueue_outbound_job,
    mark_job_status,
    recover_stale_jobs,
    schedule_job_retry,
)


def _enqueue(db, conversation_id, trigger="wamid.1"):
    return enqueue_outbound_job(
        db,
        conversation_id=conversation_id,
        inbound_message_id=None,
        inbound_provider_message_id=trigger,
    )


class TestIdempotencyKey:
    def test_stable_and_distinct(self):
        assert compute_idempotency_key(1, "wamid.1") == compute_idempotency_key(1, "wamid.1")
        assert compute_idempotency_key(1, "wamid.1") != compute_idempotency_key(1, "wamid.2")
        assert compute_idempotency_key(1, "wamid.1") != compute_idempotency_key(1, "wamid.1", "instagram")
        assert len(compute_idempotency_key(1, None)) == 64


class TestEnqueue:
    def test_one_job_per_inbound_event(self, db, make_thread):
        _, _, conversation = make_thread()

        first = _enqueue(db, conversation.id)
        second = _enqueue(db, conversation.id)

        assert first.was_duplicate is False
        assert second.was_duplicate is True
        assert second.job_id == first.job_id
        assert db.query(OutboundJob).count() == 1

    def test_new_job_is_pending_and_due(self, db, make_thread):
        _, _, conversation = make_thread()
        job = db.get(OutboundJob, _enqueue(db, conversation.id).job_id)

        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 0
        assert job.run_at <= utcnow()
        assert job.request_id.startswith("req_")


class TestClaim:
    def test_claims_due_jobs_once(self, db, make_thread):
        _, _, conversation = make_thread()
        _enqueue(db, conversation.id, "wamid.1")
        _enqueue(db, conversation.id, "wamid.2")
        db.commit()

        jobs = claim_pending_jobs(db, limit=10)

        assert len(jobs) == 2
        assert all(job.status == JobStatus.GENERATING.value for job in jobs)
        assert all(job.attempts == 1 for job in jobs)
        assert claim_pending_jobs(db, limit=10) == []

    def test_respects_limit_and_run_at(self, db, make_thread):
        _, _, conversation = make_thread()
        later = db.get(OutboundJob, _enqueue(db, conversation.id, "wamid.later").job_id)
        later.run_at = utcnow() + timedelta(minutes=5)
        _enqueue(db, conversation.id, "wamid.a")
        _enqueue(db, conversation.id, "wamid.b")
        db.commit()

        jobs = claim_pending_jobs(db, limit=1)

        assert len(jobs) == 1
        assert jobs[0].inbound_provider_message_id != "wamid.later"

    def test_recovers_stuck_jobs(self, db, make_thread):
        _, _, conversation = make_thread()
        _enqueue(db, conversation.id)
        db.commit()
        job = claim_pending_jobs(db)[0]
        job.claimed_at = utcnow() - timedelta(minutes=30)
        db.commit()

        assert recover_stale_jobs(db) == 1
        db.commit()
        reclaimed = claim_pending_jobs(db)
        assert [j.id for j in reclaimed] == [job.id]
        assert reclaimed[0].attempts == 2


class TestStatusAndRetry:
    def test_mark_sent_completes(self, db, make_thread):
        _, _, conversation = make_thread()
        job = db.get(OutboundJob, _enqueue(db, conversation.id).job_id)

        mark_job_status(db, job, JobStatus.SENT, content="Hello")

        assert job.status == "SENT"
        assert job.content == "Hello"
        assert job.completed_at is not None

    def test_retry_backs_off_exponentially(self, db, make_thread):
        _, _, conversation = make_thread()
        _enqueue(db, conversation.id)
        db.commit()
        job = claim_pending_jobs(db)[0]
        before = utcnow()

        assert schedule_job_retry(db, job, "timeout") is True

        assert job.status == JobStatus.PENDING.value
        assert job.error == "timeout"
        assert job.run_at >= before + timedelta(seconds=2)

    @patch("app.services.outbox_service.alert_error")
    def test_exhausted_job_fails_with_task_and_alert(self, mock_alert, db, make_thread):
        _, lead, conversation = make_thread()
        _enqueue(db, conversation.id)
        db.commit()
        job = claim_pending_jobs(db)[0]
        job.attempts = job.max_attempts

        assert schedule_job_retry(db, job, "WhatsApp API error 500") is False

        assert job.status == JobStatus.FAILED.value
        task = db.query(Task).filter(Task.idempotency_key == f"job-failed:{job.id}").one()
        assert task.type == "AUTO_REPLY_FAILED"
        assert task.lead_id == lead.id
        mock_alert.assert_called_once()
