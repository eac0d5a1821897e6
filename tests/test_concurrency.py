"""Two sessions on one SQLite file, interleaved at the points where a real
webhook request and the outbound worker can overlap."""

from unittest.mock import patch

import pytest

from app.models import Contact, Conversation, InboundMessageDedup, Message, OutboundJob
from app.services import orchestrator
from app.services.contact_service import ContactInput, find_contact, upsert_contact
from app.services.inbound_dedup_service import InboundStatus, admit_inbound, finalize_inbound
from app.services.orchestrator import InboundEvent, handle_inbound_event, run_reply_job
from app.services.outbox_service import claim_pending_jobs
from app.services.reply_service import QuestionReplyDrafter
from app.services.state_machine import PipelineStage
from conftest import RecordingTransport

SENDER = "971501234567"


def _event(message_id="wamid.in.1", text="Hi"):
    return InboundEvent(provider="whatsapp", provider_message_id=message_id, sender=SENDER, text=text)


@pytest.fixture
def sessions(file_session_factory):
    first, second = file_session_factory(), file_session_factory()
    try:
        yield first, second
    finally:
        first.close()
        second.close()


class TestContactRace:
    @pytest.mark.parametrize(
        "data",
        [
            ContactInput(phone=SENDER, wa_id=SENDER, source="whatsapp"),
            ContactInput(phone="ig:17841400000000", source="instagram"),
        ],
    )
    def test_lookup_before_other_insert_converges(self, sessions, data):
        first, second = sessions
        missed = []

        def lookup(*args):
            if not missed:
                missed.append(args)
                # the other request creates the contact between this lookup and the insert
                winner = upsert_contact(first, data)
                first.commit()
                missed.append(winner.id)
                return None
            return find_contact(*args)

        with patch("app.services.contact_service.find_contact", side_effect=lookup):
            loser = upsert_contact(second, data)
        second.commit()

        assert loser.id == missed[1]
        assert second.query(Contact).count() == 1


class TestWorkerAndWebhookOverlap:
    def _queue_first_reply(self, session):
        handle_inbound_event(session, _event())
        jobs = claim_pending_jobs(session, limit=10)
        assert len(jobs) == 1
        return jobs[0]

    def _assert_both_writes_kept(self, session_factory):
        fresh = session_factory()
        try:
            conversation = fresh.query(Conversation).one()
            assert conversation.known_fields["nationality"] == "China"
            assert "NAME" in conversation.known_fields["asked_questions"]
            assert conversation.last_question_key == "NAME"
        finally:
            fresh.close()

    def test_inbound_while_reply_is_drafted(self, sessions, file_session_factory):
        worker, webhook = sessions

        class InterleavingDrafter(QuestionReplyDrafter):
            def draft(self, context):
                handle_inbound_event(webhook, _event("wamid.in.2", "I am from China"))
                return super().draft(context)

        job = self._queue_first_reply(worker)
        result = run_reply_job(worker, job, InterleavingDrafter(), RecordingTransport())

        assert result.stage == PipelineStage.AUTO_REPLIED
        self._assert_both_writes_kept(file_session_factory)

    def test_inbound_while_reply_is_transmitted(self, sessions, file_session_factory):
        worker, webhook = sessions

        class InterleavingTransport(RecordingTransport):
            def send_text(self, to, text):
                handle_inbound_event(webhook, _event("wamid.in.2", "I am from China"))
                return super().send_text(to, text)

        job = self._queue_first_reply(worker)
        transport = InterleavingTransport()
        result = run_reply_job(worker, job, QuestionReplyDrafter(), transport)

        assert result.stage == PipelineStage.AUTO_REPLIED
        assert transport.sent == [(SENDER, "May I have your full name, please?")]
        self._assert_both_writes_kept(file_session_factory)


class TestDoubleAdmission:
    def test_redelivery_before_finalize_is_duplicate(self, sessions):
        first, second = sessions

        admitted = admit_inbound(first, "whatsapp", "wamid.in.1")
        first.commit()
        during = admit_inbound(second, "whatsapp", "wamid.in.1")
        second.commit()

        assert admitted.admitted
        assert during.is_duplicate
        assert during.record.status == InboundStatus.PROCESSING.value

        finalize_inbound(first, admitted.record, InboundStatus.COMPLETED)
        first.commit()
        after = admit_inbound(second, "whatsapp", "wamid.in.1")
        second.commit()

        assert after.is_duplicate
        assert after.record.status == InboundStatus.COMPLETED.value
        assert second.query(InboundMessageDedup).count() == 1

    def test_redelivery_during_processing_has_no_side_effects(self, sessions):
        first, second = sessions
        process = orchestrator._process_admitted
        during = []

        def redeliver_then_process(*args):
            during.append(handle_inbound_event(second, _event()))
            return process(*args)

        with patch("app.services.orchestrator._process_admitted", side_effect=redeliver_then_process):
            outcome = handle_inbound_event(first, _event())

        assert outcome.stage == PipelineStage.AUTO_REPLY_QUEUED
        assert during[0].duplicate is True
        assert during[0].stage == PipelineStage.DUPLICATE
        assert first.query(Message).count() == 1
        assert first.query(OutboundJob).count() == 1


class TestDuplicateDeliveryAcrossSessions:
    def test_second_session_creates_nothing(self, sessions):
        first, second = sessions

        original = handle_inbound_event(first, _event())
        repeat = handle_inbound_event(second, _event())

        assert original.duplicate is False
        assert repeat.duplicate is True
        assert repeat.conversation_id == original.conversation_id
        assert second.query(Message).filter(Message.provider_message_id == "wamid.in.1").count() == 1
        assert second.query(OutboundJob).count() == 1
        assert second.query(Contact).count() == 1
