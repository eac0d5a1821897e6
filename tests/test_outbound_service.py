from datetime import timedelta

from app.errors import TransmissionError
from app.models import Message, OutboundMessageLog, QuestionCooldown
from app.models.types import utcnow
from app.services.outbound_service import (
    COOLDOWN_BLOCKED,
    SendRequest,
    compute_dedupe_key,
    normalize_outbound_text,
    text_hash,
    try_send,
)
from conftest import RecordingTransport


def _request(conversation, contact, lead, **overrides):
    values = dict(
        conversation_id=conversation.id,
        text="Hello! What is your nationality?",
        provider="whatsapp",
        to_address="971501234567",
        trigger_id="wamid.in.1",
        contact_id=contact.id,
        lead_id=lead.id,
    )
    values.update(overrides)
    return SendRequest(**values)


class TestNormalizeText:
    def test_unwraps_reply_json(self):
        assert normalize_outbound_text('{"reply": "  Hi there "}') == "Hi there"
        assert normalize_outbound_text({"reply": "Hi"}) == "Hi"

    def test_plain_text_trimmed(self):
        assert normalize_outbound_text("  Hi  ") == "Hi"
        assert normalize_outbound_text(None) == ""

    def test_broken_json_kept_as_text(self):
        assert normalize_outbound_text('{"reply": "Hi"') == '{"reply": "Hi"'

    def test_hash_ignores_case_and_spacing(self):
        assert text_hash("Hello   World") == text_hash("hello world")


class TestDedupeKey:
    def test_manual_key_depends_on_text(self):
        base = SendRequest(conversation_id=1, text="", provider="whatsapp", to_address="x", reply_type="manual")
        assert compute_dedupe_key(base, "Hi") != compute_dedupe_key(base, "Bye")

    def test_auto_reply_key_ignores_text(self):
        request = SendRequest(conversation_id=1, text="", provider="whatsapp", to_address="x", trigger_id="wamid.1")
        assert compute_dedupe_key(request, "Hi") == compute_dedupe_key(request, "Bye")


class TestTrySend:
    def test_sends_once_and_records_everything(self, db, make_thread, transport):
        contact, lead, conversation = make_thread()
        conversation.needs_reply_since = utcnow()
        db.commit()

        result = try_send(db, _request(conversation, contact, lead), transport)

        assert result.sent is True
        assert transport.sent == [("971501234567", "Hello! What is your nationality?")]
        log = db.query(OutboundMessageLog).one()
        assert log.status == "SENT"
        assert log.provider_message_id == "wamid.out.1"
        message = db.get(Message, result.message_id)
        assert message.direction == "OUTBOUND"
        assert conversation.last_outbound_at is not None
        assert conversation.needs_reply_since is None

    def test_same_trigger_is_not_sent_twice(self, db, make_thread, transport):
        contact, lead, conversation = make_thread()

        try_send(db, _request(conversation, contact, lead), transport)
        second = try_send(db, _request(conversation, contact, lead, text="A different draft"), transport)

        assert second.sent is False
        assert second.was_duplicate is True
        assert len(transport.sent) == 1

    def test_empty_text_is_not_sent(self, db, make_thread, transport):
        contact, lead, conversation = make_thread()
        result = try_send(db, _request(conversation, contact, lead, text='{"reply": ""}'), transport)

        assert result.sent is False
        assert result.error == "empty_text"
        assert transport.sent == []

    def test_question_records_pending_key(self, db, make_thread, transport):
        contact, lead, conversation = make_thread()

        try_send(
            db,
            _request(conversation, contact, lead, reply_type="question", question_key="NATIONALITY"),
            transport,
        )

        assert conversation.last_question_key == "NATIONALITY"
        assert db.query(QuestionCooldown).count() == 1

    def test_question_cooldown_blocks_reask(self, db, make_thread, transport):
        contact, lead, conversation = make_thread()
        question = dict(reply_type="question", question_key="NATIONALITY")

        try_send(db, _request(conversation, contact, lead, **question), transport)
        second = try_send(db, _request(conversation, contact, lead, trigger_id="wamid.in.2", **question), transport)

        assert second.sent is False
        assert second.was_duplicate is True
        assert second.error == COOLDOWN_BLOCKED
        assert len(transport.sent) == 1

    def test_question_allowed_after_cooldown(self, db, make_thread, transport):
        contact, lead, conversation = make_thread()
        question = dict(reply_type="question", question_key="NATIONALITY")
        try_send(db, _request(conversation, contact, lead, **question), transport)
        cooldown = db.query(QuestionCooldown).one()
        cooldown.asked_at = utcnow() - timedelta(minutes=61)
        db.commit()

        second = try_send(db, _request(conversation, contact, lead, trigger_id="wamid.in.2", **question), transport)

        assert second.sent is True

    def test_transmission_failure_is_returned_and_retryable(self, db, make_thread):
        contact, lead, conversation = make_thread()
        failing = RecordingTransport(error=TransmissionError("WhatsApp API error 500", status_code=500))

        result = try_send(db, _request(conversation, contact, lead), failing)

        assert result.sent is False
        assert result.was_duplicate is False
        assert "500" in result.error
        log = db.query(OutboundMessageLog).one()
        assert log.status == "FAILED"
        assert log.failed_at is not None

        retry = try_send(db, _request(conversation, contact, lead), RecordingTransport())
        assert retry.sent is True
        db.refresh(log)
        assert log.status == "SENT"

    def test_failed_question_does_not_hold_cooldown(self, db, make_thread):
        contact, lead, conversation = make_thread()
        question = {"reply_type": "question", "question_key": "NATIONALITY"}
        failing = RecordingTransport(error=TransmissionError("WhatsApp API error 500", status_code=500))

        try_send(db, _request(conversation, contact, lead, **question), failing)

        assert db.query(QuestionCooldown).count() == 0
        retry = try_send(db, _request(conversation, contact, lead, **question), RecordingTransport())
        assert retry.sent is True
