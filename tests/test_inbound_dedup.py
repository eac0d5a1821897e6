from datetime import timedelta

import pytest

from app.models import InboundMessageDedup
from app.models.types import utcnow
from app.services.inbound_dedup_service import (
    InboundStatus,
    admit_inbound,
    finalize_inbound,
    sweep_stale_inbound,
)


def _age(db, record, minutes):
    record.updated_at = utcnow() - timedelta(minutes=minutes)
    db.commit()


class TestAdmitInbound:
    def test_first_delivery_is_admitted(self, db):
        result = admit_inbound(db, "whatsapp", "wamid.1")
        assert result.admitted is True
        assert result.record.status == InboundStatus.PROCESSING.value
        assert result.record.attempts == 1

    def test_second_delivery_is_duplicate(self, db):
        admit_inbound(db, "whatsapp", "wamid.1")
        db.commit()

        result = admit_inbound(db, "whatsapp", "wamid.1")

        assert result.admitted is False
        assert result.is_duplicate
        assert db.query(InboundMessageDedup).count() == 1

    def test_same_id_on_other_provider_is_separate(self, db):
        admit_inbound(db, "whatsapp", "mid.1")
        assert admit_inbound(db, "instagram", "mid.1").admitted is True

    def test_concurrent_sessions_admit_once(self, session_factory):
        first, second = session_factory(), session_factory()
        try:
            a = admit_inbound(first, "whatsapp", "wamid.race")
            first.commit()
            b = admit_inbound(second, "whatsapp", "wamid.race")
            second.commit()
        finally:
            first.close()
            second.close()
        assert [a.admitted, b.admitted].count(True) == 1

    def test_completed_record_is_never_readmitted(self, db):
        record = admit_inbound(db, "whatsapp", "wamid.1").record
        finalize_inbound(db, record, InboundStatus.COMPLETED)
        _age(db, record, 60)

        assert admit_inbound(db, "whatsapp", "wamid.1").admitted is False

    def test_failed_record_is_readmitted(self, db):
        record = admit_inbound(db, "whatsapp", "wamid.1").record
        finalize_inbound(db, record, InboundStatus.FAILED, error="boom")
        db.commit()

        result = admit_inbound(db, "whatsapp", "wamid.1")

        assert result.admitted is True
        assert result.record.status == InboundStatus.PROCESSING.value
        assert result.record.attempts == 2
        assert result.record.error is None

    def test_fresh_processing_record_is_not_readmitted(self, db):
        record = admit_inbound(db, "whatsapp", "wamid.1").record
        _age(db, record, 2)

        assert admit_inbound(db, "whatsapp", "wamid.1").admitted is False

    def test_stale_processing_record_is_readmitted(self, db):
        record = admit_inbound(db, "whatsapp", "wamid.1").record
        _age(db, record, 30)

        assert admit_inbound(db, "whatsapp", "wamid.1").admitted is True


class TestFinalizeInbound:
    def test_marks_completed_with_conversation(self, db):
        record = admit_inbound(db, "whatsapp", "wamid.1").record

        assert finalize_inbound(db, record, InboundStatus.COMPLETED, conversation_id=7) is True
        assert record.status == InboundStatus.COMPLETED.value
        assert record.conversation_id == 7
        assert record.processed_at is not None

    def test_completed_is_final(self, db):
        record = admit_inbound(db, "whatsapp", "wamid.1").record
        finalize_inbound(db, record, InboundStatus.COMPLETED)

        assert finalize_inbound(db, record, InboundStatus.FAILED, error="late") is False
        assert record.status == InboundStatus.COMPLETED.value

    def test_processing_is_not_a_final_status(self, db):
        record = admit_inbound(db, "whatsapp", "wamid.1").record
        with pytest.raises(ValueError):
            finalize_inbound(db, record, InboundStatus.PROCESSING)


class TestSweepStaleInbound:
    def test_marks_abandoned_rows_failed(self, db):
        stale = admit_inbound(db, "whatsapp", "wamid.old").record
        admit_inbound(db, "whatsapp", "wamid.new")
        _age(db, stale, 30)

        assert sweep_stale_inbound(db) == 1
        db.refresh(stale)
        assert stale.status == InboundStatus.FAILED.value
