"""Inbound Dedup Gate: each (provider, provider_message_id) is processed once.

Creating the dedup row is the serialization point for concurrent deliveries
of the same event. A row is re-admitted only when a previous attempt FAILED
or was abandoned in PROCESSING longer than the stale window.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import InboundMessageDedup
from app.models.types import utcnow
from app.services.storage import reload, upsert_returning

logger = get_logger("inbound_dedup")


class InboundStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class AdmissionResult:
    admitted: bool
    record: InboundMessageDedup

    @property
    def is_duplicate(self) -> bool:
        return not self.admitted


def _stale_cutoff(minutes: Optional[int] = None):
    minutes = settings.inbound_stale_after_minutes if minutes is None else minutes
    return utcnow() - timedelta(minutes=minutes)


def admit_inbound(db: Session, provider: str, provider_message_id: str) -> AdmissionResult:
    now = utcnow()
    cutoff = _stale_cutoff()
    row_id = upsert_returning(
        db,
        InboundMessageDedup,
        {
            "provider": provider,
            "provider_message_id": provider_message_id,
            "status": InboundStatus.PROCESSING.value,
            "attempts": 1,
            "created_at": now,
            "updated_at": now,
        },
        conflict_columns=["provider", "provider_message_id"],
        update_values={
            "status": InboundStatus.PROCESSING.value,
            "attempts": InboundMessageDedup.attempts + 1,
            "error": None,
            "updated_at": now,
        },
        where=(InboundMessageDedup.status == InboundStatus.FAILED.value)
        | (
            (InboundMessageDedup.status == InboundStatus.PROCESSING.value)
            & (InboundMessageDedup.updated_at < cutoff)
        ),
    )
    context = {"provider": provider, "provider_message_id": provider_message_id}

    if row_id is not None:
        record = reload(db, InboundMessageDedup, row_id)
        if record.attempts > 1:
            logger.warning("Re-admitting inbound event", extra={"context": {**context, "attempts": record.attempts}})
        return AdmissionResult(admitted=True, record=record)

    record = (
        db.query(InboundMessageDedup)
        .filter(
            InboundMessageDedup.provider == provider,
            InboundMessageDedup.provider_message_id == provider_message_id,
        )
        .populate_existing()
        .one()
    )
    logger.info("Duplicate inbound event", extra={"context": {**context, "status": record.status}})
    return AdmissionResult(admitted=False, record=record)


def finalize_inbound(
    db: Session,
    record: InboundMessageDedup,
    status: InboundStatus,
    error: Optional[str] = None,
    conversation_id: Optional[int] = None,
) -> bool:
    """Mark the record COMPLETED or FAILED. A COMPLETED record is final."""
    status = InboundStatus(status)
    if status == InboundStatus.PROCESSING:
        raise ValueError("finalize_inbound expects COMPLETED or FAILED")

    now = utcnow()
    values = {
        InboundMessageDedup.status: status.value,
        InboundMessageDedup.error: (error or "")[:2000] or None,
        InboundMessageDedup.processed_at: now,
        InboundMessageDedup.updated_at: now,
    }
    if conversation_id is not None:
        values[InboundMessageDedup.conversation_id] = conversation_id

    updated = (
        db.query(InboundMessageDedup)
        .filter(
            InboundMessageDedup.id == record.id,
            InboundMessageDedup.status != InboundStatus.COMPLETED.value,
        )
        .update(values, synchronize_session=False)
    )
    db.refresh(record)
    if not updated:
        logger.warning("Inbound record already completed", extra={"context": {"record_id": record.id}})
    return bool(updated)


def sweep_stale_inbound(db: Session, older_than_minutes: Optional[int] = None) -> int:
    """Mark PROCESSING rows abandoned past the stale window as FAILED."""
    now = utcnow()
    count = (
        db.query(InboundMessageDedup)
        .filter(
            InboundMessageDedup.status == InboundStatus.PROCESSING.value,
            InboundMessageDedup.updated_at < _stale_cutoff(older_than_minutes),
        )
        .update(
            {
                InboundMessageDedup.status: InboundStatus.FAILED.value,
                InboundMessageDedup.error: "abandoned in PROCESSING",
                InboundMessageDedup.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if count:
        logger.warning("Swept stale inbound records", extra={"context": {"count": count}})
    return count
