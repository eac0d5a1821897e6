"""Follow-up tasks, deduplicated by idempotency key.

Every task carries a unique ``idempotency_key``. ``upsert_task`` refreshes an
existing task in place; ``create_task_once`` leaves it alone. Both are single
constrained writes, safe under concurrent webhook handlers for one lead.
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Task
from app.models.types import utcnow
from app.services.service_catalog import BUSINESS_SETUP_SERVICES, QUALIFY_SERVICES, ServiceType
from app.services.storage import excluded, insert_if_absent, upsert_returning

logger = get_logger("task_service")

REPLY_DUE_AFTER = timedelta(minutes=10)
QUALIFY_DUE_AFTER = timedelta(hours=2)
RENEWAL_LEAD_TIME = timedelta(days=90)


class TaskType(str, Enum):
    REPLY_DUE = "REPLY_DUE"
    QUOTE = "QUOTE"
    QUALIFY = "QUALIFY"
    RENEWAL_FOLLOWUP = "RENEWAL_FOLLOWUP"
    CONFIRM_EXPIRY = "CONFIRM_EXPIRY"
    AUTO_REPLY_FAILED = "AUTO_REPLY_FAILED"


class TaskStatus(str, Enum):
    OPEN = "OPEN"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


@dataclass
class AutoTaskInput:
    lead_id: int
    conversation_id: int
    channel: str
    provider_message_id: str
    service: Optional[str] = None
    expiries: list[dict] = field(default_factory=list)
    expiry_hint: Optional[str] = None


def _type_value(task_type) -> str:
    return task_type.value if isinstance(task_type, Enum) else str(task_type)


def default_task_key(lead_id: int, task_type, due_at: Optional[datetime] = None) -> str:
    at = due_at or utcnow()
    # naive values are UTC, as UTCDateTime stores them
    at = at.replace(tzinfo=timezone.utc) if at.tzinfo is None else at.astimezone(timezone.utc)
    day = at.date()
    return f"{_type_value(task_type)}:{lead_id}:{day.isoformat()}"


def end_of_day(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return datetime.combine(now.date(), time(23, 59, 59), tzinfo=timezone.utc)


def upsert_task(
    db: Session,
    lead_id: int,
    type,
    title: str,
    due_at: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
    conversation_id: Optional[int] = None,
) -> int:
    """Create the task, or refresh ``due_at`` and reopen the one with the same key."""
    key = idempotency_key or default_task_key(lead_id, type, due_at)
    now = utcnow()
    excl = excluded(db, Task)
    task_id = upsert_returning(
        db,
        Task,
        {
            "lead_id": lead_id,
            "conversation_id": conversation_id,
            "type": _type_value(type),
            "title": title,
            "due_at": due_at,
            "status": TaskStatus.OPEN.value,
            "idempotency_key": key,
            "created_at": now,
            "updated_at": now,
        },
        conflict_columns=["idempotency_key"],
        update_values={
            "due_at": excl.due_at,
            "status": TaskStatus.OPEN.value,
            "updated_at": excl.updated_at,
        },
    )
    logger.debug("Task upserted", extra={"context": {"task_id": task_id, "idempotency_key": key}})
    return task_id


def create_task_once(
    db: Session,
    lead_id: int,
    type,
    title: str,
    idempotency_key: str,
    due_at: Optional[datetime] = None,
    conversation_id: Optional[int] = None,
) -> bool:
    """Insert the task unless its key already exists. Returns True when created."""
    now = utcnow()
    outcome = insert_if_absent(
        db,
        Task,
        {
            "lead_id": lead_id,
            "conversation_id": conversation_id,
            "type": _type_value(type),
            "title": title,
            "due_at": due_at,
            "status": TaskStatus.OPEN.value,
            "idempotency_key": idempotency_key,
            "created_at": now,
            "updated_at": now,
        },
        conflict_columns=["idempotency_key"],
    )
    return outcome.created


def complete_task(db: Session, task_id: int) -> bool:
    now = utcnow()
    updated = (
        db.query(Task)
        .filter(Task.id == task_id, Task.status == TaskStatus.OPEN.value)
        .update(
            {Task.status: TaskStatus.DONE.value, Task.completed_at: now, Task.updated_at: now},
            synchronize_session=False,
        )
    )
    return bool(updated)


def complete_task_by_key(db: Session, idempotency_key: str) -> bool:
    task_id = db.query(Task.id).filter(Task.idempotency_key == idempotency_key).scalar()
    return task_id is not None and complete_task(db, task_id)


def reply_task_key(lead_id: int, provider_message_id: str) -> str:
    return f"reply:{lead_id}:{provider_message_id}"


def create_auto_tasks(db: Session, data: AutoTaskInput) -> int:
    """Tasks implied by one inbound message. Returns how many were new."""
    now = utcnow()
    today = now.date().isoformat()
    created = 0

    created += create_task_once(
        db,
        data.lead_id,
        TaskType.REPLY_DUE,
        "Reply due",
        idempotency_key=reply_task_key(data.lead_id, data.provider_message_id),
        due_at=now + REPLY_DUE_AFTER,
        conversation_id=data.conversation_id,
    )

    try:
        service = ServiceType(data.service) if data.service else None
    except ValueError:
        service = None

    if service in BUSINESS_SETUP_SERVICES:
        created += create_task_once(
            db,
            data.lead_id,
            TaskType.QUOTE,
            "Send quotation",
            idempotency_key=f"quote:{data.lead_id}:{today}",
            due_at=end_of_day(now),
            conversation_id=data.conversation_id,
        )
    elif service in QUALIFY_SERVICES:
        created += create_task_once(
            db,
            data.lead_id,
            TaskType.QUALIFY,
            "Qualify lead",
            idempotency_key=f"qualify:{data.lead_id}:{today}",
            due_at=now + QUALIFY_DUE_AFTER,
            conversation_id=data.conversation_id,
        )

    for expiry in data.expiries or []:
        expiry_date = datetime.fromisoformat(expiry["date"]).replace(tzinfo=timezone.utc)
        remind_at = expiry_date - RENEWAL_LEAD_TIME
        created += create_task_once(
            db,
            data.lead_id,
            TaskType.RENEWAL_FOLLOWUP,
            f"Renewal follow-up: {expiry['type']}",
            idempotency_key=f"renewal:{data.lead_id}:{expiry['type']}:{expiry['date']}",
            due_at=remind_at if remind_at > now else now,
            conversation_id=data.conversation_id,
        )

    if data.expiry_hint:
        created += create_task_once(
            db,
            data.lead_id,
            TaskType.CONFIRM_EXPIRY,
            "Confirm expiry date",
            idempotency_key=f"confirm-expiry:{data.lead_id}:{today}",
            due_at=end_of_day(now),
            conversation_id=data.conversation_id,
        )

    if created:
        logger.info(
            "Auto tasks created",
            extra={"context": {"lead_id": data.lead_id, "conversation_id": data.conversation_id, "created": created}},
        )
    return created
