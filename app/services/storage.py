"""Insert-or-existing primitives over the relational store.

Uniqueness conflicts are expected outcomes in the pipeline (duplicate webhook
deliveries, concurrent upserts), so they are expressed as ``ON CONFLICT``
clauses and surfaced as values. Any other database error propagates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class InsertOutcome:
    """Created(row_id) or AlreadyExists."""

    created: bool
    row_id: Optional[int] = None

    @property
    def already_exists(self) -> bool:
        return not self.created

    @staticmethod
    def new(row_id: int) -> "InsertOutcome":
        return InsertOutcome(created=True, row_id=row_id)

    @staticmethod
    def existing() -> "InsertOutcome":
        return InsertOutcome(created=False)


def dialect_insert(db: Session, model):
    name = db.get_bind().dialect.name
    try:
        return _DIALECT_INSERTS[name](model)
    except KeyError:
        raise NotImplementedError(f"ON CONFLICT upserts are not supported on dialect {name!r}") from None


def insert_if_absent(
    db: Session,
    model,
    values: dict[str, Any],
    *,
    conflict_columns: Optional[Sequence[str]] = None,
) -> InsertOutcome:
    """INSERT ... ON CONFLICT DO NOTHING RETURNING id.

    Without ``conflict_columns`` any unique constraint on the table counts as
    a conflict.
    """
    stmt = dialect_insert(db, model).values(**values)
    if conflict_columns:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    else:
        stmt = stmt.on_conflict_do_nothing()
    row_id = db.execute(stmt.returning(model.id)).scalar_one_or_none()
    if row_id is None:
        return InsertOutcome.existing()
    return InsertOutcome.new(row_id)


def upsert_returning(
    db: Session,
    model,
    values: dict[str, Any],
    *,
    conflict_columns: Sequence[str],
    update_values: dict[str, Any],
    where=None,
) -> Optional[int]:
    """INSERT ... ON CONFLICT DO UPDATE SET ... [WHERE ...] RETURNING id.

    Returns the row id when a row was inserted or updated, ``None`` when the
    conflicting row failed the ``where`` guard (compare-and-swap lost).
    """
    stmt = dialect_insert(db, model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_=update_values,
        where=where,
    )
    return db.execute(stmt.returning(model.id)).scalar_one_or_none()


def excluded(db: Session, model):
    """The ``excluded`` pseudo-row of the dialect's ON CONFLICT clause."""
    return dialect_insert(db, model).excluded


def reload(db: Session, model, row_id: int):
    """Fetch a row bypassing stale identity-map state after a Core upsert."""
    return db.get(model, row_id, populate_existing=True)
